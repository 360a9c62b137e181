from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .batch_writer import MarkSentWriter
from .content import ContentSelector, RenderedContent, render_template
from .models import (
    ChatMessageNotificationRequest,
    ImmediateDispatchResponse,
    MatchNotificationRequest,
    MatchNotificationResponse,
)
from .notifier import DeliveryUnavailableError, PushMessage, PushSender, mask_push_token
from .store import NotificationRecordWrite, UserNotFoundError, UserRecord, UserStore, WriteTarget

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_LENGTH = 20
FALLBACK_SENDER_NAME = "Someone"
_NON_TEXT_PLACEHOLDERS = {"image": "[Image]", "gif": "[GIF]", "sticker": "[Sticker]"}


@dataclass(frozen=True)
class ImmediateNotification:
    category: str = "system"
    title: str | None = None
    body: str | None = None
    experiment_id: str | None = None
    params: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)
    image_url: str | None = None


def build_message_preview(text: str, message_type: str = "text") -> str | None:
    normalized_type = (message_type or "text").strip().lower()
    if normalized_type != "text":
        return _NON_TEXT_PLACEHOLDERS.get(normalized_type, f"[{normalized_type}]")
    content = text.strip()
    if not content:
        return None
    if len(content) > MESSAGE_PREVIEW_LENGTH:
        return content[:MESSAGE_PREVIEW_LENGTH] + "..."
    return content


class ImmediateNotificationService:
    """Single-recipient pushes for chat messages, matches and ad-hoc notices."""

    def __init__(
        self,
        *,
        user_store: UserStore,
        write_target: WriteTarget,
        selector: ContentSelector,
        sender: PushSender,
        record_notifications: bool = False,
    ) -> None:
        self._user_store = user_store
        self._write_target = write_target
        self._selector = selector
        self._sender = sender
        self._record_notifications = record_notifications

    def _content_for(self, user: UserRecord, notification: ImmediateNotification) -> RenderedContent:
        if notification.title is not None and notification.body is not None:
            return RenderedContent(
                title=render_template(notification.title, notification.params),
                body=render_template(notification.body, notification.params),
            )
        if notification.experiment_id is None:
            return RenderedContent(title="", body="")
        return self._selector.select(notification.experiment_id, user, notification.params)

    def dispatch_immediate(self, recipient_id: str, notification: ImmediateNotification) -> ImmediateDispatchResponse:
        try:
            user = self._user_store.get_user(recipient_id)
        except UserNotFoundError:
            logger.info("immediate push skipped: recipient not found user_id=%s", recipient_id)
            return ImmediateDispatchResponse(recipient_id=recipient_id, status="skipped", reason="recipient_not_found")

        if not user.allows(notification.category):
            return ImmediateDispatchResponse(recipient_id=recipient_id, status="skipped", reason="category_disabled")

        push_token = user.deliverable_token
        if push_token is None:
            return ImmediateDispatchResponse(recipient_id=recipient_id, status="skipped", reason="no_push_token")

        content = self._content_for(user, notification)
        if content.is_empty:
            return ImmediateDispatchResponse(
                recipient_id=recipient_id,
                status="failed",
                reason="empty_content",
                experiment_id=content.experiment_id,
                error_code="empty_content",
            )

        message = PushMessage(
            title=content.title,
            body=content.body,
            data=dict(notification.data),
            image_url=notification.image_url,
        )
        try:
            result = self._sender.send(message, push_token)
        except DeliveryUnavailableError as exc:
            logger.warning(
                "immediate push unavailable user_id=%s token=%s code=%s",
                recipient_id,
                mask_push_token(push_token),
                exc.error_code,
            )
            return ImmediateDispatchResponse(
                recipient_id=recipient_id,
                status="failed",
                reason="delivery_unavailable",
                experiment_id=content.experiment_id,
                variant_id=content.variant_id,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        writer = MarkSentWriter(target=self._write_target)
        if result.token_invalid:
            writer.queue_token_cleanup(user.user_id, push_token)
        if self._record_notifications and result.status != "failed":
            writer.queue_notification_record(
                NotificationRecordWrite(
                    user_id=user.user_id,
                    notification_type=notification.category,
                    title=content.title,
                    body=content.body,
                    action_type=notification.data.get("actionType"),
                    action_data=notification.data.get("actionData"),
                )
            )
        writer.flush()

        if result.status == "failed":
            return ImmediateDispatchResponse(
                recipient_id=recipient_id,
                status="failed",
                reason="delivery_failed",
                experiment_id=content.experiment_id,
                variant_id=content.variant_id,
                error_code=result.error_code,
                error_message=result.error_message,
            )
        return ImmediateDispatchResponse(
            recipient_id=recipient_id,
            status="sent",
            experiment_id=content.experiment_id,
            variant_id=content.variant_id,
            message_id=result.message_id,
        )

    def _display_name(self, user_id: str) -> str | None:
        try:
            return self._user_store.get_user(user_id).display_name or None
        except UserNotFoundError:
            return None

    def notify_new_message(self, payload: ChatMessageNotificationRequest) -> ImmediateDispatchResponse:
        recipient_id = payload.recipient_id
        if recipient_id is None:
            recipient_id = next((item for item in payload.participant_ids if item != payload.sender_id), None)
        if recipient_id is None:
            return ImmediateDispatchResponse(recipient_id="", status="skipped", reason="recipient_not_found")
        if recipient_id == payload.sender_id:
            return ImmediateDispatchResponse(recipient_id=recipient_id, status="skipped", reason="self_message")

        preview = build_message_preview(payload.text, payload.message_type)
        if preview is None:
            return ImmediateDispatchResponse(recipient_id=recipient_id, status="skipped", reason="empty_message")

        sender_name = payload.sender_name or self._display_name(payload.sender_id) or FALLBACK_SENDER_NAME
        data = {
            "type": "new_message",
            "chatRoomId": payload.chat_room_id,
            "senderId": payload.sender_id,
            "actionType": "open_chat",
            "actionData": payload.chat_room_id,
        }
        if payload.message_id:
            data["messageId"] = payload.message_id
        return self.dispatch_immediate(
            recipient_id,
            ImmediateNotification(
                category="new_message",
                experiment_id="new_message",
                params={"senderName": sender_name, "messagePreview": preview},
                data=data,
            ),
        )

    def notify_match(self, payload: MatchNotificationRequest) -> MatchNotificationResponse:
        try:
            user1 = self._user_store.get_user(payload.user1_id)
            user2 = self._user_store.get_user(payload.user2_id)
        except UserNotFoundError:
            logger.info("match push skipped: user missing user1=%s user2=%s", payload.user1_id, payload.user2_id)
            return MatchNotificationResponse(
                results=[
                    ImmediateDispatchResponse(recipient_id=payload.user1_id, status="skipped", reason="user_not_found"),
                    ImmediateDispatchResponse(recipient_id=payload.user2_id, status="skipped", reason="user_not_found"),
                ]
            )

        results: list[ImmediateDispatchResponse] = []
        for recipient, partner in ((user1, user2), (user2, user1)):
            data = {"type": "match", "partnerId": partner.user_id, "actionType": "open_match"}
            if payload.chat_room_id:
                data["chatRoomId"] = payload.chat_room_id
                data["actionData"] = payload.chat_room_id
            results.append(
                self.dispatch_immediate(
                    recipient.user_id,
                    ImmediateNotification(
                        category="match",
                        experiment_id="match",
                        params={"partnerName": partner.display_name or FALLBACK_SENDER_NAME},
                        data=data,
                    ),
                )
            )
        return MatchNotificationResponse(results=results)
