from __future__ import annotations

import random

import pytest

from event_notifier.content import ContentSelector, ExperimentCatalog
from event_notifier.immediate import ImmediateNotification, ImmediateNotificationService, build_message_preview
from event_notifier.models import ChatMessageNotificationRequest, MatchNotificationRequest
from event_notifier.notifier import DeliveryResult, DeliveryUnavailableError, PushMessage, StubPushSender
from event_notifier.store import InMemoryNotificationStore, UserRecord


class _RecordingSender(StubPushSender):
    def __init__(self) -> None:
        super().__init__(enabled=True)
        self.sent: list[tuple[PushMessage, str]] = []

    def send(self, message: PushMessage, push_token: str) -> DeliveryResult:
        self.sent.append((message, push_token))
        return super().send(message, push_token)


class _DownSender(StubPushSender):
    def __init__(self) -> None:
        super().__init__(enabled=True)

    def send(self, message: PushMessage, push_token: str) -> DeliveryResult:
        raise DeliveryUnavailableError("firebase_init_failed", "credentials missing")


def _store() -> InMemoryNotificationStore:
    store = InMemoryNotificationStore()
    store.upsert_user(UserRecord(user_id="alice", display_name="Alice", push_token="token-alice-0001"))
    store.upsert_user(UserRecord(user_id="bob", display_name="Bob", push_token="token-bob-00002"))
    store.upsert_user(UserRecord(user_id="quiet", display_name="", push_token=None))
    return store


def _service(
    store: InMemoryNotificationStore,
    sender: StubPushSender,
    *,
    record_notifications: bool = False,
) -> ImmediateNotificationService:
    selector = ContentSelector(catalog=ExperimentCatalog.default(), user_store=store, rng=random.Random(3))
    return ImmediateNotificationService(
        user_store=store,
        write_target=store,
        selector=selector,
        sender=sender,
        record_notifications=record_notifications,
    )


def test_message_preview_truncates_long_text_and_labels_media() -> None:
    assert build_message_preview("short hello") == "short hello"
    assert build_message_preview("a" * 25) == "a" * 20 + "..."
    assert build_message_preview("b" * 20) == "b" * 20
    assert build_message_preview("   ") is None
    assert build_message_preview("", "image") == "[Image]"
    assert build_message_preview("", "GIF") == "[GIF]"
    assert build_message_preview("", "sticker") == "[Sticker]"
    assert build_message_preview("", "audio") == "[audio]"


def test_chat_message_goes_to_the_other_participant() -> None:
    store = _store()
    sender = _RecordingSender()

    response = _service(store, sender).notify_new_message(
        ChatMessageNotificationRequest(
            chat_room_id="room-1",
            message_id="msg-9",
            sender_id="alice",
            participant_ids=["alice", "bob"],
            text="Are we still on for dinner tomorrow night?",
        )
    )

    assert response.status == "sent"
    assert response.recipient_id == "bob"
    assert response.experiment_id == "new_message"
    message, token = sender.sent[0]
    assert token == "token-bob-00002"
    assert "Alice" in message.title + message.body
    assert "Are we still on for ..." in message.body
    assert message.data == {
        "type": "new_message",
        "chatRoomId": "room-1",
        "senderId": "alice",
        "actionType": "open_chat",
        "actionData": "room-1",
        "messageId": "msg-9",
    }


def test_chat_sender_name_falls_back_to_someone() -> None:
    store = _store()
    sender = _RecordingSender()

    _service(store, sender).notify_new_message(
        ChatMessageNotificationRequest(chat_room_id="room-2", sender_id="quiet", recipient_id="alice", text="hi")
    )

    message, _ = sender.sent[0]
    assert "Someone" in message.title + message.body


@pytest.mark.parametrize(
    ("payload", "reason"),
    [
        ({"sender_id": "alice", "participant_ids": ["alice"], "text": "hi"}, "recipient_not_found"),
        ({"sender_id": "alice", "recipient_id": "alice", "text": "hi"}, "self_message"),
        ({"sender_id": "alice", "recipient_id": "bob", "text": "   "}, "empty_message"),
        ({"sender_id": "alice", "recipient_id": "ghost", "text": "hi"}, "recipient_not_found"),
        ({"sender_id": "alice", "recipient_id": "quiet", "text": "hi"}, "no_push_token"),
    ],
)
def test_chat_message_skip_reasons(payload: dict[str, object], reason: str) -> None:
    sender = _RecordingSender()
    response = _service(_store(), sender).notify_new_message(
        ChatMessageNotificationRequest(chat_room_id="room-3", **payload)
    )
    assert response.status == "skipped"
    assert response.reason == reason
    assert sender.sent == []


def test_disabled_category_is_skipped() -> None:
    store = _store()
    store.upsert_user(
        UserRecord(user_id="bob", push_token="token-bob-00002", notification_preferences={"new_message": False})
    )
    response = _service(store, _RecordingSender()).notify_new_message(
        ChatMessageNotificationRequest(chat_room_id="room-4", sender_id="alice", recipient_id="bob", text="hi")
    )
    assert response.reason == "category_disabled"


def test_match_notifies_both_users_with_partner_names() -> None:
    sender = _RecordingSender()

    response = _service(_store(), sender).notify_match(
        MatchNotificationRequest(user1_id="alice", user2_id="bob", chat_room_id="room-5")
    )

    assert [item.status for item in response.results] == ["sent", "sent"]
    by_token = {token: message for message, token in sender.sent}
    assert "Bob" in by_token["token-alice-0001"].body
    assert "Alice" in by_token["token-bob-00002"].body
    assert by_token["token-alice-0001"].data == {
        "type": "match",
        "partnerId": "bob",
        "actionType": "open_match",
        "chatRoomId": "room-5",
        "actionData": "room-5",
    }


def test_match_with_missing_user_skips_both() -> None:
    sender = _RecordingSender()
    response = _service(_store(), sender).notify_match(MatchNotificationRequest(user1_id="alice", user2_id="ghost"))
    assert [(item.recipient_id, item.reason) for item in response.results] == [
        ("alice", "user_not_found"),
        ("ghost", "user_not_found"),
    ]
    assert sender.sent == []


def test_explicit_content_is_rendered_and_recorded() -> None:
    store = _store()
    sender = _RecordingSender()

    response = _service(store, sender, record_notifications=True).dispatch_immediate(
        "alice",
        ImmediateNotification(
            title="Hello {name}",
            body="Your table is ready",
            params={"name": "Alice"},
            data={"actionType": "view_event", "actionData": "E1"},
        ),
    )

    assert response.status == "sent"
    assert sender.sent[0][0].title == "Hello Alice"
    records = store.list_notification_records("alice")
    assert [(record.title, record.action_data) for record in records] == [("Hello Alice", "E1")]


def test_rating_prompt_carries_image_to_the_push() -> None:
    store = _store()
    sender = _RecordingSender()

    response = _service(store, sender).dispatch_immediate(
        "bob",
        ImmediateNotification(
            category="rating",
            experiment_id="rating",
            data={"actionType": "rate_event", "actionData": "E1"},
            image_url="https://cdn.example.com/events/E1.jpg",
        ),
    )

    assert response.status == "sent"
    assert response.experiment_id == "rating"
    message = sender.sent[0][0]
    assert message.image_url == "https://cdn.example.com/events/E1.jpg"
    assert (response.variant_id, message.title) in {("control", "評分您的體驗"), ("variant", "⭐ 體驗如何？")}
    assert store.get_user("bob").variant_assignments == {"rating": response.variant_id}


def test_rating_category_can_be_disabled() -> None:
    store = _store()
    store.upsert_user(
        UserRecord(user_id="carol", push_token="token-carol-0003", notification_preferences={"rating": False})
    )

    response = _service(store, _RecordingSender()).dispatch_immediate(
        "carol",
        ImmediateNotification(category="rating", experiment_id="rating"),
    )

    assert response.status == "skipped"
    assert response.reason == "category_disabled"


def test_unknown_experiment_fails_with_empty_content() -> None:
    response = _service(_store(), _RecordingSender()).dispatch_immediate(
        "alice",
        ImmediateNotification(experiment_id="does_not_exist"),
    )
    assert response.status == "failed"
    assert response.reason == "empty_content"


def test_stale_token_is_cleared_after_failed_send() -> None:
    store = _store()
    store.upsert_user(UserRecord(user_id="bob", push_token="stale-bob-00002"))

    response = _service(store, _RecordingSender()).dispatch_immediate(
        "bob",
        ImmediateNotification(title="t", body="b"),
    )

    assert response.status == "failed"
    assert response.reason == "delivery_failed"
    assert response.error_code == "unregistered"
    assert store.get_user("bob").push_token is None


def test_delivery_outage_reports_unavailable() -> None:
    response = _service(_store(), _DownSender()).dispatch_immediate(
        "alice",
        ImmediateNotification(title="t", body="b"),
    )
    assert response.status == "failed"
    assert response.reason == "delivery_unavailable"
    assert response.error_code == "firebase_init_failed"
