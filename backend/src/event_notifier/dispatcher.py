from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from .content import RenderedContent
from .notifier import FCM_MULTICAST_LIMIT, DeliveryResult, PushMessage, PushSender, mask_push_token
from .recipients import chunked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    push_token: str
    content: RenderedContent
    user_id: str | None = None


@dataclass(frozen=True)
class InvalidToken:
    push_token: str
    user_id: str | None
    error_code: str


@dataclass
class DispatchSummary:
    success_count: int = 0
    failure_count: int = 0
    chunk_count: int = 0
    skipped_empty_count: int = 0
    invalid_tokens: list[InvalidToken] = field(default_factory=list)
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def attempted_count(self) -> int:
        return self.success_count + self.failure_count


class Dispatcher:
    def __init__(self, *, sender: PushSender, batch_limit: int = FCM_MULTICAST_LIMIT) -> None:
        if batch_limit <= 0 or batch_limit > FCM_MULTICAST_LIMIT:
            raise ValueError(f"batch_limit must be between 1 and {FCM_MULTICAST_LIMIT}")
        self._sender = sender
        self._batch_limit = batch_limit

    @property
    def sender(self) -> PushSender:
        return self._sender

    def dispatch_shared(
        self,
        content: RenderedContent,
        push_tokens: list[str],
        *,
        data: Mapping[str, str] | None = None,
    ) -> DispatchSummary:
        return self.dispatch([Delivery(push_token=token, content=content) for token in push_tokens], data=data)

    def dispatch(self, deliveries: list[Delivery], *, data: Mapping[str, str] | None = None) -> DispatchSummary:
        """Send every delivery, one multicast per chunk of identical content.

        Per-token failures are counted; a ``DeliveryUnavailableError`` from the
        sender propagates to the caller.
        """
        summary = DispatchSummary()
        payload = {key: str(value) for key, value in (data or {}).items()}
        groups: dict[tuple[str, str], list[Delivery]] = {}
        for delivery in deliveries:
            if delivery.content.is_empty:
                summary.skipped_empty_count += 1
                summary.failure_count += 1
                logger.warning(
                    "skipping delivery with empty content token=%s",
                    mask_push_token(delivery.push_token),
                )
                continue
            groups.setdefault((delivery.content.title, delivery.content.body), []).append(delivery)

        for (title, body), group in groups.items():
            message = PushMessage(title=title, body=body, data=payload)
            user_by_token = {delivery.push_token: delivery.user_id for delivery in group}
            for chunk in chunked([delivery.push_token for delivery in group], self._batch_limit):
                outcome = self._sender.send_multicast(message, chunk)
                summary.chunk_count += 1
                summary.success_count += outcome.success_count
                summary.failure_count += outcome.failure_count
                summary.results.extend(outcome.results)
                for result in outcome.results:
                    if result.token_invalid:
                        summary.invalid_tokens.append(
                            InvalidToken(
                                push_token=result.push_token,
                                user_id=user_by_token.get(result.push_token),
                                error_code=result.error_code or "unknown",
                            )
                        )
        return summary
