from __future__ import annotations

from datetime import datetime, timezone

import pytest

from event_notifier.content import EMPTY_CONTENT, RenderedContent
from event_notifier.dispatcher import Delivery, Dispatcher
from event_notifier.notifier import (
    DeliveryResult,
    DeliveryUnavailableError,
    MulticastResult,
    PushMessage,
    StubPushSender,
)


class _RecordingSender:
    def __init__(self, *, fail_tokens: dict[str, str] | None = None) -> None:
        self.calls: list[tuple[PushMessage, list[str]]] = []
        self._fail_tokens = fail_tokens or {}

    def send(self, message: PushMessage, push_token: str) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        error_code = self._fail_tokens.get(push_token)
        if error_code is not None:
            return DeliveryResult(push_token=push_token, status="failed", attempted_at=attempted_at, error_code=error_code)
        return DeliveryResult(push_token=push_token, status="sent", attempted_at=attempted_at, message_id="m")

    def send_multicast(self, message: PushMessage, push_tokens: list[str]) -> MulticastResult:
        self.calls.append((message, list(push_tokens)))
        return MulticastResult(results=[self.send(message, token) for token in push_tokens])


class _UnavailableSender(_RecordingSender):
    def send_multicast(self, message: PushMessage, push_tokens: list[str]) -> MulticastResult:
        raise DeliveryUnavailableError("fcm_UNAVAILABLE", "service unavailable")


def _content(title: str = "Reminder", body: str = "See you soon") -> RenderedContent:
    return RenderedContent(title=title, body=body, experiment_id="event_reminder_24h", variant_id="control")


def test_large_token_list_is_sent_in_bounded_chunks() -> None:
    sender = _RecordingSender()
    tokens = [f"token-{index:04d}" for index in range(1200)]

    summary = Dispatcher(sender=sender, batch_limit=500).dispatch_shared(_content(), tokens, data={"eventId": "E1"})

    assert [len(chunk) for _, chunk in sender.calls] == [500, 500, 200]
    assert summary.chunk_count == 3
    assert summary.success_count == 1200
    assert summary.failure_count == 0
    assert sender.calls[0][0].data == {"eventId": "E1"}


def test_failures_are_aggregated_and_invalid_tokens_reported() -> None:
    sender = _RecordingSender(fail_tokens={"token-b": "unregistered", "token-c": "internal"})
    deliveries = [
        Delivery(push_token="token-a", content=_content(), user_id="U1"),
        Delivery(push_token="token-b", content=_content(), user_id="U2"),
        Delivery(push_token="token-c", content=_content(), user_id="U3"),
    ]

    summary = Dispatcher(sender=sender).dispatch(deliveries)

    assert summary.success_count == 1
    assert summary.failure_count == 2
    assert summary.attempted_count == 3
    assert [(item.user_id, item.error_code) for item in summary.invalid_tokens] == [("U2", "unregistered")]


def test_deliveries_are_grouped_by_rendered_content() -> None:
    sender = _RecordingSender()
    deliveries = [
        Delivery(push_token="token-a", content=_content(title="A")),
        Delivery(push_token="token-b", content=_content(title="B")),
        Delivery(push_token="token-c", content=_content(title="A")),
    ]

    summary = Dispatcher(sender=sender).dispatch(deliveries)

    assert summary.chunk_count == 2
    assert {(message.title, tuple(tokens)) for message, tokens in sender.calls} == {
        ("A", ("token-a", "token-c")),
        ("B", ("token-b",)),
    }


def test_empty_content_is_counted_as_failure_and_not_sent() -> None:
    sender = _RecordingSender()
    deliveries = [
        Delivery(push_token="token-a", content=EMPTY_CONTENT),
        Delivery(push_token="token-b", content=_content()),
    ]

    summary = Dispatcher(sender=sender).dispatch(deliveries)

    assert summary.skipped_empty_count == 1
    assert summary.failure_count == 1
    assert summary.success_count == 1
    assert [tokens for _, tokens in sender.calls] == [["token-b"]]


def test_delivery_unavailable_propagates() -> None:
    with pytest.raises(DeliveryUnavailableError):
        Dispatcher(sender=_UnavailableSender()).dispatch_shared(_content(), ["token-a"])


def test_stub_sender_marks_stale_tokens_invalid() -> None:
    summary = Dispatcher(sender=StubPushSender(enabled=True)).dispatch_shared(
        _content(),
        ["token-good-000001", "token-stale-000002", "token-fail-000003"],
    )

    assert summary.success_count == 1
    assert summary.failure_count == 2
    assert [item.push_token for item in summary.invalid_tokens] == ["token-stale-000002"]


@pytest.mark.parametrize("limit", [0, 501])
def test_batch_limit_must_fit_the_multicast_cap(limit: int) -> None:
    with pytest.raises(ValueError):
        Dispatcher(sender=_RecordingSender(), batch_limit=limit)
