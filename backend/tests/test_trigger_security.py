from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from event_notifier.config import Settings
from event_notifier.trigger_security import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    sign_trigger_body,
    verify_trigger_signature,
)

SECRET = "prod-trigger-secret-001"
NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
BODY = b'{"dry_run": false}'


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"trigger_signature_mode": "enforce", "trigger_secret": SECRET, **overrides}
    return replace(Settings(), **values)


def _headers(*, timestamp: int | None = None) -> dict[str, str]:
    ts = int(NOW.timestamp()) if timestamp is None else timestamp
    return {
        TIMESTAMP_HEADER: str(ts),
        SIGNATURE_HEADER: sign_trigger_body(secret=SECRET, timestamp=ts, body=BODY),
    }


def test_valid_signature_is_verified_with_or_without_prefix() -> None:
    headers = _headers()
    assert verify_trigger_signature(settings=_settings(), body=BODY, headers=headers, now=NOW).verified

    prefixed = {**headers, SIGNATURE_HEADER: "sha256=" + headers[SIGNATURE_HEADER].upper()}
    assert verify_trigger_signature(settings=_settings(), body=BODY, headers=prefixed, now=NOW).verified


def test_tampered_body_is_rejected() -> None:
    verification = verify_trigger_signature(
        settings=_settings(),
        body=b'{"dry_run": true}',
        headers=_headers(),
        now=NOW,
    )
    assert verification.verified is False
    assert verification.reason == "signature_mismatch"


def test_stale_and_malformed_timestamps_are_rejected() -> None:
    stale = int(NOW.timestamp()) - 301
    stale_headers = _headers(timestamp=stale)
    assert (
        verify_trigger_signature(settings=_settings(), body=BODY, headers=stale_headers, now=NOW).reason
        == "timestamp_out_of_window"
    )
    bad = {**_headers(), TIMESTAMP_HEADER: "yesterday"}
    assert verify_trigger_signature(settings=_settings(), body=BODY, headers=bad, now=NOW).reason == "timestamp_invalid"


def test_missing_pieces_have_distinct_reasons() -> None:
    settings = _settings()
    assert verify_trigger_signature(settings=settings, body=BODY, headers={}, now=NOW).reason == "timestamp_missing"
    only_timestamp = {TIMESTAMP_HEADER: str(int(NOW.timestamp()))}
    assert (
        verify_trigger_signature(settings=settings, body=BODY, headers=only_timestamp, now=NOW).reason
        == "signature_missing"
    )
    no_secret = _settings(trigger_secret=" ")
    assert verify_trigger_signature(settings=no_secret, body=BODY, headers=_headers(), now=NOW).reason == (
        "trigger_secret_missing"
    )


def test_off_mode_skips_verification() -> None:
    settings = replace(Settings(), trigger_signature_mode="off")
    assert verify_trigger_signature(settings=settings, body=BODY, headers={}, now=NOW).verified
