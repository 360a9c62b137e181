from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from .config import Settings

TIMESTAMP_HEADER = "X-Trigger-Timestamp"
SIGNATURE_HEADER = "X-Trigger-Signature"


@dataclass(frozen=True)
class TriggerSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def sign_trigger_body(*, secret: str, timestamp: int, body: bytes) -> str:
    signing_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()


def verify_trigger_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> TriggerSignatureVerification:
    if settings.trigger_signature_mode == "off":
        return TriggerSignatureVerification(verified=True)

    secret = settings.trigger_secret.strip()
    if not secret:
        return TriggerSignatureVerification(verified=False, reason="trigger_secret_missing")

    timestamp_text = headers.get(TIMESTAMP_HEADER)
    signature_text = headers.get(SIGNATURE_HEADER)
    if not timestamp_text:
        return TriggerSignatureVerification(verified=False, reason="timestamp_missing")
    if not signature_text:
        return TriggerSignatureVerification(verified=False, reason="signature_missing")

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return TriggerSignatureVerification(verified=False, reason="timestamp_invalid")

    current_time = now or datetime.now(timezone.utc)
    max_age = max(0, settings.trigger_signature_max_age_seconds)
    if abs(int(current_time.timestamp()) - timestamp) > max_age:
        return TriggerSignatureVerification(verified=False, reason="timestamp_out_of_window")

    normalized_signature = _normalize_signature(signature_text)
    if normalized_signature is None:
        return TriggerSignatureVerification(verified=False, reason="signature_invalid")

    expected_signature = sign_trigger_body(secret=secret, timestamp=timestamp, body=body)
    if not hmac.compare_digest(normalized_signature, expected_signature):
        return TriggerSignatureVerification(verified=False, reason="signature_mismatch")

    return TriggerSignatureVerification(verified=True)
