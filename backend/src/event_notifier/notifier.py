from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from .store import BatchLimitExceededError

logger = logging.getLogger(__name__)

DeliveryStatus = Literal["sent", "failed", "dry_run"]

FCM_MULTICAST_LIMIT = 500
INVALID_TOKEN_ERROR_CODES = frozenset({"unregistered", "sender_id_mismatch", "invalid_token"})
FLUTTER_CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"
DEFAULT_FIREBASE_APP_NAME = "[DEFAULT]"


class DeliveryUnavailableError(RuntimeError):
    """The delivery API as a whole failed (network, auth, quota); nothing was sent."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    image_url: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    push_token: str
    status: DeliveryStatus
    attempted_at: datetime
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def token_invalid(self) -> bool:
        return self.status == "failed" and self.error_code in INVALID_TOKEN_ERROR_CODES


@dataclass(frozen=True)
class MulticastResult:
    results: list[DeliveryResult]

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.status in {"sent", "dry_run"})

    @property
    def failure_count(self) -> int:
        return sum(1 for result in self.results if result.status == "failed")


class PushSender(Protocol):
    def send(self, message: PushMessage, push_token: str) -> DeliveryResult: ...

    def send_multicast(self, message: PushMessage, push_tokens: list[str]) -> MulticastResult: ...


def mask_push_token(push_token: str) -> str:
    normalized = push_token.strip()
    if len(normalized) <= 12:
        return "***"
    return f"{normalized[:6]}***{normalized[-4:]}"


class StubPushSender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled

    def send(self, message: PushMessage, push_token: str) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return DeliveryResult(
                push_token=push_token,
                status="failed",
                attempted_at=attempted_at,
                error_code="push_disabled",
                error_message="Live push delivery is disabled",
            )

        lowered = push_token.lower()
        if "stale" in lowered:
            return DeliveryResult(
                push_token=push_token,
                status="failed",
                attempted_at=attempted_at,
                error_code="unregistered",
                error_message="Stub sender reports the token as unregistered",
            )
        if "fail" in lowered:
            return DeliveryResult(
                push_token=push_token,
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for push token",
            )

        message_id = f"stub-{int(attempted_at.timestamp())}-{push_token[-6:]}"
        logger.debug("stub push sent token=%s title=%s", mask_push_token(push_token), message.title)
        return DeliveryResult(push_token=push_token, status="sent", attempted_at=attempted_at, message_id=message_id)

    def send_multicast(self, message: PushMessage, push_tokens: list[str]) -> MulticastResult:
        if len(push_tokens) > FCM_MULTICAST_LIMIT:
            raise BatchLimitExceededError(
                f"multicast of {len(push_tokens)} tokens exceeds limit {FCM_MULTICAST_LIMIT}"
            )
        return MulticastResult(results=[self.send(message, token) for token in push_tokens])


class FirebaseAppProvider:
    """Initializes the firebase-admin app once per process and hands it out."""

    def __init__(
        self,
        *,
        project_id: str = "",
        credentials_json: str = "",
        app_name: str | None = None,
        http_timeout_seconds: float | None = None,
    ) -> None:
        self._project_id = project_id.strip()
        self._credentials_json = credentials_json.strip()
        self._http_timeout_seconds = http_timeout_seconds
        self._app_name = app_name or DEFAULT_FIREBASE_APP_NAME
        self._lock = Lock()
        self._app: firebase_admin.App | None = None

    def _credential(self):
        raw = self._credentials_json
        if not raw:
            return None
        if raw.startswith("{"):
            return credentials.Certificate(json.loads(raw))
        if os.path.exists(raw):
            return credentials.Certificate(raw)
        raise ValueError(f"FCM credentials file not found: {raw}")

    def get_app(self) -> firebase_admin.App:
        with self._lock:
            if self._app is not None:
                return self._app
            try:
                self._app = firebase_admin.get_app(self._app_name)
                return self._app
            except ValueError:
                pass
            options: dict[str, object] = {}
            if self._project_id:
                options["projectId"] = self._project_id
            if self._http_timeout_seconds:
                options["httpTimeout"] = self._http_timeout_seconds
            try:
                self._app = firebase_admin.initialize_app(
                    self._credential(),
                    options=options or None,
                    name=self._app_name,
                )
            except (ValueError, OSError) as exc:
                raise DeliveryUnavailableError("firebase_init_failed", f"Firebase initialization failed: {exc}") from exc
            logger.info("firebase app initialized name=%s project_id=%s", self._app_name, self._project_id or "-")
            return self._app


def _error_code_for(exc: BaseException) -> str | None:
    """Per-token error code, or None when the error is API-wide."""
    if isinstance(exc, messaging.UnregisteredError):
        return "unregistered"
    if isinstance(exc, messaging.SenderIdMismatchError):
        return "sender_id_mismatch"
    if isinstance(exc, exceptions.InvalidArgumentError):
        return "invalid_argument"
    return None


class FcmPushSender:
    """Production sender backed by Firebase Cloud Messaging."""

    def __init__(self, *, app_provider: FirebaseAppProvider, dry_run: bool = False) -> None:
        self._app_provider = app_provider
        self._dry_run = dry_run

    def _notification(self, message: PushMessage) -> messaging.Notification:
        return messaging.Notification(title=message.title, body=message.body, image=message.image_url)

    def _android(self) -> messaging.AndroidConfig:
        return messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(sound="default", click_action=FLUTTER_CLICK_ACTION),
        )

    def _apns(self) -> messaging.APNSConfig:
        return messaging.APNSConfig(
            headers={"apns-push-type": "alert", "apns-priority": "10"},
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
        )

    def _data(self, message: PushMessage) -> dict[str, str]:
        return {**{key: str(value) for key, value in message.data.items()}, "click_action": FLUTTER_CLICK_ACTION}

    def send(self, message: PushMessage, push_token: str) -> DeliveryResult:
        app = self._app_provider.get_app()
        attempted_at = datetime.now(timezone.utc)
        fcm_message = messaging.Message(
            token=push_token,
            notification=self._notification(message),
            data=self._data(message),
            android=self._android(),
            apns=self._apns(),
        )
        try:
            message_id = messaging.send(fcm_message, dry_run=self._dry_run, app=app)
        except exceptions.FirebaseError as exc:
            error_code = _error_code_for(exc)
            if error_code is None:
                raise DeliveryUnavailableError(f"fcm_{exc.code}", f"FCM send failed: {exc}") from exc
            return DeliveryResult(
                push_token=push_token,
                status="failed",
                attempted_at=attempted_at,
                error_code=error_code,
                error_message=f"{exc} (token: {mask_push_token(push_token)})",
            )
        return DeliveryResult(
            push_token=push_token,
            status="dry_run" if self._dry_run else "sent",
            attempted_at=attempted_at,
            message_id=message_id,
        )

    def send_multicast(self, message: PushMessage, push_tokens: list[str]) -> MulticastResult:
        if len(push_tokens) > FCM_MULTICAST_LIMIT:
            raise BatchLimitExceededError(
                f"multicast of {len(push_tokens)} tokens exceeds limit {FCM_MULTICAST_LIMIT}"
            )
        if not push_tokens:
            return MulticastResult(results=[])
        app = self._app_provider.get_app()
        attempted_at = datetime.now(timezone.utc)
        multicast = messaging.MulticastMessage(
            tokens=list(push_tokens),
            notification=self._notification(message),
            data=self._data(message),
            android=self._android(),
            apns=self._apns(),
        )
        try:
            batch = messaging.send_each_for_multicast(multicast, dry_run=self._dry_run, app=app)
        except exceptions.FirebaseError as exc:
            raise DeliveryUnavailableError(f"fcm_{exc.code}", f"FCM multicast failed: {exc}") from exc

        # invalid_argument is raised for bad payloads as well as bad tokens; it only
        # condemns a token when the same message reached other tokens.
        payload_accepted = batch.success_count > 0
        if not payload_accepted:
            failures = [response.exception for response in batch.responses if response.exception is not None]
            token_specific = [
                exc for exc in failures if _error_code_for(exc) in {"unregistered", "sender_id_mismatch"}
            ]
            if failures and not token_specific:
                first = failures[0]
                raise DeliveryUnavailableError(
                    f"fcm_{getattr(first, 'code', 'unknown')}",
                    f"FCM rejected every message in the batch: {first}",
                )

        results: list[DeliveryResult] = []
        for token, response in zip(push_tokens, batch.responses):
            if response.success:
                results.append(
                    DeliveryResult(
                        push_token=token,
                        status="dry_run" if self._dry_run else "sent",
                        attempted_at=attempted_at,
                        message_id=response.message_id,
                    )
                )
                continue
            exc = response.exception
            error_code = _error_code_for(exc) if exc is not None else None
            if error_code == "invalid_argument" and payload_accepted:
                error_code = "invalid_token"
            if error_code is None:
                error_code = f"fcm_{getattr(exc, 'code', 'unknown')}"
            results.append(
                DeliveryResult(
                    push_token=token,
                    status="failed",
                    attempted_at=attempted_at,
                    error_code=error_code,
                    error_message=str(exc) if exc is not None else None,
                )
            )
        return MulticastResult(results=results)
