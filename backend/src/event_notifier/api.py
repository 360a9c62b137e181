from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from .config import get_settings
from .immediate import ImmediateNotification
from .models import (
    ChatMessageNotificationRequest,
    ExperimentListResponse,
    ImmediateDispatchRequest,
    ImmediateDispatchResponse,
    MatchNotificationRequest,
    MatchNotificationResponse,
    TickRequest,
    TickResponse,
)
from .runtime import get_runtime
from .store import NotificationStoreError
from .trigger_security import verify_trigger_signature

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/notifications", tags=["notifications"])


@router.post("/reminders/tick", response_model=TickResponse)
async def run_reminder_tick(request: Request) -> TickResponse:
    runtime = get_runtime()
    settings = runtime.settings
    body = await request.body()

    verification = verify_trigger_signature(settings=settings, body=body, headers=request.headers)
    if not verification.verified:
        if settings.trigger_signature_mode == "enforce":
            raise HTTPException(401, f"trigger signature rejected: {verification.reason}")
        logger.warning("trigger signature not verified: %s", verification.reason)

    try:
        payload = TickRequest.model_validate_json(body) if body.strip() else TickRequest()
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json(include_url=False))) from exc

    if payload.now_override is not None and not payload.dry_run and not settings.reminder_allow_live_now_override:
        raise HTTPException(400, "now_override is only allowed for dry runs")

    try:
        return await run_in_threadpool(
            runtime.tick_service.run_tick,
            payload.now_override,
            dry_run=payload.dry_run,
        )
    except NotificationStoreError as exc:
        logger.error("reminder tick aborted: %s", exc)
        raise HTTPException(status_code=503, detail="notification store unavailable") from exc


@router.post("/immediate", response_model=ImmediateDispatchResponse)
def dispatch_immediate(payload: ImmediateDispatchRequest) -> ImmediateDispatchResponse:
    notification = ImmediateNotification(
        category=payload.category,
        title=payload.title,
        body=payload.body,
        experiment_id=payload.experiment_id,
        params=dict(payload.params),
        data=dict(payload.data),
        image_url=payload.image_url,
    )
    try:
        return get_runtime().immediate_service.dispatch_immediate(payload.recipient_id, notification)
    except NotificationStoreError as exc:
        raise HTTPException(status_code=503, detail="notification store unavailable") from exc


@router.post("/chat-messages", response_model=ImmediateDispatchResponse)
def notify_chat_message(payload: ChatMessageNotificationRequest) -> ImmediateDispatchResponse:
    try:
        return get_runtime().immediate_service.notify_new_message(payload)
    except NotificationStoreError as exc:
        raise HTTPException(status_code=503, detail="notification store unavailable") from exc


@router.post("/matches", response_model=MatchNotificationResponse)
def notify_match(payload: MatchNotificationRequest) -> MatchNotificationResponse:
    try:
        return get_runtime().immediate_service.notify_match(payload)
    except NotificationStoreError as exc:
        raise HTTPException(status_code=503, detail="notification store unavailable") from exc


@router.get("/experiments", response_model=ExperimentListResponse)
def list_experiments() -> ExperimentListResponse:
    return ExperimentListResponse(items=get_runtime().catalog.definitions())
