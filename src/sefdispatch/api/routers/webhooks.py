"""
Inbound authority notifications.

The body is stored as a ``WebhookEvent`` and handed to the ``process-webhook``
queue; no invoice is touched in the request itself.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from sefdispatch.api.dependencies.dispatch import get_dispatcher
from sefdispatch.models.webhook import WebhookEvent
from sefdispatch.runtime import Dispatcher
from sefdispatch.services.job_queue import epoch_ms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    event_type: str = Field(..., alias="eventType", min_length=1)
    authority_id: str = Field(..., alias="sefId", min_length=1)
    status: Optional[str] = None
    timestamp: Optional[int] = None

    @field_validator("authority_id", mode="before")
    @classmethod
    def _numeric_id(cls, value: Any) -> Any:
        # The authority sends numeric invoice ids.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class WebhookAccepted(BaseModel):
    success: bool = True
    webhook_id: str
    job_id: str


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Checks ``sha256=<hex>`` (or bare hex) HMAC-SHA256 of the raw body."""
    if not signature:
        return False
    provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("utf-8"))


def timestamp_within_skew(timestamp_ms: Optional[int], now_ms: int, max_skew_seconds: int) -> bool:
    if timestamp_ms is None:
        return True
    return abs(now_ms - timestamp_ms) <= max_skew_seconds * 1000


def _parse_timestamp(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-SEF-Timestamp header") from None


def _store_and_enqueue(
    dispatcher: Dispatcher, body: WebhookPayload, raw: Dict[str, Any], signature: Optional[str]
) -> WebhookAccepted:
    with dispatcher.session_factory() as db:
        event = WebhookEvent(
            authority_id=body.authority_id,
            event_type=body.event_type,
            payload=raw,
            signature=signature,
            processed=False,
            created_at=dispatcher.queue.clock(),
        )
        db.add(event)
        db.commit()
        webhook_id = event.id

    job = dispatcher.queue.enqueue_webhook_processing(
        webhook_id, body.event_type, body.authority_id, raw
    )
    logger.info(
        "Webhook %s received event_type=%s authority_id=%s job_id=%s",
        webhook_id,
        body.event_type,
        body.authority_id,
        job.id,
    )
    return WebhookAccepted(webhook_id=webhook_id, job_id=job.id)


@router.post("/authority", response_model=WebhookAccepted, status_code=202)
async def receive_authority_webhook(
    request: Request,
    x_sef_signature: Optional[str] = Header(default=None),
    x_sef_timestamp: Optional[str] = Header(default=None),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> WebhookAccepted:
    raw_body = await request.body()
    secret = dispatcher.settings.WEBHOOK_SECRET

    if secret:
        if not x_sef_signature:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        if not verify_signature(raw_body, x_sef_signature, secret):
            logger.warning("Rejected webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        body = WebhookPayload.model_validate_json(raw_body)
    except PydanticValidationError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload") from None

    timestamp = _parse_timestamp(x_sef_timestamp)
    if timestamp is None:
        timestamp = body.timestamp
    now_ms = epoch_ms(dispatcher.queue.clock())
    if not timestamp_within_skew(timestamp, now_ms, dispatcher.settings.WEBHOOK_MAX_SKEW_SECONDS):
        logger.warning("Rejected webhook outside skew window timestamp=%s now=%s", timestamp, now_ms)
        raise HTTPException(status_code=401, detail="Webhook timestamp expired or invalid")

    raw = body.model_dump(by_alias=True, exclude_none=True)
    return await run_in_threadpool(_store_and_enqueue, dispatcher, body, raw, x_sef_signature)
