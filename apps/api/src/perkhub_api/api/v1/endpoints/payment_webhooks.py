"""Webhook endpoints for payment providers and parked event replay."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional
from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.api.dependencies.security import admin_api_key_dependency
from perkhub_api.core.settings import settings
from perkhub_api.db.session import get_session
from perkhub_api.models.payment_event import PaymentEventStatusEnum
from perkhub_api.models.subscription import PaymentProviderEnum
from perkhub_api.services.subscriptions import EntitlementReconciler, ReconciliationOutcome
from perkhub_api.services.subscriptions.reconciler import IngestResult
from perkhub_api.workers.payment_events import PaymentEventReplayWorker


router = APIRouter(prefix="/payments", tags=["payments"])


class WebhookResponse(BaseModel):
    status: str
    outcome: Optional[str] = None
    subscriptionId: Optional[UUID] = None
    eventId: UUID


class ReplayRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class ReplayResponse(BaseModel):
    replayed: int


def _parse_body(payload_bytes: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body")
    return payload


def _respond(result: IngestResult) -> WebhookResponse:
    outcome = result.result.outcome if result.result else None
    if outcome == ReconciliationOutcome.MALFORMED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": "malformed_event", "message": result.result.reason, "eventId": str(result.event_id)},
        )
    return WebhookResponse(
        status=PaymentEventStatusEnum(result.status).value,
        outcome=outcome.value if outcome else None,
        subscriptionId=result.result.subscription_id if result.result else None,
        eventId=result.event_id,
    )


@router.post("/webhooks/stripe", response_model=WebhookResponse, status_code=status.HTTP_202_ACCEPTED)
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> WebhookResponse:
    """Verify a Stripe callback, record it in the ledger and reconcile it."""

    secret = settings.stripe_webhook_secret
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook secret not configured")

    payload_bytes = await request.body()
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature header")

    try:
        stripe.Webhook.construct_event(payload=payload_bytes.decode("utf-8"), sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe signature") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc

    payload = _parse_body(payload_bytes)
    result = await EntitlementReconciler(db).ingest(
        PaymentProviderEnum.STRIPE,
        payload,
        payload_hash=hashlib.sha256(payload_bytes).hexdigest(),
    )
    return _respond(result)


@router.post("/webhooks/lastlink", response_model=WebhookResponse, status_code=status.HTTP_202_ACCEPTED)
async def lastlink_webhook(
    request: Request,
    lastlink_token: str = Header("", alias="X-Lastlink-Token"),
    db: AsyncSession = Depends(get_session),
) -> WebhookResponse:
    """Record a Lastlink callback in the ledger and reconcile it."""

    if settings.lastlink_webhook_token and lastlink_token != settings.lastlink_webhook_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Lastlink token")

    payload_bytes = await request.body()
    payload = _parse_body(payload_bytes)
    result = await EntitlementReconciler(db).ingest(
        PaymentProviderEnum.LASTLINK,
        payload,
        payload_hash=hashlib.sha256(payload_bytes).hexdigest(),
    )
    return _respond(result)


@router.post(
    "/events/replay",
    response_model=ReplayResponse,
    dependencies=[admin_api_key_dependency()],
)
async def replay_parked_events(
    payload: ReplayRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> ReplayResponse:
    worker = PaymentEventReplayWorker(lambda: db)
    replayed = await worker.process_parked(limit=payload.limit if payload else 50)
    return ReplayResponse(replayed=replayed)
