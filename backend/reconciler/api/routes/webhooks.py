"""Inbound Stripe webhook endpoints.

Two endpoints share one pipeline: platform events and Connect events are
signed with different secrets. The raw body is verified before it is parsed.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from reconciler.core.config import get_settings
from reconciler.core.exceptions import InvalidSignature, MalformedPayload
from reconciler.webhooks.dispatcher import EventDispatcher
from reconciler.webhooks.events import parse_event
from reconciler.webhooks.signature import SIGNATURE_HEADER, verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter()


def split_secrets(value: str) -> list[str]:
    """A secret setting may hold several comma-separated secrets during rotation."""
    return [secret.strip() for secret in value.split(",") if secret.strip()]


def get_dispatcher(request: Request) -> EventDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Webhook processing is not available")
    return dispatcher


async def _receive(request: Request, secrets: list[str], dispatcher: EventDispatcher, endpoint: str) -> dict:
    if not secrets:
        logger.error("stripe_webhook_secret_missing", endpoint=endpoint)
        raise HTTPException(status_code=503, detail="Webhook endpoint is not configured")

    payload = await request.body()
    sig_header = request.headers.get(SIGNATURE_HEADER)
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    settings = get_settings()
    try:
        verify_signature(payload, sig_header, secrets, tolerance=settings.stripe_webhook_tolerance_seconds)
    except InvalidSignature:
        logger.warning("stripe_webhook_invalid_signature", endpoint=endpoint)
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = parse_event(payload)
    except MalformedPayload as e:
        logger.warning("stripe_webhook_malformed_payload", endpoint=endpoint, error=str(e))
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        result = await dispatcher.dispatch(event)
    except MalformedPayload as e:
        logger.warning("stripe_webhook_malformed_object", endpoint=endpoint, event_id=event.id, error=str(e))
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info(
        "stripe_webhook_handled",
        endpoint=endpoint,
        event_id=result.event_id,
        event_type=result.event_type,
        status=result.status.value,
    )
    return {"received": True}


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, dispatcher: EventDispatcher = Depends(get_dispatcher)):
    """Platform events: subscriptions, invoices, payment intents, charges."""
    secrets = split_secrets(get_settings().stripe_webhook_secret)
    return await _receive(request, secrets, dispatcher, endpoint="platform")


@router.post("/webhooks/stripe/connect")
async def stripe_connect_webhook(request: Request, dispatcher: EventDispatcher = Depends(get_dispatcher)):
    """Events from connected accounts: accounts, capabilities, payouts, transfers."""
    secrets = split_secrets(get_settings().stripe_connect_webhook_secret)
    return await _receive(request, secrets, dispatcher, endpoint="connect")
