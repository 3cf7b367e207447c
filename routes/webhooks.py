# routes/webhooks.py
from datetime import timedelta
from typing import List
import json
import logging
import time
import uuid

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from pydantic import ValidationError

from core.config import settings
from core.errors import WebhookProcessingError
from routes.subscriptions import get_stripe_service, get_subscription_store
from schemas.webhook_schema import MockWebhookRequest, StripeEvent, WebhookAck, WebhookEventRead
from services.stripe_service import StripeService
from services.subscription_store import SubscriptionStore
from services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_webhook_dispatcher(service: StripeService = Depends(get_stripe_service)) -> WebhookDispatcher:
    return WebhookDispatcher(service)


def require_development() -> None:
    if settings.IS_PRODUCTION:
        raise HTTPException(status_code=403, detail="Webhook tooling is only available in development mode")


def dispatch_or_fail(dispatcher: WebhookDispatcher, event: StripeEvent) -> JSONResponse:
    """200 when the event was applied or safely skipped, 500 so Stripe retries otherwise."""
    try:
        result = dispatcher.dispatch(event)
    except WebhookProcessingError as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Error processing event", "event_id": e.event_id, "event_type": e.event_type},
        )

    ack = WebhookAck(status=result.status.value, event_id=result.event_id, event_type=result.event_type)
    return JSONResponse(status_code=200, content=ack.model_dump())


@router.post("/stripe")
async def stripe_webhook(request: Request, dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)):
    """Handle Stripe webhook events for subscription updates"""
    payload = (await request.body()).decode("utf-8")
    sig_header = request.headers.get("stripe-signature")
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET

    if not webhook_secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})

    if not sig_header:
        logger.warning("❌ Missing stripe-signature header")
        return JSONResponse(status_code=400, content={"error": "Missing stripe-signature header"})

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, webhook_secret)
        event = StripeEvent.model_validate(json.loads(payload))
    except stripe.SignatureVerificationError as e:
        logger.warning(f"❌ Invalid signature: {e}")
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})
    except (ValueError, ValidationError) as e:
        logger.warning(f"❌ Invalid payload: {e}")
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    return await run_in_threadpool(dispatch_or_fail, dispatcher, event)


# -------------------------
# Development tooling
# -------------------------
def build_mock_event(event_type: str, subscription_id: str) -> StripeEvent:
    now = int(time.time())
    if event_type.startswith("invoice."):
        obj = {
            "id": f"in_test_{uuid.uuid4().hex[:14]}",
            "subscription": subscription_id,
            "amount_due": 0,
            "amount_paid": 0,
            "currency": "usd",
        }
    else:
        period_end = now + int(timedelta(days=30).total_seconds())
        obj = {
            "id": subscription_id,
            "status": "canceled" if "deleted" in event_type else "active",
            "current_period_start": now,
            "current_period_end": period_end,
            "cancel_at_period_end": "updated" in event_type,
            "customer": "cus_test_customer",
        }

    return StripeEvent(
        id=f"evt_test_{uuid.uuid4().hex}",
        type=event_type,
        created=now,
        data={"object": obj},
    )


@router.post("/stripe/test", dependencies=[Depends(require_development)])
def send_test_webhook(payload: MockWebhookRequest, dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)):
    """Dispatch a mock event for a local subscription (development only)."""
    event = build_mock_event(payload.event_type, payload.subscription_id)
    logger.info(f"🧪 Dispatching mock {event.type} for {payload.subscription_id}")
    return dispatch_or_fail(dispatcher, event)


@router.get("/stripe/logs", response_model=List[WebhookEventRead], dependencies=[Depends(require_development)])
def get_webhook_logs(store: SubscriptionStore = Depends(get_subscription_store)):
    """Most recent webhook ledger entries (development only)."""
    return store.recent_events(limit=20)
