# routes/subscriptions.py
from typing import List, Optional
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from core.database import get_session
from core.errors import BillingError, ConflictError, ExternalServiceError, NotFoundError
from core.security import get_current_employer
from core.stripe_client import get_stripe_client
from models.models import Subscription, User, UserRole
from schemas.subscription_schema import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    SubscriptionHistoryRead,
    SubscriptionPlanRead,
    SubscriptionRead,
    SubscriptionUsageRead,
)
from services.stripe_service import StripeService
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


# -------------------------
# Dependencies
# -------------------------
def get_subscription_store(session: Session = Depends(get_session)) -> SubscriptionStore:
    return SubscriptionStore(session)


def get_stripe_service(
    client: stripe.StripeClient = Depends(get_stripe_client),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> StripeService:
    return StripeService(client, store)


# -------------------------
# Helper Functions
# -------------------------
def to_http_error(error: BillingError) -> HTTPException:
    """Translate a billing error into the HTTP response the caller sees."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ExternalServiceError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Payment provider error: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


def get_owned_subscription(store: SubscriptionStore, subscription_id: int, user: User) -> Subscription:
    """Load a subscription the caller may act on; other users' rows look missing."""
    subscription = store.get_subscription(subscription_id)
    if not subscription or (subscription.user_id != user.id and user.role != UserRole.ADMIN.value):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


# -------------------------
# Routes
# -------------------------
@router.get("/plans", response_model=List[SubscriptionPlanRead])
def list_plans(store: SubscriptionStore = Depends(get_subscription_store)):
    """List active subscription plans in display order."""
    return store.list_active_plans()


@router.post("/checkout", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    current_user: User = Depends(get_current_employer),
    service: StripeService = Depends(get_stripe_service),
):
    """Create a Stripe Checkout Session for a new subscription."""
    try:
        return service.create_checkout_session(
            current_user,
            payload.plan_id,
            payload.billing_cycle.value,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingError as e:
        logger.warning(f"Checkout failed for user {current_user.id}: {e}")
        raise to_http_error(e)


@router.post("/{subscription_id}/change-plan", response_model=CheckoutSessionResponse)
def change_plan(
    subscription_id: int,
    payload: ChangePlanRequest,
    current_user: User = Depends(get_current_employer),
    service: StripeService = Depends(get_stripe_service),
):
    """Create a Checkout Session that swaps the subscription to another plan."""
    get_owned_subscription(service.store, subscription_id, current_user)
    try:
        return service.create_subscription_change_session(
            subscription_id,
            payload.new_plan_id,
            payload.billing_cycle.value,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingError as e:
        logger.warning(f"Plan change failed for subscription {subscription_id}: {e}")
        raise to_http_error(e)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: int,
    payload: Optional[CancelSubscriptionRequest] = None,
    current_user: User = Depends(get_current_employer),
    service: StripeService = Depends(get_stripe_service),
):
    """Cancel now, or at the end of the current period (default)."""
    get_owned_subscription(service.store, subscription_id, current_user)
    cancel_at_period_end = payload.cancel_at_period_end if payload else True
    try:
        return service.cancel_subscription(subscription_id, cancel_at_period_end)
    except BillingError as e:
        raise to_http_error(e)


@router.post("/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_employer),
    service: StripeService = Depends(get_stripe_service),
):
    """Undo a pending cancel-at-period-end."""
    get_owned_subscription(service.store, subscription_id, current_user)
    try:
        return service.resume_subscription(subscription_id)
    except BillingError as e:
        raise to_http_error(e)


@router.get("/current", response_model=Optional[SubscriptionRead])
def get_current_subscription(
    current_user: User = Depends(get_current_employer),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    """Return the caller's open subscription, or null."""
    return store.find_open_for_user(current_user.id)


@router.get("/history", response_model=List[SubscriptionHistoryRead])
def get_subscription_history(
    current_user: User = Depends(get_current_employer),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    return store.history_for_user(current_user.id)


@router.get("/{subscription_id}/usage", response_model=SubscriptionUsageRead)
def get_subscription_usage(
    subscription_id: int,
    current_user: User = Depends(get_current_employer),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    """Plan limits alongside the counters recorded on the subscription."""
    get_owned_subscription(store, subscription_id, current_user)
    try:
        return store.get_usage(subscription_id)
    except BillingError as e:
        raise to_http_error(e)
