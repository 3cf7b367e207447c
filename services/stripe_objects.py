# services/stripe_objects.py
"""Readers for Stripe payloads that differ between API versions."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from models.models import SubscriptionStatus

logger = logging.getLogger(__name__)

# Stripe has more subscription states than the local mirror keeps
STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def to_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a StripeObject (webhook payloads already are dicts)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def local_status(stripe_status: Optional[str]) -> str:
    """
    Fold a Stripe subscription status into the four states stored locally.
    States Stripe adds later are treated as past_due (not paying, not ended).
    """
    status = STRIPE_STATUS_MAP.get(stripe_status or "")
    if status is None:
        logger.warning(f"⚠️ Unknown Stripe subscription status {stripe_status!r}, storing as past_due")
        status = SubscriptionStatus.PAST_DUE
    return status.value


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Unix seconds to naive UTC, matching the DateTime columns."""
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), timezone.utc).replace(tzinfo=None)


def to_major_units(amount: Optional[int]) -> Optional[float]:
    if amount is None:
        return None
    return amount / 100


def period_bounds(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Current period of a subscription. API versions from 2025-03-31 moved the
    period onto each subscription item, so fall back to the first item.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return from_unix(start), from_unix(end)


def trial_bounds(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    return from_unix(subscription.get("trial_start")), from_unix(subscription.get("trial_end"))


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = invoice.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    if subscription_id:
        return subscription_id

    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")
