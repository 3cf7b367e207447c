# ================================================================
# services/subscription_store.py: Subscription Record Store
# ================================================================
"""
Local, eventually-consistent mirror of Stripe subscription state.

Write methods only add/flush; the calling service owns the transaction and
commits once per unit of work so a subscription update and its history row
land together. The webhook ledger is the exception: ledger rows are committed
immediately so they survive a rolled-back handler.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from core.errors import NotFoundError
from models.models import (
    HistoryAction,
    Subscription,
    SubscriptionHistory,
    SubscriptionPlan,
    SubscriptionStatus,
    User,
    WebhookEvent,
    utc_now,
)
from schemas.subscription_schema import SubscriptionUsageRead, UsageItem

logger = logging.getLogger(__name__)

# Used when a plan's `limits` map omits a key
DEFAULT_LIMITS = {
    "job_postings": 50,
    "team_members": 10,
    "applications": 1000,
}

# Columns a webhook or service call may refresh on a Subscription row
MUTABLE_FIELDS = {
    "status",
    "subscription_plan_id",
    "billing_cycle",
    "current_period_start",
    "current_period_end",
    "trial_start",
    "trial_end",
    "cancel_at_period_end",
    "canceled_at",
    "subscription_metadata",
    "last_event_at",
}


class SubscriptionStore:
    def __init__(self, session: Session):
        self.session = session

    # -------------------------
    # Transaction control
    # -------------------------
    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # -------------------------
    # Users & plans (read-mostly)
    # -------------------------
    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def set_customer_id(self, user: User, customer_id: str) -> None:
        user.stripe_customer_id = customer_id
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)

    def get_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:
        return self.session.get(SubscriptionPlan, plan_id)

    def get_active_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:
        plan = self.get_plan(plan_id)
        if plan is None or not plan.is_active:
            return None
        return plan

    def list_active_plans(self) -> List[SubscriptionPlan]:
        statement = (
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active == True)  # noqa: E712
            .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.tier)
        )
        return list(self.session.exec(statement).all())

    # -------------------------
    # Subscriptions
    # -------------------------
    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        return self.session.get(Subscription, subscription_id)

    def find_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        statement = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        return self.session.exec(statement).first()

    def find_open_for_user(self, user_id: int) -> Optional[Subscription]:
        """The user's single non-canceled subscription, if any."""
        statement = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status != SubscriptionStatus.CANCELED.value,
            )
            .order_by(Subscription.created_at.desc())
        )
        return self.session.exec(statement).first()

    def create_subscription(self, **fields: Any) -> Subscription:
        subscription = Subscription(**fields)
        self.session.add(subscription)
        self.session.flush()
        logger.info(
            f"💾 Subscription {subscription.id} created for user {subscription.user_id} "
            f"({subscription.stripe_subscription_id})"
        )
        return subscription

    def update_subscription(self, subscription: Subscription, **changes: Any) -> Subscription:
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {sorted(unknown)}")

        for name, value in changes.items():
            setattr(subscription, name, value)
        subscription.updated_at = utc_now()
        self.session.add(subscription)
        self.session.flush()
        return subscription

    def get_usage(self, subscription_id: int) -> SubscriptionUsageRead:
        """Plan limits next to the counters other services record under metadata['usage']."""
        subscription = self.get_subscription(subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")

        plan = self.get_plan(subscription.subscription_plan_id)
        limits = (plan.limits if plan else None) or {}
        used = (subscription.subscription_metadata or {}).get("usage") or {}

        return SubscriptionUsageRead(**{
            key: UsageItem(used=int(used.get(key, 0)), limit=int(limits.get(key) or default))
            for key, default in DEFAULT_LIMITS.items()
        })

    # -------------------------
    # History (insert-only)
    # -------------------------
    def log_history(
        self,
        subscription: Subscription,
        action: HistoryAction,
        *,
        old_plan_id: Optional[int] = None,
        new_plan_id: Optional[int] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        stripe_event_id: Optional[str] = None,
        stripe_invoice_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SubscriptionHistory:
        entry = SubscriptionHistory(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            action=action.value,
            old_plan_id=old_plan_id,
            new_plan_id=new_plan_id,
            old_status=old_status,
            new_status=new_status,
            amount=amount,
            currency=(currency or "USD").upper(),
            billing_cycle=billing_cycle,
            stripe_event_id=stripe_event_id,
            stripe_invoice_id=stripe_invoice_id,
            description=description,
            history_metadata=metadata or {},
        )
        self.session.add(entry)
        self.session.flush()
        logger.info(f"📝 History '{action.value}' logged for subscription {subscription.id}")
        return entry

    def history_for_user(self, user_id: int, limit: int = 100) -> List[SubscriptionHistory]:
        statement = (
            select(SubscriptionHistory)
            .where(SubscriptionHistory.user_id == user_id)
            .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def history_for_subscription(self, subscription_id: int) -> List[SubscriptionHistory]:
        statement = (
            select(SubscriptionHistory)
            .where(SubscriptionHistory.subscription_id == subscription_id)
            .order_by(SubscriptionHistory.id)
        )
        return list(self.session.exec(statement).all())

    # -------------------------
    # Webhook ledger
    # -------------------------
    def get_event(self, stripe_event_id: str) -> Optional[WebhookEvent]:
        statement = select(WebhookEvent).where(WebhookEvent.stripe_event_id == stripe_event_id)
        return self.session.exec(statement).first()

    def record_event(
        self,
        stripe_event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        event_created_at: Optional[datetime] = None,
    ) -> WebhookEvent:
        row = WebhookEvent(
            stripe_event_id=stripe_event_id,
            event_type=event_type,
            payload=json.dumps(payload, default=str),
            processed=False,
            event_created_at=event_created_at,
        )
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def mark_event_processed(self, row: WebhookEvent) -> None:
        row.processed = True
        row.processing_error = None
        self.session.add(row)
        self.session.commit()

    def mark_event_failed(self, row: WebhookEvent, error: str) -> None:
        row.processed = False
        row.processing_error = error[:2000]
        self.session.add(row)
        self.session.commit()

    def recent_events(self, limit: int = 20) -> List[WebhookEvent]:
        statement = (
            select(WebhookEvent)
            .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
            .limit(limit)
        )
        return list(self.session.exec(statement).all())
