# ================================================================
# services/stripe_service.py: Stripe checkout & subscription lifecycle
# ================================================================
import logging
from typing import Any, Dict, Optional

import stripe

from core.config import settings
from core.errors import ConflictError, ExternalServiceError, NotFoundError
from models.models import (
    HistoryAction,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    User,
    utc_now,
)
from schemas.subscription_schema import CheckoutSessionResponse
from services.stripe_objects import local_status, period_bounds, to_dict, to_major_units, trial_bounds
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

CHANGE_PLAN_ACTION = "change_plan"


class StripeService:
    """
    Checkout initiation, checkout completion and cancel/resume.

    The Stripe client is injected so the service never touches module-level
    SDK state; tests pass a fake client.
    """

    def __init__(self, client: stripe.StripeClient, store: SubscriptionStore):
        self.client = client
        self.store = store

    # ------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------
    def create_or_get_customer(self, user: User) -> str:
        """Return the user's Stripe customer id, creating the customer on first use."""
        if user.stripe_customer_id:
            customer = to_dict(self._call(self.client.customers.retrieve, user.stripe_customer_id))
            if not customer.get("deleted"):
                return customer["id"]
            logger.warning(f"⚠️ Stripe customer {user.stripe_customer_id} was deleted, creating a new one")

        profile = user.employer_profile
        customer = to_dict(self._call(
            self.client.customers.create,
            params={
                "email": user.email,
                "name": user.full_name or user.email,
                "metadata": {
                    "user_id": str(user.id),
                    "employer_profile_id": str(profile.id) if profile else "",
                    "company_name": (profile.company_name or "") if profile else "",
                },
            },
        ))

        self.store.set_customer_id(user, customer["id"])
        logger.info(f"✅ Created Stripe customer {customer['id']} for user {user.id}")
        return customer["id"]

    # ------------------------------------------------------------
    # Checkout Initiator
    # ------------------------------------------------------------
    def create_checkout_session(
        self,
        user: User,
        plan_id: int,
        billing_cycle: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResponse:
        """Create a Stripe Checkout Session for a brand new subscription."""
        plan = self.store.get_active_plan(plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found")

        existing = self.store.find_open_for_user(user.id)
        if existing:
            raise ConflictError(
                f"User already has an open subscription ({existing.id}); change its plan instead"
            )

        customer_id = self.create_or_get_customer(user)
        metadata = {
            "user_id": str(user.id),
            "plan_id": str(plan.id),
            "billing_cycle": billing_cycle,
        }
        session = self._create_session(customer_id, plan, billing_cycle, metadata, success_url, cancel_url)

        logger.info(f"🎯 Checkout session {session['id']} created for user {user.id}, plan {plan.name} ({billing_cycle})")
        return CheckoutSessionResponse(checkout_url=session["url"], session_id=session["id"])

    def create_subscription_change_session(
        self,
        subscription_id: int,
        new_plan_id: int,
        billing_cycle: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResponse:
        """Create a Checkout Session that replaces an existing subscription's plan."""
        subscription = self.store.get_subscription(subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.is_canceled:
            raise ConflictError("Canceled subscriptions cannot change plan")

        new_plan = self.store.get_active_plan(new_plan_id)
        if not new_plan:
            raise NotFoundError("New subscription plan not found")

        metadata = {
            "user_id": str(subscription.user_id),
            "old_subscription_id": str(subscription.id),
            "plan_id": str(new_plan.id),
            "billing_cycle": billing_cycle,
            "action": CHANGE_PLAN_ACTION,
        }
        session = self._create_session(
            subscription.stripe_customer_id, new_plan, billing_cycle, metadata, success_url, cancel_url
        )

        logger.info(f"🔄 Plan change session {session['id']} created for subscription {subscription.id} -> {new_plan.name}")
        return CheckoutSessionResponse(checkout_url=session["url"], session_id=session["id"])

    def _create_session(
        self,
        customer_id: Optional[str],
        plan: SubscriptionPlan,
        billing_cycle: str,
        metadata: Dict[str, str],
        success_url: Optional[str],
        cancel_url: Optional[str],
    ) -> Dict[str, Any]:
        params = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": plan.price_id_for(billing_cycle), "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url or settings.STRIPE_SUCCESS_URL,
            "cancel_url": cancel_url or settings.STRIPE_CANCEL_URL,
            "metadata": metadata,
            "subscription_data": {"metadata": dict(metadata)},
        }
        return to_dict(self._call(self.client.checkout.sessions.create, params=params))

    # ------------------------------------------------------------
    # Checkout Completion Handler
    # ------------------------------------------------------------
    def handle_checkout_success(self, session: Dict[str, Any], event_id: Optional[str] = None) -> Subscription:
        """Mirror a completed checkout locally; branches on the plan-change marker."""
        metadata = session.get("metadata") or {}
        billing_cycle = metadata.get("billing_cycle") or "monthly"
        plan_id = int(metadata["plan_id"])

        existing = self.store.find_by_stripe_id(session["subscription"])
        if existing:
            logger.info(f"ℹ️ Subscription {session['subscription']} already mirrored, skipping checkout completion")
            return existing

        if metadata.get("action") == CHANGE_PLAN_ACTION:
            subscription = self.handle_subscription_change(
                int(metadata["old_subscription_id"]), plan_id, billing_cycle, session, event_id
            )
        else:
            user_id = int(metadata["user_id"])
            open_subscription = self.store.find_open_for_user(user_id)
            if open_subscription:
                logger.warning(
                    f"⚠️ User {user_id} completed checkout while subscription {open_subscription.id} is still open"
                )
            subscription = self.create_new_subscription(user_id, plan_id, billing_cycle, session, event_id)

        self.store.commit()
        return subscription

    def create_new_subscription(
        self,
        user_id: int,
        plan_id: int,
        billing_cycle: str,
        session: Dict[str, Any],
        event_id: Optional[str] = None,
        log_created: bool = True,
    ) -> Subscription:
        remote = to_dict(self._call(self.client.subscriptions.retrieve, session["subscription"]))
        period_start, period_end = period_bounds(remote)
        trial_start, trial_end = trial_bounds(remote)

        subscription = self.store.create_subscription(
            user_id=user_id,
            subscription_plan_id=plan_id,
            stripe_subscription_id=remote["id"],
            stripe_customer_id=remote.get("customer"),
            status=local_status(remote.get("status")),
            billing_cycle=billing_cycle,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            cancel_at_period_end=bool(remote.get("cancel_at_period_end")),
            subscription_metadata={
                "stripe_session_id": session.get("id"),
                "created_via": "checkout",
            },
        )

        if log_created:
            self.store.log_history(
                subscription,
                HistoryAction.CREATED,
                new_plan_id=plan_id,
                new_status=subscription.status,
                amount=to_major_units(session.get("amount_total")),
                currency=session.get("currency"),
                billing_cycle=billing_cycle,
                stripe_event_id=event_id,
                description="New subscription created",
            )
        return subscription

    def handle_subscription_change(
        self,
        old_subscription_id: int,
        new_plan_id: int,
        billing_cycle: str,
        session: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> Subscription:
        old_subscription = self.store.get_subscription(old_subscription_id)
        if not old_subscription:
            raise NotFoundError(f"Subscription {old_subscription_id} to replace not found")

        # The new subscription is read before the old one is canceled in Stripe
        new_subscription = self.create_new_subscription(
            old_subscription.user_id, new_plan_id, billing_cycle, session, event_id, log_created=False
        )

        if not old_subscription.is_canceled:
            self.cancel_remote_subscription(old_subscription.stripe_subscription_id)
            self.store.update_subscription(
                old_subscription,
                status=SubscriptionStatus.CANCELED.value,
                cancel_at_period_end=False,
                canceled_at=utc_now(),
            )

        old_plan = self.store.get_plan(old_subscription.subscription_plan_id)
        new_plan = self.store.get_plan(new_plan_id)
        action = self.classify_plan_change(old_plan, new_plan)

        self.store.log_history(
            new_subscription,
            action or HistoryAction.CREATED,
            old_plan_id=old_subscription.subscription_plan_id,
            new_plan_id=new_plan_id,
            old_status=SubscriptionStatus.CANCELED.value,
            new_status=new_subscription.status,
            amount=to_major_units(session.get("amount_total")),
            currency=session.get("currency"),
            billing_cycle=billing_cycle,
            stripe_event_id=event_id,
            description="Subscription plan changed",
            metadata={"old_subscription_id": old_subscription.id},
        )
        return new_subscription

    def cancel_remote_subscription(self, stripe_subscription_id: str) -> None:
        """Cancel a subscription in Stripe immediately; a no-op when Stripe already ended it."""
        try:
            remote = to_dict(self._call(self.client.subscriptions.retrieve, stripe_subscription_id))
        except ExternalServiceError as e:
            if e.provider_code != "resource_missing":
                raise
            logger.info(f"ℹ️ Stripe subscription {stripe_subscription_id} no longer exists, nothing to cancel")
            return

        if local_status(remote.get("status")) == SubscriptionStatus.CANCELED.value:
            logger.info(f"ℹ️ Stripe subscription {stripe_subscription_id} already canceled")
            return
        self._call(self.client.subscriptions.cancel, stripe_subscription_id)

    @staticmethod
    def classify_plan_change(
        old_plan: Optional[SubscriptionPlan], new_plan: Optional[SubscriptionPlan]
    ) -> Optional[HistoryAction]:
        """UPGRADED / DOWNGRADED by plan tier; None when the tiers are equal."""
        if not old_plan or not new_plan or new_plan.tier == old_plan.tier:
            return None
        if new_plan.tier > old_plan.tier:
            return HistoryAction.UPGRADED
        return HistoryAction.DOWNGRADED

    # ------------------------------------------------------------
    # Cancellation / Resumption
    # ------------------------------------------------------------
    def cancel_subscription(self, subscription_id: int, cancel_at_period_end: bool = True) -> Subscription:
        subscription = self.store.get_subscription(subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.is_canceled:
            raise ConflictError("Subscription is already canceled")

        if cancel_at_period_end:
            self._call(
                self.client.subscriptions.update,
                subscription.stripe_subscription_id,
                params={
                    "cancel_at_period_end": True,
                    "metadata": {"canceled_by": "user", "cancel_at_period_end": "true"},
                },
            )
        else:
            self._call(self.client.subscriptions.cancel, subscription.stripe_subscription_id)

        old_status = subscription.status
        new_status = old_status if cancel_at_period_end else SubscriptionStatus.CANCELED.value

        # Optimistic: the follow-up webhook is not awaited
        self.store.update_subscription(
            subscription,
            cancel_at_period_end=cancel_at_period_end,
            canceled_at=None if cancel_at_period_end else utc_now(),
            status=new_status,
        )
        self.store.log_history(
            subscription,
            HistoryAction.CANCELED,
            old_status=old_status,
            new_status=new_status,
            description=(
                "Subscription will cancel at period end"
                if cancel_at_period_end
                else "Subscription canceled immediately"
            ),
        )
        self.store.commit()

        logger.info(f"🗑️ Subscription {subscription.id} canceled (at period end: {cancel_at_period_end})")
        return subscription

    def resume_subscription(self, subscription_id: int) -> Subscription:
        subscription = self.store.get_subscription(subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.is_canceled:
            raise ConflictError("Canceled subscriptions cannot be resumed; start a new checkout")

        self._call(
            self.client.subscriptions.update,
            subscription.stripe_subscription_id,
            params={"cancel_at_period_end": False, "metadata": {"resumed_by": "user"}},
        )

        self.store.update_subscription(subscription, cancel_at_period_end=False, canceled_at=None)
        self.store.log_history(
            subscription,
            HistoryAction.RESUMED,
            old_status=subscription.status,
            new_status=subscription.status,
            description="Subscription resumed",
        )
        self.store.commit()

        logger.info(f"▶️ Subscription {subscription.id} resumed")
        return subscription

    # ------------------------------------------------------------
    # Stripe call wrapper
    # ------------------------------------------------------------
    @staticmethod
    def _call(method, *args, **kwargs):
        try:
            return method(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe request failed: {e}")
            raise ExternalServiceError(e.user_message or str(e), provider_code=e.code) from e
