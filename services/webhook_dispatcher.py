# ================================================================
# services/webhook_dispatcher.py: Stripe webhook reconciliation
# ================================================================
"""
Applies Stripe lifecycle events to the local subscription mirror.

Every event goes through the same steps, all under the lock of the Stripe
subscription it concerns:

1. the event id is looked up in the webhook ledger; already-processed ids are
   acknowledged without touching anything,
2. the handler for its ``EventKind`` runs,
3. the handler's writes are committed together and the ledger row is marked
   processed.

A failing handler is rolled back, its error is stored on the ledger row and
``WebhookProcessingError`` is raised so the HTTP layer can answer with a 5xx
and Stripe redelivers. Only unknown event types are acknowledged silently.
"""
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from core.errors import WebhookProcessingError
from core.locks import KeyedLock, subscription_locks
from models.models import HistoryAction, Subscription, SubscriptionStatus, utc_now
from schemas.webhook_schema import StripeEvent
from services.stripe_objects import (
    from_unix,
    invoice_subscription_id,
    local_status,
    period_bounds,
    to_major_units,
    trial_bounds,
)
from services.stripe_service import CHANGE_PLAN_ACTION, StripeService

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_CREATED = "invoice.created"
    CHECKOUT_COMPLETED = "checkout.session.completed"

    @classmethod
    def parse(cls, event_type: str) -> Optional["EventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


class DispatchStatus(str, Enum):
    PROCESSED = "processed"    # handler ran and its writes were committed
    DUPLICATE = "duplicate"    # event id already processed
    STALE = "stale"            # older than the state already applied
    IGNORED = "ignored"        # handled type, nothing to do locally
    UNHANDLED = "unhandled"    # type not in the handler table


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    status: DispatchStatus


Handler = Callable[[StripeEvent], DispatchStatus]


class WebhookDispatcher:
    def __init__(self, stripe_service: StripeService, locks: KeyedLock = subscription_locks):
        self.stripe_service = stripe_service
        self.store = stripe_service.store
        self.locks = locks
        self.handlers: Dict[EventKind, Handler] = {
            EventKind.SUBSCRIPTION_CREATED: self.handle_subscription_created,
            EventKind.SUBSCRIPTION_UPDATED: self.handle_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            EventKind.TRIAL_WILL_END: self.handle_trial_will_end,
            EventKind.PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            EventKind.PAYMENT_FAILED: self.handle_payment_failed,
            EventKind.INVOICE_CREATED: self.handle_invoice_created,
            EventKind.CHECKOUT_COMPLETED: self.handle_checkout_completed,
        }

    # ------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------
    def dispatch(self, event: StripeEvent) -> DispatchResult:
        logger.info(f"📨 Processing webhook event {event.id}: {event.type}")

        kind = EventKind.parse(event.type)
        if kind is None:
            logger.info(f"ℹ️ Unhandled event type: {event.type}")
            return DispatchResult(event.id, event.type, DispatchStatus.UNHANDLED)

        # Ledger check, handler, commit and ledger update all happen under the lock
        with self._lock_for(kind, event.object):
            ledger = self.store.get_event(event.id)
            if ledger and ledger.processed:
                logger.info(f"🔁 Event {event.id} already processed, skipping")
                return DispatchResult(event.id, event.type, DispatchStatus.DUPLICATE)
            if ledger is None:
                ledger = self.store.record_event(
                    event.id, event.type, event.model_dump(), event_created_at=from_unix(event.created)
                )

            try:
                status = self.handlers[kind](event)
                self.store.commit()
            except Exception as e:
                self.store.rollback()
                logger.exception(f"❌ Error processing webhook event {event.id} ({event.type})")
                self.store.mark_event_failed(ledger, f"{type(e).__name__}: {e}")
                raise WebhookProcessingError(event.id, event.type, str(e)) from e

            self.store.mark_event_processed(ledger)

        logger.info(f"✅ Event {event.id} ({event.type}) -> {status.value}")
        return DispatchResult(event.id, event.type, status)

    def _lock_for(self, kind: EventKind, obj: Dict[str, Any]):
        if kind.value.startswith("customer.subscription."):
            key = obj.get("id")
        elif kind.value.startswith("invoice."):
            key = invoice_subscription_id(obj)
        else:
            key = obj.get("subscription")
        return self.locks.hold(key) if key else nullcontext()

    @staticmethod
    def _is_stale(subscription: Subscription, event: StripeEvent) -> bool:
        event_at = from_unix(event.created)
        return subscription.last_event_at is not None and event_at < subscription.last_event_at

    # ------------------------------------------------------------
    # customer.subscription.*
    # ------------------------------------------------------------
    def handle_subscription_created(self, event: StripeEvent) -> DispatchStatus:
        remote = event.object
        subscription = self.store.find_by_stripe_id(remote["id"])
        if not subscription:
            # Expected to exist already from checkout completion
            logger.warning(f"⚠️ Subscription {remote['id']} not found locally, may have been created outside checkout")
            return DispatchStatus.IGNORED
        if self._is_stale(subscription, event):
            return DispatchStatus.STALE

        period_start, period_end = period_bounds(remote)
        trial_start, trial_end = trial_bounds(remote)
        old_status = subscription.status
        new_status = local_status(remote.get("status"))
        self.store.update_subscription(
            subscription,
            status=new_status,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            last_event_at=from_unix(event.created),
        )
        self.store.log_history(
            subscription,
            HistoryAction.ACTIVATED,
            old_status=old_status,
            new_status=new_status,
            stripe_event_id=event.id,
            description="Subscription activated via Stripe webhook",
        )
        return DispatchStatus.PROCESSED

    def handle_subscription_updated(self, event: StripeEvent) -> DispatchStatus:
        remote = event.object
        subscription = self.store.find_by_stripe_id(remote["id"])
        if not subscription:
            logger.warning(f"⚠️ Update for unknown subscription {remote['id']}")
            return DispatchStatus.IGNORED
        if self._is_stale(subscription, event):
            logger.info(f"⏪ Stale update for {remote['id']} ignored")
            return DispatchStatus.STALE

        period_start, period_end = period_bounds(remote)
        old_status = subscription.status
        new_status = local_status(remote.get("status"))
        ended_now = new_status == SubscriptionStatus.CANCELED.value and old_status != new_status
        self.store.update_subscription(
            subscription,
            status=new_status,
            current_period_start=period_start or subscription.current_period_start,
            current_period_end=period_end or subscription.current_period_end,
            cancel_at_period_end=bool(remote.get("cancel_at_period_end")),
            canceled_at=utc_now() if ended_now else subscription.canceled_at,
            last_event_at=from_unix(event.created),
        )

        if old_status != new_status:
            self.store.log_history(
                subscription,
                HistoryAction.ACTIVATED,
                old_status=old_status,
                new_status=new_status,
                stripe_event_id=event.id,
                description="Subscription status updated",
            )
        return DispatchStatus.PROCESSED

    def handle_subscription_deleted(self, event: StripeEvent) -> DispatchStatus:
        remote = event.object
        subscription = self.store.find_by_stripe_id(remote["id"])
        if not subscription:
            logger.warning(f"⚠️ Deletion for unknown subscription {remote['id']}")
            return DispatchStatus.IGNORED
        if self._is_stale(subscription, event):
            return DispatchStatus.STALE

        old_status = subscription.status
        self.store.update_subscription(
            subscription,
            status=SubscriptionStatus.CANCELED.value,
            cancel_at_period_end=False,
            canceled_at=utc_now(),
            last_event_at=from_unix(event.created),
        )
        self.store.log_history(
            subscription,
            HistoryAction.CANCELED,
            old_status=old_status,
            new_status=SubscriptionStatus.CANCELED.value,
            stripe_event_id=event.id,
            description="Subscription canceled via Stripe webhook",
        )
        return DispatchStatus.PROCESSED

    def handle_trial_will_end(self, event: StripeEvent) -> DispatchStatus:
        remote = event.object
        subscription = self.store.find_by_stripe_id(remote["id"])
        if not subscription:
            return DispatchStatus.IGNORED

        self.store.log_history(
            subscription,
            HistoryAction.TRIAL_ENDED,
            stripe_event_id=event.id,
            description="Trial period ending soon",
            metadata={"trial_end": remote.get("trial_end")},
        )
        logger.info(f"⏳ Trial ending soon for user {subscription.user_id}")
        return DispatchStatus.PROCESSED

    # ------------------------------------------------------------
    # invoice.*
    # ------------------------------------------------------------
    def _invoice_subscription(self, invoice: Dict[str, Any]) -> Optional[Subscription]:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        return self.store.find_by_stripe_id(subscription_id)

    def handle_payment_succeeded(self, event: StripeEvent) -> DispatchStatus:
        invoice = event.object
        subscription = self._invoice_subscription(invoice)
        if not subscription:
            return DispatchStatus.IGNORED

        self.store.log_history(
            subscription,
            HistoryAction.PAYMENT_SUCCEEDED,
            amount=to_major_units(invoice.get("amount_paid")),
            currency=invoice.get("currency"),
            stripe_invoice_id=invoice.get("id"),
            stripe_event_id=event.id,
            description="Payment processed successfully",
        )
        return DispatchStatus.PROCESSED

    def handle_payment_failed(self, event: StripeEvent) -> DispatchStatus:
        invoice = event.object
        subscription = self._invoice_subscription(invoice)
        if not subscription:
            return DispatchStatus.IGNORED

        old_status = subscription.status
        # Canceled rows are never reopened by a late invoice
        becomes_past_due = (
            old_status not in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.CANCELED.value)
            and not self._is_stale(subscription, event)
        )
        self.store.log_history(
            subscription,
            HistoryAction.PAYMENT_FAILED,
            old_status=old_status,
            new_status=SubscriptionStatus.PAST_DUE.value if becomes_past_due else old_status,
            amount=to_major_units(invoice.get("amount_due")),
            currency=invoice.get("currency"),
            stripe_invoice_id=invoice.get("id"),
            stripe_event_id=event.id,
            description="Payment failed - subscription may be suspended",
        )

        if becomes_past_due:
            self.store.update_subscription(
                subscription,
                status=SubscriptionStatus.PAST_DUE.value,
                last_event_at=from_unix(event.created),
            )
            logger.warning(f"💳 Subscription {subscription.id} is now past due")
        return DispatchStatus.PROCESSED

    def handle_invoice_created(self, event: StripeEvent) -> DispatchStatus:
        invoice = event.object
        subscription = self._invoice_subscription(invoice)
        if not subscription:
            return DispatchStatus.IGNORED

        self.store.log_history(
            subscription,
            HistoryAction.RENEWED,
            amount=to_major_units(invoice.get("amount_due")),
            currency=invoice.get("currency"),
            billing_cycle=subscription.billing_cycle,
            stripe_invoice_id=invoice.get("id"),
            stripe_event_id=event.id,
            description="New billing cycle - invoice created",
        )
        return DispatchStatus.PROCESSED

    # ------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------
    def handle_checkout_completed(self, event: StripeEvent) -> DispatchStatus:
        session = event.object
        if session.get("mode") != "subscription" or not session.get("subscription"):
            return DispatchStatus.IGNORED

        # Payment Links and dashboard checkouts carry none of our metadata
        metadata = session.get("metadata") or {}
        required = ["user_id", "plan_id"]
        if metadata.get("action") == CHANGE_PLAN_ACTION:
            required.append("old_subscription_id")
        missing = [key for key in required if not str(metadata.get(key) or "").isdigit()]
        if missing:
            logger.warning(
                f"⚠️ Checkout {session.get('id')} for {session['subscription']} was not started here "
                f"(missing metadata: {', '.join(missing)}), ignoring"
            )
            return DispatchStatus.IGNORED

        self.stripe_service.handle_checkout_success(session, event_id=event.id)
        return DispatchStatus.PROCESSED
