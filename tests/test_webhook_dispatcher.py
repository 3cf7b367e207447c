import threading
import time
from contextlib import contextmanager

import pytest
from sqlmodel import Session, SQLModel, create_engine

from conftest import make_event, make_plan
from core.errors import WebhookProcessingError
from core.locks import KeyedLock
from models.models import Subscription, User
from services.stripe_service import StripeService
from services.subscription_store import SubscriptionStore
from services.webhook_dispatcher import DispatchStatus, EventKind, WebhookDispatcher

pytestmark = pytest.mark.webhook


def subscription_object(**overrides):
    obj = {
        "id": "sub_test_1",
        "object": "subscription",
        "customer": "cus_test_123",
        "status": "active",
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "cancel_at_period_end": False,
    }
    obj.update(overrides)
    return obj


def invoice_object(**overrides):
    obj = {
        "id": "in_test_1",
        "object": "invoice",
        "subscription": "sub_test_1",
        "amount_due": 4900,
        "amount_paid": 4900,
        "currency": "usd",
    }
    obj.update(overrides)
    return obj


def actions(store, user):
    return [row.action for row in store.history_for_user(user.id)]


# -------------------------
# One history row per event type
# -------------------------
@pytest.mark.parametrize(
    "event_type, obj, expected_action",
    [
        ("customer.subscription.created", subscription_object(), "activated"),
        ("customer.subscription.updated", subscription_object(status="past_due"), "activated"),
        ("customer.subscription.deleted", subscription_object(status="canceled"), "canceled"),
        ("customer.subscription.trial_will_end", subscription_object(trial_end=1700500000), "trial_ended"),
        ("invoice.payment_succeeded", invoice_object(), "payment_succeeded"),
        ("invoice.payment_failed", invoice_object(), "payment_failed"),
        ("invoice.created", invoice_object(), "renewed"),
    ],
)
def test_each_event_type_logs_one_history_row(
    dispatcher, store, user, make_subscription, event_type, obj, expected_action
):
    make_subscription("sub_test_1")

    result = dispatcher.dispatch(make_event(event_type, obj))

    assert result.status == DispatchStatus.PROCESSED
    assert actions(store, user) == [expected_action]


def test_checkout_completed_creates_subscription(dispatcher, store, user, plans, fake_stripe):
    session_obj = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "mode": "subscription",
        "subscription": "sub_new_1",
        "amount_total": 14900,
        "currency": "usd",
        "metadata": {
            "user_id": str(user.id),
            "plan_id": str(plans["professional"].id),
            "billing_cycle": "monthly",
        },
    }

    result = dispatcher.dispatch(make_event("checkout.session.completed", session_obj))

    assert result.status == DispatchStatus.PROCESSED
    subscription = store.find_by_stripe_id("sub_new_1")
    assert subscription.status == "active"
    history = store.history_for_subscription(subscription.id)
    assert [row.action for row in history] == ["created"]
    assert history[0].amount == 149.0
    assert history[0].currency == "USD"
    fake_stripe.subscriptions.retrieve.assert_called_once_with("sub_new_1")


def test_checkout_completed_for_one_time_payment_is_ignored(dispatcher, store, user, fake_stripe):
    obj = {"id": "cs_test_pay", "mode": "payment", "subscription": None, "metadata": {}}

    result = dispatcher.dispatch(make_event("checkout.session.completed", obj))

    assert result.status == DispatchStatus.IGNORED
    assert actions(store, user) == []
    fake_stripe.subscriptions.retrieve.assert_not_called()


def test_checkout_completed_redelivery_with_new_event_id_is_noop(dispatcher, store, user, plans):
    session_obj = {
        "id": "cs_test_123",
        "mode": "subscription",
        "subscription": "sub_new_1",
        "metadata": {"user_id": str(user.id), "plan_id": str(plans["starter"].id), "billing_cycle": "yearly"},
    }

    dispatcher.dispatch(make_event("checkout.session.completed", session_obj))
    dispatcher.dispatch(make_event("checkout.session.completed", session_obj))

    assert actions(store, user) == ["created"]


# -------------------------
# Deduplication
# -------------------------
def test_duplicate_deleted_event_is_applied_once(dispatcher, store, user, make_subscription):
    make_subscription("sub_test_1", cancel_at_period_end=True)
    event = make_event("customer.subscription.deleted", subscription_object(status="canceled"), event_id="evt_dup")

    first = dispatcher.dispatch(event)
    second = dispatcher.dispatch(event)

    assert first.status == DispatchStatus.PROCESSED
    assert second.status == DispatchStatus.DUPLICATE
    assert actions(store, user) == ["canceled"]

    subscription = store.find_by_stripe_id("sub_test_1")
    assert subscription.status == "canceled"
    assert subscription.cancel_at_period_end is False
    assert subscription.canceled_at is not None


# -------------------------
# payment_failed
# -------------------------
def test_payment_failed_moves_active_to_past_due(dispatcher, store, make_subscription):
    subscription = make_subscription("sub_test_1", status="active")

    dispatcher.dispatch(make_event("invoice.payment_failed", invoice_object()))

    assert store.get_subscription(subscription.id).status == "past_due"
    row = store.history_for_subscription(subscription.id)[0]
    assert (row.old_status, row.new_status) == ("active", "past_due")
    assert row.amount == 49.0


def test_payment_failed_when_already_past_due_still_logs(dispatcher, store, make_subscription):
    subscription = make_subscription("sub_test_1", status="past_due")

    result = dispatcher.dispatch(make_event("invoice.payment_failed", invoice_object()))

    assert result.status == DispatchStatus.PROCESSED
    assert store.get_subscription(subscription.id).status == "past_due"
    history = store.history_for_subscription(subscription.id)
    assert [row.action for row in history] == ["payment_failed"]
    assert history[0].new_status == "past_due"


def test_payment_failed_never_reopens_canceled_subscription(dispatcher, store, make_subscription):
    subscription = make_subscription("sub_test_1", status="canceled")

    dispatcher.dispatch(make_event("invoice.payment_failed", invoice_object()))

    assert store.get_subscription(subscription.id).status == "canceled"
    assert [row.action for row in store.history_for_subscription(subscription.id)] == ["payment_failed"]


def test_invoice_subscription_read_from_parent_details(dispatcher, store, user, make_subscription):
    make_subscription("sub_test_1")
    invoice = invoice_object(
        subscription=None,
        parent={"type": "subscription_details", "subscription_details": {"subscription": "sub_test_1"}},
    )

    result = dispatcher.dispatch(make_event("invoice.payment_succeeded", invoice))

    assert result.status == DispatchStatus.PROCESSED
    assert actions(store, user) == ["payment_succeeded"]


# -------------------------
# Ordering
# -------------------------
def test_stale_update_after_delete_does_not_resurrect(dispatcher, store, user, make_subscription):
    make_subscription("sub_test_1")
    deleted = make_event("customer.subscription.deleted", subscription_object(status="canceled"), created=1700000200)
    late_update = make_event("customer.subscription.updated", subscription_object(status="active"), created=1700000100)

    dispatcher.dispatch(deleted)
    result = dispatcher.dispatch(late_update)

    assert result.status == DispatchStatus.STALE
    assert store.find_by_stripe_id("sub_test_1").status == "canceled"
    assert actions(store, user) == ["canceled"]


def test_updated_without_status_change_logs_nothing(dispatcher, store, user, make_subscription):
    make_subscription("sub_test_1", status="active")

    result = dispatcher.dispatch(
        make_event("customer.subscription.updated", subscription_object(cancel_at_period_end=True))
    )

    assert result.status == DispatchStatus.PROCESSED
    assert store.find_by_stripe_id("sub_test_1").cancel_at_period_end is True
    assert actions(store, user) == []


# -------------------------
# Unknown / missing
# -------------------------
def test_unhandled_event_type_is_acknowledged(dispatcher, store):
    result = dispatcher.dispatch(make_event("customer.created", {"id": "cus_test_123"}, event_id="evt_other"))

    assert result.status == DispatchStatus.UNHANDLED
    assert store.get_event("evt_other") is None


def test_event_for_unknown_subscription_is_ignored(dispatcher, store, user):
    result = dispatcher.dispatch(make_event("customer.subscription.created", subscription_object(id="sub_elsewhere")))

    assert result.status == DispatchStatus.IGNORED
    assert actions(store, user) == []


def test_event_kind_parse():
    assert EventKind.parse("invoice.created") is EventKind.INVOICE_CREATED
    assert EventKind.parse("charge.refunded") is None


# -------------------------
# Failures
# -------------------------
def test_failing_write_raises_and_is_retried(dispatcher, store, user, make_subscription, monkeypatch):
    make_subscription("sub_test_1")
    event = make_event("customer.subscription.deleted", subscription_object(status="canceled"), event_id="evt_fail")

    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "update_subscription", boom)
    with pytest.raises(WebhookProcessingError) as exc_info:
        dispatcher.dispatch(event)

    assert exc_info.value.event_id == "evt_fail"
    ledger = store.get_event("evt_fail")
    assert ledger.processed is False
    assert "database unavailable" in ledger.processing_error
    assert actions(store, user) == []

    monkeypatch.undo()
    result = dispatcher.dispatch(event)

    assert result.status == DispatchStatus.PROCESSED
    assert store.get_event("evt_fail").processed is True
    assert actions(store, user) == ["canceled"]


# -------------------------
# Stripe statuses outside the local four
# -------------------------
@pytest.mark.parametrize(
    "stripe_status, expected",
    [
        ("unpaid", "past_due"),
        ("incomplete", "past_due"),
        ("paused", "past_due"),
        ("incomplete_expired", "canceled"),
        ("trialing", "trialing"),
    ],
)
def test_updated_status_is_folded_into_local_states(dispatcher, store, make_subscription, stripe_status, expected):
    subscription = make_subscription("sub_test_1")

    dispatcher.dispatch(make_event("customer.subscription.updated", subscription_object(status=stripe_status)))

    assert store.get_subscription(subscription.id).status == expected
    assert store.history_for_subscription(subscription.id)[0].new_status == expected


def test_created_status_is_folded_into_local_states(dispatcher, store, make_subscription):
    subscription = make_subscription("sub_test_1", status="trialing")

    dispatcher.dispatch(make_event("customer.subscription.created", subscription_object(status="incomplete")))

    assert store.get_subscription(subscription.id).status == "past_due"


def test_expired_incomplete_subscription_does_not_block_checkout(
    dispatcher, service, store, user, plans, make_subscription
):
    subscription = make_subscription("sub_test_1")

    dispatcher.dispatch(
        make_event("customer.subscription.updated", subscription_object(status="incomplete_expired"))
    )

    assert store.get_subscription(subscription.id).canceled_at is not None
    assert store.find_open_for_user(user.id) is None
    response = service.create_checkout_session(user, plans["professional"].id, "monthly")
    assert response.session_id == "cs_test_123"


def test_trial_will_end_leaves_status_alone(dispatcher, store, make_subscription):
    subscription = make_subscription("sub_test_1", status="trialing", cancel_at_period_end=True)

    dispatcher.dispatch(
        make_event("customer.subscription.trial_will_end", subscription_object(status="active", trial_end=1700500000))
    )

    stored = store.get_subscription(subscription.id)
    assert stored.status == "trialing"
    assert stored.cancel_at_period_end is True


# -------------------------
# Checkouts started elsewhere
# -------------------------
@pytest.mark.parametrize(
    "metadata",
    [
        {},
        {"user_id": "1"},
        {"user_id": "1", "plan_id": "2", "action": "change_plan"},
    ],
)
def test_checkout_without_our_metadata_is_ignored(dispatcher, store, user, fake_stripe, metadata):
    obj = {"id": "cs_link_1", "mode": "subscription", "subscription": "sub_link_1", "metadata": metadata}

    result = dispatcher.dispatch(make_event("checkout.session.completed", obj, event_id="evt_link"))

    assert result.status == DispatchStatus.IGNORED
    assert store.get_event("evt_link").processed is True
    assert store.find_by_stripe_id("sub_link_1") is None
    fake_stripe.subscriptions.retrieve.assert_not_called()


# -------------------------
# Serialization
# -------------------------
class RecordingLock(KeyedLock):
    """KeyedLock that remembers which keys are held and which were requested."""

    def __init__(self):
        super().__init__()
        self.held = set()
        self.requested = []

    @contextmanager
    def hold(self, key):
        self.requested.append(key)
        with super().hold(key):
            self.held.add(key)
            try:
                yield
            finally:
                self.held.discard(key)


def test_ledger_and_commit_run_under_subscription_lock(service, store, make_subscription, monkeypatch):
    make_subscription("sub_test_1")
    locks = RecordingLock()
    dispatcher = WebhookDispatcher(service, locks=locks)
    seen = []

    for name in ("get_event", "commit", "mark_event_processed"):
        def spy(*args, _original=getattr(store, name), _name=name, **kwargs):
            seen.append((_name, set(locks.held)))
            return _original(*args, **kwargs)

        monkeypatch.setattr(store, name, spy)

    dispatcher.dispatch(make_event("customer.subscription.deleted", subscription_object(status="canceled")))

    assert seen == [
        ("get_event", {"sub_test_1"}),
        ("commit", {"sub_test_1"}),
        ("mark_event_processed", {"sub_test_1"}),
    ]
    assert len(locks) == 0


def test_lock_key_is_the_stripe_subscription(service, make_subscription):
    make_subscription("sub_test_1")
    locks = RecordingLock()
    dispatcher = WebhookDispatcher(service, locks=locks)

    dispatcher.dispatch(make_event("invoice.payment_succeeded", invoice_object()))
    dispatcher.dispatch(make_event("customer.subscription.updated", subscription_object()))

    assert locks.requested == ["sub_test_1", "sub_test_1"]


@pytest.fixture()
def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.mark.db
def test_concurrent_redelivery_is_applied_once(file_engine, fake_stripe, monkeypatch):
    with Session(file_engine) as session:
        user = User(email="race@example.com")
        plan = make_plan("starter", 1)
        session.add(user)
        session.add(plan)
        session.commit()
        session.add(Subscription(user_id=user.id, subscription_plan_id=plan.id, stripe_subscription_id="sub_test_1"))
        session.commit()
        user_id = user.id

    original_log_history = SubscriptionStore.log_history

    def slow_log_history(self, *args, **kwargs):
        time.sleep(0.2)
        return original_log_history(self, *args, **kwargs)

    monkeypatch.setattr(SubscriptionStore, "log_history", slow_log_history)

    locks = KeyedLock()
    event = make_event("customer.subscription.deleted", subscription_object(status="canceled"), event_id="evt_race")
    barrier = threading.Barrier(2)
    results, errors = [], []

    def deliver():
        barrier.wait()
        try:
            with Session(file_engine) as session:
                dispatcher = WebhookDispatcher(StripeService(fake_stripe, SubscriptionStore(session)), locks=locks)
                results.append(dispatcher.dispatch(event).status)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert sorted(results) == [DispatchStatus.DUPLICATE, DispatchStatus.PROCESSED]
    with Session(file_engine) as session:
        store = SubscriptionStore(session)
        assert [row.action for row in store.history_for_user(user_id)] == ["canceled"]
        assert store.find_by_stripe_id("sub_test_1").status == "canceled"
    assert len(locks) == 0
