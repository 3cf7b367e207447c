from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum

from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON
from pydantic import EmailStr


def utc_now() -> datetime:
    """Current UTC time, naive, the form every DateTime column here stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================
class UserRole(str, Enum):
    CANDIDATE = "candidate"
    EMPLOYER = "employer"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class HistoryAction(str, Enum):
    CREATED = "created"
    ACTIVATED = "activated"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CANCELED = "canceled"
    RESUMED = "resumed"
    RENEWED = "renewed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDED = "trial_ended"


# ============================================================
# USER (owned by the accounts service, read here)
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: EmailStr = Field(index=True, max_length=255, nullable=False, unique=True)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: str = Field(default=UserRole.EMPLOYER.value, max_length=20, index=True)
    is_active: bool = Field(default=True)

    # The only column the billing service writes
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)

    created_at: datetime = Field(default_factory=utc_now)

    employer_profile: Optional["EmployerProfile"] = Relationship(
        back_populates="user",
        sa_relationship_kwargs={"uselist": False},
    )
    subscriptions: List["Subscription"] = Relationship(back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class EmployerProfile(SQLModel, table=True):
    __tablename__ = "employer_profile"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", nullable=False, unique=True, index=True)
    company_name: Optional[str] = Field(default=None, max_length=255)

    user: Optional[User] = Relationship(back_populates="employer_profile")


# ============================================================
# SUBSCRIPTION PLAN (catalog)
# ============================================================
class SubscriptionPlan(SQLModel, table=True):
    __tablename__ = "subscription_plan"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=50, unique=True, nullable=False, index=True)
    display_name: str = Field(max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    # Pricing & Billing
    price_monthly: float = Field(default=0.0)
    price_yearly: float = Field(default=0.0)
    stripe_price_id_monthly: str = Field(max_length=255)
    stripe_price_id_yearly: str = Field(max_length=255)
    stripe_product_id: str = Field(max_length=255)

    # Features & limits
    features: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    limits: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    # Ordering: tier ranks plans for upgrade/downgrade, sort_order is display only
    tier: int = Field(default=0, index=True)
    is_active: bool = Field(default=True, index=True)
    sort_order: int = Field(default=0, index=True)
    is_popular: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    subscriptions: List["Subscription"] = Relationship(back_populates="plan")

    def price_id_for(self, billing_cycle: str) -> str:
        if billing_cycle == BillingCycle.YEARLY.value:
            return self.stripe_price_id_yearly
        return self.stripe_price_id_monthly


# ============================================================
# SUBSCRIPTION (local mirror of the Stripe subscription)
# ============================================================
class Subscription(SQLModel, table=True):
    __tablename__ = "subscription"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    subscription_plan_id: int = Field(foreign_key="subscription_plan.id", nullable=False, index=True)

    stripe_subscription_id: str = Field(max_length=255, unique=True, index=True)
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)

    status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=20, index=True)
    billing_cycle: str = Field(default=BillingCycle.MONTHLY.value, max_length=20)

    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = Field(default=False)
    canceled_at: Optional[datetime] = None

    subscription_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    # `created` of the newest Stripe event applied to this row
    last_event_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    user: Optional[User] = Relationship(back_populates="subscriptions")
    plan: Optional[SubscriptionPlan] = Relationship(back_populates="subscriptions")
    history: List["SubscriptionHistory"] = Relationship(back_populates="subscription")

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED.value


# ============================================================
# SUBSCRIPTION HISTORY (append-only)
# ============================================================
class SubscriptionHistory(SQLModel, table=True):
    __tablename__ = "subscription_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: int = Field(foreign_key="subscription.id", nullable=False, index=True)
    user_id: int = Field(foreign_key="user.id", nullable=False, index=True)

    action: str = Field(max_length=30, index=True)
    old_plan_id: Optional[int] = Field(default=None, foreign_key="subscription_plan.id")
    new_plan_id: Optional[int] = Field(default=None, foreign_key="subscription_plan.id")
    old_status: Optional[str] = Field(default=None, max_length=20)
    new_status: Optional[str] = Field(default=None, max_length=20)

    amount: Optional[float] = None
    currency: str = Field(default="USD", max_length=3)
    billing_cycle: Optional[str] = Field(default=None, max_length=20)

    stripe_event_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_invoice_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    history_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=utc_now, index=True)

    subscription: Optional[Subscription] = Relationship(back_populates="history")


# ============================================================
# WEBHOOK EVENT LOG (processed-event ledger)
# ============================================================
class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100, index=True)

    payload: str = Field()
    processed: bool = Field(default=False)
    processing_error: Optional[str] = None

    event_created_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = [
    "utc_now",
    "UserRole",
    "SubscriptionStatus",
    "BillingCycle",
    "HistoryAction",
    "User",
    "EmployerProfile",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionHistory",
    "WebhookEvent",
]
