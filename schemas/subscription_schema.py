# subscription_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# ---------------------------
# Subscription Plan
# ---------------------------
class SubscriptionPlanRead(BaseModel):
    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    price_monthly: float
    price_yearly: float
    features: Dict[str, Any] = Field(default_factory=dict)
    limits: Dict[str, Any] = Field(default_factory=dict)
    tier: int
    is_popular: bool = False
    sort_order: int = 0

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Checkout
# ---------------------------
class CheckoutSessionRequest(BaseModel):
    plan_id: int
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    success_url: Optional[str] = Field(default=None, max_length=2048)
    cancel_url: Optional[str] = Field(default=None, max_length=2048)


class ChangePlanRequest(BaseModel):
    new_plan_id: int
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    success_url: Optional[str] = Field(default=None, max_length=2048)
    cancel_url: Optional[str] = Field(default=None, max_length=2048)


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_id: str


# ---------------------------
# Cancel / Resume
# ---------------------------
class CancelSubscriptionRequest(BaseModel):
    cancel_at_period_end: bool = True


# ---------------------------
# Subscription
# ---------------------------
class SubscriptionRead(BaseModel):
    id: int
    user_id: int
    subscription_plan_id: int
    stripe_subscription_id: str
    stripe_customer_id: Optional[str] = None
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionHistoryRead(BaseModel):
    id: int
    subscription_id: int
    action: str
    old_plan_id: Optional[int] = None
    new_plan_id: Optional[int] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    amount: Optional[float] = None
    currency: str
    billing_cycle: Optional[str] = None
    stripe_event_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Usage
# ---------------------------
class UsageItem(BaseModel):
    used: int = 0
    limit: int


class SubscriptionUsageRead(BaseModel):
    job_postings: UsageItem
    team_members: UsageItem
    applications: UsageItem
