from .subscription_schema import (
    SubscriptionStatus, BillingCycle,
    SubscriptionPlanRead,
    CheckoutSessionRequest, ChangePlanRequest, CheckoutSessionResponse,
    CancelSubscriptionRequest,
    SubscriptionRead, SubscriptionHistoryRead,
    UsageItem, SubscriptionUsageRead,
)
from .webhook_schema import (
    StripeEventData, StripeEvent, WebhookAck,
    MockWebhookRequest, WebhookEventRead,
)

__all__ = [
    # Subscription
    "SubscriptionStatus", "BillingCycle",
    "SubscriptionPlanRead",
    "CheckoutSessionRequest", "ChangePlanRequest", "CheckoutSessionResponse",
    "CancelSubscriptionRequest",
    "SubscriptionRead", "SubscriptionHistoryRead",
    "UsageItem", "SubscriptionUsageRead",

    # Webhook
    "StripeEventData", "StripeEvent", "WebhookAck",
    "MockWebhookRequest", "WebhookEventRead",
]
