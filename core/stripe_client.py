# core/stripe_client.py
import stripe
from fastapi import HTTPException

from core.config import settings


def get_stripe_client() -> stripe.StripeClient:
    """
    FastAPI dependency returning a configured Stripe client.
    Services receive it through their constructor; tests override this
    dependency with a fake.
    """
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Payment provider is not configured")

    return stripe.StripeClient(
        settings.STRIPE_SECRET_KEY,
        stripe_version=settings.STRIPE_API_VERSION,
    )
