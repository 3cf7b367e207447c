# core/errors.py
from typing import Optional


class BillingError(Exception):
    """Base class for errors raised by the billing services."""


class NotFoundError(BillingError):
    pass


class ConflictError(BillingError):
    pass


class ExternalServiceError(BillingError):
    """Stripe rejected or failed a request. Never retried locally."""

    def __init__(self, message: str, provider_code: Optional[str] = None):
        super().__init__(message)
        self.provider_code = provider_code


class WebhookProcessingError(BillingError):
    """A webhook handler failed; the provider should redeliver the event."""

    def __init__(self, event_id: str, event_type: str, reason: str):
        super().__init__(f"Failed to process {event_type} ({event_id}): {reason}")
        self.event_id = event_id
        self.event_type = event_type
        self.reason = reason
