# webhook_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime


# ---------------------------
# Stripe event envelope
# ---------------------------
class StripeEventData(BaseModel):
    object: Dict[str, Any]
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEvent(BaseModel):
    id: str
    type: str
    created: int = Field(..., description="Unix timestamp set by Stripe")
    data: StripeEventData
    api_version: Optional[str] = None
    livemode: bool = False

    model_config = ConfigDict(extra="ignore")

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.object


class WebhookAck(BaseModel):
    status: str
    event_id: str
    event_type: str


# ---------------------------
# Development tooling
# ---------------------------
class MockWebhookRequest(BaseModel):
    event_type: str = Field(..., max_length=100)
    subscription_id: str = Field(..., max_length=255, description="Stripe subscription id")


class WebhookEventRead(BaseModel):
    id: int
    stripe_event_id: str
    event_type: str
    processed: bool
    processing_error: Optional[str] = None
    event_created_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
