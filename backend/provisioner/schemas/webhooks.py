"""Pydantic schemas for Polar webhooks"""
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from provisioner.models.webhook_event import WebhookStatus


class WebhookEventIn(BaseModel):
    """Polar webhook envelope. Polar does not always send an id."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[Union[str, int]] = None
    created_at: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool
    eventId: str


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    event_type: str
    status: WebhookStatus
    payload: Dict[str, Any]
    processed_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    polar_customer_id: Optional[str] = None
    polar_subscription_id: Optional[str] = None
    polar_order_id: Optional[str] = None
    polar_product_id: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
