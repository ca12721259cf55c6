"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from provisioner.models.base import Base
from provisioner.models.customer import Customer, CustomerLink, ExternalAccountRef, ContactExtra
from provisioner.models.order import Order, OrderStatus
from provisioner.models.webhook_event import WebhookEvent, WebhookStatus

# Export all for convenience
__all__ = [
    "Base", "Customer", "CustomerLink", "ExternalAccountRef", "ContactExtra",
    "Order", "OrderStatus", "WebhookEvent", "WebhookStatus"
]
