"""WebhookEvent model"""
import enum
from sqlalchemy import Column, String, Text, JSON, DateTime, Enum
from datetime import datetime, timezone
from provisioner.models.base import Base, generate_uuid


class WebhookStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """Polar webhook ledger - one row per event identity"""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    status = Column(
        Enum(WebhookStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=WebhookStatus.PENDING,
        nullable=False,
        index=True
    )
    payload = Column(JSON, nullable=False)
    processed_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    signature = Column(String(512), nullable=True)

    # Correlation ids extracted from the payload, for operator queries
    polar_customer_id = Column(String(255), nullable=True, index=True)
    polar_subscription_id = Column(String(255), nullable=True, index=True)
    polar_order_id = Column(String(255), nullable=True, index=True)
    polar_product_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
