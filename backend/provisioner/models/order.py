"""Order model"""
import enum
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from provisioner.models.base import Base, generate_uuid


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELED = "canceled"


class Order(Base):
    """Polar order (one per checkout), linked to a subscription when recurring"""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        Enum(OrderStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    # Polar payment information
    polar_product_id = Column(String(255), nullable=True)
    polar_checkout_id = Column(String(255), nullable=True, index=True)
    polar_subscription_id = Column(String(255), nullable=True, index=True)
    amount = Column(Integer, nullable=True)  # Minor units (cents), as sent by Polar
    currency = Column(String(3), nullable=False, default="USD")

    # CRM account information
    crm_account_id = Column(String(255), nullable=True)
    crm_location_id = Column(String(255), nullable=True)
    crm_response = Column(JSON, nullable=True)

    metadata_ = Column("metadata", JSON, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationship
    customer = relationship("Customer", back_populates="orders")

    def merge_metadata(self, **values):
        """Replace metadata with a merged copy; None values are skipped"""
        data = dict(self.metadata_ or {})
        data.update({k: v for k, v in values.items() if v is not None})
        self.metadata_ = data
