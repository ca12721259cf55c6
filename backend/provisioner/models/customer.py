"""Customer model"""
from dataclasses import dataclass
from typing import Optional
from sqlalchemy import Column, String, DateTime, Boolean, JSON, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from provisioner.models.base import Base, generate_uuid

_CRM_ACCOUNT_KEY = "crm_account"
_PHONE_KEY = "phone"


@dataclass(frozen=True)
class ExternalAccountRef:
    """Provisioned CRM sub-account: admin user id + location id"""
    account_id: str
    location_id: str


@dataclass(frozen=True)
class ContactExtra:
    phone: Optional[str] = None


class Customer(Base):
    """Customers known from Polar events"""
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    first_name = Column(String(255), nullable=False, default="")
    last_name = Column(String(255), nullable=False, default="")
    email = Column(String(255), unique=True, nullable=False, index=True)
    business_name = Column(String(255), nullable=True)
    timezone = Column(String(100), nullable=False, default="America/New_York")
    is_placeholder = Column(Boolean, default=False, nullable=False)  # Synthesized from a bare Polar customer id
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    orders = relationship("Order", back_populates="customer", cascade="all, delete-orphan")
    links = relationship("CustomerLink", back_populates="customer", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    # The metadata column is replaced, never mutated in place, so the ORM sees the change
    def _update_metadata(self, **changes):
        data = dict(self.metadata_ or {})
        for key, value in changes.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self.metadata_ = data

    def get_external_account(self) -> Optional[ExternalAccountRef]:
        raw = (self.metadata_ or {}).get(_CRM_ACCOUNT_KEY) or {}
        account_id = raw.get("account_id")
        location_id = raw.get("location_id")
        if not account_id and not location_id:
            return None
        return ExternalAccountRef(account_id=account_id, location_id=location_id)

    def set_external_account(self, ref: ExternalAccountRef):
        if not ref.account_id or not ref.location_id:
            raise ValueError("External account reference requires both account_id and location_id")
        self._update_metadata(**{_CRM_ACCOUNT_KEY: {"account_id": ref.account_id, "location_id": ref.location_id}})

    def clear_external_account(self):
        self._update_metadata(**{_CRM_ACCOUNT_KEY: None})

    def get_contact_extra(self) -> ContactExtra:
        return ContactExtra(phone=(self.metadata_ or {}).get(_PHONE_KEY))

    def set_phone(self, phone: Optional[str]):
        self._update_metadata(**{_PHONE_KEY: phone or None})


class CustomerLink(Base):
    """Index from Polar customer id to local customer"""
    __tablename__ = "customer_links"

    polar_customer_id = Column(String(255), primary_key=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    customer = relationship("Customer", back_populates="links")
