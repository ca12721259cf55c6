"""Customer persistence and Polar customer correlation

Polar events refer to customers by their Polar id. The customer_links table
maps that id to a local Customer and is written in the same transaction as
the Customer itself. When an event names a Polar id nobody has seen yet, a
placeholder Customer is created so the order can still be recorded; a later
event carrying the real email reconciles it.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from provisioner.core.exceptions import RecordNotFound
from provisioner.models.customer import Customer, CustomerLink

logger = logging.getLogger(__name__)

PLACEHOLDER_DOMAIN = "polar.placeholder"
PLACEHOLDER_FIRST_NAME = "Polar"
PLACEHOLDER_LAST_NAME = "Customer"


def split_name(name: Optional[str]) -> Tuple[str, str]:
    """'Jane van Dyke' -> ('Jane', 'van Dyke')"""
    parts = (name or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def placeholder_email(polar_customer_id: str) -> str:
    return f"customer_{polar_customer_id}@{PLACEHOLDER_DOMAIN}"


# ============================================================================
# LOOKUPS
# ============================================================================

def get_customer(customer_id: str, db: Session, include_deleted: bool = False) -> Customer:
    query = db.query(Customer).filter(Customer.id == customer_id)
    if not include_deleted:
        query = query.filter(Customer.deleted_at.is_(None))
    customer = query.first()
    if not customer:
        raise RecordNotFound(f"Customer {customer_id} not found")
    return customer


def find_customer_by_email(email: str, db: Session, include_deleted: bool = False) -> Optional[Customer]:
    if not email:
        return None
    query = db.query(Customer).filter(Customer.email == email.strip().lower())
    if not include_deleted:
        query = query.filter(Customer.deleted_at.is_(None))
    return query.first()


def find_customer_by_polar_id(polar_customer_id: str, db: Session) -> Optional[Customer]:
    if not polar_customer_id:
        return None
    link = db.query(CustomerLink).filter(CustomerLink.polar_customer_id == str(polar_customer_id)).first()
    return link.customer if link else None


def link_customer(customer: Customer, polar_customer_id: Optional[str], db: Session):
    """Point a Polar customer id at this customer (flushes, does not commit)"""
    if not polar_customer_id:
        return
    polar_customer_id = str(polar_customer_id)
    link = db.query(CustomerLink).filter(CustomerLink.polar_customer_id == polar_customer_id).first()
    if link is None:
        link = CustomerLink(polar_customer_id=polar_customer_id)
        db.add(link)
    elif link.customer_id != customer.id:
        logger.info(f"Relinking Polar customer {polar_customer_id} from {link.customer_id} to {customer.id}")
    link.customer = customer
    db.flush()


# ============================================================================
# CREATE / RECONCILE
# ============================================================================

def create_customer(
    email: str,
    db: Session,
    first_name: str = "",
    last_name: str = "",
    business_name: Optional[str] = None,
    polar_customer_id: Optional[str] = None,
    is_placeholder: bool = False,
) -> Customer:
    customer = Customer(
        email=email.strip().lower(),
        first_name=first_name or "",
        last_name=last_name or "",
        business_name=business_name or None,
        is_placeholder=is_placeholder,
    )
    db.add(customer)
    db.flush()
    link_customer(customer, polar_customer_id, db)
    logger.info(f"New customer created: {customer.id} ({customer.email})")
    return customer


def create_placeholder_customer(polar_customer_id: str, db: Session) -> Customer:
    logger.info(f"Creating placeholder customer for Polar customer {polar_customer_id}")
    return create_customer(
        placeholder_email(polar_customer_id),
        db,
        first_name=PLACEHOLDER_FIRST_NAME,
        last_name=PLACEHOLDER_LAST_NAME,
        polar_customer_id=polar_customer_id,
        is_placeholder=True,
    )


def find_or_create_customer(polar_customer_id: str, db: Session) -> Customer:
    """Resolve a Polar customer id, synthesizing a placeholder on a miss"""
    customer = find_customer_by_polar_id(polar_customer_id, db)
    if customer:
        return customer
    return create_placeholder_customer(polar_customer_id, db)


def merge_placeholder(placeholder: Customer, target: Customer, db: Session) -> Customer:
    """Move a placeholder's links, orders and account reference onto target, then delete it"""
    logger.info(f"Merging placeholder customer {placeholder.id} into {target.id}")
    for order in list(placeholder.orders):
        order.customer = target
    for link in list(placeholder.links):
        link.customer = target
    if target.get_external_account() is None and placeholder.get_external_account() is not None:
        target.set_external_account(placeholder.get_external_account())
    if not target.get_contact_extra().phone and placeholder.get_contact_extra().phone:
        target.set_phone(placeholder.get_contact_extra().phone)
    db.flush()
    db.delete(placeholder)
    db.flush()
    return target


def _apply_details(customer: Customer, first_name: str, last_name: str, business_name: Optional[str]):
    if first_name:
        customer.first_name = first_name
        customer.last_name = last_name
    if business_name:
        customer.business_name = business_name


def upsert_customer(
    db: Session,
    polar_customer_id: Optional[str] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
    business_name: Optional[str] = None,
    create: bool = True,
) -> Optional[Customer]:
    """Match by Polar id and email, reconciling placeholders; flushes, does not commit.

    Returns None only when nothing matched and create is False, or when there
    is neither an email nor a Polar id to create from.
    """
    email = email.strip().lower() if email else None
    first_name, last_name = split_name(name)

    linked = find_customer_by_polar_id(polar_customer_id, db) if polar_customer_id else None
    by_email = find_customer_by_email(email, db, include_deleted=True) if email else None

    if linked is not None and linked.is_placeholder and email:
        if by_email is not None and by_email.id != linked.id:
            customer = merge_placeholder(linked, by_email, db)
        else:
            logger.info(f"Reconciling placeholder customer {linked.id} with {email}")
            linked.email = email
            linked.is_placeholder = False
            customer = linked
    elif by_email is not None:
        customer = by_email
    elif linked is not None:
        customer = linked
        if email and not linked.is_placeholder and linked.email != email:
            logger.info(f"Customer {linked.id} email changed to {email}")
            linked.email = email
    elif not create:
        return None
    elif email:
        return create_customer(email, db, first_name, last_name, business_name, polar_customer_id)
    elif polar_customer_id:
        return create_placeholder_customer(polar_customer_id, db)
    else:
        return None

    _apply_details(customer, first_name, last_name, business_name)
    link_customer(customer, polar_customer_id, db)
    db.flush()
    return customer


# ============================================================================
# SOFT DELETE
# ============================================================================

def soft_delete_customer(customer_id: str, db: Session) -> Customer:
    """Soft-delete a customer and its orders"""
    customer = get_customer(customer_id, db)
    deleted_at = datetime.now(timezone.utc)
    customer.deleted_at = deleted_at
    for order in customer.orders:
        if order.deleted_at is None:
            order.deleted_at = deleted_at
    db.commit()
    db.refresh(customer)
    logger.info(f"Customer soft-deleted: {customer.id}")
    return customer


def restore_customer(customer_id: str, db: Session) -> Customer:
    """Undo soft_delete_customer, restoring the orders deleted with it"""
    customer = get_customer(customer_id, db, include_deleted=True)
    if customer.deleted_at is None:
        return customer
    deleted_at = customer.deleted_at
    for order in customer.orders:
        if order.deleted_at == deleted_at:
            order.deleted_at = None
    customer.deleted_at = None
    db.commit()
    db.refresh(customer)
    logger.info(f"Customer restored: {customer.id}")
    return customer
