"""Order persistence and status transitions"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from provisioner.core.exceptions import InvalidTransition, RecordNotFound
from provisioner.models.customer import Customer
from provisioner.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

# Allowed status changes; a self-transition is always a no-op
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {
        OrderStatus.PROCESSING, OrderStatus.COMPLETED, OrderStatus.FAILED,
        OrderStatus.REFUNDED, OrderStatus.CANCELED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.REFUNDED, OrderStatus.CANCELED,
    },
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED, OrderStatus.CANCELED},
    OrderStatus.FAILED: {OrderStatus.COMPLETED, OrderStatus.CANCELED},
    OrderStatus.CANCELED: {OrderStatus.COMPLETED, OrderStatus.REFUNDED},  # reactivation, late refund
    OrderStatus.REFUNDED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    current, target = OrderStatus(current), OrderStatus(target)
    return current == target or target in ORDER_TRANSITIONS[current]


def transition_order(order: Order, new_status: OrderStatus) -> bool:
    """Move an order to new_status.

    Returns:
        True if the status changed, False for a self-transition

    Raises:
        InvalidTransition: the move is not in ORDER_TRANSITIONS
    """
    current = OrderStatus(order.status)
    new_status = OrderStatus(new_status)
    if current == new_status:
        return False
    if new_status not in ORDER_TRANSITIONS[current]:
        raise InvalidTransition(current.value, new_status.value)
    order.status = new_status
    logger.info(f"Order {order.id}: {current.value} -> {new_status.value}")
    return True


# ============================================================================
# LOOKUPS
# ============================================================================

def get_order(order_id: str, db: Session, include_deleted: bool = False) -> Order:
    query = db.query(Order).filter(Order.id == order_id)
    if not include_deleted:
        query = query.filter(Order.deleted_at.is_(None))
    order = query.first()
    if not order:
        raise RecordNotFound(f"Order {order_id} not found")
    return order


def find_order_by_checkout_id(checkout_id: Optional[str], db: Session) -> Optional[Order]:
    if not checkout_id:
        return None
    return (
        db.query(Order)
        .filter(Order.polar_checkout_id == str(checkout_id), Order.deleted_at.is_(None))
        .order_by(Order.created_at.desc())
        .first()
    )


def find_orders_by_subscription_id(subscription_id: Optional[str], db: Session) -> List[Order]:
    """Every order generated under a subscription, oldest first"""
    if not subscription_id:
        return []
    return (
        db.query(Order)
        .filter(Order.polar_subscription_id == str(subscription_id), Order.deleted_at.is_(None))
        .order_by(Order.created_at.asc())
        .all()
    )


def list_orders(db: Session, limit: int = 100, customer_id: Optional[str] = None) -> List[Order]:
    query = db.query(Order).filter(Order.deleted_at.is_(None))
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)
    return query.order_by(Order.created_at.desc()).limit(limit).all()


# ============================================================================
# WRITES
# ============================================================================

def create_order(
    customer: Customer,
    db: Session,
    checkout_id: Optional[str] = None,
    product_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Order:
    """Create a pending order (flushes, does not commit)"""
    order = Order(
        customer=customer,
        status=OrderStatus.PENDING,
        polar_checkout_id=checkout_id,
        polar_product_id=product_id,
        polar_subscription_id=subscription_id,
        amount=amount,
        currency=(currency or "USD").upper(),
        metadata_=dict(metadata or {}),
    )
    db.add(order)
    db.flush()
    logger.info(f"Order created: {order.id} (checkout {checkout_id}) for customer {customer.id}")
    return order


def record_crm_response(order: Order, response: Dict[str, Any]):
    """Store the provisioning outcome on the order"""
    order.crm_response = response
    if response.get("success"):
        order.crm_account_id = response.get("id")
        order.crm_location_id = response.get("locationId")


def soft_delete_order(order_id: str, db: Session) -> Order:
    order = get_order(order_id, db)
    order.deleted_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(order)
    logger.info(f"Order soft-deleted: {order.id}")
    return order


def restore_order(order_id: str, db: Session) -> Order:
    order = get_order(order_id, db, include_deleted=True)
    if order.deleted_at is not None:
        order.deleted_at = None
        db.commit()
        db.refresh(order)
        logger.info(f"Order restored: {order.id}")
    return order
