"""Polar event handlers - apply event payloads to customers and orders

Each handler takes (db, data) and returns a result dict that is stored on the
ledger entry. Lookup misses are reported in the result, not raised. CRM
provisioning never fails the event: its outcome is folded into the result.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from provisioner.models.customer import Customer, ExternalAccountRef
from provisioner.models.order import Order, OrderStatus
from provisioner.services.crm_service import AccountContact, get_crm_client
from provisioner.services.customer_service import (
    find_customer_by_email,
    find_customer_by_polar_id,
    find_or_create_customer,
    soft_delete_customer,
    upsert_customer,
)
from provisioner.services.event_router import EventRouter, PolarEventType
from provisioner.services.order_service import (
    can_transition,
    create_order,
    find_order_by_checkout_id,
    find_orders_by_subscription_id,
    record_crm_response,
    transition_order,
)

logger = logging.getLogger(__name__)

router = EventRouter()

PHONE_FIELDS = ("phone", "phone_number", "mobile", "mobile_number")
BUSINESS_FIELDS = ("business_name", "company", "company_name", "business", "organization")


# ============================================================================
# HELPERS
# ============================================================================

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _organization(data: Dict[str, Any]) -> Optional[str]:
    billing_address = data.get("billing_address") or {}
    return billing_address.get("organization") or None


def _custom_field(custom_field_data: Optional[Dict[str, Any]], keys) -> Optional[str]:
    for key in keys:
        value = (custom_field_data or {}).get(key)
        if value:
            return str(value).strip()
    return None


def _contact_for(customer: Customer) -> AccountContact:
    return AccountContact(
        first_name=customer.first_name or "",
        last_name=customer.last_name or "",
        email=customer.email,
        phone=customer.get_contact_extra().phone or "",
        business_name=customer.business_name,
    )


def _can_provision(customer: Customer) -> Optional[str]:
    """Reason provisioning must be skipped, or None"""
    if not customer.email:
        return "Customer has no email address"
    if customer.is_placeholder:
        return "Customer email not known yet"
    return None


def _provision(customer: Customer, recreate: bool = False) -> Dict[str, Any]:
    client = get_crm_client()
    contact = _contact_for(customer)
    try:
        outcome = client.recreate_account(contact) if recreate else client.create_account(contact)
    except Exception as e:
        logger.error(f"CRM provisioning raised for customer {customer.id}: {e}", exc_info=True)
        return {"success": False, "message": str(e)}
    return outcome.to_dict()


def _delete_account(user_id: Optional[str], location_id: Optional[str]) -> Dict[str, Any]:
    try:
        deletion = get_crm_client().delete_account(user_id, location_id)
    except Exception as e:
        logger.error(f"CRM account deletion raised (user {user_id}, location {location_id}): {e}", exc_info=True)
        return {"success": False, "id": user_id, "locationId": location_id, "message": str(e)}
    return deletion.to_dict()


def _account_ids(customer: Customer, orders: List[Order]):
    """Customer's stored reference first, then the newest order that carries ids"""
    ref = customer.get_external_account()
    if ref:
        return ref.account_id, ref.location_id
    for order in reversed(orders):
        if order.crm_account_id or order.crm_location_id:
            return order.crm_account_id, order.crm_location_id
    return None, None


def _resolve_order_customer(db: Session, data: Dict[str, Any]) -> Optional[Customer]:
    embedded = data.get("customer") or {}
    polar_customer_id = data.get("customer_id") or embedded.get("id")
    if embedded.get("email"):
        return upsert_customer(
            db,
            polar_customer_id=polar_customer_id,
            email=embedded["email"],
            name=embedded.get("name"),
            business_name=_organization(embedded),
        )
    if polar_customer_id:
        return find_or_create_customer(polar_customer_id, db)
    return None


def _reconcile_order_customer(db: Session, order: Order, data: Dict[str, Any]) -> Customer:
    """Fill a placeholder customer from the customer embedded in an order payload"""
    customer = order.customer
    embedded = data.get("customer") or {}
    if customer.is_placeholder and embedded.get("email"):
        polar_customer_id = next((link.polar_customer_id for link in customer.links), None)
        upsert_customer(
            db,
            polar_customer_id=polar_customer_id or data.get("customer_id") or embedded.get("id"),
            email=embedded["email"],
            name=embedded.get("name"),
            business_name=_organization(embedded),
        )
    return order.customer


def provision_order(db: Session, order: Order) -> Dict[str, Any]:
    """Create the CRM account for a paid order's customer and record it (commits).

    Skipped when the customer already holds an account reference or has no
    usable email. Failures are returned, never raised.
    """
    customer = order.customer
    existing = customer.get_external_account()
    skip_reason = _can_provision(customer)
    if existing:
        logger.info(f"Customer {customer.id} already has CRM account {existing.account_id}, skipping provisioning")
        provisioning = {"success": True, "skipped": True, "id": existing.account_id,
                        "locationId": existing.location_id, "message": "Customer already has a CRM account"}
        order.crm_account_id = existing.account_id
        order.crm_location_id = existing.location_id
    elif skip_reason:
        logger.warning(f"Skipping CRM provisioning for order {order.id}: {skip_reason}")
        provisioning = {"success": False, "skipped": True, "message": skip_reason}
    else:
        provisioning = _provision(customer)
        record_crm_response(order, provisioning)
        if provisioning.get("success"):
            customer.set_external_account(ExternalAccountRef(provisioning["id"], provisioning["locationId"]))
            logger.info(f"CRM account {provisioning['id']} stored for customer {customer.id}")
        else:
            logger.error(f"CRM provisioning failed for order {order.id}: {provisioning.get('message')}")
    db.commit()
    return provisioning


def provision_paid_orders(db: Session, customer: Customer) -> List[Dict[str, Any]]:
    """Provision completed orders that were paid while the customer was a placeholder.

    Stops at the first failed attempt; once one order succeeds the rest reuse
    the customer's account reference.
    """
    results = []
    for order in sorted(customer.orders, key=lambda o: o.created_at):
        if order.deleted_at is not None or OrderStatus(order.status) != OrderStatus.COMPLETED:
            continue
        if order.crm_account_id or order.crm_location_id:
            continue
        logger.info(f"Provisioning order {order.id} paid before customer {customer.id} was known")
        provisioning = provision_order(db, order)
        results.append({"orderId": order.id, **provisioning})
        if not provisioning.get("success"):
            break
    return results


def _upsert_and_provision(db: Session, data: Dict[str, Any], create: bool) -> Dict[str, Any]:
    linked = find_customer_by_polar_id(data.get("id"), db)
    was_placeholder = linked is not None and linked.is_placeholder
    customer = upsert_customer(
        db,
        polar_customer_id=data.get("id"),
        email=data.get("email"),
        name=data.get("name"),
        business_name=_organization(data),
        create=create,
    )
    db.commit()

    result = {"customerId": customer.id if customer else None, "polarCustomerId": data.get("id")}
    if was_placeholder and customer is not None and not customer.is_placeholder:
        result["provisioning"] = provision_paid_orders(db, customer)
    return result


# ============================================================================
# CUSTOMER HANDLERS
# ============================================================================

@router.handles(PolarEventType.CUSTOMER_CREATED)
def handle_customer_created(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Customer created: {data.get('id')} ({data.get('email')})")
    return _upsert_and_provision(db, data, create=True)


@router.handles(PolarEventType.CUSTOMER_UPDATED)
def handle_customer_updated(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Customer updated: {data.get('id')}")
    return _upsert_and_provision(db, data, create=False)


@router.handles(PolarEventType.CUSTOMER_DELETED)
def handle_customer_deleted(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Customer deleted: {data.get('id')}")
    customer = find_customer_by_polar_id(data.get("id"), db) or find_customer_by_email(data.get("email"), db)
    if not customer or customer.deleted_at is not None:
        return {"polarCustomerId": data.get("id"), "customerId": None, "message": "Customer not found"}
    soft_delete_customer(customer.id, db)
    return {"polarCustomerId": data.get("id"), "customerId": customer.id, "action": "deleted"}


@router.handles(PolarEventType.CUSTOMER_STATE_CHANGED)
def handle_customer_state_changed(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Customer state changed: {data.get('id')}")
    return {"polarCustomerId": data.get("id"), "state": data.get("state")}


# ============================================================================
# ORDER HANDLERS
# ============================================================================

@router.handles(PolarEventType.ORDER_CREATED)
def handle_order_created(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    checkout_id = data.get("id")
    logger.info(f"Order created: {checkout_id}")

    existing = find_order_by_checkout_id(checkout_id, db)
    if existing:
        logger.info(f"Order for checkout {checkout_id} already recorded: {existing.id}")
        return {"orderId": existing.id, "polarOrderId": checkout_id, "message": "Order already recorded"}

    customer = _resolve_order_customer(db, data)
    if customer is None:
        logger.warning(f"Order {checkout_id} has no customer reference, not recorded")
        return {"orderId": None, "polarOrderId": checkout_id, "message": "Order has no customer reference"}

    metadata = dict(data.get("metadata") or {})
    metadata.update({
        k: v for k, v in {
            "checkout_id": data.get("checkout_id"),
            "subscription_id": data.get("subscription_id"),
            "custom_field_data": data.get("custom_field_data"),
        }.items() if v is not None
    })

    order = create_order(
        customer,
        db,
        checkout_id=checkout_id,
        product_id=data.get("product_id"),
        subscription_id=data.get("subscription_id"),
        amount=data.get("amount"),
        currency=data.get("currency"),
        metadata=metadata,
    )
    db.commit()
    return {"orderId": order.id, "polarOrderId": checkout_id, "customerId": customer.id}


@router.handles(PolarEventType.ORDER_UPDATED)
def handle_order_updated(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Order updated: {data.get('id')}")
    order = find_order_by_checkout_id(data.get("id"), db)
    if not order:
        return {"orderId": None, "polarOrderId": data.get("id"), "message": "Order not found"}

    changes = dict(data.get("metadata") or {})
    changes["subscription_id"] = data.get("subscription_id")
    order.merge_metadata(**changes)
    if data.get("subscription_id") and not order.polar_subscription_id:
        order.polar_subscription_id = data["subscription_id"]
    db.commit()
    return {"orderId": order.id, "polarOrderId": data.get("id")}


@router.handles(PolarEventType.ORDER_PAID)
def handle_order_paid(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    checkout_id = data.get("id")
    logger.info(f"Order paid: {checkout_id}")

    order = find_order_by_checkout_id(checkout_id, db)
    if not order:
        logger.warning(f"No order found for checkout {checkout_id}, nothing to mark paid")
        return {"orderId": None, "polarOrderId": checkout_id, "status": "not_found",
                "message": f"No order found for checkout {checkout_id}"}

    transition_order(order, OrderStatus.COMPLETED)
    if data.get("amount") is not None:
        order.amount = data["amount"]
    if data.get("currency"):
        order.currency = data["currency"].upper()
    if data.get("subscription_id") and not order.polar_subscription_id:
        order.polar_subscription_id = data["subscription_id"]
        order.merge_metadata(subscription_id=data["subscription_id"])

    custom_field_data = data.get("custom_field_data")
    if custom_field_data:
        order.merge_metadata(custom_field_data=custom_field_data)

    customer = _reconcile_order_customer(db, order, data)
    phone = _custom_field(custom_field_data, PHONE_FIELDS)
    if phone:
        customer.set_phone(phone)
    business_name = _custom_field(custom_field_data, BUSINESS_FIELDS)
    if business_name and not customer.business_name:
        customer.business_name = business_name

    # Completed status is durable before any remote call
    db.commit()
    logger.info(f"Order marked as completed: {order.id}")

    provisioning = provision_order(db, order)
    return {"orderId": order.id, "polarOrderId": checkout_id, "status": "paid", "provisioning": provisioning}


@router.handles(PolarEventType.ORDER_REFUNDED)
def handle_order_refunded(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Order refunded: {data.get('id')}")
    order = find_order_by_checkout_id(data.get("id"), db)
    if not order:
        return {"orderId": None, "polarOrderId": data.get("id"), "status": "not_found"}

    transition_order(order, OrderStatus.REFUNDED)
    order.notes = "Order refunded"
    order.merge_metadata(refunded_amount=data.get("refunded_amount"), refunded_at=_now_iso())
    db.commit()
    return {"orderId": order.id, "polarOrderId": data.get("id"), "status": "refunded"}


# ============================================================================
# REFUND HANDLERS
# ============================================================================

@router.handles(PolarEventType.REFUND_CREATED)
def handle_refund_created(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Refund created: {data.get('id')} for order: {data.get('order_id')}")
    order = find_order_by_checkout_id(data.get("order_id"), db)
    if not order:
        return {"orderId": None, "refundId": data.get("id"), "message": "Order not found"}

    transition_order(order, OrderStatus.REFUNDED)
    order.notes = f"Refunded: {data.get('reason')}"
    order.merge_metadata(
        refund_id=data.get("id"),
        refund_amount=data.get("amount"),
        refund_reason=data.get("reason"),
    )
    db.commit()
    return {"orderId": order.id, "refundId": data.get("id")}


@router.handles(PolarEventType.REFUND_UPDATED)
def handle_refund_updated(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Refund updated: {data.get('id')}")
    return {"refundId": data.get("id")}


# ============================================================================
# SUBSCRIPTION HANDLERS
# ============================================================================

@router.handles(PolarEventType.SUBSCRIPTION_CREATED)
def handle_subscription_created(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Subscription created: {data.get('id')}")
    # Orders are created by order.created
    return {
        "subscriptionId": data.get("id"),
        "message": "Subscription recorded, order will be created by order.created webhook",
    }


@router.handles(PolarEventType.SUBSCRIPTION_UPDATED)
def handle_subscription_updated(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Subscription updated: {data.get('id')}")
    return {"subscriptionId": data.get("id"), "updated": True}


@router.handles(PolarEventType.SUBSCRIPTION_ACTIVE)
def handle_subscription_active(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Subscription active: {data.get('id')}")
    return {"subscriptionId": data.get("id"), "status": "active"}


@router.handles(PolarEventType.SUBSCRIPTION_PAST_DUE)
def handle_subscription_past_due(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Subscription past due: {data.get('id')}")
    return {"subscriptionId": data.get("id"), "status": "past_due"}


def _end_subscription(db: Session, data: Dict[str, Any], status: str, default_reason: str) -> Dict[str, Any]:
    subscription_id = data.get("id")
    orders = find_orders_by_subscription_id(subscription_id, db)
    if not orders:
        logger.warning(f"No orders found for subscription {subscription_id}")
        return {"subscriptionId": subscription_id, "status": status, "message": "No orders found for subscription"}

    reason = data.get("customer_cancellation_reason") or data.get("cancellation_reason") or default_reason
    canceled_at = data.get("canceled_at") or data.get("ended_at") or _now_iso()

    updated = []
    for order in orders:
        if not can_transition(order.status, OrderStatus.CANCELED):
            logger.warning(f"Order {order.id} is {OrderStatus(order.status).value}, not canceling")
            continue
        transition_order(order, OrderStatus.CANCELED)
        order.merge_metadata(canceled_at=canceled_at, cancellation_reason=reason)
        updated.append(order.id)
    db.commit()

    customer = orders[0].customer
    user_id, location_id = _account_ids(customer, orders)
    if not user_id and not location_id:
        logger.info(f"No CRM account recorded for subscription {subscription_id}, nothing to delete")
        crm_deletion = {"success": False, "skipped": True, "message": "No CRM account to delete"}
    else:
        crm_deletion = _delete_account(user_id, location_id)
        if crm_deletion.get("success"):
            customer.clear_external_account()
            for order in orders:
                if order.crm_account_id == user_id or order.crm_location_id == location_id:
                    order.crm_account_id = None
                    order.crm_location_id = None
            db.commit()
            logger.info(f"CRM account deleted for customer {customer.id}")
        else:
            # Reference kept so the deletion can be retried
            logger.error(f"CRM account deletion incomplete for customer {customer.id}: {crm_deletion.get('message')}")

    return {
        "subscriptionId": subscription_id,
        "status": status,
        "reason": reason,
        "ordersUpdated": len(updated),
        "orderIds": updated,
        "crmDeletion": crm_deletion,
    }


@router.handles(PolarEventType.SUBSCRIPTION_CANCELED)
def handle_subscription_canceled(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Subscription canceled: {data.get('id')}")
    return _end_subscription(db, data, "canceled", "subscription_canceled")


@router.handles(PolarEventType.SUBSCRIPTION_REVOKED)
def handle_subscription_revoked(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Subscription revoked: {data.get('id')}")
    return _end_subscription(db, data, "revoked", "subscription_revoked")


def _reactivate(orders: List[Order], provisioning: Optional[Dict[str, Any]] = None) -> List[str]:
    reactivated = []
    for order in orders:
        if OrderStatus(order.status) != OrderStatus.CANCELED:
            continue
        transition_order(order, OrderStatus.COMPLETED)
        order.merge_metadata(reactivated_at=_now_iso())
        if provisioning:
            record_crm_response(order, provisioning)
        reactivated.append(order.id)
    return reactivated


@router.handles(PolarEventType.SUBSCRIPTION_UNCANCELED)
def handle_subscription_uncanceled(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    subscription_id = data.get("id")
    logger.info(f"Subscription uncanceled: {subscription_id}")

    orders = find_orders_by_subscription_id(subscription_id, db)
    if not orders:
        logger.warning(f"No orders found for subscription {subscription_id}")
        return {"subscriptionId": subscription_id, "status": "uncanceled", "message": "No orders found for subscription"}

    customer = orders[0].customer
    existing = customer.get_external_account()
    if existing:
        logger.info(f"Customer {customer.id} still has CRM account {existing.account_id}, skipping recreation")
        reactivated = _reactivate(orders)
        db.commit()
        return {"subscriptionId": subscription_id, "status": "uncanceled", "recreated": False,
                "orderIds": reactivated, "message": "Customer already has a CRM account"}

    skip_reason = _can_provision(customer)
    if skip_reason:
        logger.warning(f"Cannot recreate CRM account for customer {customer.id}: {skip_reason}")
        return {"subscriptionId": subscription_id, "status": "uncanceled", "recreated": False, "message": skip_reason}

    provisioning = _provision(customer, recreate=True)
    if not provisioning.get("success"):
        logger.error(f"CRM account recreation failed for customer {customer.id}: {provisioning.get('message')}")
        return {"subscriptionId": subscription_id, "status": "uncanceled", "recreated": False,
                "provisioning": provisioning, "message": "Account recreation failed, orders left canceled"}

    # A failed welcome email still counts as a recreated account
    customer.set_external_account(ExternalAccountRef(provisioning["id"], provisioning["locationId"]))
    reactivated = _reactivate(orders, provisioning)
    db.commit()
    logger.info(f"CRM account recreated for customer {customer.id}: {provisioning['id']}")
    return {"subscriptionId": subscription_id, "status": "uncanceled", "recreated": True,
            "orderIds": reactivated, "provisioning": provisioning}


# ============================================================================
# INFORMATIONAL HANDLERS
# ============================================================================

@router.handles(PolarEventType.PRODUCT_CREATED, PolarEventType.PRODUCT_UPDATED)
def handle_product_event(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Product event: {data.get('id')}")
    return {"productId": data.get("id")}


@router.handles(PolarEventType.BENEFIT_CREATED, PolarEventType.BENEFIT_UPDATED)
def handle_benefit_event(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Benefit event: {data.get('id')}")
    return {"benefitId": data.get("id")}


@router.handles(PolarEventType.BENEFIT_GRANT_CREATED)
def handle_benefit_grant_created(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Benefit grant created: {data.get('id')} for customer: {data.get('customer_id')}")
    return {"grantId": data.get("id"), "customerId": data.get("customer_id")}


@router.handles(
    PolarEventType.BENEFIT_GRANT_CYCLED,
    PolarEventType.BENEFIT_GRANT_UPDATED,
    PolarEventType.BENEFIT_GRANT_REVOKED,
)
def handle_benefit_grant_event(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Benefit grant event: {data.get('id')}")
    return {"grantId": data.get("id")}


@router.handles(PolarEventType.ORGANIZATION_UPDATED)
def handle_organization_updated(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Organization updated: {data.get('id')}")
    return {"organizationId": data.get("id")}


@router.handles(PolarEventType.CHECKOUT_CREATED, PolarEventType.CHECKOUT_UPDATED)
def handle_checkout_event(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"Checkout event: {data.get('id')}")
    return {"checkoutId": data.get("id")}
