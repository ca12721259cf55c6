"""Event type registry - maps Polar event types to handler functions"""
import enum
import logging
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Dict[str, Any]], Dict[str, Any]]


class PolarEventType(str, enum.Enum):
    # Checkout events
    CHECKOUT_CREATED = "checkout.created"
    CHECKOUT_UPDATED = "checkout.updated"

    # Customer events
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    CUSTOMER_STATE_CHANGED = "customer.state_changed"

    # Customer seat events
    CUSTOMER_SEAT_ASSIGNED = "customer_seat.assigned"
    CUSTOMER_SEAT_CLAIMED = "customer_seat.claimed"
    CUSTOMER_SEAT_REVOKED = "customer_seat.revoked"

    # Order events
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_PAID = "order.paid"
    ORDER_REFUNDED = "order.refunded"

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_UNCANCELED = "subscription.uncanceled"
    SUBSCRIPTION_REVOKED = "subscription.revoked"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"

    # Refund events
    REFUND_CREATED = "refund.created"
    REFUND_UPDATED = "refund.updated"

    # Product events
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"

    # Benefit events
    BENEFIT_CREATED = "benefit.created"
    BENEFIT_UPDATED = "benefit.updated"

    # Benefit grant events
    BENEFIT_GRANT_CREATED = "benefit_grant.created"
    BENEFIT_GRANT_CYCLED = "benefit_grant.cycled"
    BENEFIT_GRANT_UPDATED = "benefit_grant.updated"
    BENEFIT_GRANT_REVOKED = "benefit_grant.revoked"

    # Organization events
    ORGANIZATION_UPDATED = "organization.updated"

    @classmethod
    def is_known(cls, value: str) -> bool:
        return value in cls._value2member_map_


def unhandled_event(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    """Default handler: acknowledged, recorded, no side effects"""
    return {"message": "Event received but not processed"}


class EventRouter:
    """Registry of event handlers keyed by event type.

    Several event types may share a handler; unknown types resolve to
    the default handler, which never raises.
    """

    def __init__(self, default: Handler = unhandled_event):
        self._handlers: Dict[str, Handler] = {}
        self._default = default

    def handles(self, *event_types: PolarEventType):
        """Decorator registering a handler for one or more event types"""
        def decorator(fn: Handler) -> Handler:
            for event_type in event_types:
                key = PolarEventType(event_type).value
                if key in self._handlers:
                    raise ValueError(f"Handler already registered for {key}")
                self._handlers[key] = fn
            return fn
        return decorator

    def resolve(self, event_type: str) -> Handler:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning(f"Unhandled webhook event type: {event_type}")
            return self._default
        return handler

    def dispatch(self, db: Session, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.resolve(event_type)(db, data or {})

    @property
    def registered_types(self):
        return sorted(self._handlers)
