"""Webhook event ledger - exactly one row per event identity"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from provisioner.core.exceptions import DuplicateIdentity, RecordNotFound
from provisioner.models.webhook_event import WebhookEvent, WebhookStatus

logger = logging.getLogger(__name__)


def event_identity(event: Dict[str, Any]) -> str:
    """Provider id, or '{type}_{timestamp}_{data.id}' when Polar omits one"""
    if event.get("id"):
        return str(event["id"])
    data = event.get("data") or {}
    data_id = data.get("id") if isinstance(data, dict) else None
    timestamp = event.get("timestamp") or event.get("created_at")
    return f"{event.get('type')}_{timestamp}_{data_id or 'unknown'}"


def _correlation_ids(event_type: str, payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        return {}
    ids = {
        "polar_customer_id": data.get("customer_id"),
        "polar_subscription_id": data.get("subscription_id"),
        "polar_product_id": data.get("product_id"),
        "polar_order_id": data.get("order_id"),
    }
    prefix = event_type.split(".", 1)[0]
    if prefix == "customer":
        ids["polar_customer_id"] = data.get("id")
    elif prefix == "subscription":
        ids["polar_subscription_id"] = data.get("id")
    elif prefix == "order":
        ids["polar_order_id"] = data.get("id")
    elif prefix == "product":
        ids["polar_product_id"] = data.get("id")
    return {k: str(v) for k, v in ids.items() if v}


def find_by_identity(event_id: str, db: Session) -> Optional[WebhookEvent]:
    return db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()


def create_event(
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    db: Session,
    signature: Optional[str] = None
) -> WebhookEvent:
    """Insert a pending ledger entry.

    Raises:
        DuplicateIdentity: an entry with this identity was inserted first
            (callers re-read with find_by_identity)
    """
    webhook_event = WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        status=WebhookStatus.PENDING,
        payload=payload,
        signature=signature,
        **_correlation_ids(event_type, payload)
    )
    db.add(webhook_event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Webhook event {event_id} lost insert race, already recorded")
        raise DuplicateIdentity(event_id)
    db.refresh(webhook_event)
    return webhook_event


def _assert_pending(webhook_event: WebhookEvent):
    if webhook_event.status != WebhookStatus.PENDING:
        raise ValueError(
            f"Webhook event {webhook_event.event_id} already {webhook_event.status.value}"
        )


def mark_processed(webhook_event: WebhookEvent, result: Optional[Dict[str, Any]], db: Session) -> WebhookEvent:
    _assert_pending(webhook_event)
    webhook_event.status = WebhookStatus.PROCESSED
    webhook_event.processed_data = result
    webhook_event.processed_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(webhook_event)
    return webhook_event


def mark_failed(webhook_event: WebhookEvent, error_message: str, db: Session) -> WebhookEvent:
    _assert_pending(webhook_event)
    webhook_event.status = WebhookStatus.FAILED
    webhook_event.error_message = error_message
    webhook_event.processed_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(webhook_event)
    return webhook_event


# ============================================================================
# READ MODELS
# ============================================================================

def list_events(db: Session, limit: int = 100) -> List[WebhookEvent]:
    return db.query(WebhookEvent).order_by(WebhookEvent.created_at.desc()).limit(limit).all()


def get_event(id: str, db: Session) -> WebhookEvent:
    webhook_event = db.query(WebhookEvent).filter(WebhookEvent.id == id).first()
    if not webhook_event:
        raise RecordNotFound(f"Webhook {id} not found")
    return webhook_event


def list_events_by_type(event_type: str, db: Session) -> List[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(WebhookEvent.event_type == event_type)
        .order_by(WebhookEvent.created_at.desc())
        .all()
    )


def list_events_by_status(status: WebhookStatus, db: Session) -> List[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(WebhookEvent.status == status)
        .order_by(WebhookEvent.created_at.desc())
        .all()
    )
