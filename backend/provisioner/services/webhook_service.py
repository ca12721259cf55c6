"""Polar webhook ingestion: verify -> dedupe -> record pending -> route -> record result"""
import json
import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from provisioner.core.config import settings
from provisioner.core.exceptions import (
    DuplicateIdentity,
    InvalidSignature,
    MissingSignature,
    WebhookError,
)
from provisioner.core.logging import security_logger
from provisioner.core.metrics import webhooks_received_counter
from provisioner.models.webhook_event import WebhookEvent
from provisioner.schemas.webhooks import WebhookAck, WebhookEventIn
from provisioner.services.event_store import (
    create_event,
    event_identity,
    find_by_identity,
    mark_failed,
    mark_processed,
)
from provisioner.services.signature_service import verify_signature
from provisioner.services.webhook_handlers import router

logger = logging.getLogger(__name__)


def check_signature(signature_header: Optional[str], body: bytes):
    """Enforce the signature policy.

    With POLAR_WEBHOOK_SECRET set, a missing or non-matching signature is
    rejected. Without it, events are accepted and a warning is logged.

    Raises:
        MissingSignature, InvalidSignature, MalformedSignature, TimestampOutOfRange
    """
    secret = settings.POLAR_WEBHOOK_SECRET
    if not secret:
        if not signature_header:
            logger.warning("Webhook received without signature; POLAR_WEBHOOK_SECRET not configured")
        else:
            logger.warning("POLAR_WEBHOOK_SECRET not configured; signature not verified")
        return

    if not signature_header:
        raise MissingSignature("Missing X-Polar-Signature header")

    if not verify_signature(signature_header, body, secret, settings.POLAR_SIGNATURE_TOLERANCE_SECONDS):
        raise InvalidSignature("Invalid webhook signature")


def process_event(event_in: WebhookEventIn, signature: Optional[str], db: Session) -> WebhookEvent:
    """Record and handle one event exactly once.

    A replayed identity returns the stored ledger entry without running the
    handler again. Handler errors roll back the handler's changes and mark
    the entry failed; they are not raised.
    """
    payload = event_in.model_dump(mode="json", exclude_none=True)
    event_id = event_identity(payload)
    event_type = event_in.type

    existing = find_by_identity(event_id, db)
    if existing:
        logger.info(f"Webhook event {event_id} already recorded ({existing.status.value}), skipping")
        webhooks_received_counter.labels(event_type=event_type, outcome="duplicate").inc()
        return existing

    try:
        webhook_event = create_event(event_id, event_type, payload, db, signature=signature)
    except DuplicateIdentity:
        webhooks_received_counter.labels(event_type=event_type, outcome="duplicate").inc()
        return find_by_identity(event_id, db)

    try:
        result = router.dispatch(db, event_type, event_in.data)
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing webhook {event_id} ({event_type}): {e}", exc_info=True)
        webhooks_received_counter.labels(event_type=event_type, outcome="failed").inc()
        return mark_failed(webhook_event, str(e) or type(e).__name__, db)

    webhook_event = mark_processed(webhook_event, result, db)
    webhooks_received_counter.labels(event_type=event_type, outcome="processed").inc()
    logger.info(f"Successfully processed webhook event {event_id} of type {event_type}")
    return webhook_event


def process_webhook(body: bytes, signature_header: Optional[str], db: Session) -> WebhookAck:
    """Process a raw Polar webhook request.

    Args:
        body: Raw request body bytes (must not be re-serialized before verification)
        signature_header: Value of X-Polar-Signature, if sent
        db: Database session

    Returns:
        WebhookAck. received is False only when the body could not be parsed,
        the signature was rejected, or the event could not be recorded.
    """
    try:
        event_in = WebhookEventIn.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.error(f"Failed to parse webhook body: {e}")
        webhooks_received_counter.labels(event_type="unknown", outcome="rejected").inc()
        return WebhookAck(received=False, eventId="unknown")

    event_id = event_identity(event_in.model_dump(mode="json", exclude_none=True))
    logger.info(f"Webhook received: {event_in.type} | Event ID: {event_id}")

    try:
        check_signature(signature_header, body)
    except WebhookError as e:
        security_logger.warning(f"Rejected webhook {event_id} ({event_in.type}): {e}")
        webhooks_received_counter.labels(event_type=event_in.type, outcome="rejected").inc()
        return WebhookAck(received=False, eventId=event_id)

    try:
        process_event(event_in, signature_header, db)
    except Exception as e:
        db.rollback()
        logger.error(f"Could not record webhook {event_id}: {e}", exc_info=True)
        return WebhookAck(received=False, eventId=event_id)

    return WebhookAck(received=True, eventId=event_id)
