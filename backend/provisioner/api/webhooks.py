"""Polar webhook endpoints"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from provisioner.core.exceptions import RecordNotFound
from provisioner.db.session import get_db
from provisioner.models.webhook_event import WebhookStatus
from provisioner.schemas.webhooks import WebhookAck, WebhookEventOut
from provisioner.services.event_store import (
    get_event,
    list_events,
    list_events_by_status,
    list_events_by_type,
)
from provisioner.services.webhook_service import process_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/polar", response_model=WebhookAck)
async def polar_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive a Polar webhook event

    Always answers 200 so Polar does not retry an event that is already recorded;
    the ledger entry carries the processing outcome.
    """
    # Raw bytes: the signature covers the body exactly as sent
    payload = await request.body()
    signature = request.headers.get("x-polar-signature")
    # Blocking DB and CRM I/O runs in the threadpool
    return await run_in_threadpool(process_webhook, payload, signature, db)


@router.get("", response_model=List[WebhookEventOut])
def get_webhooks(limit: int = 100, db: Session = Depends(get_db)):
    """Most recent webhook events (for debugging/monitoring)"""
    return list_events(db, limit=limit)


@router.get("/type/{event_type}", response_model=List[WebhookEventOut])
def get_webhooks_by_type(event_type: str, db: Session = Depends(get_db)):
    return list_events_by_type(event_type, db)


@router.get("/status/{status}", response_model=List[WebhookEventOut])
def get_webhooks_by_status(status: WebhookStatus, db: Session = Depends(get_db)):
    return list_events_by_status(status, db)


@router.get("/{webhook_id}", response_model=WebhookEventOut)
def get_webhook(webhook_id: str, db: Session = Depends(get_db)):
    try:
        return get_event(webhook_id, db)
    except RecordNotFound as e:
        raise HTTPException(404, str(e))
