# rxflow/services/dead_letter_service.py
"""
Retry queue for failed inbound events and outbound calls.

Events are retried by the retry_dead_letters job until they succeed or hit
max_attempts, after which they are ABANDONED and left for a human.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxflow.core.config import get_settings
from rxflow.core.errors import AppError
from rxflow.integrations import pharmacy_client
from rxflow.models.dead_letter import DeadLetterEvent, DeadLetterKind, DeadLetterStatus
from rxflow.models.order import Order
from rxflow.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


def enqueue_dead_letter(
    db: Session,
    *,
    kind: DeadLetterKind,
    payload: dict[str, Any],
    clinic_id: int | None,
    error: str,
) -> DeadLetterEvent:
    """Store a failed event for later retry. Commits."""
    event = DeadLetterEvent(
        clinic_id=clinic_id,
        kind=kind,
        payload=json.dumps(payload, default=str),
        status=DeadLetterStatus.PENDING,
        attempts=0,
        max_attempts=get_settings().dead_letter_max_attempts,
        last_error=error,
    )
    db.add(event)
    db.commit()
    logger.warning("Dead-lettered %s event %s (clinic %s): %s", kind.value, event.id, clinic_id, error)
    return event


def _replay_pharmacy_submission(db: Session, payload: dict[str, Any]) -> None:
    reference = pharmacy_client.submit_prescription(payload)
    order = db.get(Order, payload.get("order_id"))
    if order is not None and reference:
        order.pharmacy_reference = reference


def _replay_payment_webhook(db: Session, payload: dict[str, Any]) -> None:
    from rxflow.services.payment_webhook_service import apply_payment_event  # local import to avoid cycles

    apply_payment_event(db, payload)


_HANDLERS = {
    DeadLetterKind.PHARMACY_SUBMISSION: _replay_pharmacy_submission,
    DeadLetterKind.PAYMENT_WEBHOOK: _replay_payment_webhook,
}


def retry_event(db: Session, event: DeadLetterEvent) -> bool:
    """
    One retry attempt. Returns True when the event succeeded. Commits the
    event's new state either way.
    """
    payload = json.loads(event.payload)
    handler = _HANDLERS[DeadLetterKind(event.kind)]
    event_id = event.id
    try:
        handler(db, payload)
        succeeded = True
        error = None
    except (AppError, SQLAlchemyError) as exc:
        db.rollback()
        succeeded = False
        error = str(exc)

    event = db.get(DeadLetterEvent, event_id)
    event.attempts = (event.attempts or 0) + 1
    event.last_attempt_at = utc_now()
    if succeeded:
        event.status = DeadLetterStatus.SUCCEEDED
        event.last_error = None
        logger.info("Dead letter %s succeeded on attempt %s", event_id, event.attempts)
    else:
        event.last_error = error
        if event.attempts >= event.max_attempts:
            event.status = DeadLetterStatus.ABANDONED
            logger.error("Dead letter %s abandoned after %s attempts: %s", event_id, event.attempts, error)
        else:
            logger.warning("Dead letter %s attempt %s failed: %s", event_id, event.attempts, error)
    db.commit()
    return succeeded


def retry_dead_letters(db: Session, *, clinic_id: int, limit: int = 100) -> dict:
    """
    Retry the clinic's PENDING events, oldest first. A failing event only
    affects its own row.
    """
    events = (
        db.query(DeadLetterEvent)
        .filter(
            DeadLetterEvent.clinic_id == clinic_id,
            DeadLetterEvent.status == DeadLetterStatus.PENDING,
        )
        .order_by(DeadLetterEvent.created_at.asc(), DeadLetterEvent.id.asc())
        .limit(limit)
        .all()
    )

    result = {"processed": 0, "succeeded": 0, "abandoned": 0, "errors": []}
    for event in events:
        event_id = event.id
        result["processed"] += 1
        if retry_event(db, event):
            result["succeeded"] += 1
            continue
        refreshed = db.get(DeadLetterEvent, event_id)
        if refreshed.status == DeadLetterStatus.ABANDONED:
            result["abandoned"] += 1
        result["errors"].append({"dead_letter_id": event_id, "error": refreshed.last_error})
    return result
