# rxflow/services/payment_webhook_service.py
"""
Ingestion of already-verified payment events from the billing provider.

Events are deduplicated by their id through the idempotency ledger. An
event that fails to apply is stored in the dead-letter queue and
acknowledged with 202 so the sender does not keep redelivering it.
"""
from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxflow.core.config import get_settings
from rxflow.core.errors import AppError, ForbiddenError, NotFoundError, ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.models.dead_letter import DeadLetterKind
from rxflow.models.subscription import Subscription
from rxflow.services import subscription_service
from rxflow.services.dead_letter_service import enqueue_dead_letter
from rxflow.services.idempotency_service import request_fingerprint, with_idempotency
from rxflow.utils.datetime_utils import parse_iso_string

logger = logging.getLogger(__name__)

RESOURCE = "payment_webhook"
WEBHOOK_PATH = "/webhooks/payments"

INVOICE_PAID = "invoice.paid"
SUBSCRIPTION_CANCELED = "subscription.canceled"
SUBSCRIPTION_PAUSED = "subscription.paused"
SUBSCRIPTION_RESUMED = "subscription.resumed"

HANDLED_EVENT_TYPES = (INVOICE_PAID, SUBSCRIPTION_CANCELED, SUBSCRIPTION_PAUSED, SUBSCRIPTION_RESUMED)


def verify_webhook_secret(provided: str | None) -> None:
    expected = get_settings().payment_webhook_secret
    if not provided or not hmac.compare_digest(provided, expected):
        raise ForbiddenError("Invalid webhook secret", code="INVALID_WEBHOOK_SECRET")


def _subscription_id(payload: dict[str, Any]) -> int:
    data = payload.get("data") or {}
    try:
        return int(data["subscription_id"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Event is missing data.subscription_id", code="INVALID_EVENT") from None


def _paid_at(data: dict[str, Any]) -> datetime | None:
    raw = data.get("paid_at")
    if not raw:
        return None
    try:
        return parse_iso_string(str(raw))
    except ValueError:
        raise ValidationError("Invalid paid_at", code="INVALID_EVENT", detail={"paid_at": raw}) from None


def apply_payment_event(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Apply one event to the subscription ledger. Raises on failure; the
    caller decides whether to dead-letter it.
    """
    event_type = payload.get("type")
    if event_type not in HANDLED_EVENT_TYPES:
        return {"status": "ignored", "type": event_type}

    subscription_id = _subscription_id(payload)
    subscription = db.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
    ctx = RequestContext.system(subscription.clinic_id)
    data = payload.get("data") or {}

    if event_type == INVOICE_PAID:
        paid_at = _paid_at(data)
        _, refill = subscription_service.record_renewal_payment(
            db,
            ctx,
            subscription_id,
            payment_reference=data.get("payment_reference") or payload.get("id"),
            payment_method=data.get("payment_method"),
            paid_at=paid_at,
        )
        return {"status": "processed", "type": event_type, "refill_id": refill.id if refill else None}

    reason = data.get("reason")
    if event_type == SUBSCRIPTION_CANCELED:
        subscription_service.cancel_subscription(db, ctx, subscription_id, reason=reason)
    elif event_type == SUBSCRIPTION_PAUSED:
        subscription_service.pause_subscription(db, ctx, subscription_id, reason=reason)
    else:
        subscription_service.resume_subscription(db, ctx, subscription_id)
    return {"status": "processed", "type": event_type}


def handle_payment_webhook(db: Session, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    """
    Entry point for POST /webhooks/payments. Returns (status, body).
    """
    event_id = payload.get("id")
    if not event_id:
        raise ValidationError("Event id is required", code="INVALID_EVENT")

    clinic_id = None
    data = payload.get("data") or {}
    if data.get("subscription_id") is not None:
        try:
            subscription = db.get(Subscription, int(data["subscription_id"]))
        except (TypeError, ValueError):
            subscription = None
        clinic_id = subscription.clinic_id if subscription else None

    def _process() -> tuple[int, dict[str, Any]]:
        try:
            result = apply_payment_event(db, payload)
        except (AppError, SQLAlchemyError) as exc:
            db.rollback()
            message = exc.message if isinstance(exc, AppError) else str(exc)
            dead_letter = enqueue_dead_letter(
                db,
                kind=DeadLetterKind.PAYMENT_WEBHOOK,
                payload=payload,
                clinic_id=clinic_id,
                error=message,
            )
            return 202, {"status": "queued_for_retry", "event_id": event_id, "dead_letter_id": dead_letter.id}
        logger.info("Payment event %s (%s) -> %s", event_id, payload.get("type"), result["status"])
        return 200, {"event_id": event_id, **result}

    return with_idempotency(
        db,
        key=str(event_id),
        resource=RESOURCE,
        ctx=RequestContext.system(clinic_id),
        fingerprint=request_fingerprint("POST", WEBHOOK_PATH, {"type": payload.get("type"), "data": data}),
        clinic_id=clinic_id,
        fn=_process,
    )
