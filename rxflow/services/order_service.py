# rxflow/services/order_service.py
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from rxflow.core.errors import ConflictError, ExternalServiceError, ForbiddenError, NotFoundError, ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.dependencies.authz import ensure_clinic_access, require_provider, require_roles
from rxflow.integrations import pharmacy_client
from rxflow.models.dead_letter import DeadLetterKind
from rxflow.models.order import Order, OrderStatus
from rxflow.models.patient import Patient
from rxflow.models.refill import RefillQueue
from rxflow.models.user import RoleName
from rxflow.services import refill_service
from rxflow.services.audit_service import record_audit
from rxflow.services.dead_letter_service import enqueue_dead_letter
from rxflow.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

MIN_DECLINE_REASON_LENGTH = 10

DECLINE_ROLES = (RoleName.PROVIDER, RoleName.ADMIN, RoleName.SUPER_ADMIN)
VIEW_ROLES = (RoleName.ADMIN, RoleName.STAFF, RoleName.PROVIDER, RoleName.SUPER_ADMIN)


def get_order(db: Session, ctx: RequestContext, order_id: int) -> Order:
    require_roles(ctx, *VIEW_ROLES)
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    ensure_clinic_access(ctx, order.clinic_id, entity="Order", code="ORDER_NOT_FOUND")
    return order


def _order_terminal_conflict(db: Session, order_id: int) -> ConflictError:
    db.rollback()
    order = db.get(Order, order_id)
    db.refresh(order)
    return ConflictError(
        f"Order already {OrderStatus(order.status).value}",
        code="ORDER_TERMINAL",
        detail={"order_id": order.id, "status": OrderStatus(order.status).value},
    )


def _linked_refill(db: Session, order: Order) -> RefillQueue | None:
    if order.refill_id is None:
        return None
    return db.get(RefillQueue, order.refill_id)


def decline_order(db: Session, ctx: RequestContext, order_id: int, *, reason: str | None) -> Order:
    """
    Provider or admin declines a prescription. The refill becomes DECLINED and
    the decision is audit-logged with its reason.
    """
    require_roles(ctx, *DECLINE_ROLES)
    cleaned = (reason or "").strip()
    if len(cleaned) < MIN_DECLINE_REASON_LENGTH:
        raise ValidationError(
            "A reason for declining is required (minimum 10 characters)",
            code="DECLINE_REASON_REQUIRED",
        )

    order = get_order(db, ctx, order_id)
    if ctx.role == RoleName.PROVIDER:
        provider_id = require_provider(ctx)
        if order.assigned_provider_id not in (None, provider_id):
            raise ForbiddenError(
                "This prescription is assigned to another provider",
                code="NOT_ASSIGNED_PROVIDER",
            )

    now = utc_now()
    rows = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == OrderStatus.QUEUED_FOR_PROVIDER)
        .update(
            {
                Order.status: OrderStatus.DECLINED,
                Order.declined_reason: cleaned,
                Order.declined_by: ctx.user_id,
                Order.declined_at: now,
            },
            synchronize_session=False,
        )
    )
    if rows == 0:
        raise _order_terminal_conflict(db, order_id)

    refill = _linked_refill(db, order)
    if refill is not None:
        refill_service.decline_refill(db, ctx, refill, reason=cleaned)

    record_audit(
        db,
        ctx,
        clinic_id=order.clinic_id,
        action="ORDER_DECLINED",
        entity_type="order",
        entity_id=order.id,
        reason=cleaned,
        metadata={"refill_id": order.refill_id},
    )
    db.commit()
    logger.info("Order %s declined by user %s", order_id, ctx.user_id)
    db.refresh(order)
    return order


def _pharmacy_payload(db: Session, order: Order) -> dict:
    patient = db.get(Patient, order.patient_id)
    return {
        "order_id": order.id,
        "clinic_id": order.clinic_id,
        "patient_id": order.patient_id,
        "patient_name": f"{patient.first_name} {patient.last_name}".strip() if patient else None,
        "patient_state": patient.state if patient else None,
        "medication_name": order.medication_name,
        "provider_id": order.assigned_provider_id,
    }


def complete_order(db: Session, ctx: RequestContext, order_id: int) -> Order:
    """
    The assigned provider signs off. The refill completes, the next refill is
    scheduled, and the prescription goes to the pharmacy. A pharmacy failure
    is queued for retry; the order stays completed.
    """
    provider_id = require_provider(ctx)
    order = get_order(db, ctx, order_id)
    if order.assigned_provider_id != provider_id:
        raise ForbiddenError(
            "Only the assigned provider can complete this prescription",
            code="NOT_ASSIGNED_PROVIDER",
        )

    rows = (
        db.query(Order)
        .filter(
            Order.id == order.id,
            Order.status == OrderStatus.QUEUED_FOR_PROVIDER,
            Order.assigned_provider_id == provider_id,
        )
        .update(
            {
                Order.status: OrderStatus.COMPLETED,
                Order.completed_by: ctx.user_id,
                Order.completed_at: utc_now(),
            },
            synchronize_session=False,
        )
    )
    if rows == 0:
        raise _order_terminal_conflict(db, order_id)

    next_refill = None
    refill = _linked_refill(db, order)
    if refill is not None:
        next_refill = refill_service.complete_refill(db, ctx, refill)

    record_audit(
        db,
        ctx,
        clinic_id=order.clinic_id,
        action="ORDER_COMPLETED",
        entity_type="order",
        entity_id=order.id,
        metadata={
            "refill_id": order.refill_id,
            "next_refill_id": next_refill.id if next_refill else None,
        },
    )
    db.commit()
    logger.info("Order %s completed by provider %s", order_id, provider_id)

    db.refresh(order)
    _submit_to_pharmacy(db, order)
    db.refresh(order)
    return order


def _submit_to_pharmacy(db: Session, order: Order) -> None:
    if not pharmacy_client.is_configured():
        return
    payload = _pharmacy_payload(db, order)
    try:
        reference = pharmacy_client.submit_prescription(payload)
    except ExternalServiceError as exc:
        enqueue_dead_letter(
            db,
            kind=DeadLetterKind.PHARMACY_SUBMISSION,
            payload=payload,
            clinic_id=order.clinic_id,
            error=str(exc.detail or exc.message),
        )
        return
    if reference:
        order.pharmacy_reference = reference
        db.commit()
