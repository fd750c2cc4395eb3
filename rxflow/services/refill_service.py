# rxflow/services/refill_service.py
"""
Refill queue operations.

Public functions that take a RequestContext enforce clinic access and
commit. Functions documented as "does not commit" are building blocks for
other services (orders, subscriptions, routing) that own the transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxflow.core.errors import NotFoundError, ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.dependencies.authz import ADMIN_ROLES, ensure_clinic_access, require_roles
from rxflow.models.clinic import Clinic
from rxflow.models.order import Order, OrderStatus
from rxflow.models.refill import RefillQueue, RefillStatus
from rxflow.models.subscription import Subscription, SubscriptionStatus
from rxflow.services import refill_state
from rxflow.services.audit_service import record_audit
from rxflow.services.shipment_schedule import (
    refill_interval_days,
    shipment_dates,
    shipments_needed,
)
from rxflow.utils.datetime_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

ENTITY = "refill"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _ensure_valid_id(refill_id: int) -> None:
    if not isinstance(refill_id, int) or isinstance(refill_id, bool) or refill_id <= 0:
        raise ValidationError("Refill id must be a positive integer", code="INVALID_ID")


def get_refill(db: Session, ctx: RequestContext, refill_id: int) -> RefillQueue:
    """
    Fetch one entry. Missing and other-clinic entries are both 404.
    """
    _ensure_valid_id(refill_id)
    refill = db.get(RefillQueue, refill_id)
    if refill is None:
        raise NotFoundError("Refill not found", code="REFILL_NOT_FOUND")
    ensure_clinic_access(ctx, refill.clinic_id, entity="Refill", code="REFILL_NOT_FOUND")
    return refill


def reload_refill(db: Session, refill_id: int) -> RefillQueue | None:
    refill = db.get(RefillQueue, refill_id)
    if refill is not None:
        db.refresh(refill)
    return refill


def _transition_or_raise(
    db: Session,
    refill: RefillQueue,
    target: RefillStatus,
    values: dict | None = None,
    **kwargs,
) -> None:
    """
    Conditional transition; on a miss, raise the error describing the
    entry's current state. Does not commit.
    """
    if refill_state.is_terminal(refill.status):
        raise refill_state.terminal_conflict(refill)
    rows = refill_state.apply_transition(db, refill.id, target, values, **kwargs)
    if rows == 0:
        db.rollback()
        raise refill_state.explain_rejection(reload_refill(db, refill.id), target)


def list_refills(
    db: Session,
    ctx: RequestContext,
    *,
    clinic_id: int,
    status: RefillStatus | None = None,
    patient_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[RefillQueue]:
    ensure_clinic_access(ctx, clinic_id, entity="Clinic", code="CLINIC_NOT_FOUND")
    query = db.query(RefillQueue).filter(RefillQueue.clinic_id == clinic_id)
    if status is not None:
        query = query.filter(RefillQueue.status == status)
    if patient_id is not None:
        query = query.filter(RefillQueue.patient_id == patient_id)
    return (
        query.order_by(RefillQueue.next_refill_date.asc(), RefillQueue.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_series(db: Session, ctx: RequestContext, refill_id: int) -> list[RefillQueue]:
    """
    All shipments of the series `refill_id` belongs to, by shipment number.
    """
    refill = get_refill(db, ctx, refill_id)
    parent_id = refill.parent_refill_id or refill.id
    return (
        db.query(RefillQueue)
        .filter(
            RefillQueue.clinic_id == refill.clinic_id,
            (RefillQueue.id == parent_id) | (RefillQueue.parent_refill_id == parent_id),
        )
        .order_by(RefillQueue.shipment_number.asc(), RefillQueue.id.asc())
        .all()
    )


def get_refill_queue_stats(db: Session, ctx: RequestContext, *, clinic_id: int) -> dict[str, int]:
    """
    Count of entries per status for one clinic; every status is present.
    """
    ensure_clinic_access(ctx, clinic_id, entity="Clinic", code="CLINIC_NOT_FOUND")
    rows = (
        db.query(RefillQueue.status, func.count(RefillQueue.id))
        .filter(RefillQueue.clinic_id == clinic_id)
        .group_by(RefillQueue.status)
        .all()
    )
    stats = {status.value: 0 for status in RefillStatus}
    for status, count in rows:
        stats[RefillStatus(status).value] = count
    stats["total"] = sum(count for _, count in rows)
    return stats


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

def clinic_bud_days(db: Session, clinic_id: int) -> int | None:
    clinic = db.get(Clinic, clinic_id)
    return clinic.default_bud_days if clinic else None


def schedule_refill(
    db: Session,
    *,
    clinic_id: int,
    patient_id: int,
    subscription_id: int | None = None,
    medication_name: str | None = None,
    plan_name: str | None = None,
    vial_count: int = 1,
    next_refill_date: datetime | None = None,
    payment_verified: bool = False,
) -> RefillQueue:
    """
    Add a single entry. Future dates start SCHEDULED; due dates start in the
    payment stage (or PENDING_ADMIN when the payment is already verified).
    Does not commit.
    """
    now = utc_now()
    due = as_utc(next_refill_date) if next_refill_date else now
    if payment_verified:
        status = RefillStatus.PENDING_ADMIN
    elif due > now:
        status = RefillStatus.SCHEDULED
    else:
        status = RefillStatus.PENDING_PAYMENT

    refill = RefillQueue(
        clinic_id=clinic_id,
        patient_id=patient_id,
        subscription_id=subscription_id,
        medication_name=medication_name,
        plan_name=plan_name,
        vial_count=vial_count,
        refill_interval_days=refill_interval_days(vial_count),
        next_refill_date=due,
        status=status,
        payment_verified=payment_verified,
        payment_verified_at=now if payment_verified else None,
    )
    db.add(refill)
    db.flush()
    logger.info(
        "Scheduled refill %s for patient %s (clinic %s) status=%s",
        refill.id,
        patient_id,
        clinic_id,
        status.value,
    )
    return refill


def schedule_shipment_series(
    db: Session,
    *,
    clinic_id: int,
    patient_id: int,
    package_months: int,
    subscription_id: int | None = None,
    medication_name: str | None = None,
    plan_name: str | None = None,
    vial_count: int = 1,
    start_date: datetime | None = None,
    bud_days: int | None = None,
    payment_verified: bool = False,
) -> list[RefillQueue]:
    """
    Split a package into shipments. The first shipment is immediately due and
    is the parent of the others, which stay SCHEDULED until their date.
    Does not commit.
    """
    bud = bud_days or clinic_bud_days(db, clinic_id)
    count = shipments_needed(package_months, bud)
    start = as_utc(start_date) if start_date else utc_now()
    dates = shipment_dates(start, count, bud)
    interval = refill_interval_days(vial_count)

    first = RefillQueue(
        clinic_id=clinic_id,
        patient_id=patient_id,
        subscription_id=subscription_id,
        medication_name=medication_name,
        plan_name=plan_name,
        vial_count=vial_count,
        refill_interval_days=interval,
        next_refill_date=dates[0],
        status=RefillStatus.PENDING_ADMIN if payment_verified else RefillStatus.PENDING_PAYMENT,
        payment_verified=payment_verified,
        payment_verified_at=utc_now() if payment_verified else None,
        shipment_number=1,
        total_shipments=count,
        bud_days=bud,
        parent_refill_id=None,
    )
    db.add(first)
    db.flush()

    series = [first]
    for number, ship_date in enumerate(dates[1:], start=2):
        entry = RefillQueue(
            clinic_id=clinic_id,
            patient_id=patient_id,
            subscription_id=subscription_id,
            medication_name=medication_name,
            plan_name=plan_name,
            vial_count=vial_count,
            refill_interval_days=interval,
            next_refill_date=ship_date,
            status=RefillStatus.SCHEDULED,
            payment_verified=payment_verified,
            shipment_number=number,
            total_shipments=count,
            bud_days=bud,
            parent_refill_id=first.id,
        )
        db.add(entry)
        series.append(entry)
    db.flush()

    logger.info(
        "Scheduled %s-shipment series %s for patient %s (clinic %s)",
        count,
        first.id,
        patient_id,
        clinic_id,
    )
    return series


def process_due_refills(db: Session, *, clinic_id: int, now: datetime | None = None) -> dict:
    """
    Move SCHEDULED entries whose date has come to the payment stage.

    Entries already paid for (later shipments of a prepaid series) skip
    straight to PENDING_ADMIN. One failing entry does not stop the rest.
    Returns {"processed": n, "errors": [...]}.
    """
    cutoff = now or utc_now()
    due_ids = [
        row.id
        for row in db.query(RefillQueue.id)
        .filter(
            RefillQueue.clinic_id == clinic_id,
            RefillQueue.status == RefillStatus.SCHEDULED,
            RefillQueue.next_refill_date <= cutoff,
        )
        .order_by(RefillQueue.next_refill_date.asc(), RefillQueue.id.asc())
        .all()
    ]

    processed = 0
    errors: list[dict] = []
    for refill_id in due_ids:
        try:
            rows = refill_state.apply_transition(
                db,
                refill_id,
                RefillStatus.PENDING_PAYMENT,
                allowed_from=[RefillStatus.SCHEDULED],
                extra_criteria=(RefillQueue.payment_verified.is_(False),),
            )
            if rows == 0:
                rows = refill_state.apply_transition(
                    db,
                    refill_id,
                    RefillStatus.PENDING_ADMIN,
                    allowed_from=[RefillStatus.SCHEDULED],
                    extra_criteria=(RefillQueue.payment_verified.is_(True),),
                )
            db.commit()
            processed += rows
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to process due refill %s: %s", refill_id, exc, exc_info=True)
            errors.append({"refill_id": refill_id, "error": str(exc)})

    if due_ids:
        logger.info(
            "Processed %s due refills for clinic %s (%s errors)",
            processed,
            clinic_id,
            len(errors),
        )
    return {"processed": processed, "errors": errors}


# ---------------------------------------------------------------------------
# Payment & admin gate
# ---------------------------------------------------------------------------

def verify_payment(
    db: Session,
    ctx: RequestContext,
    refill_id: int,
    *,
    payment_method: str | None = None,
    payment_reference: str | None = None,
) -> RefillQueue:
    """PENDING_PAYMENT -> PENDING_ADMIN, marking the payment verified."""
    refill = get_refill(db, ctx, refill_id)
    now = utc_now()
    _transition_or_raise(
        db,
        refill,
        RefillStatus.PENDING_ADMIN,
        {
            "payment_verified": True,
            "payment_method": payment_method,
            "payment_reference": payment_reference,
            "payment_verified_at": now,
            "payment_verified_by": ctx.user_id,
        },
        allowed_from=[RefillStatus.PENDING_PAYMENT],
    )
    record_audit(
        db,
        ctx,
        clinic_id=refill.clinic_id,
        action="REFILL_PAYMENT_VERIFIED",
        entity_type=ENTITY,
        entity_id=refill.id,
        metadata={"payment_method": payment_method, "payment_reference": payment_reference},
    )
    db.commit()
    logger.info("Payment verified for refill %s by user %s", refill_id, ctx.user_id)
    return reload_refill(db, refill_id)


def _check_approvable(refill: RefillQueue) -> None:
    """
    Approval preconditions in precedence order. Raises on the first miss.
    """
    if refill_state.is_terminal(refill.status):
        raise refill_state.terminal_conflict(refill)
    if refill.admin_approved:
        raise ValidationError(
            "Refill already approved",
            code="ALREADY_APPROVED",
            detail={"refill_id": refill.id, "status": RefillStatus(refill.status).value},
        )
    if RefillStatus(refill.status) != RefillStatus.PENDING_ADMIN:
        raise ValidationError(
            f"Refill must be PENDING_ADMIN to approve (current: {RefillStatus(refill.status).value})",
            code="INVALID_STATUS",
            detail={"refill_id": refill.id, "status": RefillStatus(refill.status).value},
        )
    if not refill.payment_verified:
        raise ValidationError(
            "Payment must be verified before approval",
            code="PAYMENT_NOT_VERIFIED",
            detail={"refill_id": refill.id},
        )


def approve_refill(
    db: Session,
    ctx: RequestContext,
    refill_id: int,
    *,
    notes: str | None = None,
) -> RefillQueue:
    """
    Admin approval gate: PENDING_ADMIN with verified payment -> APPROVED.

    Creates the provider-facing Order and, when the clinic routes
    automatically on approval, assigns it right away.
    """
    require_roles(ctx, *ADMIN_ROLES)
    _ensure_valid_id(refill_id)

    refill = db.get(RefillQueue, refill_id)
    if refill is None:
        raise NotFoundError("Refill not found", code="REFILL_NOT_FOUND")
    ensure_clinic_access(ctx, refill.clinic_id, entity="Refill", code="REFILL_NOT_FOUND")
    _check_approvable(refill)

    now = utc_now()
    rows = refill_state.apply_transition(
        db,
        refill.id,
        RefillStatus.APPROVED,
        {
            "admin_approved_at": now,
            "admin_approved_by": ctx.user_id,
            "admin_notes": notes,
            "provider_queued_at": now,
        },
        allowed_from=[RefillStatus.PENDING_ADMIN],
        extra_criteria=(
            RefillQueue.payment_verified.is_(True),
            RefillQueue.admin_approved_at.is_(None),
        ),
    )
    if rows == 0:
        # Lost a race: report what the winner left behind.
        db.rollback()
        current = reload_refill(db, refill_id)
        _check_approvable(current)
        raise refill_state.explain_rejection(current, RefillStatus.APPROVED)

    order = Order(
        clinic_id=refill.clinic_id,
        patient_id=refill.patient_id,
        refill_id=refill.id,
        medication_name=refill.medication_name,
        status=OrderStatus.QUEUED_FOR_PROVIDER,
    )
    db.add(order)
    db.flush()
    db.query(RefillQueue).filter(RefillQueue.id == refill.id).update(
        {RefillQueue.order_id: order.id}, synchronize_session=False
    )
    record_audit(
        db,
        ctx,
        clinic_id=refill.clinic_id,
        action="REFILL_APPROVED",
        entity_type=ENTITY,
        entity_id=refill.id,
        reason=notes,
        metadata={"order_id": order.id},
    )
    db.commit()
    logger.info("Refill %s approved by user %s; order %s queued", refill_id, ctx.user_id, order.id)

    from rxflow.services.routing_service import auto_assign_on_approval  # local import to avoid cycles

    auto_assign_on_approval(db, clinic_id=refill.clinic_id, order_id=order.id)
    return reload_refill(db, refill_id)


def reject_refill(db: Session, ctx: RequestContext, refill_id: int, *, reason: str) -> RefillQueue:
    """Admin rejection at the approval gate: PENDING_ADMIN -> DECLINED."""
    require_roles(ctx, *ADMIN_ROLES)
    refill = get_refill(db, ctx, refill_id)
    _transition_or_raise(
        db,
        refill,
        RefillStatus.DECLINED,
        {"status_reason": reason, "admin_notes": reason},
        allowed_from=[RefillStatus.PENDING_ADMIN],
    )
    record_audit(
        db,
        ctx,
        clinic_id=refill.clinic_id,
        action="REFILL_REJECTED",
        entity_type=ENTITY,
        entity_id=refill.id,
        reason=reason,
    )
    db.commit()
    logger.info("Refill %s rejected by user %s", refill_id, ctx.user_id)
    return reload_refill(db, refill_id)


# ---------------------------------------------------------------------------
# Provider stage (driven by orders and routing; callers own the transaction)
# ---------------------------------------------------------------------------

def mark_pending_provider(db: Session, refill_id: int) -> int:
    """APPROVED -> PENDING_PROVIDER once an order has a provider. Does not commit."""
    return refill_state.apply_transition(
        db,
        refill_id,
        RefillStatus.PENDING_PROVIDER,
        {"provider_queued_at": utc_now()},
        allowed_from=[RefillStatus.APPROVED],
    )


def complete_refill(db: Session, ctx: RequestContext, refill: RefillQueue) -> RefillQueue | None:
    """
    PENDING_PROVIDER -> COMPLETED. Schedules the next refill when the
    subscription is still ACTIVE and no later shipment of the series is
    pending. Returns the new entry, if any. Does not commit.
    """
    _transition_or_raise(
        db,
        refill,
        RefillStatus.COMPLETED,
        {"completed_at": utc_now()},
        allowed_from=[RefillStatus.PENDING_PROVIDER],
    )
    return _schedule_next_refill(db, refill)


def _schedule_next_refill(db: Session, refill: RefillQueue) -> RefillQueue | None:
    if refill.subscription_id is None:
        return None
    subscription = db.get(Subscription, refill.subscription_id)
    if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
        return None
    if refill.total_shipments and (refill.shipment_number or 1) < refill.total_shipments:
        return None

    base = as_utc(refill.next_refill_date) if refill.next_refill_date else utc_now()
    next_date = max(base, utc_now()) + timedelta(days=refill.refill_interval_days or 30)
    return schedule_refill(
        db,
        clinic_id=refill.clinic_id,
        patient_id=refill.patient_id,
        subscription_id=refill.subscription_id,
        medication_name=refill.medication_name,
        plan_name=refill.plan_name,
        vial_count=refill.vial_count,
        next_refill_date=next_date,
    )


def decline_refill(db: Session, ctx: RequestContext, refill: RefillQueue, *, reason: str) -> None:
    """Any non-terminal status -> DECLINED. Does not commit."""
    _transition_or_raise(
        db,
        refill,
        RefillStatus.DECLINED,
        {"status_reason": reason},
    )


# ---------------------------------------------------------------------------
# Cancel / hold / resume
# ---------------------------------------------------------------------------

def _cancel_open_order(db: Session, refill: RefillQueue) -> None:
    if refill.order_id is None:
        return
    db.query(Order).filter(
        Order.id == refill.order_id,
        Order.status == OrderStatus.QUEUED_FOR_PROVIDER,
    ).update({Order.status: OrderStatus.CANCELLED}, synchronize_session=False)


def cancel_refill(db: Session, ctx: RequestContext, refill_id: int, *, reason: str | None = None) -> RefillQueue:
    require_roles(ctx, *ADMIN_ROLES)
    refill = get_refill(db, ctx, refill_id)
    _transition_or_raise(
        db,
        refill,
        RefillStatus.CANCELLED,
        {"status_reason": reason, "cancelled_at": utc_now()},
    )
    _cancel_open_order(db, refill)
    record_audit(
        db,
        ctx,
        clinic_id=refill.clinic_id,
        action="REFILL_CANCELLED",
        entity_type=ENTITY,
        entity_id=refill.id,
        reason=reason,
    )
    db.commit()
    logger.info("Refill %s cancelled by user %s", refill_id, ctx.user_id)
    return reload_refill(db, refill_id)


def hold_refill(db: Session, ctx: RequestContext, refill_id: int, *, reason: str | None = None) -> RefillQueue:
    require_roles(ctx, *ADMIN_ROLES)
    refill = get_refill(db, ctx, refill_id)
    _transition_or_raise(db, refill, RefillStatus.ON_HOLD, {"status_reason": reason})
    record_audit(
        db,
        ctx,
        clinic_id=refill.clinic_id,
        action="REFILL_ON_HOLD",
        entity_type=ENTITY,
        entity_id=refill.id,
        reason=reason,
    )
    db.commit()
    logger.info("Refill %s put on hold by user %s", refill_id, ctx.user_id)
    return reload_refill(db, refill_id)


def resume_target(db: Session, refill: RefillQueue, now: datetime | None = None) -> RefillStatus:
    """
    Stage an ON_HOLD entry returns to, derived from what has already happened
    to it rather than from a remembered previous status.
    """
    if refill.order_id is not None:
        order = db.get(Order, refill.order_id)
        if order is not None and order.assigned_provider_id is not None:
            return RefillStatus.PENDING_PROVIDER
    if refill.admin_approved:
        return RefillStatus.APPROVED
    if refill.payment_verified:
        if refill.next_refill_date and as_utc(refill.next_refill_date) > (now or utc_now()):
            return RefillStatus.SCHEDULED
        return RefillStatus.PENDING_ADMIN
    if refill.next_refill_date and as_utc(refill.next_refill_date) > (now or utc_now()):
        return RefillStatus.SCHEDULED
    return RefillStatus.PENDING_PAYMENT


def resume_refill(db: Session, ctx: RequestContext, refill_id: int) -> RefillQueue:
    require_roles(ctx, *ADMIN_ROLES)
    refill = get_refill(db, ctx, refill_id)
    target = resume_target(db, refill)
    _transition_or_raise(
        db,
        refill,
        target,
        {"status_reason": None},
        allowed_from=[RefillStatus.ON_HOLD],
    )
    record_audit(
        db,
        ctx,
        clinic_id=refill.clinic_id,
        action="REFILL_RESUMED",
        entity_type=ENTITY,
        entity_id=refill.id,
        metadata={"resumed_to": target.value},
    )
    db.commit()
    logger.info("Refill %s resumed to %s by user %s", refill_id, target.value, ctx.user_id)
    return reload_refill(db, refill_id)


# ---------------------------------------------------------------------------
# Subscription-driven bulk changes (callers own the transaction)
# ---------------------------------------------------------------------------

def _open_refill_ids(db: Session, subscription_id: int, statuses) -> list[int]:
    return [
        row.id
        for row in db.query(RefillQueue.id)
        .filter(
            RefillQueue.subscription_id == subscription_id,
            RefillQueue.status.in_(list(statuses)),
        )
        .all()
    ]


def hold_subscription_refills(db: Session, subscription_id: int, *, reason: str) -> int:
    """Put every open refill of a subscription ON_HOLD. Does not commit."""
    open_statuses = refill_state.ACTIVE_STATUSES | {RefillStatus.SCHEDULED}
    held = 0
    for refill_id in _open_refill_ids(db, subscription_id, open_statuses):
        held += refill_state.apply_transition(db, refill_id, RefillStatus.ON_HOLD, {"status_reason": reason})
    return held


def resume_subscription_refills(db: Session, subscription_id: int) -> int:
    """Return held refills of a subscription to their stage. Does not commit."""
    resumed = 0
    for refill_id in _open_refill_ids(db, subscription_id, [RefillStatus.ON_HOLD]):
        refill = db.get(RefillQueue, refill_id)
        target = resume_target(db, refill)
        resumed += refill_state.apply_transition(
            db,
            refill_id,
            target,
            {"status_reason": None},
            allowed_from=[RefillStatus.ON_HOLD],
        )
    return resumed


def cancel_subscription_refills(db: Session, subscription_id: int, *, reason: str) -> int:
    """Cancel every non-terminal refill of a subscription. Does not commit."""
    non_terminal = set(RefillStatus) - refill_state.TERMINAL_STATUSES
    cancelled = 0
    now = utc_now()
    for refill_id in _open_refill_ids(db, subscription_id, non_terminal):
        rows = refill_state.apply_transition(
            db,
            refill_id,
            RefillStatus.CANCELLED,
            {"status_reason": reason, "cancelled_at": now},
        )
        if rows:
            refill = db.get(RefillQueue, refill_id)
            _cancel_open_order(db, refill)
        cancelled += rows
    return cancelled
