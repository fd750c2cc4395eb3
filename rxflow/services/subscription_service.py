# rxflow/services/subscription_service.py
"""
Subscription ledger: recurring billing per patient and the refills it drives.

Status changes are conditional updates so that a webhook and an admin acting
on the same subscription cannot interleave into an invalid state. The
next_billing_date column is cleared whenever the status leaves ACTIVE.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from rxflow.core.errors import ConflictError, NotFoundError, ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.dependencies.authz import ADMIN_ROLES, ensure_clinic_access, require_roles
from rxflow.models.patient import Patient
from rxflow.models.refill import RefillQueue, RefillStatus
from rxflow.models.subscription import Subscription, SubscriptionStatus
from rxflow.services import refill_service, refill_state
from rxflow.services.audit_service import record_audit
from rxflow.services.shipment_schedule import refill_interval_days, shipments_needed
from rxflow.utils.datetime_utils import add_months, as_utc, utc_now

logger = logging.getLogger(__name__)

ENTITY = "subscription"


def _period_end(subscription: Subscription, start: datetime) -> datetime:
    if subscription.package_months:
        return add_months(start, subscription.package_months)
    return start + timedelta(days=refill_interval_days(subscription.vial_count))


def get_subscription(db: Session, ctx: RequestContext, subscription_id: int) -> Subscription:
    subscription = db.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
    ensure_clinic_access(ctx, subscription.clinic_id, entity="Subscription", code="SUBSCRIPTION_NOT_FOUND")
    return subscription


def _schedule_initial_refills(
    db: Session,
    subscription: Subscription,
    start: datetime,
    payment_verified: bool,
) -> list[RefillQueue]:
    common = dict(
        clinic_id=subscription.clinic_id,
        patient_id=subscription.patient_id,
        subscription_id=subscription.id,
        medication_name=subscription.medication_name,
        plan_name=subscription.plan_name,
        vial_count=subscription.vial_count,
        payment_verified=payment_verified,
    )
    bud_days = refill_service.clinic_bud_days(db, subscription.clinic_id)
    if subscription.package_months and shipments_needed(subscription.package_months, bud_days) > 1:
        return refill_service.schedule_shipment_series(
            db,
            package_months=subscription.package_months,
            start_date=start,
            bud_days=bud_days,
            **common,
        )
    return [refill_service.schedule_refill(db, next_refill_date=start, **common)]


def create_subscription(
    db: Session,
    ctx: RequestContext,
    *,
    clinic_id: int,
    patient_id: int,
    plan_name: str | None = None,
    medication_name: str | None = None,
    vial_count: int = 1,
    package_months: int | None = None,
    start_date: datetime | None = None,
    payment_verified: bool = False,
) -> tuple[Subscription, list[RefillQueue]]:
    """
    Open an ACTIVE subscription and queue its first refill (or shipment
    series when the package outlasts the medication's beyond-use date).
    """
    require_roles(ctx, *ADMIN_ROLES)
    ensure_clinic_access(ctx, clinic_id, entity="Clinic", code="CLINIC_NOT_FOUND")
    if vial_count <= 0:
        raise ValidationError("vial_count must be positive", code="INVALID_VIAL_COUNT")
    if package_months is not None and package_months <= 0:
        raise ValidationError("package_months must be positive", code="INVALID_PACKAGE_MONTHS")

    patient = db.get(Patient, patient_id)
    if patient is None or patient.clinic_id != clinic_id:
        raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")

    start = as_utc(start_date) if start_date else utc_now()
    subscription = Subscription(
        clinic_id=clinic_id,
        patient_id=patient_id,
        status=SubscriptionStatus.ACTIVE,
        plan_name=plan_name,
        medication_name=medication_name,
        vial_count=vial_count,
        package_months=package_months,
        current_period_start=start,
    )
    end = _period_end(subscription, start)
    subscription.current_period_end = end
    subscription.next_billing_date = end
    db.add(subscription)
    db.flush()

    refills = _schedule_initial_refills(db, subscription, start, payment_verified)
    record_audit(
        db,
        ctx,
        clinic_id=clinic_id,
        action="SUBSCRIPTION_CREATED",
        entity_type=ENTITY,
        entity_id=subscription.id,
        metadata={"refill_ids": [r.id for r in refills]},
    )
    db.commit()
    logger.info(
        "Subscription %s created for patient %s (clinic %s) with %s refill(s)",
        subscription.id,
        patient_id,
        clinic_id,
        len(refills),
    )
    db.refresh(subscription)
    return subscription, refills


def _status_error(subscription: Subscription | None, action: str) -> Exception:
    if subscription is None:
        return NotFoundError("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
    status = SubscriptionStatus(subscription.status)
    if status == SubscriptionStatus.CANCELED:
        return ConflictError("Subscription already canceled", code="SUBSCRIPTION_CANCELED")
    return ValidationError(
        f"Cannot {action} a subscription that is {status.value}",
        code="INVALID_STATUS",
        detail={"subscription_id": subscription.id, "status": status.value},
    )


def _conditional_update(
    db: Session,
    subscription_id: int,
    allowed_from: list[SubscriptionStatus],
    values: dict,
) -> int:
    return (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id, Subscription.status.in_(allowed_from))
        .update({getattr(Subscription, k): v for k, v in values.items()}, synchronize_session=False)
    )


def _reload(db: Session, subscription_id: int) -> Subscription | None:
    subscription = db.get(Subscription, subscription_id)
    if subscription is not None:
        db.refresh(subscription)
    return subscription


def pause_subscription(
    db: Session,
    ctx: RequestContext,
    subscription_id: int,
    *,
    reason: str | None = None,
) -> Subscription:
    """ACTIVE -> PAUSED; open refills go ON_HOLD."""
    require_roles(ctx, *ADMIN_ROLES)
    subscription = get_subscription(db, ctx, subscription_id)
    rows = _conditional_update(
        db,
        subscription.id,
        [SubscriptionStatus.ACTIVE],
        {"status": SubscriptionStatus.PAUSED, "next_billing_date": None, "paused_at": utc_now()},
    )
    if rows == 0:
        db.rollback()
        raise _status_error(_reload(db, subscription_id), "pause")

    held = refill_service.hold_subscription_refills(db, subscription.id, reason=reason or "Subscription paused")
    record_audit(
        db,
        ctx,
        clinic_id=subscription.clinic_id,
        action="SUBSCRIPTION_PAUSED",
        entity_type=ENTITY,
        entity_id=subscription.id,
        reason=reason,
        metadata={"refills_held": held},
    )
    db.commit()
    logger.info("Subscription %s paused by %s; %s refill(s) held", subscription_id, ctx.user_id, held)
    return _reload(db, subscription_id)


def resume_subscription(db: Session, ctx: RequestContext, subscription_id: int) -> Subscription:
    """PAUSED -> ACTIVE with a fresh billing date; held refills resume."""
    require_roles(ctx, *ADMIN_ROLES)
    subscription = get_subscription(db, ctx, subscription_id)
    now = utc_now()
    end = _period_end(subscription, now)
    rows = _conditional_update(
        db,
        subscription.id,
        [SubscriptionStatus.PAUSED],
        {
            "status": SubscriptionStatus.ACTIVE,
            "paused_at": None,
            "current_period_start": now,
            "current_period_end": end,
            "next_billing_date": end,
        },
    )
    if rows == 0:
        db.rollback()
        raise _status_error(_reload(db, subscription_id), "resume")

    resumed = refill_service.resume_subscription_refills(db, subscription.id)
    record_audit(
        db,
        ctx,
        clinic_id=subscription.clinic_id,
        action="SUBSCRIPTION_RESUMED",
        entity_type=ENTITY,
        entity_id=subscription.id,
        metadata={"refills_resumed": resumed},
    )
    db.commit()
    logger.info("Subscription %s resumed by %s; %s refill(s) resumed", subscription_id, ctx.user_id, resumed)
    return _reload(db, subscription_id)


def cancel_subscription(
    db: Session,
    ctx: RequestContext,
    subscription_id: int,
    *,
    reason: str | None = None,
) -> Subscription:
    """ACTIVE/PAUSED -> CANCELED (terminal); every open refill is cancelled."""
    require_roles(ctx, *ADMIN_ROLES)
    subscription = get_subscription(db, ctx, subscription_id)
    rows = _conditional_update(
        db,
        subscription.id,
        [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED],
        {
            "status": SubscriptionStatus.CANCELED,
            "next_billing_date": None,
            "canceled_at": utc_now(),
            "cancel_reason": reason,
        },
    )
    if rows == 0:
        db.rollback()
        raise _status_error(_reload(db, subscription_id), "cancel")

    cancelled = refill_service.cancel_subscription_refills(
        db, subscription.id, reason=reason or "Subscription canceled"
    )
    record_audit(
        db,
        ctx,
        clinic_id=subscription.clinic_id,
        action="SUBSCRIPTION_CANCELED",
        entity_type=ENTITY,
        entity_id=subscription.id,
        reason=reason,
        metadata={"refills_cancelled": cancelled},
    )
    db.commit()
    logger.info("Subscription %s canceled by %s; %s refill(s) cancelled", subscription_id, ctx.user_id, cancelled)
    return _reload(db, subscription_id)


def _refill_for_renewal(
    db: Session,
    subscription: Subscription,
    *,
    payment_reference: str | None,
    payment_method: str | None,
    start: datetime,
) -> RefillQueue | None:
    """
    Make sure exactly one paid refill is in flight after a renewal payment.
    Reuses an unpaid entry when there is one. Does not commit.
    """
    paid_values = {
        "payment_verified": True,
        "payment_verified_at": utc_now(),
        "payment_reference": payment_reference,
        "payment_method": payment_method,
    }
    open_entries = (
        db.query(RefillQueue)
        .filter(
            RefillQueue.subscription_id == subscription.id,
            RefillQueue.status.in_(
                [RefillStatus.SCHEDULED] + list(refill_state.ACTIVE_STATUSES)
            ),
        )
        .order_by(RefillQueue.next_refill_date.asc(), RefillQueue.id.asc())
        .all()
    )
    for entry in open_entries:
        if entry.status == RefillStatus.PENDING_PAYMENT or (
            entry.status == RefillStatus.SCHEDULED and not entry.payment_verified and entry.parent_refill_id is None
        ):
            refill_state.apply_transition(
                db,
                entry.id,
                RefillStatus.PENDING_ADMIN,
                paid_values,
                allowed_from=[RefillStatus(entry.status)],
            )
            return entry
    if any(e.status in refill_state.ACTIVE_STATUSES for e in open_entries):
        logger.info("Subscription %s already has an active refill; not creating another", subscription.id)
        return None

    refills = _schedule_initial_refills(db, subscription, start, payment_verified=True)
    first = refills[0]
    first.payment_reference = payment_reference
    first.payment_method = payment_method
    return first


def record_renewal_payment(
    db: Session,
    ctx: RequestContext,
    subscription_id: int,
    *,
    payment_reference: str | None = None,
    payment_method: str | None = None,
    paid_at: datetime | None = None,
) -> tuple[Subscription, RefillQueue | None]:
    """
    A billing cycle was paid: advance the period and queue a paid refill for
    admin review unless one is already in flight.
    """
    subscription = get_subscription(db, ctx, subscription_id)
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise _status_error(subscription, "renew")

    start = as_utc(subscription.next_billing_date) if subscription.next_billing_date else as_utc(paid_at or utc_now())
    end = _period_end(subscription, start)
    rows = _conditional_update(
        db,
        subscription.id,
        [SubscriptionStatus.ACTIVE],
        {"current_period_start": start, "current_period_end": end, "next_billing_date": end},
    )
    if rows == 0:
        db.rollback()
        raise _status_error(_reload(db, subscription_id), "renew")

    refill = _refill_for_renewal(
        db,
        subscription,
        payment_reference=payment_reference,
        payment_method=payment_method,
        start=as_utc(paid_at) if paid_at else utc_now(),
    )
    record_audit(
        db,
        ctx,
        clinic_id=subscription.clinic_id,
        action="SUBSCRIPTION_RENEWED",
        entity_type=ENTITY,
        entity_id=subscription.id,
        metadata={"payment_reference": payment_reference, "refill_id": refill.id if refill else None},
    )
    db.commit()
    logger.info(
        "Renewal payment recorded for subscription %s; refill=%s",
        subscription_id,
        refill.id if refill else None,
    )
    return _reload(db, subscription_id), (refill_service.reload_refill(db, refill.id) if refill else None)
