# rxflow/services/routing_service.py
"""
Provider routing: who prescribes an approved refill's order.

Orders are assigned exactly once. Every path (self-claim, round robin,
license match, manual override) goes through `_assign`, a conditional
UPDATE on `assigned_provider_id IS NULL`, so concurrent attempts leave one
winner.
"""
from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxflow.core.errors import AppError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.dependencies.authz import ADMIN_ROLES, ensure_clinic_access, require_provider, require_roles
from rxflow.models.order import AssignmentSource, Order, OrderStatus, ProviderAssignment
from rxflow.models.patient import Patient
from rxflow.models.provider import Provider, ProviderStatus
from rxflow.models.routing import ProviderRoutingConfig, RoutingStrategy
from rxflow.services import refill_service
from rxflow.services.audit_service import record_audit
from rxflow.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

AUTOMATIC_STRATEGIES = (RoutingStrategy.ROUND_ROBIN, RoutingStrategy.STATE_LICENSE_MATCH)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

def get_routing_config(db: Session, clinic_id: int) -> ProviderRoutingConfig | None:
    return db.query(ProviderRoutingConfig).filter(ProviderRoutingConfig.clinic_id == clinic_id).first()


def is_routing_enabled(db: Session, clinic_id: int) -> bool:
    config = get_routing_config(db, clinic_id)
    return bool(config and config.routing_enabled)


def upsert_routing_config(
    db: Session,
    ctx: RequestContext,
    *,
    clinic_id: int,
    routing_enabled: bool | None = None,
    routing_strategy: RoutingStrategy | None = None,
    auto_assign_on_approval: bool | None = None,
) -> ProviderRoutingConfig:
    require_roles(ctx, *ADMIN_ROLES)
    ensure_clinic_access(ctx, clinic_id, entity="Clinic", code="CLINIC_NOT_FOUND")

    config = get_routing_config(db, clinic_id)
    if config is None:
        config = ProviderRoutingConfig(clinic_id=clinic_id, last_assigned_index=-1)
        db.add(config)

    if routing_enabled is not None:
        config.routing_enabled = routing_enabled
    if routing_strategy is not None:
        if config.routing_strategy != routing_strategy:
            config.last_assigned_index = -1
        config.routing_strategy = routing_strategy
    if auto_assign_on_approval is not None:
        config.auto_assign_on_approval = auto_assign_on_approval
    if config.routing_strategy is None:
        config.routing_strategy = RoutingStrategy.PROVIDER_CHOICE
    if config.routing_enabled is None:
        config.routing_enabled = False
    if config.auto_assign_on_approval is None:
        config.auto_assign_on_approval = False

    record_audit(
        db,
        ctx,
        clinic_id=clinic_id,
        action="ROUTING_CONFIG_UPDATED",
        entity_type="routing_config",
        entity_id=clinic_id,
        metadata={
            "routing_enabled": config.routing_enabled,
            "routing_strategy": RoutingStrategy(config.routing_strategy).value,
            "auto_assign_on_approval": config.auto_assign_on_approval,
        },
    )
    db.commit()
    db.refresh(config)
    logger.info(
        "Routing config for clinic %s updated by user %s: enabled=%s strategy=%s",
        clinic_id,
        ctx.user_id,
        config.routing_enabled,
        config.routing_strategy,
    )
    return config


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

def _active_providers(db: Session, clinic_id: int) -> list[Provider]:
    return (
        db.query(Provider)
        .filter(Provider.clinic_id == clinic_id, Provider.status == ProviderStatus.ACTIVE)
        .order_by(Provider.id.asc())
        .all()
    )


def get_available_providers(
    db: Session,
    clinic_id: int,
    patient_state: str | None = None,
) -> list[Provider]:
    """
    Active providers of a clinic. With a patient state, only those licensed
    there; when nobody is, every active provider.
    """
    providers = _active_providers(db, clinic_id)
    if not patient_state:
        return providers
    licensed = [p for p in providers if p.is_licensed_in(patient_state)]
    return licensed or providers


def _open_order_counts(db: Session, clinic_id: int) -> dict[int, int]:
    rows = (
        db.query(Order.assigned_provider_id, func.count(Order.id))
        .filter(
            Order.clinic_id == clinic_id,
            Order.status == OrderStatus.QUEUED_FOR_PROVIDER,
            Order.assigned_provider_id.is_not(None),
        )
        .group_by(Order.assigned_provider_id)
        .all()
    )
    return {provider_id: count for provider_id, count in rows}


def _patient_state(db: Session, order: Order) -> str | None:
    patient = db.get(Patient, order.patient_id)
    return patient.state if patient else None


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

def _get_order(db: Session, order_id: int, clinic_id: int | None = None) -> Order:
    order = db.get(Order, order_id)
    if order is None or (clinic_id is not None and order.clinic_id != clinic_id):
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    return order


def _assign(
    db: Session,
    order: Order,
    provider_id: int,
    source: AssignmentSource,
    ctx: RequestContext,
) -> int:
    """
    Claim `order` for `provider_id` if nobody holds it yet, write the
    assignment record and move the refill to the provider stage.
    Returns the row count of the claim. Does not commit.
    """
    now = utc_now()
    rows = (
        db.query(Order)
        .filter(
            Order.id == order.id,
            Order.clinic_id == order.clinic_id,
            Order.assigned_provider_id.is_(None),
            Order.status == OrderStatus.QUEUED_FOR_PROVIDER,
        )
        .update(
            {
                Order.assigned_provider_id: provider_id,
                Order.assigned_at: now,
                Order.assignment_source: source,
            },
            synchronize_session=False,
        )
    )
    if rows == 0:
        return 0

    db.add(
        ProviderAssignment(
            order_id=order.id,
            provider_id=provider_id,
            clinic_id=order.clinic_id,
            source=source,
            assigned_by=ctx.user_id,
            assigned_at=now,
        )
    )
    if order.refill_id is not None:
        refill_service.mark_pending_provider(db, order.refill_id)
    record_audit(
        db,
        ctx,
        clinic_id=order.clinic_id,
        action="ORDER_ASSIGNED",
        entity_type="order",
        entity_id=order.id,
        metadata={"provider_id": provider_id, "source": source.value},
    )
    return rows


def _claim_conflict(db: Session, order_id: int) -> AppError:
    db.rollback()
    order = db.get(Order, order_id)
    if order is None:
        return NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    db.refresh(order)
    if order.assigned_provider_id is not None:
        return ConflictError(
            "This prescription is already assigned to a provider",
            code="ALREADY_CLAIMED",
            detail={"order_id": order.id},
        )
    return ConflictError(
        f"Order is {OrderStatus(order.status).value} and cannot be assigned",
        code="ORDER_NOT_ASSIGNABLE",
        detail={"order_id": order.id, "status": OrderStatus(order.status).value},
    )


def _pick_round_robin(db: Session, config: ProviderRoutingConfig, providers: list[Provider]) -> Provider:
    index = (config.last_assigned_index + 1) % len(providers)
    provider = providers[index]
    config.last_assigned_index = index
    config.last_assigned_provider_id = provider.id
    return provider


def _pick_state_match(db: Session, order: Order, providers: list[Provider]) -> Provider | None:
    state = _patient_state(db, order)
    licensed = [p for p in providers if p.is_licensed_in(state)]
    if not licensed:
        logger.warning(
            "No provider licensed in %s for order %s (clinic %s); leaving unassigned",
            state,
            order.id,
            order.clinic_id,
        )
        return None
    counts = _open_order_counts(db, order.clinic_id)
    return min(licensed, key=lambda p: (counts.get(p.id, 0), p.id))


def assign_provider(db: Session, *, clinic_id: int, order_id: int) -> Provider | None:
    """
    Route one order with the clinic's strategy. PROVIDER_CHOICE and
    MANUAL_ASSIGNMENT leave it for a claim or an admin. Commits.
    """
    config = get_routing_config(db, clinic_id)
    if config is None or not config.routing_enabled:
        return None
    strategy = RoutingStrategy(config.routing_strategy)
    if strategy not in AUTOMATIC_STRATEGIES:
        return None

    order = _get_order(db, order_id, clinic_id)
    providers = _active_providers(db, clinic_id)
    if not providers:
        logger.warning("No active providers in clinic %s; order %s left unassigned", clinic_id, order_id)
        return None

    if strategy == RoutingStrategy.ROUND_ROBIN:
        provider = _pick_round_robin(db, config, providers)
        source = AssignmentSource.ROUND_ROBIN
    else:
        provider = _pick_state_match(db, order, providers)
        source = AssignmentSource.STATE_MATCH
    if provider is None:
        return None

    if _assign(db, order, provider.id, source, RequestContext.system(clinic_id)) == 0:
        db.rollback()
        logger.info("Order %s was assigned concurrently; skipping %s routing", order_id, strategy.value)
        return None
    db.commit()
    logger.info("Order %s routed to provider %s via %s", order_id, provider.id, strategy.value)
    return provider


def auto_assign_on_approval(db: Session, *, clinic_id: int, order_id: int) -> Provider | None:
    """
    Route a freshly approved order if the clinic asks for it. The approval
    is already committed, so a routing failure leaves the order in the
    unassigned queue.
    """
    config = get_routing_config(db, clinic_id)
    if config is None or not config.auto_assign_on_approval:
        return None
    try:
        return assign_provider(db, clinic_id=clinic_id, order_id=order_id)
    except (AppError, SQLAlchemyError) as exc:
        db.rollback()
        logger.error("Auto-assignment failed for order %s: %s", order_id, exc, exc_info=True)
        return None


def manually_assign(
    db: Session,
    ctx: RequestContext,
    *,
    order_id: int,
    provider_id: int,
) -> Order:
    """Admin override for an unassigned order."""
    require_roles(ctx, *ADMIN_ROLES)
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    ensure_clinic_access(ctx, order.clinic_id, entity="Order", code="ORDER_NOT_FOUND")

    provider = db.get(Provider, provider_id)
    if provider is None or provider.clinic_id != order.clinic_id:
        raise NotFoundError("Provider not found", code="PROVIDER_NOT_FOUND")
    if provider.status != ProviderStatus.ACTIVE:
        raise ValidationError("Provider is not active", code="PROVIDER_INACTIVE")

    if _assign(db, order, provider.id, AssignmentSource.MANUAL, ctx) == 0:
        raise _claim_conflict(db, order_id)
    db.commit()
    logger.info("Order %s manually assigned to provider %s by user %s", order_id, provider_id, ctx.user_id)
    db.refresh(order)
    return order


def claim_prescription(db: Session, ctx: RequestContext, *, order_id: int) -> Order:
    """
    A provider takes an unassigned order. Exactly one of several concurrent
    claims succeeds; the others get ALREADY_CLAIMED.
    """
    provider_id = require_provider(ctx)
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    ensure_clinic_access(ctx, order.clinic_id, entity="Order", code="ORDER_NOT_FOUND")

    if not is_routing_enabled(db, order.clinic_id):
        raise ValidationError("Provider routing is not enabled for this clinic", code="ROUTING_DISABLED")

    provider = db.get(Provider, provider_id)
    if provider is None or provider.clinic_id != order.clinic_id or provider.status != ProviderStatus.ACTIVE:
        raise ForbiddenError("Provider profile is not active in this clinic", code="PROVIDER_INACTIVE")
    state = _patient_state(db, order)
    if not provider.is_licensed_in(state):
        raise ForbiddenError(
            f"You are not licensed to prescribe in {state}",
            code="NOT_LICENSED",
            detail={"state": state},
        )

    if _assign(db, order, provider_id, AssignmentSource.SELF_SELECT, ctx) == 0:
        logger.info("Claim of order %s by provider %s lost", order_id, provider_id)
        raise _claim_conflict(db, order_id)
    db.commit()
    logger.info("Order %s claimed by provider %s", order_id, provider_id)
    db.refresh(order)
    return order


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

def get_unassigned_prescriptions(
    db: Session,
    *,
    clinic_id: int,
    provider: Provider | None = None,
    limit: int = 100,
) -> list[Order]:
    """
    Orders waiting for a provider, oldest first. For a provider, only
    patients in states they are licensed in.
    """
    query = (
        db.query(Order)
        .filter(
            Order.clinic_id == clinic_id,
            Order.status == OrderStatus.QUEUED_FOR_PROVIDER,
            Order.assigned_provider_id.is_(None),
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
    )
    if provider is not None and provider.license_states:
        states = [s.upper() for s in provider.license_states]
        query = query.join(Patient, Patient.id == Order.patient_id).filter(
            (Patient.state.is_(None)) | (func.upper(Patient.state).in_(states))
        )
    return query.limit(limit).all()


def get_provider_assigned_queue(db: Session, *, provider_id: int, clinic_id: int) -> list[Order]:
    return (
        db.query(Order)
        .filter(
            Order.clinic_id == clinic_id,
            Order.assigned_provider_id == provider_id,
            Order.status == OrderStatus.QUEUED_FOR_PROVIDER,
        )
        .order_by(Order.assigned_at.asc(), Order.id.asc())
        .all()
    )


def get_provider_routing_view(db: Session, ctx: RequestContext) -> dict:
    """
    What a provider sees: the claimable pool and their own queue. Reports
    `enabled: False` with empty lists when the clinic does not route.
    """
    provider_id = require_provider(ctx)
    provider = db.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found", code="PROVIDER_NOT_FOUND")
    ensure_clinic_access(ctx, provider.clinic_id, entity="Provider", code="PROVIDER_NOT_FOUND")

    if not is_routing_enabled(db, provider.clinic_id):
        return {"enabled": False, "available": [], "assigned": []}

    return {
        "enabled": True,
        "available": get_unassigned_prescriptions(db, clinic_id=provider.clinic_id, provider=provider),
        "assigned": get_provider_assigned_queue(db, provider_id=provider.id, clinic_id=provider.clinic_id),
    }


def get_admin_routing_queue(db: Session, ctx: RequestContext, *, clinic_id: int) -> dict:
    require_roles(ctx, *ADMIN_ROLES)
    ensure_clinic_access(ctx, clinic_id, entity="Clinic", code="CLINIC_NOT_FOUND")
    config = get_routing_config(db, clinic_id)
    counts = _open_order_counts(db, clinic_id)
    providers = _active_providers(db, clinic_id)
    return {
        "enabled": bool(config and config.routing_enabled),
        "strategy": RoutingStrategy(config.routing_strategy).value if config else RoutingStrategy.PROVIDER_CHOICE.value,
        "unassigned": get_unassigned_prescriptions(db, clinic_id=clinic_id),
        "providers": [
            {"provider": provider, "open_orders": counts.get(provider.id, 0)}
            for provider in providers
        ],
    }
