# rxflow/services/refill_state.py
"""
Refill queue state machine.

Every status change goes through `apply_transition`, a single conditional
UPDATE restricted to the statuses allowed to reach the target. A zero
row count means the entry was not in an allowed status (or was changed
concurrently); `explain_rejection` turns that into the right error.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from rxflow.core.errors import ConflictError, NotFoundError, ValidationError
from rxflow.models.refill import RefillQueue, RefillStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {RefillStatus.COMPLETED, RefillStatus.DECLINED, RefillStatus.CANCELLED}
)

# Statuses that still represent work in flight for a patient.
ACTIVE_STATUSES = frozenset(
    {
        RefillStatus.PENDING_PAYMENT,
        RefillStatus.PENDING_ADMIN,
        RefillStatus.APPROVED,
        RefillStatus.PENDING_PROVIDER,
    }
)

_ALWAYS_REACHABLE = {RefillStatus.DECLINED, RefillStatus.CANCELLED}

TRANSITIONS: dict[RefillStatus, frozenset[RefillStatus]] = {
    # Prepaid shipments of a series skip the payment stage.
    RefillStatus.SCHEDULED: frozenset(
        {RefillStatus.PENDING_PAYMENT, RefillStatus.PENDING_ADMIN, RefillStatus.ON_HOLD}
        | _ALWAYS_REACHABLE
    ),
    RefillStatus.PENDING_PAYMENT: frozenset(
        {RefillStatus.PENDING_ADMIN, RefillStatus.ON_HOLD} | _ALWAYS_REACHABLE
    ),
    RefillStatus.PENDING_ADMIN: frozenset(
        {RefillStatus.APPROVED, RefillStatus.ON_HOLD} | _ALWAYS_REACHABLE
    ),
    RefillStatus.APPROVED: frozenset(
        {RefillStatus.PENDING_PROVIDER, RefillStatus.ON_HOLD} | _ALWAYS_REACHABLE
    ),
    RefillStatus.PENDING_PROVIDER: frozenset(
        {RefillStatus.COMPLETED, RefillStatus.ON_HOLD} | _ALWAYS_REACHABLE
    ),
    RefillStatus.ON_HOLD: frozenset(
        {
            RefillStatus.SCHEDULED,
            RefillStatus.PENDING_PAYMENT,
            RefillStatus.PENDING_ADMIN,
            RefillStatus.APPROVED,
            RefillStatus.PENDING_PROVIDER,
        }
        | _ALWAYS_REACHABLE
    ),
    RefillStatus.COMPLETED: frozenset(),
    RefillStatus.DECLINED: frozenset(),
    RefillStatus.CANCELLED: frozenset(),
}


def is_terminal(status: RefillStatus) -> bool:
    return RefillStatus(status) in TERMINAL_STATUSES


def can_transition(current: RefillStatus, target: RefillStatus) -> bool:
    return RefillStatus(target) in TRANSITIONS[RefillStatus(current)]


def sources_for(target: RefillStatus) -> list[RefillStatus]:
    """Statuses from which `target` may be reached, in declaration order."""
    return [status for status, targets in TRANSITIONS.items() if target in targets]


def terminal_conflict(refill: RefillQueue) -> ConflictError:
    return ConflictError(
        f"Refill already {RefillStatus(refill.status).value.lower()}",
        code="REFILL_TERMINAL",
        detail={"refill_id": refill.id, "status": RefillStatus(refill.status).value},
    )


def explain_rejection(
    refill: RefillQueue | None,
    target: RefillStatus,
) -> Exception:
    """
    Build the error for a transition whose conditional update matched nothing.
    """
    if refill is None:
        return NotFoundError("Refill not found", code="REFILL_NOT_FOUND")
    current = RefillStatus(refill.status)
    if current in TERMINAL_STATUSES:
        return terminal_conflict(refill)
    if current == target:
        return ValidationError(
            f"Refill is already {current.value}",
            code="INVALID_STATUS",
            detail={"refill_id": refill.id, "status": current.value},
        )
    return ValidationError(
        f"Cannot move refill from {current.value} to {target.value}",
        code="INVALID_STATUS",
        detail={"refill_id": refill.id, "status": current.value, "target": target.value},
    )


def apply_transition(
    db: Session,
    refill_id: int,
    target: RefillStatus,
    values: dict[str, Any] | None = None,
    *,
    allowed_from: list[RefillStatus] | None = None,
    extra_criteria: tuple = (),
) -> int:
    """
    Move one entry to `target` if, and only if, its current status allows it.

    Returns the affected row count (0 or 1). Does not commit.
    """
    sources = allowed_from if allowed_from is not None else sources_for(target)
    sources = [s for s in sources if can_transition(s, target)]
    if not sources:
        return 0

    update_values: dict[str, Any] = {RefillQueue.status: target}
    for key, value in (values or {}).items():
        update_values[getattr(RefillQueue, key)] = value

    rows = (
        db.query(RefillQueue)
        .filter(
            RefillQueue.id == refill_id,
            RefillQueue.status.in_(sources),
            *extra_criteria,
        )
        .update(update_values, synchronize_session=False)
    )
    if rows:
        logger.debug("Refill %s -> %s", refill_id, target.value)
    return rows
