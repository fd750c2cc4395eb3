# rxflow/services/audit_service.py
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from rxflow.core.request_context import RequestContext
from rxflow.models.audit import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    ctx: RequestContext,
    *,
    clinic_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | None,
    reason: str | None = None,
    outcome: str = "SUCCESS",
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Add an audit row to the session. The caller commits it together with the
    change being audited.
    """
    entry = AuditLog(
        clinic_id=clinic_id,
        actor_id=ctx.user_id,
        actor_role=ctx.role.value,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        outcome=outcome,
        reason=reason,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
    )
    db.add(entry)
    logger.info(
        "audit action=%s entity=%s:%s actor=%s outcome=%s",
        action,
        entity_type,
        entity_id,
        ctx.user_id,
        outcome,
    )
    return entry


def list_audit_entries(
    db: Session,
    *,
    entity_type: str,
    entity_id: int,
) -> list[AuditLog]:
    return (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )
