# rxflow/api/v1/endpoints/refill_queue.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.core.request_context import RequestContext, get_request_context
from rxflow.dependencies.authz import ADMIN_ROLES, CLINIC_STAFF_ROLES, require_roles, resolve_clinic_id
from rxflow.models.refill import RefillStatus
from rxflow.schemas.common import ReasonRequest
from rxflow.schemas.refill import (
    ApproveRefillRequest,
    ApproveRefillResponse,
    RefillResponse,
    RejectRefillRequest,
    VerifyPaymentRequest,
)
from rxflow.services import refill_service
from rxflow.services.idempotency_service import request_fingerprint, with_idempotency

router = APIRouter()
logger = logging.getLogger(__name__)

APPROVE_RESOURCE = "refill_approve"


@router.get("", response_model=list[RefillResponse])
def list_refill_queue(
    status: RefillStatus | None = Query(None),
    patient_id: int | None = Query(None, alias="patientId"),
    clinic_id: int | None = Query(None, alias="clinicId"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> list[RefillResponse]:
    require_roles(ctx, *CLINIC_STAFF_ROLES)
    refills = refill_service.list_refills(
        db,
        ctx,
        clinic_id=resolve_clinic_id(ctx, clinic_id),
        status=status,
        patient_id=patient_id,
        limit=limit,
        offset=offset,
    )
    return [RefillResponse.model_validate(r) for r in refills]


@router.get("/stats")
def refill_queue_stats(
    clinic_id: int | None = Query(None, alias="clinicId"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict[str, int]:
    require_roles(ctx, *CLINIC_STAFF_ROLES)
    return refill_service.get_refill_queue_stats(db, ctx, clinic_id=resolve_clinic_id(ctx, clinic_id))


@router.get("/{refill_id}", response_model=RefillResponse)
def get_refill_endpoint(
    refill_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RefillResponse:
    require_roles(ctx, *CLINIC_STAFF_ROLES)
    return RefillResponse.model_validate(refill_service.get_refill(db, ctx, refill_id))


@router.get("/{refill_id}/series", response_model=list[RefillResponse])
def get_refill_series(
    refill_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> list[RefillResponse]:
    require_roles(ctx, *CLINIC_STAFF_ROLES)
    return [RefillResponse.model_validate(r) for r in refill_service.get_series(db, ctx, refill_id)]


@router.post("/{refill_id}/verify-payment", response_model=RefillResponse)
def verify_payment_endpoint(
    refill_id: int,
    payload: VerifyPaymentRequest | None = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RefillResponse:
    require_roles(ctx, *CLINIC_STAFF_ROLES)
    payload = payload or VerifyPaymentRequest()
    refill = refill_service.verify_payment(
        db,
        ctx,
        refill_id,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
    )
    return RefillResponse.model_validate(refill)


@router.post("/{refill_id}/approve", response_model=ApproveRefillResponse)
def approve_refill_endpoint(
    refill_id: int,
    request: Request,
    payload: ApproveRefillRequest | None = None,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """
    Admin approval gate. Retries carrying the same Idempotency-Key get the
    first response back without approving twice.
    """
    require_roles(ctx, *ADMIN_ROLES)
    notes = payload.notes if payload else None

    def _approve() -> tuple[int, dict]:
        refill = refill_service.approve_refill(db, ctx, refill_id, notes=notes)
        body = ApproveRefillResponse(success=True, refill=RefillResponse.model_validate(refill))
        return 200, body.model_dump(mode="json", by_alias=True)

    status_code, body = with_idempotency(
        db,
        key=idempotency_key,
        resource=APPROVE_RESOURCE,
        ctx=ctx,
        fingerprint=request_fingerprint(request.method, request.url.path, {"notes": notes}),
        clinic_id=ctx.clinic_id,
        fn=_approve,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.post("/{refill_id}/reject", response_model=RefillResponse)
def reject_refill_endpoint(
    refill_id: int,
    payload: RejectRefillRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RefillResponse:
    require_roles(ctx, *ADMIN_ROLES)
    return RefillResponse.model_validate(refill_service.reject_refill(db, ctx, refill_id, reason=payload.reason))


@router.post("/{refill_id}/hold", response_model=RefillResponse)
def hold_refill_endpoint(
    refill_id: int,
    payload: ReasonRequest | None = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RefillResponse:
    require_roles(ctx, *ADMIN_ROLES)
    reason = payload.reason if payload else None
    return RefillResponse.model_validate(refill_service.hold_refill(db, ctx, refill_id, reason=reason))


@router.post("/{refill_id}/resume", response_model=RefillResponse)
def resume_refill_endpoint(
    refill_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RefillResponse:
    require_roles(ctx, *ADMIN_ROLES)
    return RefillResponse.model_validate(refill_service.resume_refill(db, ctx, refill_id))


@router.post("/{refill_id}/cancel", response_model=RefillResponse)
def cancel_refill_endpoint(
    refill_id: int,
    payload: ReasonRequest | None = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RefillResponse:
    require_roles(ctx, *ADMIN_ROLES)
    reason = payload.reason if payload else None
    return RefillResponse.model_validate(refill_service.cancel_refill(db, ctx, refill_id, reason=reason))
