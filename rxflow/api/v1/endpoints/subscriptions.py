# rxflow/api/v1/endpoints/subscriptions.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.core.request_context import RequestContext, get_request_context
from rxflow.dependencies.authz import ADMIN_ROLES, CLINIC_STAFF_ROLES, require_roles, resolve_clinic_id
from rxflow.schemas.common import ReasonRequest
from rxflow.schemas.refill import RefillResponse
from rxflow.schemas.subscription import (
    SubscriptionCreate,
    SubscriptionCreateResponse,
    SubscriptionResponse,
)
from rxflow.services import subscription_service

router = APIRouter()


@router.post("", response_model=SubscriptionCreateResponse, status_code=status.HTTP_201_CREATED)
def create_subscription_endpoint(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> SubscriptionCreateResponse:
    require_roles(ctx, *ADMIN_ROLES)
    subscription, refills = subscription_service.create_subscription(
        db,
        ctx,
        clinic_id=resolve_clinic_id(ctx, payload.clinic_id),
        patient_id=payload.patient_id,
        plan_name=payload.plan_name,
        medication_name=payload.medication_name,
        vial_count=payload.vial_count,
        package_months=payload.package_months,
        start_date=payload.start_date,
        payment_verified=payload.payment_verified,
    )
    return SubscriptionCreateResponse(
        subscription=SubscriptionResponse.model_validate(subscription),
        refills=[RefillResponse.model_validate(r) for r in refills],
    )


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription_endpoint(
    subscription_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> SubscriptionResponse:
    require_roles(ctx, *CLINIC_STAFF_ROLES)
    return SubscriptionResponse.model_validate(subscription_service.get_subscription(db, ctx, subscription_id))


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
def pause_subscription_endpoint(
    subscription_id: int,
    payload: ReasonRequest | None = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> SubscriptionResponse:
    subscription = subscription_service.pause_subscription(
        db, ctx, subscription_id, reason=payload.reason if payload else None
    )
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
def resume_subscription_endpoint(
    subscription_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(subscription_service.resume_subscription(db, ctx, subscription_id))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription_endpoint(
    subscription_id: int,
    payload: ReasonRequest | None = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> SubscriptionResponse:
    subscription = subscription_service.cancel_subscription(
        db, ctx, subscription_id, reason=payload.reason if payload else None
    )
    return SubscriptionResponse.model_validate(subscription)
