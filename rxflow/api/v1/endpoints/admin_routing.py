# rxflow/api/v1/endpoints/admin_routing.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.core.request_context import RequestContext, get_request_context
from rxflow.dependencies.authz import ADMIN_ROLES, require_roles, resolve_clinic_id
from rxflow.models.routing import RoutingStrategy
from rxflow.schemas.order import (
    AdminRoutingQueue,
    ManualAssignRequest,
    OrderResponse,
    ProviderResponse,
    RoutingConfigResponse,
    RoutingConfigUpdate,
)
from rxflow.services import routing_service

router = APIRouter()


def _config_response(db: Session, clinic_id: int) -> RoutingConfigResponse:
    config = routing_service.get_routing_config(db, clinic_id)
    if config is None:
        return RoutingConfigResponse(
            clinic_id=clinic_id,
            routing_enabled=False,
            routing_strategy=RoutingStrategy.PROVIDER_CHOICE,
            auto_assign_on_approval=False,
        )
    return RoutingConfigResponse.model_validate(config)


@router.get("/config", response_model=RoutingConfigResponse)
def get_routing_config_endpoint(
    clinic_id: int | None = Query(None, alias="clinicId"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RoutingConfigResponse:
    require_roles(ctx, *ADMIN_ROLES)
    return _config_response(db, resolve_clinic_id(ctx, clinic_id))


@router.put("/config", response_model=RoutingConfigResponse)
def update_routing_config_endpoint(
    payload: RoutingConfigUpdate,
    clinic_id: int | None = Query(None, alias="clinicId"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> RoutingConfigResponse:
    require_roles(ctx, *ADMIN_ROLES)
    config = routing_service.upsert_routing_config(
        db,
        ctx,
        clinic_id=resolve_clinic_id(ctx, clinic_id),
        routing_enabled=payload.routing_enabled,
        routing_strategy=payload.routing_strategy,
        auto_assign_on_approval=payload.auto_assign_on_approval,
    )
    return RoutingConfigResponse.model_validate(config)


@router.get("/queue", response_model=AdminRoutingQueue)
def admin_routing_queue(
    clinic_id: int | None = Query(None, alias="clinicId"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> AdminRoutingQueue:
    require_roles(ctx, *ADMIN_ROLES)
    queue = routing_service.get_admin_routing_queue(db, ctx, clinic_id=resolve_clinic_id(ctx, clinic_id))
    return AdminRoutingQueue.model_validate(queue)


@router.post("/assign", response_model=OrderResponse)
def manual_assign_endpoint(
    payload: ManualAssignRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> OrderResponse:
    require_roles(ctx, *ADMIN_ROLES)
    order = routing_service.manually_assign(db, ctx, order_id=payload.order_id, provider_id=payload.provider_id)
    return OrderResponse.model_validate(order)


@router.get("/providers", response_model=list[ProviderResponse])
def available_providers_endpoint(
    state: str | None = Query(None, min_length=2, max_length=2),
    clinic_id: int | None = Query(None, alias="clinicId"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> list[ProviderResponse]:
    """
    Active providers an admin can assign to; with `state`, those licensed
    in it (every active provider when nobody is).
    """
    require_roles(ctx, *ADMIN_ROLES)
    providers = routing_service.get_available_providers(db, resolve_clinic_id(ctx, clinic_id), state)
    return [ProviderResponse.model_validate(provider) for provider in providers]
