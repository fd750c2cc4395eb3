# rxflow/api/v1/endpoints/provider_routing.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.core.request_context import RequestContext, get_request_context
from rxflow.schemas.order import ClaimRequest, OrderResponse, ProviderRoutingView
from rxflow.services import routing_service

router = APIRouter()


@router.get("/available", response_model=ProviderRoutingView)
def available_prescriptions(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> ProviderRoutingView:
    """
    Claimable prescriptions plus the caller's own queue.
    Returns enabled=false with empty lists when the clinic does not route.
    """
    return ProviderRoutingView.model_validate(routing_service.get_provider_routing_view(db, ctx))


@router.post("/claim", response_model=OrderResponse)
def claim_prescription_endpoint(
    payload: ClaimRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> OrderResponse:
    order = routing_service.claim_prescription(db, ctx, order_id=payload.order_id)
    return OrderResponse.model_validate(order)
