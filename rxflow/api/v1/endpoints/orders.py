# rxflow/api/v1/endpoints/orders.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.core.request_context import RequestContext, get_request_context
from rxflow.schemas.order import DeclineOrderRequest, OrderResponse
from rxflow.services import order_service

router = APIRouter()


@router.get("/{order_id}", response_model=OrderResponse)
def get_order_endpoint(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> OrderResponse:
    return OrderResponse.model_validate(order_service.get_order(db, ctx, order_id))


@router.post("/{order_id}/decline", response_model=OrderResponse)
def decline_order_endpoint(
    order_id: int,
    payload: DeclineOrderRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> OrderResponse:
    """
    Decline a prescription. A reason of at least 10 characters is required.
    """
    order = order_service.decline_order(db, ctx, order_id, reason=payload.reason)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/complete", response_model=OrderResponse)
def complete_order_endpoint(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> OrderResponse:
    return OrderResponse.model_validate(order_service.complete_order(db, ctx, order_id))
