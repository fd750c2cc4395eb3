# rxflow/schemas/order.py
from __future__ import annotations

from datetime import datetime

from rxflow.models.order import AssignmentSource, OrderStatus
from rxflow.models.routing import RoutingStrategy
from rxflow.schemas.common import CamelModel


class OrderResponse(CamelModel):
    id: int
    clinic_id: int
    patient_id: int
    refill_id: int | None = None
    medication_name: str | None = None
    status: OrderStatus
    assigned_provider_id: int | None = None
    assigned_at: datetime | None = None
    assignment_source: AssignmentSource | None = None
    declined_reason: str | None = None
    declined_at: datetime | None = None
    completed_at: datetime | None = None
    pharmacy_reference: str | None = None
    created_at: datetime | None = None


class DeclineOrderRequest(CamelModel):
    # Length is checked by the service so the error carries its own code.
    reason: str | None = None


class ClaimRequest(CamelModel):
    order_id: int


class ManualAssignRequest(CamelModel):
    order_id: int
    provider_id: int


class ProviderResponse(CamelModel):
    id: int
    first_name: str
    last_name: str
    npi: str | None = None
    license_states: list[str] = []


class ProviderRoutingView(CamelModel):
    enabled: bool
    available: list[OrderResponse]
    assigned: list[OrderResponse]


class ProviderLoad(CamelModel):
    provider: ProviderResponse
    open_orders: int


class AdminRoutingQueue(CamelModel):
    enabled: bool
    strategy: RoutingStrategy
    unassigned: list[OrderResponse]
    providers: list[ProviderLoad]


class RoutingConfigResponse(CamelModel):
    clinic_id: int
    routing_enabled: bool
    routing_strategy: RoutingStrategy
    auto_assign_on_approval: bool
    last_assigned_index: int = -1
    last_assigned_provider_id: int | None = None


class RoutingConfigUpdate(CamelModel):
    routing_enabled: bool | None = None
    routing_strategy: RoutingStrategy | None = None
    auto_assign_on_approval: bool | None = None
