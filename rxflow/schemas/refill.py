# rxflow/schemas/refill.py
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from rxflow.models.refill import RefillStatus
from rxflow.schemas.common import CamelModel


class RefillResponse(CamelModel):
    id: int
    clinic_id: int
    patient_id: int
    subscription_id: int | None = None
    parent_refill_id: int | None = None
    order_id: int | None = None

    status: RefillStatus
    status_reason: str | None = None

    medication_name: str | None = None
    plan_name: str | None = None
    vial_count: int
    refill_interval_days: int
    next_refill_date: datetime

    shipment_number: int | None = None
    total_shipments: int | None = None
    bud_days: int | None = None

    payment_verified: bool
    payment_method: str | None = None
    payment_reference: str | None = None
    payment_verified_at: datetime | None = None

    admin_approved: bool
    admin_approved_at: datetime | None = None
    admin_approved_by: int | None = None
    admin_notes: str | None = None

    provider_queued_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ApproveRefillRequest(CamelModel):
    notes: str | None = None


class ApproveRefillResponse(CamelModel):
    success: bool = True
    refill: RefillResponse


class VerifyPaymentRequest(CamelModel):
    payment_method: str | None = None
    payment_reference: str | None = None


class RejectRefillRequest(CamelModel):
    reason: str = Field(min_length=1)
