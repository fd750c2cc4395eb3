# rxflow/schemas/subscription.py
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from rxflow.models.subscription import SubscriptionStatus
from rxflow.schemas.common import CamelModel
from rxflow.schemas.refill import RefillResponse


class SubscriptionCreate(CamelModel):
    patient_id: int
    clinic_id: int | None = None  # platform administrators only
    plan_name: str | None = None
    medication_name: str | None = None
    vial_count: int = Field(default=1, gt=0)
    package_months: int | None = Field(default=None, gt=0)
    start_date: datetime | None = None
    payment_verified: bool = False


class SubscriptionResponse(CamelModel):
    id: int
    clinic_id: int
    patient_id: int
    status: SubscriptionStatus
    plan_name: str | None = None
    medication_name: str | None = None
    vial_count: int
    package_months: int | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    next_billing_date: datetime | None = None
    paused_at: datetime | None = None
    canceled_at: datetime | None = None
    cancel_reason: str | None = None


class SubscriptionCreateResponse(CamelModel):
    subscription: SubscriptionResponse
    refills: list[RefillResponse]
