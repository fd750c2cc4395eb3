# rxflow/models/subscription.py
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base
from rxflow.utils.datetime_utils import utc_now


class SubscriptionStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"


class Subscription(Base):
    """
    Recurring billing record for a patient.

    Source of truth for whether a patient is due for a refill. A CANCELED
    subscription never becomes ACTIVE again.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(
            "(status = 'ACTIVE' AND next_billing_date IS NOT NULL) "
            "OR (status <> 'ACTIVE' AND next_billing_date IS NULL)",
            name="ck_subscriptions_next_billing_date_active",
        ),
    )

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Foreign Keys
    clinic_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status_enum"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    # Plan
    plan_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    medication_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vial_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default=text("1"),
        doc="Vials per shipment; maps to the refill interval (1 -> 30d, 3 -> 90d, 6 -> 180d).",
    )
    package_months: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        doc="Length of a prepaid package in months; may be split into several shipments.",
    )

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Null iff status is not ACTIVE.",
    )

    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=utc_now,
    )
