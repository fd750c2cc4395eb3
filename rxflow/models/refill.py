# rxflow/models/refill.py
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base
from rxflow.utils.datetime_utils import utc_now


class RefillStatus(str, PyEnum):
    SCHEDULED = "SCHEDULED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_ADMIN = "PENDING_ADMIN"
    APPROVED = "APPROVED"
    PENDING_PROVIDER = "PENDING_PROVIDER"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"


class RefillQueue(Base):
    """
    One medication refill moving through payment, admin and provider stages.

    Entries of a multi-shipment series point at the first shipment through
    parent_refill_id; each shipment moves through the queue on its own.
    """

    __tablename__ = "refill_queue"

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
    subscription_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    parent_refill_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("refill_queue.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        doc="First shipment of the series; null on the first shipment itself.",
    )
    order_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        doc="Order created on admin approval. orders.refill_id holds the foreign key.",
    )

    status: Mapped[RefillStatus] = mapped_column(
        Enum(RefillStatus, name="refill_status_enum"),
        nullable=False,
        default=RefillStatus.PENDING_PAYMENT,
        index=True,
    )
    status_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        doc="Reason recorded with DECLINED, CANCELLED or ON_HOLD transitions.",
    )

    # Medication
    medication_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vial_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))
    refill_interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30, server_default=text("30"))
    next_refill_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        doc="When a SCHEDULED entry becomes due.",
    )

    # Series
    shipment_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_shipments: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bud_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Payment
    payment_verified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_verified_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Admin approval
    admin_approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Written only by the PENDING_ADMIN -> APPROVED update.",
    )
    admin_approved_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provider stage
    provider_queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

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

    @property
    def admin_approved(self) -> bool:
        return self.admin_approved_at is not None
