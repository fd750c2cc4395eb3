# rxflow/models/order.py
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class OrderStatus(str, PyEnum):
    QUEUED_FOR_PROVIDER = "queued_for_provider"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class AssignmentSource(str, PyEnum):
    SELF_SELECT = "self_select"
    ROUND_ROBIN = "round_robin"
    STATE_MATCH = "state_match"
    MANUAL = "manual"


class Order(Base):
    """
    Prescription created when an admin approves a refill.

    Sits in queued_for_provider until a provider completes or declines it.
    assigned_provider_id is claimed once; claims only succeed while it is NULL.
    """

    __tablename__ = "orders"

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
    refill_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("refill_queue.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    assigned_provider_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("providers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    medication_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status_enum", values_callable=_enum_values),
        nullable=False,
        default=OrderStatus.QUEUED_FOR_PROVIDER,
        index=True,
    )

    # Routing
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assignment_source: Mapped[AssignmentSource | None] = mapped_column(
        Enum(AssignmentSource, name="assignment_source_enum", values_callable=_enum_values),
        nullable=True,
    )

    # Outcome
    declined_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    declined_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pharmacy_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        doc="Reference returned by the pharmacy once the prescription is submitted.",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )


class ProviderAssignment(Base):
    """
    Record of who an order was routed to and how. One row per order.
    """

    __tablename__ = "provider_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    provider_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    clinic_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source: Mapped[AssignmentSource] = mapped_column(
        Enum(AssignmentSource, name="assignment_source_enum", values_callable=_enum_values),
        nullable=False,
    )
    assigned_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        doc="Acting user; null for automatic routing.",
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
