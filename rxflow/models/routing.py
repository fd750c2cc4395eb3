# rxflow/models/routing.py
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base
from rxflow.utils.datetime_utils import utc_now


class RoutingStrategy(str, PyEnum):
    PROVIDER_CHOICE = "PROVIDER_CHOICE"
    ROUND_ROBIN = "ROUND_ROBIN"
    STATE_LICENSE_MATCH = "STATE_LICENSE_MATCH"
    MANUAL_ASSIGNMENT = "MANUAL_ASSIGNMENT"


class ProviderRoutingConfig(Base):
    """
    Per-clinic routing settings. A clinic without a row has routing disabled.
    """

    __tablename__ = "provider_routing_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    clinic_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    routing_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    routing_strategy: Mapped[RoutingStrategy] = mapped_column(
        Enum(RoutingStrategy, name="routing_strategy_enum"),
        nullable=False,
        default=RoutingStrategy.PROVIDER_CHOICE,
    )
    auto_assign_on_approval: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        doc="Route orders as soon as the admin approves the refill (automatic strategies only).",
    )

    # Round robin cursor
    last_assigned_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=-1,
        server_default=text("-1"),
    )
    last_assigned_provider_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("providers.id", ondelete="SET NULL"),
        nullable=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=utc_now,
    )
