# rxflow/models/clinic.py
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base


class Clinic(Base):
    """
    A tenant. Every clinical row references exactly one clinic.
    """

    __tablename__ = "clinics"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
        doc="Inactive clinics are skipped by batch jobs.",
    )
    default_bud_days: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=90,
        server_default=text("90"),
        doc="Beyond-use date of compounded medication, in days. Drives shipment splitting.",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
