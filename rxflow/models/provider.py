# rxflow/models/provider.py
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base


class ProviderStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Provider(Base):
    """
    A prescribing clinician. Users with the PROVIDER role link to one of these.
    """

    __tablename__ = "providers"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Foreign Keys
    clinic_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    npi: Mapped[str | None] = mapped_column(String(20), nullable=True)

    license_states: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Two-letter state codes the provider may prescribe in. Empty means unrestricted.",
    )

    status: Mapped[ProviderStatus] = mapped_column(
        Enum(ProviderStatus, name="provider_status_enum"),
        nullable=False,
        default=ProviderStatus.ACTIVE,
        server_default=text("'ACTIVE'"),
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_licensed_in(self, state: str | None) -> bool:
        if not self.license_states or not state:
            return True
        return state.upper() in {s.upper() for s in self.license_states}
