# rxflow/models/dead_letter.py
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base


class DeadLetterKind(str, PyEnum):
    PAYMENT_WEBHOOK = "PAYMENT_WEBHOOK"
    PHARMACY_SUBMISSION = "PHARMACY_SUBMISSION"


class DeadLetterStatus(str, PyEnum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    ABANDONED = "ABANDONED"


class DeadLetterEvent(Base):
    """
    An inbound event or outbound call that failed and waits for a retry.
    """

    __tablename__ = "dead_letter_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    clinic_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    kind: Mapped[DeadLetterKind] = mapped_column(
        Enum(DeadLetterKind, name="dead_letter_kind_enum"),
        nullable=False,
    )
    payload: Mapped[str] = mapped_column(Text, nullable=False, doc="JSON string of the event/call payload")
    status: Mapped[DeadLetterStatus] = mapped_column(
        Enum(DeadLetterStatus, name="dead_letter_status_enum"),
        nullable=False,
        default=DeadLetterStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default=text("5"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
