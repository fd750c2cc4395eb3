# rxflow/models/idempotency.py
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base


class IdempotencyRecord(Base):
    """
    Stored result of the first successful call made with a client-supplied key.

    Inserted without a response when the call starts, which reserves the key;
    the response is filled in once the call succeeds. Purged after the
    retention window.
    """

    __tablename__ = "idempotency_records"
    __table_args__ = (UniqueConstraint("key", "resource", name="uq_idempotency_key_resource"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    resource: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Operation the key belongs to, e.g. refill_approve or payment_webhook.",
    )
    clinic_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    request_fingerprint: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        doc="Hash of the original request (method, path, body); a replay must match it.",
    )

    # Both NULL while the first call is still running.
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True, doc="JSON string of the response body")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
