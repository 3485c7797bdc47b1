"""Idempotency record model definition."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class IdempotencyRecord(Base):
    """
    First response to a client action sent with an Idempotency-Key.

    Keys are scoped to the caller and the operation, so two renters reusing
    the same key never see each other's bookings.
    """

    __tablename__ = "idempotency_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # SHA-256 of the canonical request body
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint("length(idempotency_key) > 0", name="ck_idempotency_key_not_empty"),
        CheckConstraint("status_code BETWEEN 200 AND 599", name="ck_idempotency_status_code"),
        UniqueConstraint("actor_id", "operation", "idempotency_key", name="uq_idempotency_actor_operation_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord(actor={self.actor_id}, operation='{self.operation}', "
            f"key='{self.idempotency_key}', status={self.status_code})>"
        )
