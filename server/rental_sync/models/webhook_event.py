"""Processed webhook event model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class WebhookOutcome(str, Enum):
    """Outcome recorded once an event finished processing."""
    APPLIED = "applied"
    DROPPED = "dropped"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


class WebhookEvent(Base):
    """
    Ledger of provider events.

    A row is inserted when a delivery claims the event id and completed with
    ``processed_at`` and ``outcome`` once the event was handled. Rows are
    retained indefinitely.
    """

    __tablename__ = "webhook_events"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    booking_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    outcome: Mapped[WebhookOutcome | None] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(provider_event_id='{self.provider_event_id}', "
            f"type='{self.event_type}', outcome={self.outcome})>"
        )
