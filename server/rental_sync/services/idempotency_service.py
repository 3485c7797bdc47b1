"""Replay of client actions repeated with the same Idempotency-Key."""

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import PROBLEM_BASE_URI, ProblemDetailsException
from ..models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)


class IdempotencyMismatchError(ProblemDetailsException):
    """An Idempotency-Key was reused for a different request."""

    def __init__(self, idempotency_key: str, operation: str):
        super().__init__(
            status_code=422,
            title="Idempotency Key Mismatch",
            detail=f"Idempotency key '{idempotency_key}' was already used for {operation} with a different request",
            type_uri=f"{PROBLEM_BASE_URI}/idempotency-key-mismatch",
            extensions={
                "code": "IDEMPOTENCY_KEY_MISMATCH",
                "retryable": False,
                "idempotency_key": idempotency_key,
                "operation": operation,
            },
        )


def request_fingerprint(request_body: dict[str, Any]) -> str:
    """SHA-256 of the request body with sorted keys and no whitespace."""
    canonical = json.dumps(request_body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyService:
    """Stores and replays responses per caller, operation and key."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow, settings: Settings = default_settings):
        self.db = db
        self.clock = clock
        self.settings = settings

    async def lookup(
        self,
        idempotency_key: str,
        operation: str,
        actor_id: str,
        request_body: dict[str, Any],
    ) -> Optional[tuple[int, dict[str, Any]]]:
        """
        Return ``(status_code, body)`` of the first response, or None for a new request.

        Raises:
            IdempotencyMismatchError: If the key was used with another body
        """
        result = await self.db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.actor_id == actor_id,
                IdempotencyRecord.operation == operation,
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.expires_at > self.clock(),
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None

        if record.request_fingerprint != request_fingerprint(request_body):
            logger.warning(
                "Idempotency key reused with a different request",
                extra={"idempotency_key": idempotency_key, "operation": operation, "actor_id": actor_id}
            )
            raise IdempotencyMismatchError(idempotency_key, operation)

        logger.info(
            "Replaying idempotent response",
            extra={
                "idempotency_key": idempotency_key,
                "operation": operation,
                "status_code": record.status_code,
            }
        )
        return record.status_code, record.response_body

    async def remember(
        self,
        idempotency_key: str,
        operation: str,
        actor_id: str,
        request_body: dict[str, Any],
        status_code: int,
        response_body: dict[str, Any],
    ) -> None:
        """Store the first response; a concurrent duplicate keeps the earlier one."""
        now = self.clock()
        self.db.add(IdempotencyRecord(
            idempotency_key=idempotency_key,
            operation=operation,
            actor_id=actor_id,
            request_fingerprint=request_fingerprint(request_body),
            status_code=status_code,
            response_body=response_body,
            created_at=now,
            expires_at=now + timedelta(hours=self.settings.idempotency_ttl_hours),
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Idempotent response already stored by a concurrent request",
                extra={"idempotency_key": idempotency_key, "operation": operation}
            )

    async def purge_expired(self) -> int:
        """Delete expired records; returns how many were removed."""
        result = await self.db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= self.clock())
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Purged expired idempotency records", extra={"deleted_count": result.rowcount})
        return result.rowcount
