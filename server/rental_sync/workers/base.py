"""Base worker class for background tasks."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from ..core.observability import metrics_collector

logger = logging.getLogger(__name__)

# Upper bound on the pause after repeated failures
MAX_BACKOFF_SECONDS = 900


class BaseWorker(ABC):
    """
    Periodic background job sharing the application's event loop.

    Stopping sets a flag that ``process`` implementations poll through
    ``should_stop``; the running iteration gets a grace period before it
    is cancelled. Failed iterations are retried after a pause that doubles
    with each consecutive failure.
    """

    def __init__(self, name: str, interval_seconds: int = 60, shutdown_grace_seconds: float = 30.0):
        """
        Args:
            name: Worker name for logs and metrics
            interval_seconds: Time between the starts of two iterations
            shutdown_grace_seconds: How long stop() waits for the running iteration
        """
        self.name = name
        self.interval_seconds = interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.consecutive_failures = 0
        self._running = False
        self._stop_requested: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def should_stop(self) -> bool:
        """True once stop() was called."""
        return self._stop_requested is not None and self._stop_requested.is_set()

    @abstractmethod
    async def process(self) -> None:
        """Run one iteration."""

    async def start(self) -> None:
        if self._running:
            logger.warning(f"{self.name} worker is already running")
            return

        self._running = True
        self.consecutive_failures = 0
        self._stop_requested = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"worker:{self.name}")
        logger.info(
            f"{self.name} worker started",
            extra={"worker": self.name, "interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Ask the loop to stop, cancelling it after the grace period."""
        if not self._running:
            logger.warning(f"{self.name} worker is not running")
            return

        self._running = False
        self._stop_requested.set()

        if self._task:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self.shutdown_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{self.name} worker did not finish within the grace period; cancelling",
                    extra={"worker": self.name, "grace_seconds": self.shutdown_grace_seconds}
                )
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        logger.info(f"{self.name} worker stopped", extra={"worker": self.name})

    def next_delay(self, elapsed: float) -> float:
        """Seconds to wait before the next iteration."""
        if self.consecutive_failures:
            return min(self.interval_seconds * 2 ** (self.consecutive_failures - 1), MAX_BACKOFF_SECONDS)
        return max(0.0, self.interval_seconds - elapsed)

    async def _sleep(self, seconds: float) -> None:
        """Sleep until the next iteration or until stop() is called."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        while not self.should_stop():
            started = time.monotonic()
            try:
                await self.process()
            except asyncio.CancelledError:
                logger.info(f"{self.name} worker cancelled mid-iteration", extra={"worker": self.name})
                raise
            except Exception:
                self.consecutive_failures += 1
                metrics_collector.record_worker_iteration(self.name, "failed")
                logger.exception(
                    f"{self.name} worker iteration failed",
                    extra={"worker": self.name, "consecutive_failures": self.consecutive_failures}
                )
            else:
                self.consecutive_failures = 0
                metrics_collector.record_worker_iteration(self.name, "succeeded")
                logger.debug(
                    f"{self.name} worker iteration completed",
                    extra={"worker": self.name, "duration_seconds": round(time.monotonic() - started, 3)}
                )

            await self._sleep(self.next_delay(time.monotonic() - started))
