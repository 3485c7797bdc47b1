"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Dict, Optional

from ..core.config import Settings, settings as default_settings
from ..core.dependencies import get_payment_provider
from ..services.payment_provider import PaymentProvider
from .base import BaseWorker
from .lifecycle_worker import LifecycleWorker
from .payout_worker import PayoutWorker
from .refund_worker import RefundWorker
from .stale_checkout_worker import StaleCheckoutWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Manages background workers for the application.

    Coordinates starting, stopping, and monitoring of all background workers.
    """

    def __init__(self, provider: Optional[PaymentProvider] = None, settings: Settings = default_settings):
        """Initialize the worker manager."""
        self.settings = settings
        self.provider = provider
        self.workers: Dict[str, BaseWorker] = {}

    def _setup_workers(self) -> None:
        """Initialize all workers."""
        provider = self.provider or get_payment_provider()
        grace = self.settings.worker_shutdown_grace_seconds

        self.workers["stale_checkout"] = StaleCheckoutWorker(
            provider,
            interval_seconds=self.settings.stale_checkout_interval_seconds,
            shutdown_grace_seconds=grace,
        )
        self.workers["lifecycle"] = LifecycleWorker(
            interval_seconds=self.settings.completion_interval_seconds,
            shutdown_grace_seconds=grace,
        )
        self.workers["refunds"] = RefundWorker(
            provider,
            interval_seconds=self.settings.refund_interval_seconds,
            shutdown_grace_seconds=grace,
        )
        self.workers["payouts"] = PayoutWorker(
            provider,
            interval_seconds=self.settings.payout_interval_seconds,
            shutdown_grace_seconds=grace,
        )

        logger.info(f"Initialized {len(self.workers)} workers")

    async def start_all(self) -> None:
        """Start all workers."""
        if not self.workers:
            self._setup_workers()

        logger.info("Starting all workers")
        for name, worker in self.workers.items():
            try:
                await worker.start()
                logger.info(f"Started worker: {name}")
            except Exception as e:
                logger.error(f"Failed to start worker {name}: {str(e)}", exc_info=True)

        logger.info(f"Started {len(self.workers)} workers")

    async def stop_all(self) -> None:
        """Stop all workers gracefully."""
        logger.info("Stopping all workers")

        names = [name for name, worker in self.workers.items() if worker.is_running]
        results = await asyncio.gather(
            *(self.workers[name].stop() for name in names),
            return_exceptions=True,
        )

        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping worker {name}: {str(result)}")
            else:
                logger.info(f"Stopped worker: {name}")

        logger.info("All workers stopped")

    def get_worker(self, name: str) -> BaseWorker:
        """
        Get a specific worker by name.

        Raises:
            KeyError: If worker not found
        """
        return self.workers[name]

    def get_worker_status(self) -> Dict[str, bool]:
        """Map worker names to their running status."""
        return {name: worker.is_running for name, worker in self.workers.items()}


# Global worker manager instance
worker_manager = WorkerManager()
