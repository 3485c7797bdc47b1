#!/usr/bin/env python3
"""Setup script for the rental booking service."""

import asyncio
import logging
from datetime import timedelta
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import func, select

from rental_sync.core.clock import utcnow
from rental_sync.core.database import async_session_factory
from rental_sync.models import Booking
from rental_sync.services.booking_ledger import BookingLedger

server_dir = Path(__file__).parent.parent / "server"

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def setup_database() -> None:
    """Apply the Alembic migrations."""
    logger.info("Setting up database...")

    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    logger.info("Running database migrations...")
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed")


async def create_sample_data() -> None:
    """Create a pending booking for local checkout testing."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        existing = await db.execute(select(func.count()).select_from(Booking))
        if existing.scalar() > 0:
            logger.info("Sample data already exists, skipping...")
            return

        starts_at = (utcnow() + timedelta(days=14)).replace(hour=10, minute=0, second=0, microsecond=0)
        booking = await BookingLedger(db).create_pending_booking(
            car_id="car_demo_1",
            renter_id="user_renter_demo",
            host_id="user_host_demo",
            starts_at=starts_at,
            ends_at=starts_at + timedelta(days=3),
            amount_total=45000,  # $450.00
            deposit_amount=15000,
        )
        logger.info(f"Sample booking created: {booking.id}")


def main() -> None:
    """Main setup function."""
    logger.info("Starting rental sync setup...")

    # Alembic runs its own event loop
    setup_database()
    asyncio.run(create_sample_data())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: uvicorn rental_sync.main:app --reload")


if __name__ == "__main__":
    main()
