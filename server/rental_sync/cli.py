"""Operator command line entry points."""

import asyncio
import json
import logging
import signal
from typing import Callable, Optional

import click

from .core.config import Settings, load_settings
from .core.database import create_engine_for, create_session_factory
from .services.payment_provider import PaymentProvider, StripePaymentProvider
from .services.stale_checkout_sweep import StaleCheckoutSweep, SweepReport

logger = logging.getLogger(__name__)


def _install_stop_handlers(stop_requested: asyncio.Event) -> None:
    """Turn SIGINT and SIGTERM into the sweep's stop flag."""
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass


async def run_sweep(
    settings: Settings,
    limit: Optional[int] = None,
    older_than_ms: Optional[int] = None,
    provider: Optional[PaymentProvider] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> SweepReport:
    """Run one stale checkout sweep against the configured database."""
    engine = create_engine_for(settings.database_url)
    session_factory = create_session_factory(engine)
    provider = provider or StripePaymentProvider(settings)

    if should_stop is None:
        stop_requested = asyncio.Event()
        _install_stop_handlers(stop_requested)
        should_stop = stop_requested.is_set

    try:
        async with session_factory() as db:
            sweep = StaleCheckoutSweep(db, provider, settings=settings)
            return await sweep.run(older_than_ms=older_than_ms, limit=limit, should_stop=should_stop)
    finally:
        await engine.dispose()


@click.command(name="rental-sync-sweep")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum sessions to examine")
@click.option(
    "--older-than-ms",
    type=click.IntRange(min=0),
    default=None,
    help="Only examine sessions created at least this long ago",
)
@click.option("--prod", is_flag=True, help="Use .env.production")
@click.option("--preview", metavar="NAME", default=None, help="Use .env.preview.NAME")
def main(limit: Optional[int], older_than_ms: Optional[int], prod: bool, preview: Optional[str]) -> None:
    """Reconcile checkout sessions the webhook stream left in created."""
    if prod and preview:
        raise click.UsageError("--prod and --preview are mutually exclusive")

    try:
        settings = load_settings(prod=prod, preview=preview)
    except ValueError as e:
        raise click.UsageError(str(e))

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    click.echo(
        f"Sweeping stale checkout sessions ({settings.environment}"
        f"{': ' + settings.preview_name if settings.preview_name else ''})",
        err=True,
    )

    try:
        report = asyncio.run(run_sweep(settings, limit=limit, older_than_ms=older_than_ms))
    except Exception as e:
        logger.error("Stale checkout sweep failed", exc_info=True)
        click.echo(f"Sweep failed: {e}", err=True)
        raise SystemExit(1)

    click.echo(json.dumps(report.as_dict(), sort_keys=True))


if __name__ == "__main__":
    main()
