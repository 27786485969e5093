"""Command line entry points for migrations and the reconciliation worker.

Usage:
    account-lifecycle migrate
    account-lifecycle reconcile
    account-lifecycle worker

``reconcile`` runs a single pass and exits; ``worker`` keeps the daily
schedule in the foreground until SIGTERM/SIGINT. On a signal the account in
flight is finished and the rest are left for the next run.
"""

from __future__ import annotations

import json
import logging
import signal
import sys

import click

from .config import get_settings
from .domain.reconciliation import ReconciliationJob
from .errors import ReconciliationError, RunInProgressError, RunLockUnavailableError
from .jobs.run_lock import build_run_lock
from .jobs.scheduler import ReconciliationScheduler
from .repository import AccountRepository, build_pool

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _build_scheduler(repository: AccountRepository) -> ReconciliationScheduler:
    settings = get_settings()
    job = ReconciliationJob(repository, grace_period=settings.grace_period)
    return ReconciliationScheduler(
        job,
        build_run_lock(settings.run_lock_backend, settings.redis_url, settings.run_lock_ttl_seconds),
        run_at=settings.reconciliation_run_at,
    )


def _install_stop_handlers(scheduler: ReconciliationScheduler) -> None:
    def handle(signum, _frame) -> None:
        logger.warning("received %s, stopping after the current account", signal.Signals(signum).name)
        scheduler.stop(timeout=0)

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)


@click.group()
def cli():
    """Account lifecycle service tools."""
    _configure_logging(get_settings().log_level)


@cli.command()
def migrate():
    """Apply pending schema migrations."""
    pool = build_pool(get_settings())
    pool.open()
    try:
        applied = AccountRepository(pool).apply_migrations()
    finally:
        pool.close()
    if applied:
        click.echo(f"applied: {', '.join(applied)}")
    else:
        click.echo("schema is up to date")


@cli.command()
def reconcile():
    """Run one reconciliation pass and print its summary as JSON."""
    pool = build_pool(get_settings())
    pool.open()
    try:
        scheduler = _build_scheduler(AccountRepository(pool))
        _install_stop_handlers(scheduler)
        summary = scheduler.trigger(source="cli")
    except (ReconciliationError, RunInProgressError, RunLockUnavailableError) as exc:
        click.echo(f"reconciliation failed: {exc}", err=True)
        sys.exit(1)
    finally:
        pool.close()
    click.echo(json.dumps(summary.as_dict(), indent=2))


@cli.command()
@click.option("--interval", default=1.0, show_default=True, help="Seconds between schedule checks")
def worker(interval: float):
    """Run the daily reconciliation schedule in the foreground."""
    pool = build_pool(get_settings())
    pool.open()
    try:
        scheduler = _build_scheduler(AccountRepository(pool))
        _install_stop_handlers(scheduler)
        scheduler.run_forever(interval=interval)
    except RunLockUnavailableError as exc:
        click.echo(f"worker not started: {exc}", err=True)
        sys.exit(1)
    finally:
        pool.close()
    logger.info("reconciliation worker stopped")


if __name__ == "__main__":
    cli()
