"""
Command line interface for the reward tracker.
"""

import asyncio
import sys
from typing import Optional

import typer
from alembic import command
from alembic.config import Config
from rich.console import Console
from rich.table import Table

from reward_tracker.core.config import TrackerConfig, settings
from reward_tracker.core.database import (
    DatabaseManager, close_database, get_async_session, init_database
)
from reward_tracker.core.logging import setup_logging
from reward_tracker.services.apr_estimator import AprEstimator
from reward_tracker.services.coingecko_service import (
    close_coingecko_service, get_coingecko_service
)
from reward_tracker.services.database import DelegatorRepository, RewardRepository
from reward_tracker.services.epoch_clock import EpochClock
from reward_tracker.services.solana_client import close_solana_client, get_solana_client

console = Console()
app = typer.Typer(help="Validator delegator and reward tracking commands")


async def _with_services(operation):
    """Run ``operation(config, network_client, price_service)`` with everything initialized."""
    setup_logging(settings.log_file)
    await init_database()
    try:
        network_client = await get_solana_client()
        price_service = get_coingecko_service()
        return await operation(TrackerConfig.from_settings(), network_client, price_service)
    finally:
        await close_solana_client()
        await close_coingecko_service()
        await close_database()


@app.command()
def run():
    """Run the scheduler service until interrupted."""
    from reward_tracker.scheduler.main import main

    asyncio.run(main())


@app.command("init-db")
def init_db():
    """Initialize database with tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)

    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


@app.command()
def reconcile():
    """Run one delegator reconciliation tick."""
    from reward_tracker.scheduler.main import build_jobs

    async def _reconcile(config, network_client, price_service):
        return await build_jobs(config, network_client, price_service).reconciler.run()

    stats = asyncio.run(_with_services(_reconcile))

    table = Table(title="Delegator Reconciliation")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Current epoch", str(stats.current_epoch))
    table.add_row("Live delegators", str(stats.live_delegators))
    table.add_row("Created", str(stats.created))
    table.add_row("Unstaked", str(stats.unstaked))
    table.add_row("APR refreshed", str(stats.apr_refreshed))
    table.add_row("Skipped", str(stats.skipped))
    table.add_row("Retired", str(stats.retired))
    console.print(table)

    if stats.errors:
        console.print(f"❌ Reconciliation failed: {stats.errors[0]}")
        sys.exit(1)


@app.command()
def backfill(
    validator: bool = typer.Option(False, "--validator", help="Backfill the validator's own rewards")
):
    """Run one reward backfill tick for delegators (default) or the validator."""
    from reward_tracker.scheduler.main import build_jobs

    async def _backfill(config, network_client, price_service):
        jobs = build_jobs(config, network_client, price_service)
        engine = jobs.validator_rewards if validator else jobs.delegator_rewards
        stats = await engine.run()
        return engine.status, stats

    status, stats = asyncio.run(_with_services(_backfill))

    table = Table(title=f"Reward Backfill ({stats.scope})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", status.value)
    table.add_row("Epochs", f"{stats.resume_epoch} → {stats.target_epoch}")
    table.add_row("Epochs processed", str(stats.epochs_processed))
    table.add_row("Epochs without rewards", str(stats.epochs_without_rewards))
    table.add_row("Rewards written", str(stats.rewards_written))
    table.add_row("Entries skipped", str(stats.entries_skipped))
    if stats.rolled_back_epoch is not None:
        table.add_row("Rolled back epoch", str(stats.rolled_back_epoch))
    table.add_row("Duration", f"{stats.duration_seconds:.2f}s")
    console.print(table)

    if stats.errors:
        console.print(f"❌ Backfill failed: {stats.errors[0]}")
        sys.exit(1)


@app.command()
def apr(
    identity: str = typer.Argument(..., help="Delegator or validator identity key"),
    epoch: Optional[int] = typer.Option(None, help="Latest epoch to include, defaults to the current epoch")
):
    """Estimate the trailing APR of an identity from the reward ledger."""
    async def _apr(config, network_client, price_service):
        latest_epoch = epoch if epoch is not None else await EpochClock(network_client).current_epoch()
        async with get_async_session() as session:
            record = await DelegatorRepository(session).get(identity)
            value = await AprEstimator().estimate(RewardRepository(session), identity, latest_epoch)
        return record, latest_epoch, value

    record, latest_epoch, value = asyncio.run(_with_services(_apr))

    if record is None:
        console.print(f"⚠️ {identity} is not tracked, estimating from the ledger only")
    elif record.unstaked:
        console.print(f"⚠️ {identity} unstaked at epoch {record.unstaked_epoch}")

    console.print(f"📈 APR for {identity} up to epoch {latest_epoch}: {value:.4f}%")


if __name__ == "__main__":
    app()
