"""
Main entry point for the scheduler service.
Runs delegator reconciliation and the daily reward backfills.
"""

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import structlog

from reward_tracker.core.config import TrackerConfig, settings
from reward_tracker.core.database import close_database, init_database
from reward_tracker.core.exceptions import ConfigurationError
from reward_tracker.core.logging import setup_logging
from reward_tracker.services.apr_estimator import AprEstimator
from reward_tracker.services.coingecko_service import (
    close_coingecko_service, get_coingecko_service
)
from reward_tracker.services.delegator_reconciler import DelegatorReconciler
from reward_tracker.services.rewards import (
    DelegatorRewardScope, RewardBackfillEngine, ValidatorRewardScope
)
from reward_tracker.services.solana_client import close_solana_client, get_solana_client
from reward_tracker.services.stake_transaction_discovery import StakeTransactionDiscovery
from .task_scheduler import TaskScheduler

logger = structlog.get_logger(__name__)


@dataclass
class TrackerJobs:
    """The three periodic jobs, wired to shared clients."""
    reconciler: DelegatorReconciler
    validator_rewards: RewardBackfillEngine
    delegator_rewards: RewardBackfillEngine

    def request_stop(self):
        self.validator_rewards.request_stop()
        self.delegator_rewards.request_stop()


def build_jobs(config: TrackerConfig, network_client, price_service) -> TrackerJobs:
    """Wire the jobs to their collaborators."""
    if not config.validator_pub_key:
        raise ConfigurationError("VALIDATOR_PUB_KEY is not set")

    discovery = StakeTransactionDiscovery(config, network_client, price_service)
    return TrackerJobs(
        reconciler=DelegatorReconciler(config, network_client, discovery, AprEstimator()),
        validator_rewards=RewardBackfillEngine(
            ValidatorRewardScope(config), config, network_client, price_service
        ),
        delegator_rewards=RewardBackfillEngine(
            DelegatorRewardScope(), config, network_client, price_service
        ),
    )


class SchedulerMain:
    """Main scheduler service coordinator."""

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config
        self.jobs: Optional[TrackerJobs] = None
        self.task_scheduler: Optional[TaskScheduler] = None
        self.running = False
        self.tasks = []

    async def initialize(self):
        """Initialize scheduler components."""
        try:
            logger.info("Initializing scheduler service")

            # Initialize database first
            await init_database()

            self.config = self.config or TrackerConfig.from_settings()
            network_client = await get_solana_client()
            price_service = get_coingecko_service()
            self.jobs = build_jobs(self.config, network_client, price_service)

            self.task_scheduler = TaskScheduler(loop_interval=settings.scheduler_loop_interval)
            self.task_scheduler.register_task(
                "delegator_reconciliation",
                self.jobs.reconciler.run,
                interval_seconds=settings.delegator_reconcile_interval_seconds,
                run_immediately=True
            )
            self.task_scheduler.register_task(
                "validator_rewards",
                self.jobs.validator_rewards.run,
                utc_hour=settings.rewards_utc_hour
            )
            self.task_scheduler.register_task(
                "delegator_rewards",
                self.jobs.delegator_rewards.run,
                utc_hour=settings.rewards_utc_hour
            )

            logger.info(
                "Scheduler service initialized successfully",
                validator=self.config.validator_pub_key,
                start_epoch=self.config.start_epoch,
                rollback_mode=self.config.reward_rollback_mode
            )

        except Exception as e:
            logger.error("Failed to initialize scheduler", error=str(e))
            raise

    async def start(self):
        """Start the scheduler service."""
        try:
            logger.info("Starting scheduler service")

            self.running = True

            task_scheduler_task = asyncio.create_task(self.task_scheduler.start())
            self.tasks.append(task_scheduler_task)

            health_check_task = asyncio.create_task(self._periodic_health_check())
            self.tasks.append(health_check_task)

            logger.info("Scheduler service started")

            await asyncio.gather(*self.tasks, return_exceptions=True)

        except Exception as e:
            logger.error("Scheduler service error", error=str(e))
            raise

    async def stop(self):
        """Stop the scheduler service, letting running jobs finish their current unit."""
        if not self.running and not self.tasks:
            return

        logger.info("Stopping scheduler service")

        self.running = False

        if self.jobs:
            self.jobs.request_stop()

        if self.task_scheduler:
            await self.task_scheduler.stop(wait=True)

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        await close_solana_client()
        await close_coingecko_service()
        await close_database()

        logger.info("Scheduler service stopped")

    async def _periodic_health_check(self):
        """Periodic health check for scheduler components."""
        while self.running:
            try:
                await asyncio.sleep(300)  # 5 minutes

                if not self.running:
                    break

                task_scheduler_health = await self.task_scheduler.health_check()
                logger.info("Scheduler health check", task_scheduler=task_scheduler_health)

                if not task_scheduler_health["healthy"]:
                    logger.warning("Scheduler unhealthy", tasks=task_scheduler_health["tasks"])

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main():
    """Main function to run the scheduler service."""
    setup_logging(settings.log_file)

    scheduler = SchedulerMain()
    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info("Received signal, shutting down", signal=signum)
        asyncio.ensure_future(scheduler.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await scheduler.initialize()
        if settings.scheduler_enabled:
            await scheduler.start()
        else:
            logger.warning("Scheduler disabled by configuration")
    except Exception as e:
        logger.error("Scheduler service failed", error=str(e))
        raise
    finally:
        await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(main())
