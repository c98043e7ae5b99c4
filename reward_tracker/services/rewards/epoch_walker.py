"""
Reward backfill engine.

Walks the reward ledger forward one epoch at a time for an identity scope.
Each epoch is resolved against the network first (reward entries, block
times and fiat rates), then written in a single database transaction, so
an epoch is either fully recorded or not recorded at all.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog

from reward_tracker.core.config import TrackerConfig
from reward_tracker.core.database import get_async_session
from reward_tracker.core.exceptions import DataInconsistencyError, MissingBlockTimeError
from reward_tracker.models.reward import Reward
from reward_tracker.services.database import RewardRepository
from reward_tracker.services.epoch_clock import EpochClock
from reward_tracker.services.fiat_converter import FiatConverter, truncate_to_utc_midnight
from reward_tracker.services.solana_client import InflationReward
from .scopes import RewardScope
from .types import BackfillStats, BackfillStatus, ResolvedReward, TrackedIdentity


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RewardBackfillEngine:
    """
    Epoch walker shared by the delegator and validator reward jobs.

    The scope supplies the resume cursor, the identities of an epoch and the
    eligibility rule; everything else (cumulative totals, fiat valuation,
    collision cleanup and failure handling) lives here.
    """

    def __init__(
        self,
        scope: RewardScope,
        config: TrackerConfig,
        network_client,
        price_service
    ):
        self.scope = scope
        self.config = config
        self.network_client = network_client
        self.epoch_clock = EpochClock(network_client)
        self.fiat = FiatConverter(price_service)
        self.logger = logger.bind(service="reward_backfill", scope=scope.name)

        self.status = BackfillStatus.IDLE
        self.stats = BackfillStats(scope=scope.name)
        self._stop_requested = False

    def request_stop(self):
        """Ask the walk to stop after the epoch in progress."""
        self._stop_requested = True

    @property
    def is_running(self) -> bool:
        return self.status == BackfillStatus.RUNNING

    async def run(self) -> BackfillStats:
        """
        Run one backfill tick.

        Never raises: failures are logged and recorded in the returned stats,
        and the next tick resumes from the ledger.
        """
        if self.is_running:
            self.logger.warning("Backfill already running, skipping")
            return self.stats

        self.status = BackfillStatus.RUNNING
        self.stats = BackfillStats(scope=self.scope.name, start_time=datetime.now(timezone.utc))
        self._stop_requested = False

        try:
            await self.walk()
            self.status = BackfillStatus.STOPPED if self._stop_requested else BackfillStatus.COMPLETED

        except Exception as e:
            self.status = BackfillStatus.FAILED
            self.stats.errors.append(str(e))
            self.logger.error(
                "Reward backfill failed",
                epoch=self.stats.current_epoch,
                error=str(e),
                error_type=type(e).__name__
            )
            if self.config.rolls_back_last_epoch:
                await self._rollback_last_epoch()

        finally:
            self.stats.end_time = datetime.now(timezone.utc)
            # Cancelled mid-walk
            if self.status == BackfillStatus.RUNNING:
                self.status = BackfillStatus.STOPPED

        self.logger.info(
            "Reward backfill finished",
            status=self.status.value,
            resume_epoch=self.stats.resume_epoch,
            target_epoch=self.stats.target_epoch,
            epochs_processed=self.stats.epochs_processed,
            rewards_written=self.stats.rewards_written,
            entries_skipped=self.stats.entries_skipped,
            duration=f"{self.stats.duration_seconds:.2f}s"
        )
        return self.stats

    async def walk(self):
        """Process every finished epoch after the scope's cursor, in order."""
        async with get_async_session() as session:
            last_epoch = await self.scope.last_recorded_epoch(RewardRepository(session))

        resume = self.config.start_epoch if last_epoch is None else last_epoch + 1
        # The current epoch's rewards are not final yet
        target = await self.epoch_clock.current_epoch()

        self.stats.resume_epoch = resume
        self.stats.target_epoch = target

        if resume >= target:
            self.logger.info("Rewards up to date", resume_epoch=resume, current_epoch=target)
            return

        self.logger.info("Backfilling rewards", resume_epoch=resume, target_epoch=target)

        for epoch in range(resume, target):
            if self._stop_requested:
                self.logger.info("Backfill stop requested", next_epoch=epoch)
                return

            self.stats.current_epoch = epoch
            await self._process_epoch(epoch)
            self.stats.epochs_processed += 1

    async def _process_epoch(self, epoch: int):
        async with get_async_session() as session:
            identities = await self.scope.identities(session, epoch)

        entries = await self._fetch_entries(identities, epoch)
        if not any(entry is not None for entry in entries.values()):
            self.stats.epochs_without_rewards += 1
            self.logger.info("No rewards found for epoch", epoch=epoch, identities=len(identities))
            return

        eligible: List[Tuple[TrackedIdentity, InflationReward]] = []
        for identity in identities:
            entry = entries.get(identity.query_pubkey)
            if self.scope.is_eligible(identity, entry, epoch):
                eligible.append((identity, entry))
            elif entry is not None:
                self.stats.entries_skipped += 1
                self.logger.debug(
                    "Reward outside eligibility window",
                    identity=identity.identity_id,
                    epoch=epoch,
                    activation_epoch=identity.activation_epoch,
                    deactivation_epoch=identity.deactivation_epoch
                )

        if not eligible:
            return

        resolved = await self._resolve(eligible)

        async with get_async_session() as session:
            rewards = RewardRepository(session)
            for item in resolved:
                await self._write_reward(rewards, item, epoch)

        self.stats.rewards_written += len(resolved)
        self.logger.info("Epoch rewards recorded", epoch=epoch, rewards=len(resolved))

    async def _fetch_entries(
        self,
        identities: List[TrackedIdentity],
        epoch: int
    ) -> Dict[str, Optional[InflationReward]]:
        """Reward entry per query address, None where the cluster reports none."""
        pubkeys = [identity.query_pubkey for identity in identities]
        batch_size = self.config.inflation_reward_batch_size if self.scope.batched else 1

        entries: Dict[str, Optional[InflationReward]] = {}
        for start in range(0, len(pubkeys), batch_size):
            batch = pubkeys[start:start + batch_size]
            results = await self.network_client.fetch_inflation_rewards(batch, epoch)
            if len(results) != len(batch):
                raise DataInconsistencyError(
                    "Inflation reward response does not match the requested addresses",
                    {"epoch": epoch, "requested": len(batch), "received": len(results)}
                )
            entries.update(zip(batch, results))
        return entries

    async def _resolve(
        self,
        eligible: List[Tuple[TrackedIdentity, InflationReward]]
    ) -> List[ResolvedReward]:
        """Resolve block days and fiat rates, one lookup per distinct slot and day."""
        slots = sorted({entry.effective_slot for _, entry in eligible})
        block_times = await self._bounded_gather(
            [lambda slot=slot: self.network_client.fetch_block_time(slot) for slot in slots]
        )
        days: Dict[int, datetime] = {}
        for slot, block_time in zip(slots, block_times):
            if block_time is None:
                raise MissingBlockTimeError(slot)
            days[slot] = truncate_to_utc_midnight(block_time)

        unique_days = sorted(set(days.values()))
        rates = await self._bounded_gather(
            [lambda day=day: self.fiat.rate_at(day) for day in unique_days]
        )
        rate_by_day = dict(zip(unique_days, rates))

        return [
            ResolvedReward(
                identity=identity,
                entry=entry,
                timestamp=days[entry.effective_slot],
                fiat_rate=rate_by_day[days[entry.effective_slot]],
            )
            for identity, entry in eligible
        ]

    async def _write_reward(self, rewards: RewardRepository, item: ResolvedReward, epoch: int):
        identity_id = item.identity.identity_id
        amount = item.entry.amount
        rate = item.fiat_rate

        removed = await rewards.delete_colliding(identity_id, epoch, item.timestamp)
        if removed:
            self.logger.warning(
                "Replaced existing reward",
                identity=identity_id,
                epoch=epoch,
                timestamp=item.timestamp.isoformat(),
                removed=removed
            )

        previous = await rewards.latest_reward(identity_id)
        reward_usd = self.fiat.to_fiat(amount, rate)

        await rewards.add(Reward(
            delegator_id=identity_id,
            epoch_num=epoch,
            timestamp=item.timestamp,
            fiat_rate=rate,
            reward=amount,
            reward_usd=reward_usd,
            total_reward=(previous.total_reward if previous else 0) + amount,
            total_reward_usd=(previous.total_reward_usd if previous else 0.0) + reward_usd,
            pending_rewards=(previous.pending_rewards if previous else 0) + amount,
            pending_rewards_usd=(previous.pending_rewards_usd if previous else 0.0) + reward_usd,
            post_balance=item.entry.post_balance,
            post_balance_usd=self.fiat.to_fiat(item.entry.post_balance, rate),
            staked_amount=item.identity.staked_amount,
            staked_amount_usd=self.fiat.to_fiat(item.identity.staked_amount, rate),
        ))

    async def _bounded_gather(self, calls: List[Callable[[], Awaitable[T]]]) -> List[T]:
        """Run calls with bounded concurrency; the first failure cancels the rest."""
        semaphore = asyncio.Semaphore(max(1, self.config.backfill_max_concurrency))

        async def run_one(call: Callable[[], Awaitable[T]]) -> T:
            async with semaphore:
                return await call()

        tasks = [asyncio.ensure_future(run_one(call)) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _rollback_last_epoch(self):
        try:
            async with get_async_session() as session:
                epoch = await RewardRepository(session).delete_latest_epoch()
            self.stats.rolled_back_epoch = epoch
            self.logger.warning("Rolled back latest ledger epoch", epoch=epoch)
        except Exception as e:
            self.logger.error("Failed to roll back latest ledger epoch", error=str(e))
