"""
Delegator reconciler.

Mirrors the validator's live stake accounts into the identity store:
creates new delegators, marks deactivated ones unstaked, refreshes APR
estimates and retires accounts that disappeared from the cluster.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog

from reward_tracker.core.config import TrackerConfig
from reward_tracker.core.database import get_async_session
from reward_tracker.core.exceptions import DataInconsistencyError, ValidationError
from reward_tracker.models.delegator import Delegator, IdentityType
from .apr_estimator import AprEstimator
from .database import DelegatorRepository, RewardRepository, TransactionRepository
from .epoch_clock import EpochClock
from .solana_client import Delegation


logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationStats:
    """Outcome counters for one reconciliation tick."""
    current_epoch: Optional[int] = None
    live_delegators: int = 0
    created: int = 0
    unstaked: int = 0
    apr_refreshed: int = 0
    unchanged: int = 0
    skipped: int = 0
    retired: int = 0
    discoveries: int = 0
    errors: List[str] = field(default_factory=list)


class DelegatorReconciler:
    """Keeps the identity store in line with the validator's live delegations."""

    def __init__(
        self,
        config: TrackerConfig,
        network_client,
        discovery,
        apr_estimator: Optional[AprEstimator] = None
    ):
        self.config = config
        self.network_client = network_client
        self.discovery = discovery
        self.apr_estimator = apr_estimator or AprEstimator()
        self.epoch_clock = EpochClock(network_client)
        self.logger = logger.bind(service="delegator_reconciler")
        self.stats = ReconciliationStats()

    async def run(self) -> ReconciliationStats:
        """Run one reconciliation tick. Errors are logged, never raised."""
        self.stats = ReconciliationStats()
        try:
            await self.reconcile()
            self.logger.info(
                "Delegator reconciliation completed",
                current_epoch=self.stats.current_epoch,
                live_delegators=self.stats.live_delegators,
                created=self.stats.created,
                unstaked=self.stats.unstaked,
                apr_refreshed=self.stats.apr_refreshed,
                skipped=self.stats.skipped,
                retired=self.stats.retired
            )
        except Exception as e:
            self.stats.errors.append(str(e))
            self.logger.error(
                "Delegator reconciliation failed",
                error=str(e),
                error_type=type(e).__name__
            )
        return self.stats

    async def reconcile(self):
        current_epoch = await self.epoch_clock.current_epoch()
        delegations = await self.network_client.fetch_delegations(self.config.validator_pub_key)

        self.stats.current_epoch = current_epoch
        self.stats.live_delegators = len(delegations)

        await self._refresh_validator(current_epoch)

        semaphore = asyncio.Semaphore(max(1, self.config.reconciler_max_concurrency))

        async def guarded(delegation: Delegation):
            async with semaphore:
                await self._process_delegation(delegation, current_epoch)

        results = await asyncio.gather(
            *(guarded(delegation) for delegation in delegations),
            return_exceptions=True
        )

        failures = []
        for delegation, result in zip(delegations, results):
            if isinstance(result, (ValidationError, DataInconsistencyError)):
                self.stats.skipped += 1
                self.logger.warning(
                    "Skipping delegator",
                    delegator=delegation.pubkey,
                    error=str(result)
                )
            elif isinstance(result, BaseException):
                failures.append(result)
                self.logger.error(
                    "Delegator processing failed",
                    delegator=delegation.pubkey,
                    error=str(result)
                )
        if failures:
            raise failures[0]

        live_ids = [delegation.pubkey for delegation in delegations]
        async with get_async_session() as session:
            retired = await DelegatorRepository(session).mark_absent_unstaked(
                live_ids, current_epoch, datetime.now(timezone.utc)
            )
        self.stats.retired = retired
        if retired:
            self.logger.info("Retired delegators absent from the cluster", count=retired)

    async def _refresh_validator(self, current_epoch: int):
        """Create the validator's own identity if missing and update its APR."""
        async with get_async_session() as session:
            delegators = DelegatorRepository(session)
            validator = await delegators.get(self.config.validator_id)
            if validator is None:
                validator = delegators.add(Delegator(
                    delegator_id=self.config.validator_id,
                    identity_type=IdentityType.VALIDATOR.value,
                    staked_amount=0,
                    activation_epoch=0,
                    deactivation_epoch=None,
                    unstaked=False,
                    unstaked_epoch=-1,
                    apr=0.0,
                ))
                self.logger.info("Validator identity created", validator=self.config.validator_id)

            apr = await self.apr_estimator.estimate(
                RewardRepository(session), self.config.validator_id, current_epoch
            )
            if validator.apr != apr:
                validator.apr = apr

    async def _process_delegation(self, delegation: Delegation, current_epoch: int):
        pubkey = delegation.pubkey

        async with get_async_session() as session:
            delegators = DelegatorRepository(session)
            record = await delegators.get(pubkey)

            if record is None:
                await self._create(session, delegation, current_epoch)
                needs_discovery = True
            else:
                needs_discovery = not await TransactionRepository(session).exists_for_delegator(pubkey)
                await self._update(session, record, delegation, current_epoch)

        # Discovery talks to the network, so it runs outside the session
        if needs_discovery:
            self.stats.discoveries += 1
            await self.discovery.discover(pubkey, delegation.staked_amount)

    async def _create(self, session, delegation: Delegation, current_epoch: int):
        unstaked = current_epoch >= delegation.deactivation_epoch
        apr = 0.0 if unstaked else await self.apr_estimator.estimate(
            RewardRepository(session), delegation.pubkey, current_epoch
        )

        DelegatorRepository(session).add(Delegator(
            delegator_id=delegation.pubkey,
            identity_type=IdentityType.DELEGATOR.value,
            staked_amount=delegation.staked_amount,
            activation_epoch=delegation.activation_epoch,
            deactivation_epoch=_stored_epoch(delegation.deactivation_epoch),
            unstaked=unstaked,
            unstaked_epoch=int(delegation.deactivation_epoch) if unstaked else -1,
            apr=apr,
        ))
        self.stats.created += 1
        self.logger.info(
            "Delegator created",
            delegator=delegation.pubkey,
            unstaked=unstaked,
            staked_amount=delegation.staked_amount
        )

    async def _update(self, session, record: Delegator, delegation: Delegation, current_epoch: int):
        deactivation_epoch = delegation.deactivation_epoch

        if current_epoch > deactivation_epoch:
            # unstaked_epoch never moves backwards
            if record.unstaked and record.unstaked_epoch >= deactivation_epoch:
                self.stats.unchanged += 1
                return

            record.unstaked = True
            record.unstaked_epoch = int(deactivation_epoch)
            record.deactivation_epoch = int(deactivation_epoch)
            self.stats.unstaked += 1
            self.logger.info(
                "Delegator unstaked",
                delegator=record.delegator_id,
                unstaked_epoch=record.unstaked_epoch
            )
            return

        _assign_if_changed(record, "staked_amount", delegation.staked_amount)
        _assign_if_changed(record, "activation_epoch", delegation.activation_epoch)
        _assign_if_changed(record, "deactivation_epoch", _stored_epoch(deactivation_epoch))

        # Departs from the still-active rule: an unstaked record is never
        # reactivated and keeps its last APR, even while the live delegation
        # has not passed its deactivation epoch (e.g. unstaked at creation
        # when current == deactivation).
        if record.unstaked:
            self.stats.unchanged += 1
            return

        apr = await self.apr_estimator.estimate(
            RewardRepository(session), record.delegator_id, current_epoch
        )
        _assign_if_changed(record, "apr", apr)
        self.stats.apr_refreshed += 1
        self.logger.debug("Delegator APR refreshed", delegator=record.delegator_id, apr=apr)


def _stored_epoch(epoch: float) -> Optional[int]:
    """Deactivation epoch as stored, NULL for a delegation that never ends."""
    if epoch == float("inf"):
        return None
    return int(epoch)


def _assign_if_changed(record: Delegator, attribute: str, value):
    if getattr(record, attribute) != value:
        setattr(record, attribute, value)
