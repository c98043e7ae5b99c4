"""
Identity scopes walked by the reward backfill.

A scope decides where the walk resumes, which identities are queried at an
epoch, how many addresses go in one RPC call and which entries are eligible.
"""

import math
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reward_tracker.core.config import TrackerConfig
from reward_tracker.models.delegator import Delegator, IdentityType
from reward_tracker.services.database import DelegatorRepository, RewardRepository
from reward_tracker.services.solana_client import InflationReward
from .types import TrackedIdentity


class RewardScope:
    """Base class for backfill scopes."""

    name = "rewards"
    batched = True

    async def last_recorded_epoch(self, rewards: RewardRepository) -> Optional[int]:
        raise NotImplementedError

    async def identities(self, session: AsyncSession, epoch: int) -> List[TrackedIdentity]:
        raise NotImplementedError

    def is_eligible(
        self,
        identity: TrackedIdentity,
        entry: Optional[InflationReward],
        epoch: int
    ) -> bool:
        raise NotImplementedError


class DelegatorRewardScope(RewardScope):
    """All delegators of the validator, sharing one resume cursor."""

    name = "delegator_rewards"
    batched = True

    async def last_recorded_epoch(self, rewards: RewardRepository) -> Optional[int]:
        return await rewards.max_epoch_for_identity_type(IdentityType.DELEGATOR.value)

    async def identities(self, session: AsyncSession, epoch: int) -> List[TrackedIdentity]:
        delegators = await DelegatorRepository(session).list_reward_candidates(epoch)
        return [self._to_identity(delegator) for delegator in delegators]

    @staticmethod
    def _to_identity(delegator: Delegator) -> TrackedIdentity:
        end = delegator.effective_deactivation_epoch
        if delegator.unstaked and delegator.unstaked_epoch >= 0:
            end = min(end, delegator.unstaked_epoch)
        return TrackedIdentity(
            identity_id=delegator.delegator_id,
            query_pubkey=delegator.delegator_id,
            activation_epoch=delegator.activation_epoch,
            deactivation_epoch=end,
            staked_amount=delegator.staked_amount,
        )

    def is_eligible(
        self,
        identity: TrackedIdentity,
        entry: Optional[InflationReward],
        epoch: int
    ) -> bool:
        # Rewards start the epoch after activation and stop at deactivation
        return (
            entry is not None
            and identity.activation_epoch < epoch < identity.deactivation_epoch
        )


class ValidatorRewardScope(RewardScope):
    """The validator's own vote account rewards, stored under the validator id."""

    name = "validator_rewards"
    batched = False

    def __init__(self, config: TrackerConfig):
        self.config = config

    async def last_recorded_epoch(self, rewards: RewardRepository) -> Optional[int]:
        return await rewards.max_epoch_for_identity(self.config.validator_id)

    async def identities(self, session: AsyncSession, epoch: int) -> List[TrackedIdentity]:
        return [
            TrackedIdentity(
                identity_id=self.config.validator_id,
                query_pubkey=self.config.validator_pub_key,
                activation_epoch=0,
                deactivation_epoch=math.inf,
                staked_amount=None,
            )
        ]

    def is_eligible(
        self,
        identity: TrackedIdentity,
        entry: Optional[InflationReward],
        epoch: int
    ) -> bool:
        return entry is not None
