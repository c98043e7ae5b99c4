"""
Repository for the reward ledger.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from reward_tracker.models.delegator import Delegator
from reward_tracker.models.reward import Reward


class RewardRepository:
    """
    Repository for reward ledger reads and writes.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def max_epoch_for_identity(self, delegator_id: str) -> Optional[int]:
        """Highest epoch recorded for one identity."""
        result = await self.session.execute(
            select(func.max(Reward.epoch_num)).where(Reward.delegator_id == delegator_id)
        )
        return result.scalar_one_or_none()

    async def max_epoch_for_identity_type(self, identity_type: str) -> Optional[int]:
        """Highest epoch recorded for any identity of ``identity_type``."""
        result = await self.session.execute(
            select(func.max(Reward.epoch_num))
            .join(Delegator, Delegator.delegator_id == Reward.delegator_id)
            .where(Delegator.identity_type == identity_type)
        )
        return result.scalar_one_or_none()

    async def latest_reward(self, delegator_id: str) -> Optional[Reward]:
        """Most recent reward of an identity, by epoch then timestamp."""
        result = await self.session.execute(
            select(Reward)
            .where(Reward.delegator_id == delegator_id)
            .order_by(Reward.epoch_num.desc(), Reward.timestamp.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def delete_colliding(self, delegator_id: str, epoch_num: int, timestamp: datetime) -> int:
        """Delete rewards of an identity that share the epoch or the timestamp."""
        result = await self.session.execute(
            delete(Reward)
            .where(
                Reward.delegator_id == delegator_id,
                or_(Reward.timestamp == timestamp, Reward.epoch_num == epoch_num),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def add(self, reward: Reward) -> Reward:
        self.session.add(reward)
        await self.session.flush()
        return reward

    async def delete_latest_epoch(self) -> Optional[int]:
        """Delete every reward of the highest epoch in the ledger, across identities.

        Returns the epoch that was cleared, or None when the ledger is empty.
        """
        result = await self.session.execute(select(func.max(Reward.epoch_num)))
        epoch = result.scalar_one_or_none()
        if epoch is None:
            return None

        await self.session.execute(
            delete(Reward)
            .where(Reward.epoch_num == epoch)
            .execution_options(synchronize_session=False)
        )
        return epoch

    async def rewards_since(self, delegator_id: str, cutoff: datetime) -> List[Reward]:
        result = await self.session.execute(
            select(Reward)
            .where(Reward.delegator_id == delegator_id, Reward.timestamp >= cutoff)
            .order_by(Reward.timestamp.asc())
        )
        return list(result.scalars().all())

    async def rewards_by_epoch(
        self,
        delegator_id: str,
        start_epoch: int,
        end_epoch: int
    ) -> Dict[int, Reward]:
        """Rewards of an identity for epochs in ``[start_epoch, end_epoch]``."""
        result = await self.session.execute(
            select(Reward)
            .where(
                Reward.delegator_id == delegator_id,
                Reward.epoch_num >= start_epoch,
                Reward.epoch_num <= end_epoch,
            )
        )
        return {reward.epoch_num: reward for reward in result.scalars().all()}
