"""
Repository for tracked identity operations.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from reward_tracker.models.delegator import Delegator, IdentityType


class DelegatorRepository:
    """
    Repository for delegator and validator identity records.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, delegator_id: str) -> Optional[Delegator]:
        return await self.session.get(Delegator, delegator_id)

    def add(self, delegator: Delegator) -> Delegator:
        self.session.add(delegator)
        return delegator

    async def list_reward_candidates(self, resume_epoch: int) -> List[Delegator]:
        """Delegators that can still earn a reward at or after ``resume_epoch``.

        A delegator unstaked at epoch E is eligible up to E - 1, so it stays a
        candidate while E is past the resume point.
        """
        result = await self.session.execute(
            select(Delegator)
            .where(
                Delegator.identity_type == IdentityType.DELEGATOR.value,
                or_(
                    Delegator.unstaked.is_(False),
                    Delegator.unstaked_epoch > resume_epoch,
                ),
            )
            .order_by(Delegator.delegator_id)
        )
        return list(result.scalars().all())

    async def mark_absent_unstaked(
        self,
        live_ids: Iterable[str],
        current_epoch: int,
        now: datetime
    ) -> int:
        """Retire still-staked delegators that vanished from the cluster.

        Returns the number of records updated.
        """
        result = await self.session.execute(
            update(Delegator)
            .where(
                Delegator.identity_type == IdentityType.DELEGATOR.value,
                Delegator.unstaked.is_(False),
                Delegator.delegator_id.notin_(list(live_ids)),
            )
            .values(
                unstaked=True,
                unstaked_epoch=current_epoch - 1,
                unstaked_timestamp=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
