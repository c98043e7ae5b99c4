"""
Reward backfill: one epoch walker, two identity scopes.
"""

from .epoch_walker import RewardBackfillEngine
from .scopes import DelegatorRewardScope, RewardScope, ValidatorRewardScope
from .types import BackfillStats, BackfillStatus, ResolvedReward, TrackedIdentity

__all__ = [
    "RewardBackfillEngine",
    "RewardScope",
    "DelegatorRewardScope",
    "ValidatorRewardScope",
    "BackfillStats",
    "BackfillStatus",
    "ResolvedReward",
    "TrackedIdentity",
]
