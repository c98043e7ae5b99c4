"""
Types for reward backfill processing.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from reward_tracker.services.solana_client import InflationReward


class BackfillStatus(Enum):
    """Status of a reward backfill run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class TrackedIdentity:
    """An identity walked by the backfill, with its reward eligibility window."""
    identity_id: str
    query_pubkey: str
    activation_epoch: int = 0
    deactivation_epoch: float = math.inf
    staked_amount: Optional[int] = None


@dataclass
class ResolvedReward:
    """A reward entry with its day and USD rate resolved, ready to be written."""
    identity: TrackedIdentity
    entry: InflationReward
    timestamp: datetime
    fiat_rate: float


@dataclass
class BackfillStats:
    """Statistics for one backfill run."""
    scope: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    resume_epoch: Optional[int] = None
    target_epoch: Optional[int] = None
    current_epoch: Optional[int] = None
    epochs_processed: int = 0
    epochs_without_rewards: int = 0
    rewards_written: int = 0
    entries_skipped: int = 0
    rolled_back_epoch: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()
