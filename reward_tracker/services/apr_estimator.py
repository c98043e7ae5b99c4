"""
Trailing APR estimate from the reward ledger.

The estimate takes the rewards of the last calendar month, sums the
rewards after the first epoch of the window and divides by the sum of the
post balances before the latest epoch, then annualizes by month count:

    apr = (total_amount / total_post_balance) * (num_epochs * 12) * 100

This is a post-balance weighted approximation, not a compounding APR.
"""

import calendar
import math
from datetime import datetime, timezone
from typing import Optional

import structlog

from .database import RewardRepository


logger = structlog.get_logger(__name__)


def one_month_before(moment: datetime) -> datetime:
    """Same instant one calendar month earlier, clamping the day to the month's length."""
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class AprEstimator:
    """Computes the annualized yield estimate of one identity."""

    async def estimate(
        self,
        rewards: RewardRepository,
        delegator_id: str,
        latest_epoch: int,
        now: Optional[datetime] = None
    ) -> float:
        now = now or datetime.now(timezone.utc)
        window = await rewards.rewards_since(delegator_id, one_month_before(now))
        if not window:
            return 0.0

        start_epoch = window[0].epoch_num
        num_epochs = latest_epoch - start_epoch + 1
        if num_epochs <= 0:
            return 0.0

        by_epoch = await rewards.rewards_by_epoch(delegator_id, start_epoch, latest_epoch)

        total_amount = 0
        total_post_balance = 0
        for i in range(num_epochs):
            record = by_epoch.get(start_epoch + i)
            if record is None:
                continue
            # The first epoch's reward accrued before the window
            if i != 0:
                total_amount += record.reward
            # The latest epoch is not a completed accrual period yet
            if i != num_epochs - 1:
                total_post_balance += record.post_balance

        if total_post_balance == 0:
            return 0.0

        apr = (total_amount / total_post_balance) * (num_epochs * 12) * 100
        if not math.isfinite(apr):
            return 0.0

        logger.debug(
            "APR estimated",
            delegator=delegator_id,
            start_epoch=start_epoch,
            num_epochs=num_epochs,
            apr=apr
        )
        return apr
