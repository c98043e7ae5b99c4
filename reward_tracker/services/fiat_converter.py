"""
Fiat conversion helpers: reward timestamps and lamport to USD valuation.
"""

from datetime import datetime, timezone
from typing import Optional

from solana.constants import LAMPORTS_PER_SOL


def truncate_to_utc_midnight(unix_seconds: int) -> datetime:
    """Map a block time to 00:00:00 UTC of the same day."""
    moment = datetime.fromtimestamp(unix_seconds, tz=timezone.utc)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def lamports_to_fiat(lamports: Optional[int], rate: float) -> Optional[float]:
    """Value ``lamports`` at ``rate`` USD per SOL."""
    if lamports is None:
        return None
    return (lamports / LAMPORTS_PER_SOL) * rate


class FiatConverter:
    """Resolves the USD rate that applies to a given instant."""

    def __init__(self, price_service):
        self.price_service = price_service

    async def rate_at(self, timestamp: datetime) -> float:
        return await self.price_service.price_at_utc_date(timestamp)

    @staticmethod
    def to_fiat(lamports: Optional[int], rate: float) -> Optional[float]:
        return lamports_to_fiat(lamports, rate)
