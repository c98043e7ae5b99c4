"""
CoinGecko service for fetching historical SOL prices.
"""
import asyncio
from datetime import date, datetime, timezone
from typing import Dict, Optional, Union

import aiohttp
import structlog

from reward_tracker.core.config import settings
from reward_tracker.core.exceptions import PriceServiceError
from .backoff import retry_with_backoff

logger = structlog.get_logger(__name__)


class CoinGeckoService:
    """Service for fetching the daily SOL/USD price from the CoinGecko API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        coin_id: Optional[str] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        self.base_url = base_url or settings.coingecko_base_url
        self.api_key = api_key if api_key is not None else settings.coingecko_api_key
        self.coin_id = coin_id or settings.coingecko_coin_id
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep
        # Historical prices never change, so a date is fetched at most once
        self._cache: Dict[date, float] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else None
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=settings.http_timeout)
            )
        return self._session

    async def _get(self, url: str, params: dict) -> dict:
        """Send one GET request; raises on HTTP errors."""
        session = self._get_session()
        async with session.get(url, params=params) as response:
            response.raise_for_status()
            return await response.json()

    async def price_at_utc_date(self, when: Union[datetime, int, float]) -> float:
        """Get the USD price of SOL on the UTC calendar day of ``when``.

        ``when`` is either an aware/naive-UTC datetime or epoch milliseconds.
        """
        day = _utc_date(when)
        if day in self._cache:
            return self._cache[day]

        url = f"{self.base_url}/coins/{self.coin_id}/history"
        params = {"date": day.strftime("%d-%m-%Y"), "localization": "false"}

        try:
            data = await retry_with_backoff(
                lambda: self._get(url, params),
                description="coingecko_history",
                retry_on=(aiohttp.ClientError, asyncio.TimeoutError),
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceServiceError(
                f"Failed to fetch SOL price for {day.isoformat()}: {e}",
                {"date": day.isoformat()}
            ) from e

        try:
            price = float(data["market_data"]["current_price"]["usd"])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceServiceError(
                f"No SOL price available for {day.isoformat()}",
                {"date": day.isoformat()}
            ) from e

        self._cache[day] = price
        logger.info("SOL price resolved", date=day.isoformat(), usd=price)
        return price


def _utc_date(when: Union[datetime, int, float]) -> date:
    if isinstance(when, datetime):
        if when.tzinfo is None:
            return when.date()
        return when.astimezone(timezone.utc).date()
    return datetime.fromtimestamp(when / 1000, tz=timezone.utc).date()


# Global instance
_service: Optional[CoinGeckoService] = None


def get_coingecko_service() -> CoinGeckoService:
    """Get or create the global CoinGecko service."""
    global _service
    if _service is None:
        _service = CoinGeckoService()
    return _service


async def close_coingecko_service():
    global _service
    if _service:
        await _service.close()
        _service = None
