"""
Shared fixtures: a throwaway SQLite database and in-memory network and price fakes.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from reward_tracker.core.config import TrackerConfig
from reward_tracker.core.database import (
    DatabaseManager, close_database, get_async_session, init_database
)
from reward_tracker.core.exceptions import PriceServiceError, SolanaRPCError
from reward_tracker.models import Delegator, IdentityType
from reward_tracker.services.solana_client import (
    Delegation, InflationReward, StakeTransactionInfo
)

VOTE_ACCOUNT = "Vote111111111111111111111111111111111111111"
VALIDATOR_ID = "Va1idatorIdentity111111111111111111111111111"

# 2024-01-01T00:00:00Z
BASE_TIME = 1704067200
DAY = 86400


def block_time_for_epoch(epoch: int) -> int:
    """One day per epoch, at noon, so every epoch lands on its own UTC date."""
    return BASE_TIME + (epoch - 100) * DAY + DAY // 2


def midnight_for_epoch(epoch: int) -> datetime:
    """Naive UTC midnight of an epoch's reward day, as SQLite hands it back."""
    moment = datetime.fromtimestamp(block_time_for_epoch(epoch), tz=timezone.utc)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)


class FakeNetworkClient:
    """In-memory stand-in for the Solana client."""

    def __init__(self, current_epoch: int = 0):
        self.current_epoch = current_epoch
        self.delegations: List[Delegation] = []
        self.rewards: Dict[Tuple[str, int], InflationReward] = {}
        self.block_times: Dict[int, Optional[int]] = {}
        self.signatures: Dict[str, List[str]] = {}
        self.transactions: Dict[str, StakeTransactionInfo] = {}
        self.reward_calls: List[Tuple[List[str], int]] = []
        self.fail_rewards_at_epoch: Optional[int] = None
        self.on_rewards_fetched = None

    def add_reward(self, pubkey: str, epoch: int, amount: int, post_balance: int = 1_000_000_000):
        slot = epoch * 432_000
        self.rewards[(pubkey, epoch)] = InflationReward(
            amount=amount,
            post_balance=post_balance,
            effective_slot=slot,
            epoch=epoch,
        )
        self.block_times.setdefault(slot, block_time_for_epoch(epoch))

    async def fetch_latest_epoch(self) -> int:
        return self.current_epoch

    async def fetch_delegations(self, validator_pub_key: str) -> List[Delegation]:
        return list(self.delegations)

    async def fetch_inflation_rewards(self, pubkeys, epoch):
        self.reward_calls.append((list(pubkeys), epoch))
        if epoch == self.fail_rewards_at_epoch:
            raise SolanaRPCError(f"getInflationReward failed for epoch {epoch}")
        results = [self.rewards.get((pubkey, epoch)) for pubkey in pubkeys]
        if self.on_rewards_fetched:
            self.on_rewards_fetched(epoch)
        return results

    async def fetch_block_time(self, slot: int) -> Optional[int]:
        return self.block_times.get(slot)

    async def get_signatures_for_address(self, address: str, limit: int = 1000) -> List[str]:
        return list(self.signatures.get(address, []))

    async def get_transaction(self, signature: str) -> Optional[StakeTransactionInfo]:
        return self.transactions.get(signature)

    def reward_epochs(self) -> List[int]:
        return [epoch for _, epoch in self.reward_calls]


class FakePriceService:
    """Returns a fixed USD rate and records the days asked for."""

    def __init__(self, rate: float = 20.0):
        self.rate = rate
        self.requested = []
        self.fail = False

    async def price_at_utc_date(self, when) -> float:
        self.requested.append(when)
        if self.fail:
            raise PriceServiceError("price unavailable")
        return self.rate


class FakeDiscovery:
    """Records stake-transaction discovery requests."""

    def __init__(self):
        self.calls = []

    async def discover(self, delegator_id: str, staked_amount: int) -> int:
        self.calls.append((delegator_id, staked_amount))
        return 0


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database with all tables."""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def config():
    return TrackerConfig(
        validator_pub_key=VOTE_ACCOUNT,
        validator_id=VALIDATOR_ID,
        start_epoch=101,
        inflation_reward_batch_size=100,
        reconciler_max_concurrency=1,
        backfill_max_concurrency=4,
    )


@pytest.fixture
def network():
    return FakeNetworkClient()


@pytest.fixture
def prices():
    return FakePriceService()


@pytest.fixture
def discovery():
    return FakeDiscovery()


async def add_delegator(
    delegator_id: str,
    activation_epoch: int = 100,
    deactivation_epoch: Optional[int] = None,
    staked_amount: int = 1000,
    unstaked: bool = False,
    unstaked_epoch: int = -1,
    apr: float = 0.0
):
    async with get_async_session() as session:
        session.add(Delegator(
            delegator_id=delegator_id,
            identity_type=IdentityType.DELEGATOR.value,
            staked_amount=staked_amount,
            activation_epoch=activation_epoch,
            deactivation_epoch=deactivation_epoch,
            unstaked=unstaked,
            unstaked_epoch=unstaked_epoch,
            apr=apr,
        ))
