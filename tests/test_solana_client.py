"""
Test the Solana RPC client against canned AsyncClient responses.
"""

import math
from types import SimpleNamespace

import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solana.rpc.models import MemcmpOpts
from solders.pubkey import Pubkey

from reward_tracker.core.config import SolanaConfig
from reward_tracker.core.exceptions import (
    DataInconsistencyError, SolanaRPCError, ValidationError
)
from reward_tracker.services.solana_client import SolanaClient

VOTE_ACCOUNT = "Vote111111111111111111111111111111111111111"
STAKE_A = "Stake11111111111111111111111111111111111111"
STAKE_B = "Config1111111111111111111111111111111111111"
STAKE_C = "SysvarC1ock11111111111111111111111111111111"
SIGNATURE = "1" * 64


def connection_reset():
    return SolanaRpcException(ConnectionError("reset"), None, None, "request")


def resp(value):
    return SimpleNamespace(value=value)


class FakeAsyncClient:
    """Stands in for solana-py's AsyncClient; replies are queued per method."""

    def __init__(self, **replies):
        self.replies = {name: list(queue) for name, queue in replies.items()}
        self.calls = []
        self.closed = False

    def __getattr__(self, name):
        if name not in self.replies:
            raise AttributeError(name)

        async def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            queue = self.replies[name]
            reply = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(reply, BaseException):
                raise reply
            return reply

        return method

    async def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_client(**replies):
    sleep = RecordingSleep()
    client = SolanaClient(
        endpoint="http://rpc.test",
        commitment="confirmed",
        timeout=5,
        initial_delay=5,
        max_delay=300,
        sleep=sleep,
    )
    rpc = FakeAsyncClient(**replies)
    client.client = rpc
    return client, rpc, sleep


def stake_account(pubkey, activation, deactivation, stake):
    parsed = {
        "type": "delegated",
        "info": {
            "stake": {
                "delegation": {
                    "voter": VOTE_ACCOUNT,
                    "activationEpoch": str(activation),
                    "deactivationEpoch": str(deactivation),
                    "stake": str(stake),
                }
            }
        },
    }
    return SimpleNamespace(
        pubkey=Pubkey.from_string(pubkey),
        account=SimpleNamespace(data=SimpleNamespace(parsed=parsed)),
    )


def inflation_reward(amount, post_balance, slot, epoch):
    return SimpleNamespace(
        amount=amount, post_balance=post_balance, effective_slot=slot,
        epoch=epoch, commission=None
    )


@pytest.mark.asyncio
async def test_fetch_latest_epoch():
    client, rpc, _ = make_client(get_epoch_info=[resp(SimpleNamespace(epoch=612, slot_index=10))])

    assert await client.fetch_latest_epoch() == 612
    assert rpc.calls[0][0] == "get_epoch_info"


@pytest.mark.asyncio
async def test_rpc_error_is_not_retried():
    client, rpc, sleep = make_client(get_block_time=[RPCException("Block not available")])

    with pytest.raises(SolanaRPCError) as exc_info:
        await client.fetch_block_time(123)

    assert "Block not available" in str(exc_info.value)
    assert len(rpc.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_transport_errors_retry_then_raise():
    client, rpc, sleep = make_client(get_epoch_info=[connection_reset()])

    with pytest.raises(SolanaRPCError):
        await client.fetch_latest_epoch()

    assert sleep.delays == [5, 10, 20, 40, 80, 160]
    assert len(rpc.calls) == 7


@pytest.mark.asyncio
async def test_transport_error_recovers():
    client, _, sleep = make_client(
        get_epoch_info=[connection_reset(), resp(SimpleNamespace(epoch=7))]
    )

    assert await client.fetch_latest_epoch() == 7
    assert sleep.delays == [5]


@pytest.mark.asyncio
async def test_fetch_delegations_parses_and_skips_malformed():
    raw_account = SimpleNamespace(
        pubkey=Pubkey.from_string(STAKE_C),
        account=SimpleNamespace(data=b"\x01\x00"),
    )
    client, rpc, _ = make_client(get_program_accounts_json_parsed=[resp([
        stake_account(STAKE_A, 100, SolanaConfig.U64_MAX, 5_000_000_000),
        stake_account(STAKE_B, 90, 120, 1_000),
        raw_account,
    ])])

    delegations = await client.fetch_delegations(VOTE_ACCOUNT)

    assert [d.pubkey for d in delegations] == [STAKE_A, STAKE_B]
    assert delegations[0].activation_epoch == 100
    assert delegations[0].deactivation_epoch == math.inf
    assert delegations[0].staked_amount == 5_000_000_000
    assert delegations[1].deactivation_epoch == 120

    _, args, kwargs = rpc.calls[0]
    assert args[0] == Pubkey.from_string(SolanaConfig.STAKE_PROGRAM_ID)
    assert SolanaConfig.STAKE_ACCOUNT_SIZE in kwargs["filters"]
    assert MemcmpOpts(offset=124, bytes=VOTE_ACCOUNT) in kwargs["filters"]


@pytest.mark.asyncio
async def test_fetch_delegations_rejects_invalid_validator_key():
    client, rpc, _ = make_client(get_program_accounts_json_parsed=[resp([])])

    with pytest.raises(ValidationError):
        await client.fetch_delegations("not-a-key")

    assert rpc.calls == []


@pytest.mark.asyncio
async def test_fetch_inflation_rewards_is_one_batched_request():
    client, rpc, _ = make_client(get_inflation_reward=[resp([
        inflation_reward(5, 1005, 432000, 101),
        None,
    ])])

    rewards = await client.fetch_inflation_rewards([STAKE_A, STAKE_B], 101)

    assert rewards[0].amount == 5
    assert rewards[0].post_balance == 1005
    assert rewards[0].effective_slot == 432000
    assert rewards[1] is None

    assert len(rpc.calls) == 1
    _, args, kwargs = rpc.calls[0]
    assert args[0] == [Pubkey.from_string(STAKE_A), Pubkey.from_string(STAKE_B)]
    assert kwargs["epoch"] == 101


@pytest.mark.asyncio
async def test_fetch_inflation_rewards_length_mismatch():
    client, _, _ = make_client(get_inflation_reward=[resp([None])])

    with pytest.raises(DataInconsistencyError):
        await client.fetch_inflation_rewards([STAKE_A, STAKE_B], 101)


@pytest.mark.asyncio
async def test_fetch_inflation_rewards_without_addresses_skips_request():
    client, rpc, _ = make_client(get_inflation_reward=[resp([])])

    assert await client.fetch_inflation_rewards([], 101) == []
    assert rpc.calls == []


@pytest.mark.asyncio
async def test_fetch_block_time_missing_is_none():
    client, _, _ = make_client(get_block_time=[resp(None)])

    assert await client.fetch_block_time(432000) is None


@pytest.mark.asyncio
async def test_get_signatures_for_address():
    client, _, _ = make_client(get_signatures_for_address=[resp([
        SimpleNamespace(signature="sig-new"),
        SimpleNamespace(signature="sig-old"),
    ])])

    assert await client.get_signatures_for_address(STAKE_A) == ["sig-new", "sig-old"]


@pytest.mark.asyncio
async def test_get_transaction_extracts_stake_details():
    confirmed = SimpleNamespace(
        block_time=1704067200,
        transaction=SimpleNamespace(
            meta=SimpleNamespace(fee=5000),
            transaction=SimpleNamespace(
                message=SimpleNamespace(account_keys=[
                    Pubkey.from_string(STAKE_A), Pubkey.from_string(VOTE_ACCOUNT)
                ])
            ),
        ),
    )
    client, rpc, _ = make_client(get_transaction=[resp(confirmed)])

    info = await client.get_transaction(SIGNATURE)

    assert info.block_time == 1704067200
    assert info.fee == 5000
    assert VOTE_ACCOUNT in info.account_keys
    assert rpc.calls[0][2]["max_supported_transaction_version"] == 0


@pytest.mark.asyncio
async def test_get_transaction_not_found():
    client, _, _ = make_client(get_transaction=[resp(None)])

    assert await client.get_transaction(SIGNATURE) is None
