"""
Test the reward backfill epoch walker for both identity scopes.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from reward_tracker.core.database import get_async_session
from reward_tracker.models import Reward
from reward_tracker.services.rewards import (
    BackfillStatus,
    DelegatorRewardScope,
    RewardBackfillEngine,
    ValidatorRewardScope,
)

from conftest import (
    VALIDATOR_ID, VOTE_ACCOUNT, add_delegator, midnight_for_epoch
)


async def ledger(delegator_id=None):
    async with get_async_session() as session:
        query = select(Reward).order_by(Reward.delegator_id, Reward.epoch_num)
        if delegator_id:
            query = query.where(Reward.delegator_id == delegator_id)
        result = await session.execute(query)
        return list(result.scalars().all())


def delegator_engine(config, network, prices):
    return RewardBackfillEngine(DelegatorRewardScope(), config, network, prices)


@pytest.mark.asyncio
async def test_walks_finished_epochs_with_running_totals(database, config, network, prices):
    """Rewards at 101..103, none at 104, current epoch 105."""
    await add_delegator("D", activation_epoch=100, staked_amount=1000)
    network.current_epoch = 105
    for epoch, amount in ((101, 5), (102, 6), (103, 7)):
        network.add_reward("D", epoch, amount)

    engine = delegator_engine(config, network, prices)
    stats = await engine.run()

    assert engine.status == BackfillStatus.COMPLETED
    assert network.reward_epochs() == [101, 102, 103, 104]
    assert stats.epochs_processed == 4
    assert stats.epochs_without_rewards == 1
    assert stats.rewards_written == 3

    rewards = await ledger("D")
    assert [r.epoch_num for r in rewards] == [101, 102, 103]
    assert [r.reward for r in rewards] == [5, 6, 7]
    assert [r.total_reward for r in rewards] == [5, 11, 18]
    assert [r.pending_rewards for r in rewards] == [5, 11, 18]
    assert all(r.staked_amount == 1000 for r in rewards)


@pytest.mark.asyncio
async def test_fiat_values_use_the_reward_day_rate(database, config, network, prices):
    await add_delegator("D", staked_amount=2_000_000_000)
    network.current_epoch = 103
    network.add_reward("D", 101, 1_000_000_000, post_balance=3_000_000_000)
    network.add_reward("D", 102, 500_000_000, post_balance=3_500_000_000)
    prices.rate = 25.0

    await delegator_engine(config, network, prices).run()

    first, second = await ledger("D")
    assert first.timestamp.replace(tzinfo=None) == midnight_for_epoch(101)
    assert second.timestamp.replace(tzinfo=None) == midnight_for_epoch(102)
    assert first.fiat_rate == 25.0
    assert first.reward_usd == pytest.approx(25.0)
    assert first.post_balance_usd == pytest.approx(75.0)
    assert first.staked_amount_usd == pytest.approx(50.0)
    assert second.total_reward_usd == pytest.approx(37.5)
    assert second.pending_rewards_usd == pytest.approx(37.5)

    requested_days = {day.date() for day in prices.requested}
    assert requested_days == {midnight_for_epoch(101).date(), midnight_for_epoch(102).date()}


@pytest.mark.asyncio
async def test_eligibility_window_is_exclusive_on_both_ends(database, config, network, prices):
    await add_delegator("D", activation_epoch=101, deactivation_epoch=103)
    network.current_epoch = 104
    for epoch in (101, 102, 103):
        network.add_reward("D", epoch, 10)

    stats = await delegator_engine(config, network, prices).run()

    rewards = await ledger("D")
    assert [r.epoch_num for r in rewards] == [102]
    assert stats.entries_skipped == 2


@pytest.mark.asyncio
async def test_unstaked_delegator_stops_earning_at_unstake_epoch(database, config, network, prices):
    await add_delegator("D", activation_epoch=100, unstaked=True, unstaked_epoch=103)
    network.current_epoch = 105
    for epoch in (101, 102, 103, 104):
        network.add_reward("D", epoch, 10)

    await delegator_engine(config, network, prices).run()

    rewards = await ledger("D")
    assert [r.epoch_num for r in rewards] == [101, 102]


@pytest.mark.asyncio
async def test_resumes_after_last_recorded_epoch(database, config, network, prices):
    await add_delegator("D")
    for epoch, amount in ((101, 5), (102, 6), (103, 7), (104, 8)):
        network.add_reward("D", epoch, amount)

    network.current_epoch = 103
    await delegator_engine(config, network, prices).run()

    network.reward_calls.clear()
    network.current_epoch = 105
    stats = await delegator_engine(config, network, prices).run()

    assert stats.resume_epoch == 103
    assert network.reward_epochs() == [103, 104]

    rewards = await ledger("D")
    assert [r.epoch_num for r in rewards] == [101, 102, 103, 104]
    assert [r.total_reward for r in rewards] == [5, 11, 18, 26]


@pytest.mark.asyncio
async def test_up_to_date_ledger_fetches_nothing(database, config, network, prices):
    await add_delegator("D")
    network.current_epoch = 102
    network.add_reward("D", 101, 5)
    await delegator_engine(config, network, prices).run()

    network.reward_calls.clear()
    engine = delegator_engine(config, network, prices)
    stats = await engine.run()

    assert network.reward_calls == []
    assert stats.epochs_processed == 0
    assert engine.status == BackfillStatus.COMPLETED
    assert len(await ledger("D")) == 1


@pytest.mark.asyncio
async def test_failed_epoch_leaves_committed_epochs_and_resumes(database, config, network, prices):
    await add_delegator("D")
    network.current_epoch = 105
    for epoch, amount in ((101, 5), (102, 6), (103, 7), (104, 8)):
        network.add_reward("D", epoch, amount)
    network.fail_rewards_at_epoch = 103

    engine = delegator_engine(config, network, prices)
    stats = await engine.run()

    assert engine.status == BackfillStatus.FAILED
    assert stats.errors
    assert [r.epoch_num for r in await ledger("D")] == [101, 102]

    network.fail_rewards_at_epoch = None
    await delegator_engine(config, network, prices).run()

    rewards = await ledger("D")
    assert [r.epoch_num for r in rewards] == [101, 102, 103, 104]
    assert [r.total_reward for r in rewards] == [5, 11, 18, 26]


@pytest.mark.asyncio
async def test_missing_block_time_writes_nothing_for_the_epoch(database, config, network, prices):
    await add_delegator("A")
    await add_delegator("B")
    network.current_epoch = 104
    network.add_reward("A", 101, 5)
    network.add_reward("B", 101, 5)
    network.add_reward("A", 102, 6)
    network.add_reward("B", 102, 6)
    # B's reward at 102 lands in a slot the cluster has no block time for
    network.rewards[("B", 102)] = replace(network.rewards[("B", 102)], effective_slot=999)

    engine = delegator_engine(config, network, prices)
    stats = await engine.run()

    assert engine.status == BackfillStatus.FAILED
    assert "999" in stats.errors[0]
    assert [(r.delegator_id, r.epoch_num) for r in await ledger()] == [("A", 101), ("B", 101)]


@pytest.mark.asyncio
async def test_last_epoch_mode_clears_highest_epoch_on_failure(database, config, network, prices):
    config = replace(config, reward_rollback_mode="last_epoch")
    await add_delegator("A")
    await add_delegator("B")
    network.current_epoch = 105
    for epoch in (101, 102, 103):
        network.add_reward("A", epoch, 5)
        network.add_reward("B", epoch, 5)
    network.fail_rewards_at_epoch = 103

    engine = delegator_engine(config, network, prices)
    stats = await engine.run()

    assert engine.status == BackfillStatus.FAILED
    assert stats.rolled_back_epoch == 102
    assert [(r.delegator_id, r.epoch_num) for r in await ledger()] == [("A", 101), ("B", 101)]


@pytest.mark.asyncio
async def test_colliding_record_on_same_day_is_replaced(database, config, network, prices):
    await add_delegator("D")
    async with get_async_session() as session:
        session.add(Reward(
            delegator_id="D",
            epoch_num=99,
            timestamp=midnight_for_epoch(101).replace(tzinfo=timezone.utc),
            fiat_rate=1.0,
            reward=100,
            reward_usd=0.0,
            total_reward=100,
            total_reward_usd=0.0,
            pending_rewards=100,
            pending_rewards_usd=0.0,
            post_balance=0,
            post_balance_usd=0.0,
            staked_amount=1000,
            staked_amount_usd=0.0,
        ))

    network.current_epoch = 102
    network.add_reward("D", 101, 5)

    stats = await delegator_engine(config, network, prices).run()

    assert stats.resume_epoch == 100
    rewards = await ledger("D")
    assert [(r.epoch_num, r.total_reward) for r in rewards] == [(101, 5)]


@pytest.mark.asyncio
async def test_batches_reward_queries(database, config, network, prices):
    config = replace(config, inflation_reward_batch_size=2)
    for delegator_id in ("A", "B", "C"):
        await add_delegator(delegator_id)
        network.add_reward(delegator_id, 101, 5)
    network.current_epoch = 102

    await delegator_engine(config, network, prices).run()

    assert [pubkeys for pubkeys, _ in network.reward_calls] == [["A", "B"], ["C"]]
    assert len(await ledger()) == 3


@pytest.mark.asyncio
async def test_stop_request_finishes_current_epoch(database, config, network, prices):
    await add_delegator("D")
    network.current_epoch = 105
    for epoch in (101, 102, 103, 104):
        network.add_reward("D", epoch, 5)

    engine = delegator_engine(config, network, prices)
    network.on_rewards_fetched = lambda epoch: epoch == 102 and engine.request_stop()

    stats = await engine.run()

    assert engine.status == BackfillStatus.STOPPED
    assert stats.epochs_processed == 2
    assert [r.epoch_num for r in await ledger("D")] == [101, 102]


@pytest.mark.asyncio
async def test_validator_scope_records_under_validator_id(database, config, network, prices):
    network.current_epoch = 104
    network.add_reward(VOTE_ACCOUNT, 101, 50)
    network.add_reward(VOTE_ACCOUNT, 103, 70)

    engine = RewardBackfillEngine(ValidatorRewardScope(config), config, network, prices)
    stats = await engine.run()

    assert engine.status == BackfillStatus.COMPLETED
    assert all(pubkeys == [VOTE_ACCOUNT] for pubkeys, _ in network.reward_calls)
    assert stats.epochs_without_rewards == 1

    rewards = await ledger(VALIDATOR_ID)
    assert [r.epoch_num for r in rewards] == [101, 103]
    assert [r.total_reward for r in rewards] == [50, 120]
    assert all(r.staked_amount is None and r.staked_amount_usd is None for r in rewards)


@pytest.mark.asyncio
async def test_scopes_keep_separate_cursors(database, config, network, prices):
    await add_delegator("D")
    network.current_epoch = 103
    network.add_reward("D", 101, 5)
    network.add_reward("D", 102, 5)
    network.add_reward(VOTE_ACCOUNT, 101, 50)

    await delegator_engine(config, network, prices).run()

    network.reward_calls.clear()
    validator_engine = RewardBackfillEngine(ValidatorRewardScope(config), config, network, prices)
    stats = await validator_engine.run()

    assert stats.resume_epoch == 101
    assert [r.epoch_num for r in await ledger(VALIDATOR_ID)] == [101]


@pytest.mark.asyncio
async def test_price_failure_fails_the_tick(database, config, network, prices):
    await add_delegator("D")
    network.current_epoch = 102
    network.add_reward("D", 101, 5)
    prices.fail = True

    engine = delegator_engine(config, network, prices)
    await engine.run()

    assert engine.status == BackfillStatus.FAILED
    assert await ledger("D") == []
    assert isinstance(engine.stats.end_time, datetime)


@pytest.mark.asyncio
async def test_cancelled_walk_can_run_again(database, config, network, prices):
    await add_delegator("D", activation_epoch=100, staked_amount=1000)
    network.current_epoch = 104
    for epoch in (101, 102, 103):
        network.add_reward("D", epoch, 5)

    def cancel_at_102(epoch):
        if epoch == 102:
            raise asyncio.CancelledError()

    network.on_rewards_fetched = cancel_at_102
    engine = delegator_engine(config, network, prices)

    with pytest.raises(asyncio.CancelledError):
        await engine.run()

    assert engine.status == BackfillStatus.STOPPED
    assert not engine.is_running
    assert [r.epoch_num for r in await ledger("D")] == [101]

    network.on_rewards_fetched = None
    await engine.run()

    assert engine.status == BackfillStatus.COMPLETED
    assert [r.epoch_num for r in await ledger("D")] == [101, 102, 103]
