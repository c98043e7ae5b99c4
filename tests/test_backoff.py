"""
Test the exponential backoff policy for upstream calls.
"""

import aiohttp
import pytest

from reward_tracker.services.backoff import retry_with_backoff


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def failing(times, error=None, result="ok"):
    state = {"calls": 0}

    async def operation():
        state["calls"] += 1
        if state["calls"] <= times:
            raise error or aiohttp.ClientConnectionError("connection reset")
        return result

    return operation, state


@pytest.mark.asyncio
async def test_returns_after_transient_failures():
    sleep = RecordingSleep()
    operation, state = failing(2)

    result = await retry_with_backoff(
        operation,
        description="getEpochInfo",
        retry_on=(aiohttp.ClientError,),
        initial_delay=5,
        max_delay=300,
        sleep=sleep,
    )

    assert result == "ok"
    assert state["calls"] == 3
    assert sleep.delays == [5, 10]


@pytest.mark.asyncio
async def test_gives_up_once_next_delay_exceeds_maximum():
    sleep = RecordingSleep()
    operation, state = failing(100)

    with pytest.raises(aiohttp.ClientError):
        await retry_with_backoff(
            operation,
            description="getEpochInfo",
            retry_on=(aiohttp.ClientError,),
            initial_delay=5,
            max_delay=300,
            sleep=sleep,
        )

    assert sleep.delays == [5, 10, 20, 40, 80, 160]
    assert state["calls"] == 7


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    sleep = RecordingSleep()
    operation, state = failing(1, error=KeyError("result"))

    with pytest.raises(KeyError):
        await retry_with_backoff(
            operation,
            description="getEpochInfo",
            retry_on=(aiohttp.ClientError,),
            initial_delay=5,
            max_delay=300,
            sleep=sleep,
        )

    assert state["calls"] == 1
    assert sleep.delays == []
