import asyncio

import pytest

from app.utils.single_flight import SingleFlight


async def test_concurrent_calls_share_one_execution():
    flights = SingleFlight()
    calls = 0

    async def work():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return calls

    results = await asyncio.gather(*(flights.do("user-1", work) for _ in range(5)))

    assert results == [1] * 5
    assert calls == 1
    assert not flights.is_in_flight("user-1")


async def test_keys_are_independent_and_released():
    flights = SingleFlight()
    started = []

    async def work(key):
        started.append(key)
        await asyncio.sleep(0.01)
        return key

    assert await asyncio.gather(flights.do("a", lambda: work("a")), flights.do("b", lambda: work("b"))) == ["a", "b"]
    # A finished key starts fresh on the next call
    assert await flights.do("a", lambda: work("a")) == "a"
    assert started == ["a", "b", "a"]


async def test_exception_reaches_every_waiter():
    flights = SingleFlight()

    async def fail():
        await asyncio.sleep(0.01)
        raise RuntimeError("boom")

    results = await asyncio.gather(
        flights.do("k", fail), flights.do("k", fail), return_exceptions=True
    )

    assert all(isinstance(r, RuntimeError) for r in results)
    assert not flights.is_in_flight("k")


async def test_cancelled_waiter_does_not_cancel_shared_work():
    flights = SingleFlight()
    finished = asyncio.Event()

    async def work():
        await asyncio.sleep(0.05)
        finished.set()
        return "done"

    first = asyncio.ensure_future(flights.do("k", work))
    second = asyncio.ensure_future(flights.do("k", work))
    await asyncio.sleep(0)
    first.cancel()

    assert await second == "done"
    assert finished.is_set()
    with pytest.raises(asyncio.CancelledError):
        await first
