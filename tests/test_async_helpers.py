from __future__ import annotations

import asyncio

import pytest

from swarm_gateway.errors import ClusterAlreadyActiveError, ClusterError
from swarm_gateway.utils import SingleFlight, async_retry, poll_until


def test_async_retry_recovers_after_transient_failure() -> None:
    attempts = []

    @async_retry(attempts=2, delay=0, exceptions=(ClusterError,))
    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise ClusterError("blip")
        return "ok"

    assert asyncio.run(flaky()) == "ok"
    assert len(attempts) == 2


def test_async_retry_raises_last_error_when_exhausted() -> None:
    attempts = []

    @async_retry(attempts=2, delay=0, exceptions=(ClusterError,))
    async def broken():
        attempts.append(1)
        raise ClusterError(f"failure {len(attempts)}")

    with pytest.raises(ClusterError, match="failure 2"):
        asyncio.run(broken())


def test_async_retry_gives_up_immediately() -> None:
    attempts = []

    @async_retry(attempts=3, delay=0, exceptions=(ClusterError,), giveup=(ClusterAlreadyActiveError,))
    async def already():
        attempts.append(1)
        raise ClusterAlreadyActiveError("already part of a swarm")

    with pytest.raises(ClusterAlreadyActiveError):
        asyncio.run(already())
    assert len(attempts) == 1


def test_async_retry_ignores_unlisted_exceptions() -> None:
    @async_retry(attempts=3, delay=0, exceptions=(ClusterError,))
    async def wrong():
        raise KeyError("nope")

    with pytest.raises(KeyError):
        asyncio.run(wrong())


def test_single_flight_shares_one_call() -> None:
    flight = SingleFlight()
    calls = []

    async def work():
        calls.append(1)
        await asyncio.sleep(0.01)
        return len(calls)

    async def scenario():
        results = await asyncio.gather(*(flight.do("k", work) for _ in range(5)))
        return results, flight.in_flight("k"), len(flight)

    results, still_in_flight, size = asyncio.run(scenario())

    assert results == [1, 1, 1, 1, 1]
    assert calls == [1]
    assert not still_in_flight
    assert size == 0


def test_single_flight_propagates_errors_to_every_waiter() -> None:
    flight = SingleFlight()

    async def fail():
        await asyncio.sleep(0.01)
        raise ClusterError("create failed")

    async def scenario():
        return await asyncio.gather(
            *(flight.do("k", fail) for _ in range(3)),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert all(isinstance(r, ClusterError) for r in results)


def test_single_flight_cancelled_waiter_does_not_cancel_call() -> None:
    flight = SingleFlight()
    finished = []

    async def work():
        await asyncio.sleep(0.05)
        finished.append(True)
        return "done"

    async def scenario():
        impatient = asyncio.ensure_future(flight.do("k", work))
        patient = asyncio.ensure_future(flight.do("k", work))
        await asyncio.sleep(0.01)
        impatient.cancel()
        return await patient, impatient.cancelled()

    result, cancelled = asyncio.run(scenario())
    assert result == "done"
    assert cancelled
    assert finished == [True]


def test_poll_until_succeeds_within_bound() -> None:
    checks = []

    async def check():
        checks.append(1)
        return len(checks) >= 3

    assert asyncio.run(poll_until(check, attempts=5, delay=0)) is True
    assert len(checks) == 3


def test_poll_until_gives_up() -> None:
    checks = []

    async def check():
        checks.append(1)
        return False

    assert asyncio.run(poll_until(check, attempts=4, delay=0, max_delay=0)) is False
    assert len(checks) == 4
