"""
Async utility helpers for the Swarm Gateway.

Provides:
- async_retry: Retry decorator with fixed or exponential backoff
- SingleFlight: Collapse concurrent calls for the same key into one
- poll_until: Bounded polling with capped exponential delay
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    Generic,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def async_retry(
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    giveup: Tuple[Type[BaseException], ...] = (),
) -> Callable:
    """
    Decorator for async retry with exponential backoff.

    Exceptions matching ``giveup`` are raised immediately even when they
    also match ``exceptions``.

    Example:
        @async_retry(attempts=2, delay=1.0, backoff=1.0, exceptions=(ClusterError,))
        async def list_services():
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_exception: Optional[BaseException] = None

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except giveup:
                    raise
                except exceptions as e:
                    last_exception = e
                    if attempt < attempts - 1:
                        wait_time = delay * (backoff ** attempt)
                        logger.warning(
                            f"Retry {attempt + 1}/{attempts - 1} for {func.__name__} "
                            f"after {wait_time:.1f}s: {e}"
                        )
                        await asyncio.sleep(wait_time)

            raise last_exception

        return wrapper

    return decorator


class SingleFlight(Generic[T]):
    """
    Run at most one call per key at a time.

    Concurrent callers for a key that already has a call in flight await
    that call's outcome instead of starting their own. Waiters are shielded
    from each other: cancelling one waiter does not cancel the shared call.

    Example:
        flight = SingleFlight()
        created = await flight.do("svc-a", lambda: create("svc-a"))
    """

    def __init__(self):
        self._inflight: Dict[str, "asyncio.Task[T]"] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[T]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter has gone away
        if not task.cancelled():
            task.exception()

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    attempts: int,
    delay: float,
    max_delay: Optional[float] = None,
    backoff: float = 2.0,
) -> bool:
    """
    Call ``check`` until it returns True or ``attempts`` run out.

    The delay between attempts starts at ``delay`` and grows by ``backoff``,
    capped at ``max_delay``. Cancellation of the caller propagates out of
    the sleep, leaving other pollers untouched.

    Returns:
        True if the check succeeded within the bound, False otherwise.
    """
    wait = delay
    for attempt in range(attempts):
        if await check():
            return True
        if attempt < attempts - 1:
            await asyncio.sleep(min(wait, max_delay) if max_delay is not None else wait)
            wait *= backoff
    return False


__all__ = [
    "async_retry",
    "SingleFlight",
    "poll_until",
]
