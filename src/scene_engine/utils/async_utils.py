"""Async utilities for running coroutines in sync contexts."""

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a sync context.

    Each worker thread keeps its own event loop. The loop is NOT closed after
    use because async clients (e.g. httpx) may cache state bound to it.

    Args:
        coro: The coroutine to execute.

    Returns:
        The result of the coroutine.
    """
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


async def with_timeout(coro: Coroutine[Any, Any, T], seconds: float | None) -> T:
    """Await ``coro`` with an optional timeout (raises TimeoutError)."""
    if seconds is None:
        return await coro
    return await asyncio.wait_for(coro, timeout=seconds)
