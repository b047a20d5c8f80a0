"""Shared concurrency primitives for the ingestion and retrieval paths.

Two helpers are exposed:

1. **throttled_gather** -- ``asyncio.gather`` with each awaitable wrapped in
   a semaphore acquire/release.  The embedding client uses it to keep at
   most N batches in flight against the provider.

2. **with_timeout** -- races an awaitable against a timer and converts the
   timeout into a :class:`StageTimeoutError` naming the stage that ran out
   of time.  Every network call in the pipeline goes through it.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

import structlog

from runbook_rag.utils.errors import StageTimeoutError
from runbook_rag.utils.logging import get_logger

_T = TypeVar("_T")

_logger: structlog.BoundLogger = get_logger(__name__)


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently, at most ``semaphore`` slots at a time.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    semaphore:
        Semaphore bounding how many awaitables execute simultaneously.
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


async def with_timeout(
    stage: str,
    awaitable: Awaitable[_T],
    timeout_seconds: float,
) -> _T:
    """Await *awaitable*, raising :class:`StageTimeoutError` after *timeout_seconds*.

    The in-flight operation is cancelled locally when the timer fires; a
    remote call may still complete upstream but its result is discarded.

    Parameters
    ----------
    stage:
        Stage label carried by the raised error (e.g. ``"embed"``).
    awaitable:
        The coroutine or future to run.
    timeout_seconds:
        Time budget.  A non-positive budget fails immediately.
    """
    if timeout_seconds <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise StageTimeoutError(stage=stage, timeout_seconds=0.0)

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        _logger.warning("stage_timeout", stage=stage, timeout_seconds=timeout_seconds)
        raise StageTimeoutError(stage=stage, timeout_seconds=timeout_seconds) from exc
