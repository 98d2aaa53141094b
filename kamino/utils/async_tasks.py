"""Utilities for safe async task execution.

Background tasks get a done-callback that logs failures instead of
letting them disappear, and fan-out work runs through gather_bounded so
every unit reports a result before control returns to the caller.
"""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Awaitable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def safe_create_task(coro: Awaitable[T], *, name: str | None = None) -> asyncio.Task[T]:
    """Create an asyncio task whose exception is logged when it fails."""
    task = asyncio.create_task(coro, name=name)

    def handle_exception(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug(f"Task '{name or task.get_name()}' was cancelled")
            return

        exc = task.exception()
        if exc is not None:
            tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            logger.error(
                f"Background task '{name or task.get_name()}' failed with exception:\n"
                f"Exception type: {type(exc).__name__}\n"
                f"Exception message: {exc}\n"
                f"Full traceback:\n{tb_str}"
            )

    task.add_done_callback(handle_exception)
    return task


async def gather_bounded(
    coros: Iterable[Awaitable[T]],
    limit: int,
) -> list[T | BaseException]:
    """Run awaitables concurrently, at most ``limit`` at a time.

    Returns one entry per awaitable, in input order: its result, or the
    exception it raised. Never returns before every unit has finished.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*(_run(c) for c in coros), return_exceptions=True)


def first_error(results: Iterable[object]) -> BaseException | None:
    """First exception in a gather_bounded result list, if any."""
    for result in results:
        if isinstance(result, BaseException):
            return result
    return None
