"""Bounded-concurrency batch execution with per-item failure isolation."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int, int], Awaitable[None] | None]


@dataclass
class BatchFailure(Generic[T]):
    index: int
    item: T
    error: Exception


@dataclass
class BatchOutcome(Generic[T, R]):
    """Successful results in input order, plus one entry per failed item."""

    results: list[R] = field(default_factory=list)
    errors: list[BatchFailure[T]] = field(default_factory=list)


async def run_batched(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[R]],
    *,
    concurrency: int = 5,
    on_progress: ProgressCallback | None = None,
) -> BatchOutcome[T, R]:
    """Run *operation* over *items* with at most *concurrency* calls in flight.

    An item that raises is recorded in ``errors`` and never cancels or delays
    the others.  *on_progress* is called as ``on_progress(completed, total)``
    after each item settles, successful or not; it may be sync or async.
    Cancellation of the caller still propagates.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    semaphore = asyncio.Semaphore(concurrency)
    total = len(items)
    completed = 0

    async def _settle(index: int, item: T) -> tuple[bool, R | Exception]:
        nonlocal completed
        async with semaphore:
            try:
                settled: tuple[bool, R | Exception] = (True, await operation(item))
            except Exception as exc:
                logger.warning("batch_item_failed", index=index, error=str(exc))
                settled = (False, exc)

        completed += 1
        if on_progress is not None:
            try:
                maybe_awaitable = on_progress(completed, total)
                if inspect.isawaitable(maybe_awaitable):
                    await maybe_awaitable
            except Exception as exc:
                logger.warning("batch_progress_callback_failed", index=index, error=str(exc))
        return settled

    settled_items = await asyncio.gather(*(_settle(i, item) for i, item in enumerate(items)))

    outcome: BatchOutcome[T, R] = BatchOutcome()
    for index, (ok, value) in enumerate(settled_items):
        if ok:
            outcome.results.append(value)  # type: ignore[arg-type]
        else:
            outcome.errors.append(BatchFailure(index=index, item=items[index], error=value))  # type: ignore[arg-type]
    return outcome
