#!/usr/bin/env python3
"""
Batch Runner

Generic paged driver for long-running bulk jobs: it counts the work, fetches
it page by page, and applies a whole-page action and/or a per-item action
with bounded parallelism. Pages run strictly one after another.
"""

import asyncio
import logging
import time
from math import ceil
from typing import Any, Awaitable, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int, int], None]


async def run_with_concurrency(
    items: Iterable[Any],
    action: Callable[[Any], Awaitable[Any]],
    limit: int
) -> List[Any]:
    """Apply `action` to every item with at most `limit` running at once"""
    semaphore = asyncio.Semaphore(limit)

    async def _limited(item):
        async with semaphore:
            return await action(item)

    return await asyncio.gather(*(_limited(item) for item in items))


async def handle_actions_in_batches(
    get_actions_count: Callable[[], Awaitable[int]],
    get_batch_data: Callable[[int, int], Awaitable[List[Any]]],
    batch_items_action: Optional[Callable[[List[Any]], Awaitable[Any]]] = None,
    item_action: Optional[Callable[[Any], Awaitable[Any]]] = None,
    batch_size: int = 1000,
    parallel_actions_no: int = 10,
    progress: Optional[ProgressSink] = None,
    start_batch: int = 1,
    log: logging.Logger = logger
) -> int:
    """
    Process work in sequential pages.

    Args:
        get_actions_count: Returns the total number of items to process
        get_batch_data: Returns the items of a 1-based page for a page size
        batch_items_action: Optional action receiving a whole page
        item_action: Optional action applied to every item of a page
        batch_size: Page size
        parallel_actions_no: Concurrency cap for `item_action`
        progress: Optional sink called with (batch_no, total_batches, items_in_batch)
        start_batch: First page to process; earlier pages are skipped
        log: Logger receiving the per-page timing breakdown

    Returns:
        Total number of items as reported by `get_actions_count`
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    if item_action is not None and parallel_actions_no <= 0:
        raise ValueError(f"parallel_actions_no must be positive, got {parallel_actions_no}")

    total = await get_actions_count()
    if not total:
        log.info("No records found to process")
        return 0

    total_batches = ceil(total / batch_size)
    log.info(f"Processing {total} records in {total_batches} batches of {batch_size}")

    for batch_no in range(max(start_batch, 1), total_batches + 1):
        batch_started = time.perf_counter()

        data = await get_batch_data(batch_no, batch_size)
        fetch_ms = (time.perf_counter() - batch_started) * 1000
        if not data:
            log.warning(f"Batch {batch_no}/{total_batches} returned no records, stopping")
            break

        batch_action_ms = 0.0
        if batch_items_action is not None:
            action_started = time.perf_counter()
            await batch_items_action(data)
            batch_action_ms = (time.perf_counter() - action_started) * 1000

        item_action_ms = 0.0
        if item_action is not None:
            action_started = time.perf_counter()
            await run_with_concurrency(data, item_action, parallel_actions_no)
            item_action_ms = (time.perf_counter() - action_started) * 1000

        log.info(
            f"Batch {batch_no}/{total_batches} ({len(data)} records) processed in "
            f"{(time.perf_counter() - batch_started) * 1000:.0f}ms "
            f"(fetch: {fetch_ms:.0f}ms, batch action: {batch_action_ms:.0f}ms, item actions: {item_action_ms:.0f}ms)"
        )

        if progress is not None:
            progress(batch_no, total_batches, len(data))

    return total
