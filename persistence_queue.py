#!/usr/bin/env python3
"""
Follow-up Persistence Queue

Buffers follow-up inserts and deletes and hands them to the database in
large batches, with a cap on how many batch operations run at once. Inserts
are flushed rarely (big batches amortize I/O); deletes are flushed often
because an id-set delete has a hard upper bound on its clause size.
"""

import asyncio
import logging
from functools import partial
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Set

from scheduler import DatabaseManager, FollowUp, PersistenceConfig

logger = logging.getLogger(__name__)

InsertOperation = Callable[[List[FollowUp]], Awaitable[int]]
DeleteOperation = Callable[[List[str]], Awaitable[int]]


class FollowUpPersistenceQueue:
    """Bounded-buffer, bounded-concurrency batched writer for follow-ups"""

    def __init__(
        self,
        insert_operation: InsertOperation,
        delete_operation: DeleteOperation,
        insert_batch_size: int = 100000,
        delete_batch_size: int = 900,
        concurrency: int = 10
    ):
        if insert_batch_size <= 0 or delete_batch_size <= 0 or concurrency <= 0:
            raise ValueError("Batch sizes and concurrency must be positive")

        self.insert_batch_size = insert_batch_size
        self.delete_batch_size = delete_batch_size
        self.concurrency = concurrency

        self._insert_operation = insert_operation
        self._delete_operation = delete_operation
        self._semaphore = asyncio.Semaphore(concurrency)

        self._insert_buffer: List[FollowUp] = []
        self._delete_buffer: List[str] = []
        # records inserted again once their id has been deleted
        self._waiting_for_delete: Dict[str, FollowUp] = {}

        self._tasks: Set[asyncio.Task] = set()
        self._failure: Optional[BaseException] = None
        self._inserted = 0
        self._deleted = 0

    @classmethod
    def for_database(cls, db: DatabaseManager, config: PersistenceConfig) -> 'FollowUpPersistenceQueue':
        """Queue writing through the database manager on worker threads"""
        async def insert(followups: List[FollowUp]) -> int:
            return await asyncio.to_thread(db.bulk_insert_followups, followups)

        async def delete(followup_ids: List[str]) -> int:
            return await asyncio.to_thread(db.bulk_delete_followups, followup_ids)

        return cls(
            insert,
            delete,
            insert_batch_size=config.insert_batch_size,
            delete_batch_size=config.delete_batch_size,
            concurrency=config.concurrency
        )

    @property
    def inserted_count(self) -> int:
        """Rows committed by completed insert batches"""
        return self._inserted

    @property
    def deleted_count(self) -> int:
        return self._deleted

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue_insert(self, followups: List[FollowUp]):
        """Buffer follow-ups; a full buffer is handed off as one bulk insert"""
        self._raise_if_failed()
        self._insert_buffer.extend(followups)
        if len(self._insert_buffer) >= self.insert_batch_size:
            self._flush_inserts()

    def enqueue_delete(self, followup_ids: List[str]):
        """Buffer ids; a full buffer is handed off as one bulk delete"""
        self._raise_if_failed()
        self._delete_buffer.extend(followup_ids)
        if len(self._delete_buffer) >= self.delete_batch_size:
            self._flush_deletes()

    def enqueue_recreate(self, records: Mapping[str, FollowUp]):
        """Replace existing follow-ups keeping their ids: delete first, then insert"""
        self._waiting_for_delete.update(records)
        self.enqueue_delete(list(records))

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain_remaining(self):
        """
        Flush partially filled buffers and wait until every operation completes.

        Raises the first failure of any batch operation. Batches that already
        completed stay committed.
        """
        while True:
            self._raise_if_failed()
            if self._delete_buffer:
                self._flush_deletes()
            if self._insert_buffer:
                self._flush_inserts()
            if not self._tasks:
                break
            await self._wait_for_running()

        self._raise_if_failed()
        logger.info(f"Persistence queue drained: {self._inserted} inserted, {self._deleted} deleted")

    async def wait_idle(self):
        """Wait for in-flight operations without flushing buffers"""
        while self._tasks:
            await self._wait_for_running()

    async def _wait_for_running(self):
        done, _ = await asyncio.wait(set(self._tasks))
        for task in done:
            self._task_done(task)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _flush_inserts(self):
        batch, self._insert_buffer = self._insert_buffer, []
        self._submit(partial(self._insert, batch))

    def _flush_deletes(self):
        batch, self._delete_buffer = self._delete_buffer, []
        self._submit(partial(self._delete, batch))

    def _submit(self, operation: Callable[[], Awaitable[None]]):
        task = asyncio.create_task(self._run_limited(operation))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def _run_limited(self, operation: Callable[[], Awaitable[None]]):
        async with self._semaphore:
            await operation()

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and self._failure is None:
            logger.error(f"Follow-up batch operation failed: {error}")
            self._failure = error

    def _raise_if_failed(self):
        if self._failure is not None:
            raise self._failure

    async def _insert(self, batch: List[FollowUp]):
        logger.debug(f"Inserting batch of {len(batch)} follow-ups")
        # read the counter only after the await; other flushes update it meanwhile
        inserted = await self._insert_operation(batch)
        self._inserted += inserted

    async def _delete(self, batch: List[str]):
        logger.debug(f"Deleting batch of {len(batch)} follow-ups")
        deleted = await self._delete_operation(batch)
        self._deleted += deleted

        recreated = [self._waiting_for_delete.pop(i) for i in batch if i in self._waiting_for_delete]
        if recreated:
            self._insert_buffer.extend(recreated)
            if len(self._insert_buffer) >= self.insert_batch_size:
                self._flush_inserts()
