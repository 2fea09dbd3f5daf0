"""
Best-effort usage recording.

Usage rows are handed to a bounded queue drained by one background task, so
writing the ledger never delays or fails the answer. Failures become log
events.
"""

import asyncio
import logging
import sqlite3
from typing import Optional

from directory_assistant.storage.models import UsageRecord
from directory_assistant.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class UsageRecorder:
    """Background writer for the usage ledger.

    Args:
        repository: Ledger the records are written to
        max_queue_size: Records waiting beyond this bound are dropped
    """

    def __init__(self, repository: UsageRepository, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self.repository = repository
        self.max_queue_size = max_queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    def start(self) -> None:
        """Start the background writer on the running event loop.

        Raises:
            RuntimeError: If no event loop is running
        """
        if self._worker is not None and not self._worker.done():
            return
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._worker = loop.create_task(self._drain())

    def record(self, record: UsageRecord) -> None:
        """Enqueue a record without waiting. Never raises.

        Outside a running event loop there is no writer, so the record is dropped.
        """
        if self._worker is None or self._worker.done():
            try:
                self.start()
            except RuntimeError as exc:
                self.dropped += 1
                logger.warning(
                    "no running event loop, record dropped usage_id=%s error=%s", record.usage_id, exc
                )
                return
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "usage queue full, record dropped usage_id=%s dropped_total=%d",
                record.usage_id, self.dropped
            )

    async def _drain(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await asyncio.to_thread(self.repository.insert, record)
            except Exception as exc:
                self.dropped += 1
                logger.warning(
                    "usage record write failed usage_id=%s error=%r", record.usage_id, exc
                )
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued record has been written or dropped."""
        if self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def close(self) -> None:
        """Flush pending records and stop the background writer."""
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._queue = None

    async def record_feedback(self, usage_id: str, useful: bool) -> bool:
        """Attach feedback to a delivered answer.

        Returns:
            True if the usage row was found and updated
        """
        if not usage_id:
            return False
        # The row may still be queued
        await self.flush()
        try:
            return await asyncio.to_thread(self.repository.attach_feedback, usage_id, useful)
        except sqlite3.Error as exc:
            logger.warning("feedback write failed usage_id=%s error=%r", usage_id, exc)
            return False
