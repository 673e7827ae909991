"""
Bulk ingestion through concurrent batch inserts.

Documents are split into contiguous chunks and placed on a single queue.
A bounded pool of workers repeatedly claims the next chunk and sends it with
``batch_insert``. Results are additive, so chunk order does not matter; a
failed chunk is counted and its error recorded, never dropped silently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import ValidationError
from .storage_backend import Document, NodeIdLike

if TYPE_CHECKING:
    from .storage_backend import StorageTransport

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 10

Chunk = Sequence[Document | Mapping[str, Any]]


@dataclass
class IngestReport:
    """Outcome of a bulk ingestion run."""

    total_inserted: int
    failed_batches: int
    errors: list[str] = field(default_factory=list)
    time_taken: float = 0.0  # seconds
    throughput: float = 0.0  # inserted documents per second


class _IngestTally:
    """Counters shared by the workers, updated under a lock."""

    def __init__(self) -> None:
        self.total_inserted = 0
        self.failed_batches = 0
        self.errors: list[str] = []
        self._lock = asyncio.Lock()

    async def record_success(self, count: int) -> None:
        async with self._lock:
            self.total_inserted += count

    async def record_failure(self, error: BaseException) -> None:
        async with self._lock:
            self.failed_batches += 1
            if len(self.errors) < MAX_RECORDED_ERRORS:
                self.errors.append(str(error) or type(error).__name__)


def partition(documents: Sequence[Any], batch_size: int) -> list[Sequence[Any]]:
    """Split ``documents`` into contiguous chunks of at most ``batch_size``."""
    if batch_size < 1:
        raise ValidationError(f"batch_size must be at least 1, got {batch_size}")
    return [documents[i : i + batch_size] for i in range(0, len(documents), batch_size)]


class BulkIngestor:
    """
    Drive documents through ``target.batch_insert`` with bounded concurrency.

    Args:
        target: Transport or client whose batch_insert is called
        batch_size: Documents per batch (default: 500)
        concurrency: Maximum batches in flight (default: 4)
    """

    def __init__(
        self,
        target: StorageTransport,
        batch_size: int = 500,
        concurrency: int = 4,
    ) -> None:
        if batch_size < 1:
            raise ValidationError(f"batch_size must be at least 1, got {batch_size}")
        if concurrency < 1:
            raise ValidationError(f"concurrency must be at least 1, got {concurrency}")
        self.target = target
        self.batch_size = batch_size
        self.concurrency = concurrency

    async def ingest(
        self,
        documents: Sequence[Document | Mapping[str, Any]],
        user_id: NodeIdLike | None = None,
    ) -> IngestReport:
        """
        Insert ``documents`` and report totals.

        Args:
            documents: Documents to insert
            user_id: Owner passed to every batch_insert; the transport
                default applies when None

        Returns:
            IngestReport with inserted count, failed batches, up to 10
            error messages, elapsed seconds and throughput
        """
        start_time = time.perf_counter()

        chunks = partition(documents, self.batch_size)
        queue: asyncio.Queue[Chunk] = asyncio.Queue()
        for chunk in chunks:
            queue.put_nowait(chunk)

        tally = _IngestTally()
        worker_count = min(self.concurrency, len(chunks))

        async def worker(worker_id: int) -> None:
            while True:
                try:
                    chunk = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    if user_id is None:
                        result = await self.target.batch_insert(chunk)
                    else:
                        result = await self.target.batch_insert(chunk, user_id)
                    await tally.record_success(result.count)
                    logger.debug(
                        "Worker %d inserted %d of %d documents", worker_id, result.count, len(chunk)
                    )
                except Exception as e:
                    logger.debug("Worker %d batch of %d failed: %s", worker_id, len(chunk), e)
                    await tally.record_failure(e)
                finally:
                    queue.task_done()

        if worker_count:
            async with asyncio.TaskGroup() as tg:
                for worker_id in range(worker_count):
                    tg.create_task(worker(worker_id))

        time_taken = time.perf_counter() - start_time
        throughput = tally.total_inserted / time_taken if time_taken > 0 else 0.0

        logger.info(
            "Bulk ingest finished: %d inserted, %d failed batches in %.2fs",
            tally.total_inserted,
            tally.failed_batches,
            time_taken,
        )

        return IngestReport(
            total_inserted=tally.total_inserted,
            failed_batches=tally.failed_batches,
            errors=list(tally.errors),
            time_taken=time_taken,
            throughput=throughput,
        )


__all__ = ["BulkIngestor", "IngestReport", "MAX_RECORDED_ERRORS", "partition"]
