"""
Groups records into fixed-size batches and pushes every sealed batch onto
*batch_q*, which the bulk loader consumes.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Generic, List, TypeVar

from bulk_loader.constants import STOP_BATCH
from bulk_loader.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Batcher(Generic[T]):
    """Accumulates records until ``batch_size`` of them are available.

    A full batch is put on ``batch_q`` straight away; when the queue is at
    its bound, :meth:`post` suspends until the loader takes a batch, which is
    the backpressure seen by the producer. Batches are never empty.
    """

    def __init__(
        self,
        batch_size: int,
        batch_q: asyncio.Queue[Any],
        metrics: Metrics | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {batch_size}")
        self.batch_size = batch_size
        self._batch_q = batch_q
        self._metrics = metrics or Metrics()
        self._open: List[T] = []
        self._closed = False
        self._finished = False
        # counted before the put so a batch waiting on a full queue still
        # shows up as pending output
        self.batches_emitted = 0

    @property
    def pending(self) -> int:
        """Number of records not yet handed to the queue."""
        return len(self._open)

    @property
    def closed(self) -> bool:
        return self._closed

    async def post(self, record: T) -> None:
        if self._closed:
            raise RuntimeError("Batcher no longer accepts records")
        self._open.append(record)
        while len(self._open) >= self.batch_size:
            await self._emit()

    async def complete(self) -> None:
        """Flush the partial batch, if any, then signal end of input."""
        if self._finished:
            return
        self._closed = True
        if self._open:
            logger.debug("Flushing partial batch of %d records", len(self._open))
        while self._open:
            await self._emit()
        await self._batch_q.put(STOP_BATCH)
        self._finished = True

    def discard(self) -> int:
        """Stop accepting records and drop the open batch.

        Returns the number of records dropped.
        """
        self._closed = True
        self._finished = True
        dropped = len(self._open)
        self._open = []
        if dropped:
            logger.warning("Discarded %d buffered records", dropped)
        return dropped

    async def _emit(self) -> None:
        size = self.batch_size
        batch, self._open = self._open[:size], self._open[size:]
        self.batches_emitted += 1
        try:
            await self._batch_q.put(batch)
        except asyncio.CancelledError:
            # put back what a cancelled put never delivered
            self.batches_emitted -= 1
            self._open[:0] = batch
            raise
        self._metrics.inc("batches_total", 1)
