"""Composition of the batcher and bulk loader into one pipeline stage."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable
from typing import Any, Awaitable, Generic, Iterable, List, Optional, Tuple, TypeVar, Union

from bulk_loader.config import LoaderConfig, initialize_environment
from bulk_loader.models import BufferStatus, LoadResult
from bulk_loader.telemetry.metrics import Metrics
from bulk_loader.workers.batcher import Batcher
from bulk_loader.workers.loader import BulkLoader

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BulkInsertPipeline(Generic[T]):
    """Batches posted records and bulk-inserts every batch.

    Records go through :meth:`post`; the end of input is signalled with
    :meth:`complete` and :meth:`completion` waits for the last batch. The
    batcher and the loader are joined by a queue bounded by
    ``config.queue_maxsize`` sealed batches, so a producer that outruns the
    destination is suspended inside :meth:`post`.

    Can be used as an async context manager, which starts the loader on
    entry and completes (or faults) the pipeline on exit.
    """

    def __init__(
        self,
        config: LoaderConfig,
        record_type: type,
        *,
        metrics: Optional[Metrics] = None,
        **loader_kwargs: Any,
    ) -> None:
        """Create the two stages.

        ``loader_kwargs`` are passed to :class:`BulkLoader`, e.g.
        ``post_load``, ``resolver`` or ``connection_factory``.
        """
        self.config = config
        self.metrics = metrics or Metrics()
        self._batch_q: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=config.queue_maxsize)
        self.batcher: Batcher[T] = Batcher(
            config.batch_size, self._batch_q, self.metrics)
        self.loader: BulkLoader[T] = BulkLoader.from_config(
            config, record_type, metrics=self.metrics, **loader_kwargs)
        self._task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self.loader.name

    @property
    def results(self) -> List[LoadResult]:
        return self.loader.results

    @property
    def buffer_status(self) -> BufferStatus:
        """Records waiting in the batcher, and batches waiting for or inside
        the loader counted as ``batch_size`` records each."""
        queued = max(0, self.batcher.batches_emitted - self.loader.batches_taken)
        return BufferStatus(
            pending_input=self.batcher.pending,
            pending_output=(queued + self.loader.in_flight) * self.config.batch_size,
        )

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self.loader.run(self._batch_q), name=self.name)

    async def post(self, record: T) -> None:
        """Accept one record, waiting while the loader is saturated."""
        fault = self.loader.fault
        if fault is not None:
            raise fault
        self.start()
        if self.batcher.pending + 1 < self.batcher.batch_size:
            # cannot seal a batch, so never waits on the queue
            await self.batcher.post(record)
        else:
            await self._feed(self.batcher.post(record))
            fault = self.loader.fault
            if fault is not None:
                raise fault
        self.metrics.inc("records_posted", 1)

    async def complete(self) -> None:
        """Signal that no more records will be posted.

        If the loader has already stopped on a fault, the buffered records
        are dropped; :meth:`completion` raises that fault.
        """
        self.start()
        if self.loader.fault is not None:
            self.batcher.discard()
            return
        await self._feed(self.batcher.complete())

    async def _feed(self, handoff: Awaitable[None]) -> None:
        """Run a batcher call that may wait on the queue, abandoning it if
        the loader stops first."""
        assert self._task is not None
        feed = asyncio.ensure_future(handoff)
        try:
            await asyncio.wait({feed, self._task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            feed.cancel()
            raise
        if feed.done():
            feed.result()
            return
        # nobody reads the queue any more
        feed.cancel()
        await asyncio.wait({feed})
        self.batcher.discard()

    def fault(self, exc: BaseException) -> None:
        """Abort the pipeline because of an upstream failure.

        Batches already being transferred finish; the open batch and every
        queued batch are dropped. :meth:`completion` then raises ``exc``.
        """
        self.batcher.discard()
        self.loader.abort(exc, self._batch_q)
        self.start()

    async def completion(self) -> None:
        """Wait for the loader to finish; raise its fault if it failed."""
        self.start()
        assert self._task is not None
        await self._task

    async def __aenter__(self) -> "BulkInsertPipeline[T]":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            await self.complete()
            await self.completion()
            return
        self.fault(exc)
        try:
            await self.completion()
        except Exception as err:
            if err is not exc:
                logger.error("%s: loader failed while unwinding: %r", self.name, err)


async def run_pipeline(
    records: Union[Iterable[T], AsyncIterable[T]],
    record_type: type,
    config: LoaderConfig | None = None,
    **kwargs: Any,
) -> Tuple[List[LoadResult], Metrics]:
    """Load ``records`` into the configured table and return results and metrics.

    Parameters
    ----------
    records:
        Iterable or async iterable of records of ``record_type``.
    config:
        Optional :class:`LoaderConfig` instance. If ``None``, environment
        variables are loaded via :func:`initialize_environment`.
    kwargs:
        Passed to :class:`BulkInsertPipeline`.
    """
    if config is None:
        config = await initialize_environment()

    pipeline: BulkInsertPipeline[T] = BulkInsertPipeline(config, record_type, **kwargs)
    try:
        async with pipeline:
            if isinstance(records, AsyncIterable):
                async for record in records:
                    await pipeline.post(record)
            else:
                for record in records:
                    await pipeline.post(record)
    finally:
        metrics = pipeline.metrics
        logger.info("Completed. Batches ok: %d  failed: %d  dropped: %d",
                    metrics.batches_loaded, metrics.batches_failed,
                    metrics.batches_dropped)
        txt, _ = metrics.summary()
        logger.info("\n%s", txt)

    return pipeline.results, pipeline.metrics
