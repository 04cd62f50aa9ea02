"""
Bulk loader worker: takes sealed batches off *batch_q* and writes each one
to the destination table with ``COPY``, one connection per batch.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

import psycopg

from bulk_loader.config import LoaderConfig
from bulk_loader.constants import DEFAULT_BATCH_SIZE, STOP_BATCH
from bulk_loader.core.copying import copy_rows
from bulk_loader.core.rows import BulkRowReader
from bulk_loader.errors import (
    DestinationConnectionError,
    HookError,
    LoadError,
    MappingResolutionError,
    TransferError,
)
from bulk_loader.limiter import ConcurrencyLimiter
from bulk_loader.mapping import CatalogColumnMapper, ColumnMappingResolver
from bulk_loader.models import LoadResult
from bulk_loader.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (connection, destination table, destination label). The connection is
# still open and the batch rows are already committed when it runs.
PostLoadHook = Callable[[psycopg.AsyncConnection, str, str], Awaitable[None]]
ConnectionFactory = Callable[[], Awaitable[psycopg.AsyncConnection]]

# shared by every loader that does not bring its own resolver
_default_resolver = CatalogColumnMapper()


class BulkLoader(Generic[T]):
    """Writes batches of ``record_type`` records into one destination table.

    Parameters
    ----------
    dsn:
        libpq connection string of the destination database.
    dest_table:
        Destination table, optionally schema-qualified (``schema.table``).
    dest_label:
        Label used to resolve column mappings for ``record_type``.
    record_type:
        Dataclass or mapping type of the records in each batch.
    batch_size:
        Configured batch size; passed to the COPY routine as a hint.
    name:
        Name used in logs. Defaults to a generated, per-instance name.
    post_load:
        Optional coroutine function run after each successful batch with
        the open connection, the destination table and the label.
    resolver:
        Column mapping service. Defaults to a shared
        :class:`~bulk_loader.mapping.CatalogColumnMapper`.
    connection_factory:
        Coroutine function returning a new, open connection. Defaults to
        ``psycopg.AsyncConnection.connect(dsn)``.
    max_degree:
        Number of batches that may be transferred at the same time. With
        more than one, batches can finish out of order.
    """

    _instances = itertools.count(1)

    def __init__(
        self,
        dsn: str,
        dest_table: str,
        dest_label: str,
        record_type: type,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        name: Optional[str] = None,
        post_load: Optional[PostLoadHook] = None,
        resolver: Optional[ColumnMappingResolver] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        max_degree: int = 1,
        conn_timeout: float = 60.0,
        transfer_timeout: float = 0.0,
        metrics: Optional[Metrics] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {batch_size}")
        if max_degree < 1:
            raise ValueError(f"max_degree must be >= 1, got {max_degree}")
        self.dsn = dsn
        self.dest_table = dest_table
        self.dest_label = dest_label
        self.record_type = record_type
        self.batch_size = batch_size
        self.conn_timeout = conn_timeout
        self.transfer_timeout = transfer_timeout
        self.metrics = metrics or Metrics()
        self.resolver: ColumnMappingResolver = resolver or _default_resolver
        self._post_load = post_load
        self._connection_factory = connection_factory
        self._name = name
        self._default_name = (
            f"{type(self).__name__}<{record_type.__name__}>{next(self._instances)}"
        )

        self._limiter = ConcurrencyLimiter(max_degree)
        self._batch_ids = itertools.count(1)
        self._in_flight = 0
        self._fault: Optional[BaseException] = None
        self.batches_taken = 0
        self.results: List[LoadResult] = []

    @classmethod
    def from_config(
        cls, config: LoaderConfig, record_type: type, **kwargs: Any
    ) -> "BulkLoader[T]":
        return cls(
            config.dsn,
            config.dest_table,
            config.dest_label,
            record_type,
            batch_size=config.batch_size,
            name=config.name,
            max_degree=config.max_degree,
            conn_timeout=config.conn_timeout,
            transfer_timeout=config.transfer_timeout,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return self._name or self._default_name

    @property
    def in_flight(self) -> int:
        """Batches taken off the queue and not finished yet."""
        return self._in_flight

    @property
    def fault(self) -> Optional[BaseException]:
        return self._fault

    # ------------------------------------------------------------------ #
    # Single batch                                                        #
    # ------------------------------------------------------------------ #
    async def load(self, batch: Sequence[T]) -> None:
        """Bulk-insert one batch; raise a :class:`LoadError` on any failure."""
        rows = len(batch)
        try:
            accessor = await self.resolver.resolve(
                self.record_type, self.dest_label, self.dsn, self.dest_table
            )
        except LoadError:
            raise
        except Exception as exc:
            raise MappingResolutionError(
                f"{self.name}: cannot resolve column mappings for "
                f"{self.dest_table} (label {self.dest_label}): {exc}",
                table=self.dest_table,
                rows=rows,
                cause=exc,
            ) from exc

        with BulkRowReader(accessor, batch) as reader:
            async with self._session(rows) as conn:
                try:
                    async with conn.transaction():
                        await self._transfer(conn, reader)
                except Exception as exc:
                    raise TransferError(
                        f"{self.name}: bulk insert into {self.dest_table} "
                        f"failed: {exc!r}",
                        table=self.dest_table,
                        rows=rows,
                        cause=exc,
                    ) from exc

                self.metrics.add_rows(reader.rows_read)

                start = perf_counter()
                try:
                    await self.on_post_load(conn, self.dest_table, self.dest_label)
                except Exception as exc:
                    raise HookError(
                        f"{self.name}: post-load hook for {self.dest_table} "
                        f"failed after {rows} rows were written: {exc!r}",
                        table=self.dest_table,
                        rows=rows,
                        cause=exc,
                    ) from exc
                self.metrics.observe_stage("post_load", perf_counter() - start)

                try:
                    await conn.commit()
                except Exception as exc:
                    raise DestinationConnectionError(
                        f"{self.name}: commit on {self.dest_table} failed after "
                        f"{rows} rows were written: {exc!r}",
                        table=self.dest_table,
                        rows=rows,
                        cause=exc,
                    ) from exc

    async def on_post_load(
        self, conn: psycopg.AsyncConnection, dest_table: str, dest_label: str
    ) -> None:
        """Run the post-load hook. Subclasses may extend this."""
        if self._post_load is not None:
            await self._post_load(conn, dest_table, dest_label)

    async def _connect(self) -> psycopg.AsyncConnection:
        if self._connection_factory is not None:
            return await self._connection_factory()
        return await psycopg.AsyncConnection.connect(
            self.dsn, connect_timeout=max(1, int(self.conn_timeout))
        )

    @asynccontextmanager
    async def _session(self, rows: int) -> AsyncIterator[psycopg.AsyncConnection]:
        """Own one connection for one batch and close it on every exit path."""
        start = perf_counter()
        try:
            conn = await self._connect()
        except Exception as exc:
            raise DestinationConnectionError(
                f"{self.name}: cannot connect to destination of "
                f"{self.dest_table}: {exc!r}",
                table=self.dest_table,
                rows=rows,
                cause=exc,
            ) from exc
        self.metrics.observe_stage("db_connect", perf_counter() - start)
        try:
            yield conn
        finally:
            await conn.close()

    async def _transfer(
        self, conn: psycopg.AsyncConnection, reader: BulkRowReader
    ) -> None:
        copy = copy_rows(
            conn,
            self.dest_table,
            reader.columns,
            reader,
            self.metrics,
            chunk_rows=self.batch_size,
            label=self.name,
        )
        if self.transfer_timeout > 0:
            await asyncio.wait_for(copy, self.transfer_timeout)
        else:
            await copy

    # ------------------------------------------------------------------ #
    # Worker loop                                                         #
    # ------------------------------------------------------------------ #
    async def run(self, batch_q: asyncio.Queue[Any]) -> None:
        """Consume ``batch_q`` until :data:`STOP_BATCH` or the first fault.

        Batches already being transferred always finish; batches still
        queued when a fault occurs are dropped. The fault is re-raised once
        the worker has settled.
        """
        tasks: Set[asyncio.Task[None]] = set()

        while self._fault is None:
            item = await batch_q.get()
            batch_q.task_done()
            if item is STOP_BATCH:
                break
            self.batches_taken += 1
            if self._fault is not None:
                self.metrics.inc("batches_dropped", 1)
                break

            self._in_flight += 1
            await self._limiter.acquire()
            if self._fault is not None:
                self._in_flight -= 1
                await self._limiter.release()
                self.metrics.inc("batches_dropped", 1)
                break

            task = asyncio.create_task(
                self._process(next(self._batch_ids), item, batch_q),
                name=f"{self.name}-batch",
            )
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks)
        self._drop_queued(batch_q)

        if self._fault is not None:
            raise self._fault
        logger.info("%s: bulk loader exiting gracefully", self.name)

    def abort(self, exc: BaseException, batch_q: asyncio.Queue[Any]) -> None:
        """Stop after the batches in flight; drop everything still queued."""
        if self._fault is not None:
            return
        self._fault = exc
        logger.warning("%s: aborting on upstream fault: %r", self.name, exc)
        self._drop_queued(batch_q)
        # wake the worker if it is waiting for a batch
        batch_q.put_nowait(STOP_BATCH)

    async def _process(
        self, batch_id: int, batch: List[T], batch_q: asyncio.Queue[Any]
    ) -> None:
        try:
            logger.debug(
                "%s starts bulk-inserting %d %s to db table %s",
                self.name, len(batch), self.record_type.__name__, self.dest_table,
            )
            start = perf_counter()
            await self.load(batch)
            self.metrics.observe_stage("batch_total", perf_counter() - start)
            self.metrics.inc("batches_loaded", 1)
            self.results.append(LoadResult(batch_id=batch_id, rows=len(batch), ok=True))
            logger.info(
                "%s bulk-inserted %d %s to db table %s",
                self.name, len(batch), self.record_type.__name__, self.dest_table,
            )

        except LoadError as exc:
            self.metrics.inc("batches_failed", 1)
            self.metrics.record_error(exc)
            self.results.append(
                LoadResult(batch_id=batch_id, rows=len(batch), ok=False, error=str(exc))
            )
            logger.error(
                "%s: batch %d (%d %s) failed: %s",
                self.name, batch_id, len(batch), self.record_type.__name__, exc,
                exc_info=exc,
            )
            if self._fault is None:
                self._fault = exc
                self._drop_queued(batch_q)
                batch_q.put_nowait(STOP_BATCH)

        finally:
            self._in_flight -= 1
            await self._limiter.release()

    def _drop_queued(self, batch_q: asyncio.Queue[Any]) -> None:
        dropped = 0
        while True:
            try:
                item = batch_q.get_nowait()
            except asyncio.QueueEmpty:
                break
            batch_q.task_done()
            if item is not STOP_BATCH:
                self.batches_taken += 1
                dropped += 1
        if dropped:
            self.metrics.inc("batches_dropped", dropped)
            logger.warning("%s: dropped %d queued batches", self.name, dropped)
