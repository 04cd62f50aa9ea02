"""
Pytest configuration and fixtures for the bulk loader tests.

The unit suite never talks to a database: connections are replaced by
:class:`FakeConnection` and the COPY routine by :class:`FakeCopy`.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import pytest

from bulk_loader.mapping import ColumnMapping, RecordAccessor


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )


# =======================
# RECORDS
# =======================

@dataclass(frozen=True)
class Event:
    id: int
    name: str


def make_events(n: int, start: int = 0) -> List[Event]:
    return [Event(id=i, name=f"event-{i}") for i in range(start, start + n)]


# =======================
# FAKES
# =======================

class FakeConnection:
    """Stands in for ``psycopg.AsyncConnection``."""

    def __init__(self, log: Optional[list] = None, conn_id: int = 0) -> None:
        self.conn_id = conn_id
        self.log = log if log is not None else []
        self.closed = False
        self.close_calls = 0
        self.transactions = 0
        self.tx_commits = 0
        self.tx_rollbacks = 0
        self.commit_calls = 0
        self.commit_fail: Optional[BaseException] = None
        self.written: List[Tuple[Any, ...]] = []

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        try:
            yield
        except BaseException:
            self.tx_rollbacks += 1
            raise
        else:
            self.tx_commits += 1

    async def commit(self) -> None:
        self.commit_calls += 1
        if self.commit_fail is not None:
            raise self.commit_fail

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self.log.append(("close", self.conn_id))


class ConnectionFactory:
    """Hands out a fresh :class:`FakeConnection` per call."""

    def __init__(self, log: Optional[list] = None, fail: Optional[BaseException] = None) -> None:
        self.log = log if log is not None else []
        self.fail = fail
        self.commit_fail: Optional[BaseException] = None
        self.connections: List[FakeConnection] = []

    async def __call__(self) -> FakeConnection:
        if self.fail is not None:
            raise self.fail
        conn = FakeConnection(self.log, conn_id=len(self.connections) + 1)
        conn.commit_fail = self.commit_fail
        self.connections.append(conn)
        self.log.append(("open", conn.conn_id))
        return conn


class FakeCopy:
    """Replacement for :func:`bulk_loader.core.copying.copy_rows`."""

    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.readers: List[Any] = []
        self.fail: Optional[BaseException] = None
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None

    async def __call__(
        self,
        conn: FakeConnection,
        table: str,
        columns: Sequence[str],
        rows: Any,
        metrics: Any,
        *,
        chunk_rows: int,
        label: str = "bulk",
    ) -> Tuple[int, float]:
        assert not conn.closed
        self.readers.append(rows)
        conn.log.append(("copy", conn.conn_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        written = [tuple(r) for r in rows]
        if self.fail is not None:
            raise self.fail
        conn.written.extend(written)
        self.calls.append(
            {"table": table, "columns": tuple(columns), "rows": written,
             "chunk_rows": chunk_rows, "conn": conn}
        )
        return len(written), 0.0

    @property
    def rows(self) -> List[Tuple[Any, ...]]:
        return [r for call in self.calls for r in call["rows"]]


class StaticResolver:
    """Resolver returning fixed mappings and counting calls."""

    def __init__(self, columns: Sequence[str] = ("id", "name"), fail: Optional[BaseException] = None) -> None:
        self.columns = tuple(columns)
        self.fail = fail
        self.calls: List[tuple] = []

    async def resolve(self, record_type, dest_label, dsn, table) -> RecordAccessor:
        self.calls.append((record_type, dest_label, dsn, table))
        if self.fail is not None:
            raise self.fail
        return RecordAccessor(
            record_type,
            [ColumnMapping(source_field=c, source_ordinal=i, dest_column=c)
             for i, c in enumerate(self.columns)],
        )


# =======================
# FIXTURES
# =======================

@pytest.fixture
def fake_copy(monkeypatch) -> FakeCopy:
    copy = FakeCopy()
    monkeypatch.setattr("bulk_loader.workers.loader.copy_rows", copy)
    return copy


@pytest.fixture
def connections() -> ConnectionFactory:
    return ConnectionFactory()


@pytest.fixture
def resolver() -> StaticResolver:
    return StaticResolver()
