"""Mapping of record fields onto destination table columns.

Record types are either dataclasses, whose fields are read by attribute, or
mapping types such as ``dict``, whose fields are read by key. A dataclass
field can name its destination column per destination label::

    @dataclass
    class Visit:
        visitor: str = db_column("visitor_id")
        url: str = db_columns(
            DBColumnMapping("page_url", label="web"),
            DBColumnMapping("url"),
        )
        note: str | None = db_column(skip=True)

Fields without metadata map to the column of the same name.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import operator
from collections.abc import Mapping
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import psycopg

from bulk_loader.core.copying import split_table_name
from bulk_loader.errors import MappingResolutionError

logger = logging.getLogger(__name__)

DB_COLUMNS_KEY = "bulk_loader.db_columns"

_COLUMNS_SQL = """
    SELECT column_name
      FROM information_schema.columns
     WHERE table_schema = COALESCE(%s::text, current_schema())
       AND table_name = %s
     ORDER BY ordinal_position
"""

TableColumnsLoader = Callable[[str, str], Awaitable[Sequence[str]]]


@dataclass(frozen=True, slots=True)
class DBColumnMapping:
    """Field-level mapping declaration, optionally scoped to one label."""

    column: Optional[str] = None
    label: Optional[str] = None
    default_value: Any = None
    skip: bool = False


@dataclass(frozen=True, slots=True)
class ColumnMapping:
    """A resolved source field to destination column pairing."""

    source_field: str
    source_ordinal: int
    dest_column: str
    default_value: Any = None


def db_columns(*mappings: DBColumnMapping, **field_kwargs: Any) -> Any:
    """Return a dataclass field carrying ``mappings`` in its metadata."""
    metadata = dict(field_kwargs.pop("metadata", None) or {})
    metadata[DB_COLUMNS_KEY] = tuple(mappings)
    return dataclasses.field(metadata=metadata, **field_kwargs)


def db_column(
    column: Optional[str] = None,
    *,
    label: Optional[str] = None,
    default_value: Any = None,
    skip: bool = False,
    **field_kwargs: Any,
) -> Any:
    """Shorthand for :func:`db_columns` with a single mapping."""
    return db_columns(
        DBColumnMapping(column=column, label=label, default_value=default_value, skip=skip),
        **field_kwargs,
    )


class RecordAccessor:
    """Reads the mapped values of one record type as row tuples.

    Built once per resolution and never mutated afterwards, so it can be
    shared by concurrent transfers without locking.
    """

    def __init__(self, record_type: type, mappings: Sequence[ColumnMapping]) -> None:
        self.record_type = record_type
        self.mappings: Tuple[ColumnMapping, ...] = tuple(mappings)
        self.columns: Tuple[str, ...] = tuple(m.dest_column for m in self.mappings)
        if _is_mapping_type(record_type):
            self._getters = tuple(
                operator.methodcaller("get", m.source_field) for m in self.mappings
            )
        else:
            self._getters = tuple(
                operator.attrgetter(m.source_field) for m in self.mappings
            )

    def row(self, record: Any) -> Tuple[Any, ...]:
        values = []
        for mapping, get in zip(self.mappings, self._getters):
            value = get(record)
            values.append(mapping.default_value if value is None else value)
        return tuple(values)

    def __repr__(self) -> str:
        return (
            f"<RecordAccessor {self.record_type.__name__} -> "
            f"({', '.join(self.columns)})>"
        )


@runtime_checkable
class ColumnMappingResolver(Protocol):
    """Resolves how records of a type land in a destination table."""

    async def resolve(
        self, record_type: type, dest_label: str, dsn: str, table: str
    ) -> RecordAccessor: ...


def _is_mapping_type(record_type: type) -> bool:
    return isinstance(record_type, type) and issubclass(record_type, Mapping)


def _pick_mapping(
    declared: Sequence[DBColumnMapping], dest_label: str
) -> Optional[DBColumnMapping]:
    fallback = None
    for m in declared:
        if m.label == dest_label:
            return m
        if m.label is None and fallback is None:
            fallback = m
    return fallback


def build_mappings(
    record_type: type,
    dest_label: str,
    table_columns: Sequence[str],
    table: str,
) -> List[ColumnMapping]:
    """Match the fields of ``record_type`` against ``table_columns``."""
    if _is_mapping_type(record_type):
        return [
            ColumnMapping(source_field=col, source_ordinal=i, dest_column=col)
            for i, col in enumerate(table_columns)
        ]

    if not (isinstance(record_type, type) and dataclasses.is_dataclass(record_type)):
        raise MappingResolutionError(
            f"Record type {record_type!r} is neither a dataclass nor a mapping",
            table=table,
        )

    present = set(table_columns)
    seen: Dict[str, str] = {}
    mappings: List[ColumnMapping] = []
    for ordinal, f in enumerate(dataclasses.fields(record_type)):
        chosen = _pick_mapping(f.metadata.get(DB_COLUMNS_KEY, ()), dest_label)
        if chosen is not None and chosen.skip:
            continue
        column = chosen.column if chosen is not None and chosen.column else f.name
        if column not in present:
            logger.debug(
                "Field %s.%s has no column %r in %s; ignored",
                record_type.__name__, f.name, column, table,
            )
            continue
        if column in seen:
            raise MappingResolutionError(
                f"Fields {seen[column]!r} and {f.name!r} both map to column "
                f"{column!r} of {table}",
                table=table,
            )
        seen[column] = f.name
        mappings.append(
            ColumnMapping(
                source_field=f.name,
                source_ordinal=ordinal,
                dest_column=column,
                default_value=chosen.default_value if chosen is not None else None,
            )
        )

    if not mappings:
        raise MappingResolutionError(
            f"No field of {record_type.__name__} maps to a column of {table} "
            f"(label {dest_label!r})",
            table=table,
        )
    return mappings


async def fetch_table_columns(dsn: str, table: str) -> List[str]:
    """Read the column names of ``table`` from ``information_schema``."""
    schema, name = split_table_name(table)
    async with await psycopg.AsyncConnection.connect(dsn) as conn:
        async with conn.cursor() as cur:
            await cur.execute(_COLUMNS_SQL, (schema, name))
            rows = await cur.fetchall()
    return [r[0] for r in rows]


class CatalogColumnMapper:
    """Default resolver backed by the destination's own catalog.

    Results are cached per ``(record_type, dest_label, dsn, table)``; the
    catalog is queried once per key even under concurrent first use.
    """

    def __init__(self, columns_loader: TableColumnsLoader | None = None) -> None:
        self._load_columns = columns_loader or fetch_table_columns
        self._cache: Dict[Tuple[type, str, str, str], RecordAccessor] = {}
        self._locks: Dict[Tuple[type, str, str, str], asyncio.Lock] = {}

    async def resolve(
        self, record_type: type, dest_label: str, dsn: str, table: str
    ) -> RecordAccessor:
        key = (record_type, dest_label, dsn, table)
        accessor = self._cache.get(key)
        if accessor is not None:
            return accessor

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            accessor = self._cache.get(key)
            if accessor is None:
                columns = await self._load_columns(dsn, table)
                if not columns:
                    raise MappingResolutionError(
                        f"Destination table {table} not found or has no columns",
                        table=table,
                    )
                accessor = RecordAccessor(
                    record_type,
                    build_mappings(record_type, dest_label, columns, table),
                )
                self._cache[key] = accessor
                logger.info(
                    "Resolved %d column mappings for %s (label %s): %s",
                    len(accessor.mappings), table, dest_label,
                    ", ".join(accessor.columns),
                )
        return accessor
