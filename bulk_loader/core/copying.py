# bulk_loader/core/copying.py

from __future__ import annotations

from time import perf_counter
from typing import Any, Iterable, Optional, Sequence, Tuple
import logging

import psycopg
from psycopg import sql

from bulk_loader.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


def split_table_name(table: str) -> Tuple[Optional[str], str]:
    """Split ``schema.table`` into its parts; schema is ``None`` if absent."""
    schema, _, name = table.rpartition(".")
    return (schema or None), name


def table_identifier(table: str) -> sql.Identifier:
    schema, name = split_table_name(table)
    return sql.Identifier(schema, name) if schema else sql.Identifier(name)


async def copy_rows(
    conn: psycopg.AsyncConnection,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    metrics: Metrics,
    *,
    chunk_rows: int,
    label: str = "bulk",
) -> Tuple[int, float]:
    """
    Stream ``rows`` into ``table`` with a single ``COPY ... FROM STDIN``.

    Rows are pulled from ``rows`` one at a time and handed to psycopg, which
    does its own buffering towards the server; ``chunk_rows`` only sets how
    often progress is logged.
    """
    copy_q = sql.SQL("COPY {tbl} ({cols}) FROM STDIN").format(
        tbl=table_identifier(table),
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
    )

    start = perf_counter()
    total_rows = 0

    async with conn.cursor() as cur, cur.copy(copy_q) as copier:
        for row in rows:
            await copier.write_row(row)
            total_rows += 1
            if total_rows % chunk_rows == 0:
                logger.debug(
                    "%s: %d rows sent to %s so far", label, total_rows, table
                )

    duration = perf_counter() - start
    rps = total_rows / duration if duration > 0 else 0.0

    metrics.observe_stage("copy", duration)
    metrics.observe_copy_rps(rps)
    logger.debug(
        "%s: COPY into %s processed %d rows in %.3f s (%.2f rows/s)",
        label,
        table,
        total_rows,
        duration,
        rps,
    )
    return total_rows, duration
