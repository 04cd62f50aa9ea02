"""Command line interface for bulk-loading JSON-lines files."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Iterator

import orjson

from bulk_loader.config import initialize_environment
from bulk_loader.logging_setup import configure_logging
from bulk_loader.pipeline import run_pipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the command line interface."""
    p = argparse.ArgumentParser(
        description="Batch JSON-lines records and bulk-insert them with COPY")
    p.add_argument("--input", type=Path, required=True,
                   help="JSON-lines file, one object per line.")
    p.add_argument("--table", default=None,
                   help="Destination table (env BULK_DEST_TABLE).")
    p.add_argument("--label", default=None,
                   help="Destination label (env BULK_DEST_LABEL).")
    p.add_argument("--dsn", default=None, help="PostgreSQL DSN (env BULK_DSN).")
    p.add_argument("--batch-size", type=int, default=None,
                   help="Records per batch (env BULK_BATCH_SIZE, default 8192).")
    p.add_argument("--max-degree", type=int, default=None,
                   help="Concurrent batch transfers (env BULK_MAX_DEGREE, default 1).")
    p.add_argument("--name", default=None,
                   help="Loader name used in logs (env BULK_LOADER_NAME).")
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to $LOG_LEVEL or INFO.",
    )
    return p


def read_json_lines(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield one ``dict`` per non-blank line of ``path``."""
    with path.open("rb") as infile:
        for lineno, line in enumerate(infile, start=1):
            if not line.strip():
                continue
            record = orjson.loads(line)
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{lineno}: expected a JSON object")
            yield record


async def main() -> None:
    """Run the bulk loader using command line arguments."""
    args = build_parser().parse_args()
    configure_logging(args.log_level)

    config = await initialize_environment(
        dsn=args.dsn,
        dest_table=args.table,
        dest_label=args.label,
        batch_size=args.batch_size,
        max_degree=args.max_degree,
        name=args.name,
    )
    logger.info("Loading %s into %s (label %s, batch size %d)",
                args.input, config.dest_table, config.dest_label, config.batch_size)

    await run_pipeline(read_json_lines(args.input), dict, config)
