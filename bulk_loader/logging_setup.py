from __future__ import annotations

import logging
import os


def configure_logging(level: str | None = None) -> None:
    """
    Configure root logging once. Level can be given explicitly or taken from
    BULK_LOG_LEVEL, then LOG_LEVEL (default INFO).

    psycopg's own logger stays at WARNING unless DEBUG is requested.
    """
    if level is None:
        level = os.getenv("BULK_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")
    level = level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
    )
    if level != "DEBUG":
        logging.getLogger("psycopg").setLevel(logging.WARNING)
