from __future__ import annotations
from dataclasses import dataclass
from typing import NamedTuple


@dataclass
class LoadResult:
    batch_id: int
    rows: int
    ok: bool
    error: str | None = None


class BufferStatus(NamedTuple):
    """Record-equivalent occupancy of a loading stage."""

    pending_input: int
    pending_output: int
