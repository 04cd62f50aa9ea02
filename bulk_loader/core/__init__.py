from __future__ import annotations

from .copying import copy_rows, split_table_name, table_identifier
from .rows import BulkRowReader

__all__ = [
    "copy_rows",
    "split_table_name",
    "table_identifier",
    "BulkRowReader",
]
