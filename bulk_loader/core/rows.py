"""Forward-only row source feeding one batch into a bulk transfer."""

from __future__ import annotations

from types import TracebackType
from typing import TYPE_CHECKING, Any, Iterator, Optional, Sequence, Tuple, Type

if TYPE_CHECKING:
    from bulk_loader.mapping import RecordAccessor


class BulkRowReader:
    """
    Lazily turns the records of a batch into mapped row tuples.

    The reader can be iterated exactly once. Each row is produced only when
    the transfer asks for it, and nothing but the batch itself is held in
    memory. Closing the reader drops its reference to the batch and ends
    any iteration still in progress.
    """

    def __init__(self, accessor: "RecordAccessor", records: Sequence[Any]) -> None:
        self._accessor = accessor
        self._records: Sequence[Any] = records
        self._consumed = False
        self._closed = False
        self.rows_read = 0

    @property
    def columns(self) -> Tuple[str, ...]:
        return self._accessor.columns

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        if self._closed:
            raise RuntimeError("BulkRowReader is closed")
        if self._consumed:
            raise RuntimeError("BulkRowReader can only be iterated once")
        self._consumed = True
        return self._rows()

    def _rows(self) -> Iterator[Tuple[Any, ...]]:
        for record in self._records:
            if self._closed:
                return
            self.rows_read += 1
            yield self._accessor.row(record)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._records = ()

    def __enter__(self) -> "BulkRowReader":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()
