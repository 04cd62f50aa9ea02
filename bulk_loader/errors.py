"""Failure taxonomy for batch loads.

Every failure surfaces as a :class:`LoadError`; the subclasses only tell
*where* the load broke. Nothing in this package retries on them.
"""

from __future__ import annotations


class LoadError(Exception):
    """A batch could not be loaded into the destination table."""

    def __init__(
        self,
        message: str,
        *,
        table: str,
        rows: int = 0,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.table = table
        self.rows = rows
        self.cause = cause


class MappingResolutionError(LoadError):
    """Destination columns could not be resolved for the record type."""


class DestinationConnectionError(LoadError):
    """The destination connection could not be opened or kept usable."""


class TransferError(LoadError):
    """The destination rejected or did not finish the bulk write."""


class HookError(LoadError):
    """The post-load hook failed.

    The batch rows are already committed when this is raised.
    """
