"""Async pipeline stages."""

from __future__ import annotations

from .batcher import Batcher
from .loader import BulkLoader, PostLoadHook

__all__ = [
    "Batcher",
    "BulkLoader",
    "PostLoadHook",
]
