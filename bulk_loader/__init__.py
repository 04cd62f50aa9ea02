"""Public package exports for the :mod:`bulk_loader` library."""

from __future__ import annotations

__all__ = [
    "pipeline",
    "config",
    "workers",
    "constants",
    "models",
    "errors",
    "mapping",
    "limiter",
    "logging_setup",
    "core",
    "telemetry",
]
