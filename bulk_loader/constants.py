from __future__ import annotations

# ──────────────────────────────────────────────────────────────────────────────
# Sentinel objects to terminate workers
# ──────────────────────────────────────────────────────────────────────────────
STOP_BATCH: object = object()      # bulk loader worker

DEFAULT_BATCH_SIZE = 4096 * 2
DEFAULT_DEST_LABEL = "default"
