"""Entry point for invoking the bulk loader via the CLI."""

from __future__ import annotations

import asyncio

from bulk_loader.cli import main as cli_main

if __name__ == "__main__":
    asyncio.run(cli_main())
