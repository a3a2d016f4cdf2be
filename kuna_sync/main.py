from __future__ import annotations

import logging
import os

import uvicorn
from rich.logging import RichHandler


def _setup_logging() -> None:
    level = os.getenv("KUNA_SYNC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def main() -> None:
    _setup_logging()
    host = os.getenv("KUNA_SYNC_HOST", "0.0.0.0")
    port = int(os.getenv("KUNA_SYNC_PORT", "8080"))
    uvicorn.run("kuna_sync.web_admin:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
