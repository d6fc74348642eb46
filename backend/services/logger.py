"""Logging setup for the KeyPolicy backend."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Send all records to stdout with one handler.

    ``level`` falls back to ``KEYPOLICY_LOG_LEVEL`` and then ``INFO``.
    """
    level = (level or os.environ.get("KEYPOLICY_LOG_LEVEL") or "INFO").upper()
    numeric_level = getattr(logging, level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # Our own hooks in utils.http_client already log upstream calls
    for noisy in ("httpx", "httpcore", "uvicorn.access", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
