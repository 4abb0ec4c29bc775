"""Runtime configuration for the ticket queue.

Values are read from environment variables once at import time.  Anything
that varies per service point (priority weights, numbering offsets, manual
mode) lives in the ``service_point_settings`` table instead.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional


def _to_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None else default
    except ValueError:
        return default


def _to_float(val: Optional[str], default: float) -> float:
    try:
        return float(val) if val is not None else default
    except ValueError:
        return default


PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")

# "Today" is evaluated in this zone; numbering restarts at its midnight.
QUEUE_TIMEZONE = os.getenv("QUEUE_TIMEZONE", "UTC")

SEQUENCE_MAX_RETRIES = _to_int(os.getenv("SEQUENCE_MAX_RETRIES"), 5)

SUBSCRIBER_QUEUE_SIZE = _to_int(os.getenv("SUBSCRIBER_QUEUE_SIZE"), 100)
HEARTBEAT_SECONDS = _to_float(os.getenv("HEARTBEAT_SECONDS"), 15.0)
STREAM_TOKEN = os.getenv("STREAM_TOKEN")

ANNOUNCE_MAX_CALLS = _to_int(os.getenv("ANNOUNCE_MAX_CALLS"), 3)
ANNOUNCE_SPACING_SECONDS = _to_float(os.getenv("ANNOUNCE_SPACING_SECONDS"), 10.0)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: Optional[str] = None) -> None:
    """Send log records to stdout in the service's usual format."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
