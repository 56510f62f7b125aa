"""Structured JSON logging for trellis.

One JSON object per line in .trellis/trellis.log, rotated at 5MB with 3
backups. Call sites attach structured context through ``extra=``:

    logger.warning("api_error", extra={"op": "POST /api/tickets/batch", "error": "storage_error"})
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "trellis.log"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_setup_lock = threading.Lock()

# LogRecord attribute -> JSON key. ``args`` is taken by LogRecord itself.
_EXTRA_FIELDS: tuple[tuple[str, str], ...] = (
    ("op", "op"),
    ("args_data", "args"),
    ("duration_ms", "duration_ms"),
    ("error", "error"),
)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for attr, key in _EXTRA_FIELDS:
            if hasattr(record, attr):
                entry[key] = getattr(record, attr)
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def setup_logging(trellis_dir: Path, *, level: int = logging.INFO) -> logging.Logger:
    """Attach the JSON file handler for *trellis_dir* to the ``trellis`` logger.

    Idempotent for the same directory. A handler left over from another
    directory is closed and replaced.
    """
    logger = logging.getLogger("trellis")
    log_path = trellis_dir / LOG_FILENAME
    target = os.path.abspath(str(log_path))

    with _setup_lock:
        for existing in [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]:
            if existing.baseFilename == target:
                logger.setLevel(level)
                return logger
            logger.removeHandler(existing)
            existing.close()

        handler = RotatingFileHandler(str(log_path), maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
        handler.setFormatter(_JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
