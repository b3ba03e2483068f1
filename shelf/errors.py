"""
Exceptions and error logging for shelf.

Background jobs report failures as counts and audit metadata; the CLI logs
full stack traces to a file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class ShelfError(Exception):
    """Base class for shelf errors."""


class StoreError(ShelfError):
    """A storage backend call failed."""

    def __init__(self, message: str, *, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class StoreTimeout(StoreError):
    """A storage backend call exceeded its time budget."""


class UnknownBucketError(ShelfError):
    """A staging item names a bucket with no destination table."""

    def __init__(self, bucket: str):
        super().__init__(f"Unknown bucket: {bucket}")
        self.bucket = bucket


class PurgeError(ShelfError):
    """A retention review was refused (missing approver, wrong state, ...).

    Raised before any row is touched.
    """


def _error_log_path() -> Path:
    """Resolve error log path, respecting SHELF_STORE_PATH."""
    store = os.environ.get("SHELF_STORE_PATH")
    if store:
        return Path(store) / "shelf-errors.log"
    return Path.home() / ".shelf" / "shelf-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # error log unwritable; keep going
    return log_path
