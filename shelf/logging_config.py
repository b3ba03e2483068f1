"""
Logging configuration for shelf.

Background loops log one summary line per cycle; per-record failures are
logged with the record id. The ops log keeps a persistent trail next to
the store.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging for interactive CLI use.

    Args:
        quiet: If True, only warnings and errors reach stderr.
    """
    level = logging.WARNING if quiet else logging.INFO
    if quiet:
        warnings.filterwarnings("ignore")
    logging.getLogger("shelf").setLevel(level)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("shelf", "httpx"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_service_logging():
    """Log INFO and above to stdout for long-running loops."""
    root_logger = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stdout
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        ))
        root_logger.addHandler(handler)
    logging.getLogger("shelf").setLevel(logging.INFO)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a store.

    Writes to {store_path}/shelf-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / "shelf-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    shelf_logger = logging.getLogger("shelf")
    shelf_logger.addHandler(handler)
    # Ensure shelf logger allows INFO through even in quiet mode
    if shelf_logger.level == logging.NOTSET or shelf_logger.level > logging.INFO:
        shelf_logger.setLevel(logging.INFO)

    return handler
