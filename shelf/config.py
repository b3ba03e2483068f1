"""
Configuration management for shelf.

The configuration is stored as a TOML file in the store directory.
It selects the storage backend and sets the schedules, batch sizes,
thresholds and retention windows used by the pipeline stages.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "shelf.toml"
CONFIG_VERSION = 1

# Retention windows in days. None exempts a table from automatic retention.
DEFAULT_RETENTION: dict[str, Optional[int]] = {
    "sessions": 30,
    "messages": 30,
    "knowledge": 90,
    "decisions": 180,
    "schemas": None,
    "docs": 365,
    "todos": 90,
    "structures": 365,
}

# Tables that can never be purged through retention, whatever the config says
RETENTION_EXEMPT = frozenset({"schemas"})


def get_store_path(override: Optional[Path] = None) -> Path:
    """Resolve the store directory: explicit, SHELF_STORE_PATH, then ~/.shelf."""
    if override is not None:
        return Path(override).expanduser()
    env = os.environ.get("SHELF_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".shelf"


@dataclass
class RemoteConfig:
    """Connection settings for the REST backend."""
    api_url: str
    api_key: str


@dataclass
class RouterConfig:
    interval_seconds: int = 300
    batch_size: int = 50
    dedup_window: int = 100
    cycle_timeout: int = 600


@dataclass
class ArchiverConfig:
    interval_seconds: int = 3600
    batch_size: int = 20
    clean_after_hours: float = 48
    archive_after_hours: float = 24
    cycle_timeout: int = 1800


@dataclass
class ShelfConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    backend: str = "local"
    call_timeout: float = 10.0
    remote: Optional[RemoteConfig] = None

    router: RouterConfig = field(default_factory=RouterConfig)
    archiver: ArchiverConfig = field(default_factory=ArchiverConfig)
    duplicate_threshold: float = 0.7
    phase_min_score: float = 0.3
    retention: dict[str, Optional[int]] = field(
        default_factory=lambda: dict(DEFAULT_RETENTION)
    )

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the local SQLite database."""
        return self.path / "shelf.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def retention_days(self, table: str) -> Optional[int]:
        """Retention window for a table, or None if exempt/unmonitored."""
        if table in RETENTION_EXEMPT:
            return None
        return self.retention.get(table)


def _remote_from(data: dict[str, Any]) -> Optional[RemoteConfig]:
    section = data.get("remote", {})
    api_url = os.environ.get("SHELF_API_URL") or section.get("api_url")
    api_key = os.environ.get("SHELF_API_KEY") or section.get("api_key")
    if api_url and api_key:
        return RemoteConfig(api_url=api_url, api_key=api_key)
    return None


def _retention_from(section: dict[str, Any]) -> dict[str, Optional[int]]:
    retention = dict(DEFAULT_RETENTION)
    for table, days in section.items():
        # TOML has no null; 0 or a negative value disables retention
        retention[table] = int(days) if days and int(days) > 0 else None
    return retention


def load_config(store_path: Path) -> ShelfConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    router = data.get("router", {})
    archiver = data.get("archiver", {})
    defaults_router = RouterConfig()
    defaults_archiver = ArchiverConfig()

    return ShelfConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        backend=store.get("backend", "local"),
        call_timeout=float(store.get("call_timeout", 10.0)),
        remote=_remote_from(data),
        router=RouterConfig(
            interval_seconds=int(router.get("interval_seconds", defaults_router.interval_seconds)),
            batch_size=int(router.get("batch_size", defaults_router.batch_size)),
            dedup_window=int(router.get("dedup_window", defaults_router.dedup_window)),
            cycle_timeout=int(router.get("cycle_timeout", defaults_router.cycle_timeout)),
        ),
        archiver=ArchiverConfig(
            interval_seconds=int(archiver.get("interval_seconds", defaults_archiver.interval_seconds)),
            batch_size=int(archiver.get("batch_size", defaults_archiver.batch_size)),
            clean_after_hours=float(archiver.get("clean_after_hours", defaults_archiver.clean_after_hours)),
            archive_after_hours=float(archiver.get("archive_after_hours", defaults_archiver.archive_after_hours)),
            cycle_timeout=int(archiver.get("cycle_timeout", defaults_archiver.cycle_timeout)),
        ),
        duplicate_threshold=float(data.get("duplicates", {}).get("threshold", 0.7)),
        phase_min_score=float(data.get("phases", {}).get("min_score", 0.3)),
        retention=_retention_from(data.get("retention", {})),
    )


def save_config(config: ShelfConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
            "call_timeout": config.call_timeout,
        },
        "router": {
            "interval_seconds": config.router.interval_seconds,
            "batch_size": config.router.batch_size,
            "dedup_window": config.router.dedup_window,
            "cycle_timeout": config.router.cycle_timeout,
        },
        "archiver": {
            "interval_seconds": config.archiver.interval_seconds,
            "batch_size": config.archiver.batch_size,
            "clean_after_hours": config.archiver.clean_after_hours,
            "archive_after_hours": config.archiver.archive_after_hours,
            "cycle_timeout": config.archiver.cycle_timeout,
        },
        "duplicates": {"threshold": config.duplicate_threshold},
        "phases": {"min_score": config.phase_min_score},
        "retention": {
            table: days or 0 for table, days in config.retention.items()
        },
    }
    if config.remote:
        data["remote"] = {
            "api_url": config.remote.api_url,
            "api_key": config.remote.api_key,
        }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> ShelfConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = ShelfConfig(path=store_path)
        save_config(config)
        return config
