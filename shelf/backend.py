"""
Pluggable storage backend factory.

Creates the store used by every pipeline stage. ``local`` uses SQLite in
the store directory; ``rest`` talks to a PostgREST-compatible API.
External backends register via the ``shelf.backends`` entry point group
and provide a factory function::

    def create_store(config: ShelfConfig) -> StoreProtocol:
        ...
"""

from .config import ShelfConfig
from .protocol import StoreProtocol


def create_store(config: ShelfConfig) -> StoreProtocol:
    """Create the storage backend selected by configuration."""
    if config.backend == "local":
        from .record_store import RecordStore
        return RecordStore(config.db_path, call_timeout=config.call_timeout)
    if config.backend == "rest":
        if config.remote is None:
            raise ValueError(
                "backend = 'rest' requires [remote] api_url and api_key "
                "(or SHELF_API_URL / SHELF_API_KEY)"
            )
        from .rest_store import RestStore
        return RestStore(
            config.remote.api_url,
            config.remote.api_key,
            timeout=config.call_timeout,
        )
    return _load_backend(config.backend, config)


def _load_backend(name: str, config: ShelfConfig) -> StoreProtocol:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="shelf.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. No backends registered."
    )
