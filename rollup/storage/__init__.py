"""
Metric Store access layer.

Jobs build a store once per invocation with create_storage() and pass it into
every component. The admin API shares one cached store via get_storage().
"""

from functools import lru_cache

from rollup.config import ConfigurationError, Settings, get_settings

from .base import MetricStore, StorageError
from .duckdb_storage import DuckDBStorage

SUPPORTED_BACKENDS = ("duckdb",)


def create_storage(settings: Settings) -> MetricStore:
    """
    Build a Metric Store from settings.

    Raises:
        ConfigurationError: If the backend is unknown or no location is configured.
            Raised before any connection is opened.
    """
    if settings.db_type not in SUPPORTED_BACKENDS:
        raise ConfigurationError(f"Unsupported db_type: {settings.db_type!r}")
    if not settings.db_path or not settings.db_path.strip():
        raise ConfigurationError("db_path is not configured")
    return DuckDBStorage(db_path=settings.db_path)


@lru_cache
def get_storage() -> MetricStore:
    """
    Get cached storage backend instance (singleton) for the API process.

    Returns:
        MetricStore implementation instance
    """
    return create_storage(get_settings())


__all__ = [
    "MetricStore",
    "StorageError",
    "DuckDBStorage",
    "create_storage",
    "get_storage",
]
