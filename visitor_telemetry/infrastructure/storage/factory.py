# ==============================================================================
# Storage Factory
# ==============================================================================
"""
Factory function for creating the storage engine.

Uses STORAGE_BACKEND environment variable (via config) to determine
which implementation to use. The choice is read once at process startup.
"""

from visitor_telemetry.base.storage import TelemetryStorage
from visitor_telemetry.utils.config import STORAGE_BACKENDS, Settings, get_settings


def get_storage(settings: Settings | None = None, backend: str | None = None) -> TelemetryStorage:
    """
    Get a storage engine instance based on configuration.

    The backend is determined by the STORAGE_BACKEND environment variable:
    - "json" (default): JSON files in STORAGE_DATA_DIR
    - "sqlite": Embedded SQLite database at SQLITE_PATH
    - "opensearch": External OpenSearch cluster (geo_point proximity index)

    The returned instance is not initialized; await initialize() (or use
    `async with`) before calling any other operation.

    Args:
        settings: Application settings. If None, uses get_settings().
        backend: Override the configured backend name

    Returns:
        TelemetryStorage instance for the configured backend

    Raises:
        ValueError: If an unknown backend is configured
    """
    settings = settings or get_settings()
    backend = (backend or settings.storage.backend).lower()

    match backend:
        case "json":
            from visitor_telemetry.infrastructure.storage.file import JsonFileStorage

            return JsonFileStorage(settings)
        case "sqlite":
            from visitor_telemetry.infrastructure.storage.sqlite import SQLiteStorage

            return SQLiteStorage(settings)
        case "opensearch":
            from visitor_telemetry.infrastructure.storage.opensearch import OpenSearchStorage

            return OpenSearchStorage(settings)
        case _:
            raise ValueError(
                f"Unknown storage backend: '{backend}'.\n"
                f"Valid options are: {', '.join(STORAGE_BACKENDS)}"
            )
