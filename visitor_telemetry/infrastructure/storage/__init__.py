# ==============================================================================
# Storage Infrastructure
# ==============================================================================
"""
Storage engine implementations for the ports-and-adapters architecture.

Available implementations:
- JsonFileStorage: whole-file JSON collections (single process)
- SQLiteStorage: normalized tables with foreign keys (aiosqlite)
- OpenSearchStorage: documents with a geo_point proximity index
"""

from visitor_telemetry.infrastructure.storage.factory import get_storage
from visitor_telemetry.infrastructure.storage.file import JsonFileStorage
from visitor_telemetry.infrastructure.storage.opensearch import OpenSearchStorage
from visitor_telemetry.infrastructure.storage.sqlite import SQLiteStorage

__all__ = [
    "JsonFileStorage",
    "OpenSearchStorage",
    "SQLiteStorage",
    "get_storage",
]
