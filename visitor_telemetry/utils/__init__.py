# ==============================================================================
# Visitor Telemetry Utilities
# ==============================================================================
"""
Shared utilities: configuration, retry policy, export formats, versions.
"""

from visitor_telemetry.utils.config import (
    LocationSettings,
    OpenSearchSettings,
    Settings,
    SQLiteSettings,
    StorageSettings,
    ValkeySettings,
    get_settings,
)
from visitor_telemetry.utils.export import sessions_to_csv, snapshot_to_json

__all__ = [
    # Config
    "LocationSettings",
    "OpenSearchSettings",
    "Settings",
    "SQLiteSettings",
    "StorageSettings",
    "ValkeySettings",
    "get_settings",
    # Export
    "sessions_to_csv",
    "snapshot_to_json",
]
