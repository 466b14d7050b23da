# ==============================================================================
# Infrastructure Adapters
# ==============================================================================
"""
Adapters for external services (ports-and-adapters architecture).

This module contains concrete implementations of the base/ contracts:
- storage/ - Storage engine backends (JSON files, SQLite, OpenSearch)
- cache/ - Cache adapters (Valkey/Redis)
- geolocation/ - Network-address lookup (ip-api.com)
"""

from visitor_telemetry.infrastructure.cache import ValkeyCache, check_valkey_connection
from visitor_telemetry.infrastructure.geolocation import (
    CachedAddressLookup,
    IpApiLookup,
    build_address_lookup,
)
from visitor_telemetry.infrastructure.storage import (
    JsonFileStorage,
    OpenSearchStorage,
    SQLiteStorage,
    get_storage,
)

__all__ = [
    # Cache
    "ValkeyCache",
    "check_valkey_connection",
    # Geolocation
    "CachedAddressLookup",
    "IpApiLookup",
    "build_address_lookup",
    # Storage
    "JsonFileStorage",
    "OpenSearchStorage",
    "SQLiteStorage",
    "get_storage",
]
