# ==============================================================================
# Base Abstract Classes
# ==============================================================================
"""
Abstract base classes defining the contracts for the ports-and-adapters architecture.

- TelemetryStorage: the storage engine implemented by every backend
- Cache: transient key-value cache (address lookups)

The location pipeline's collaborator contracts (PositionSource,
AddressLookup) live with the pipeline in core/location.py.
"""

from visitor_telemetry.base.cache import Cache
from visitor_telemetry.base.storage import TelemetryStorage

__all__ = [
    "Cache",
    "TelemetryStorage",
]
