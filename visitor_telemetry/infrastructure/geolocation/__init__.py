# ==============================================================================
# Geolocation Infrastructure
# ==============================================================================
"""
Network-address lookup adapters for the location pipeline.

Available implementations:
- IpApiLookup: ip-api.com JSON endpoint (httpx)
- CachedAddressLookup: read-through cache over any lookup (Valkey)
"""

from visitor_telemetry.infrastructure.geolocation.ip_api import (
    CachedAddressLookup,
    IpApiLookup,
    build_address_lookup,
    is_public_address,
)

__all__ = [
    "CachedAddressLookup",
    "IpApiLookup",
    "build_address_lookup",
    "is_public_address",
]
