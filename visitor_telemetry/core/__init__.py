# ==============================================================================
# Core Domain Logic
# ==============================================================================
"""
Pure domain logic with no infrastructure dependencies.

This module contains:
- Domain models (Session, LocationFix, AddressGeolocation, Interaction)
- Storage error taxonomy (StorageUnavailable, ConstraintViolation)
- Geodesic helpers for proximity queries
- The location resolution pipeline (device -> address -> timezone)

All code here is framework-agnostic and easily unit-testable.
"""

from visitor_telemetry.core.errors import (
    ConstraintViolation,
    StorageError,
    StorageUnavailable,
)
from visitor_telemetry.core.geo import haversine_m, rank_by_distance
from visitor_telemetry.core.location import (
    AddressLookup,
    AddressLookupError,
    LocationResolver,
    LocationResult,
    PositionError,
    PositionSource,
    ReportedPositionSource,
    ResolutionState,
    TierAttempt,
    TierErrorCode,
)
from visitor_telemetry.core.models import (
    AddressGeolocation,
    ExportSnapshot,
    Interaction,
    LocationFix,
    NearbyFix,
    ProvenanceTier,
    Session,
    StorageStatistics,
)

__all__ = [
    # Errors
    "ConstraintViolation",
    "StorageError",
    "StorageUnavailable",
    # Geo
    "haversine_m",
    "rank_by_distance",
    # Location pipeline
    "AddressLookup",
    "AddressLookupError",
    "LocationResolver",
    "LocationResult",
    "PositionError",
    "PositionSource",
    "ReportedPositionSource",
    "ResolutionState",
    "TierAttempt",
    "TierErrorCode",
    # Models
    "AddressGeolocation",
    "ExportSnapshot",
    "Interaction",
    "LocationFix",
    "NearbyFix",
    "ProvenanceTier",
    "Session",
    "StorageStatistics",
]
