# ==============================================================================
# Telemetry Storage Abstract Base Class
# ==============================================================================
"""
The storage engine contract shared by every backend.

This defines the "what" (upsert a session, record a fix) not the "how"
(rewrite a JSON file, INSERT ... ON CONFLICT, update with doc_as_upsert).
Concrete implementations in infrastructure/storage/ handle the specifics.

Write operations are template methods: the public method normalizes its
input, applies the no-op rules that must behave identically on every
backend (fixes without coordinates, failed address lookups), fills in
generated identifiers and timestamps, then delegates to a protected
backend hook.

Implementations: JsonFileStorage, SQLiteStorage, OpenSearchStorage
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, final

from visitor_telemetry.core.models import (
    AddressGeolocation,
    ExportSnapshot,
    Interaction,
    LocationFix,
    NearbyFix,
    Session,
    StorageStatistics,
    coordinates_in_range,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_LIMIT = 100
DEFAULT_FIX_LIMIT = 100
DEFAULT_INTERACTION_LIMIT = 500
DEFAULT_NEAR_DISTANCE_M = 5000.0


class TelemetryStorage(ABC):
    """
    Async storage engine for visitor telemetry.

    initialize() must be awaited before any other operation. One instance
    is created at process startup and released with close() at shutdown;
    `async with storage:` does both.

    Failures propagate as StorageUnavailable or ConstraintViolation and
    are never retried here.
    """

    backend_name: str = "abstract"

    async def __aenter__(self) -> "TelemetryStorage":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    @abstractmethod
    async def initialize(self) -> None:
        """
        Create files, tables or indices if absent.

        Safe to call against an already initialized store (detect-and-skip,
        never destructive).
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Idempotent, safe before initialize()."""
        ...

    @abstractmethod
    async def check_connection(self) -> bool:
        """
        Check whether the backend is reachable.

        Returns:
            True if the store can be read, False otherwise
        """
        ...

    # ==========================================================================
    # Writes
    # ==========================================================================

    @final
    async def upsert_session(self, session: Session | dict) -> Session:
        """
        Create a session or merge into the stored record.

        Safe to call repeatedly with partial data: fields absent from a
        later write never erase stored values, overlapping fields take the
        later value, and updated_at is refreshed on every call.

        Args:
            session: Session model or collector-style dict (sessionId, device, ...)

        Returns:
            The stored (merged) session
        """
        incoming = session if isinstance(session, Session) else Session.model_validate(session)
        stored = await self._upsert_session(incoming)
        logger.debug("Upserted session %s (backend=%s)", stored.session_id, self.backend_name)
        return stored

    @final
    async def record_location_fix(
        self, session_id: str, fix: LocationFix | dict | None
    ) -> LocationFix | None:
        """
        Persist a location fix for a session.

        A fix without both coordinates, with out-of-range coordinates, or
        carrying a device error, is a no-op and returns None. The session does not have to exist.

        Args:
            session_id: Session the fix belongs to
            fix: LocationFix model or dict (latitude/longitude or lat/lon)

        Returns:
            The stored fix, or None if nothing was written
        """
        if fix is None:
            return None
        if isinstance(fix, dict):
            fix = LocationFix.model_validate(fix)
        if not fix.has_coordinates:
            logger.debug("Skipping fix without coordinates for session %s", session_id)
            return None

        now = utc_now()
        draft = fix.model_copy(
            update={
                "session_id": session_id,
                "fix_id": fix.fix_id or new_id(),
                "timestamp": fix.timestamp or now,
                "created_at": now,
            }
        )
        return await self._insert_location_fix(draft)

    @final
    async def record_address_geolocation(
        self, session_id: str, geo: AddressGeolocation | dict | None
    ) -> AddressGeolocation | None:
        """
        Persist the result of a network-address lookup.

        Only successful lookups carrying coordinates are written; anything
        else is a no-op returning None.
        """
        if geo is None:
            return None
        if isinstance(geo, dict):
            geo = AddressGeolocation.model_validate(geo)
        if not geo.succeeded:
            logger.debug("Skipping failed address lookup for session %s", session_id)
            return None

        draft = geo.model_copy(update={"session_id": session_id, "created_at": utc_now()})
        return await self._insert_address_geolocation(draft)

    @final
    async def append_interaction(self, event: Interaction | dict) -> Interaction:
        """
        Append an interaction event. Always persists.

        Args:
            event: Interaction model or dict (sessionId, type, data, timestamp)

        Returns:
            The stored event with its generated event_id
        """
        if isinstance(event, dict):
            event = Interaction.model_validate(event)
        draft = event.model_copy(
            update={
                "event_id": event.event_id or new_id(),
                "timestamp": event.timestamp or utc_now(),
            }
        )
        return await self._insert_interaction(draft)

    @abstractmethod
    async def _upsert_session(self, session: Session) -> Session:
        """Backend-specific create-or-merge. Returns the merged record."""
        ...

    @abstractmethod
    async def _insert_location_fix(self, fix: LocationFix) -> Optional[LocationFix]:
        """Persist a fix that is known to carry coordinates."""
        ...

    @abstractmethod
    async def _insert_address_geolocation(self, geo: AddressGeolocation) -> AddressGeolocation:
        """Persist a successful address lookup."""
        ...

    @abstractmethod
    async def _insert_interaction(self, event: Interaction) -> Interaction:
        """Append an event with its identifier and timestamp filled in."""
        ...

    # ==========================================================================
    # Reads
    # ==========================================================================

    @abstractmethod
    async def list_sessions(self, limit: int | None = DEFAULT_SESSION_LIMIT) -> list[Session]:
        """Sessions, newest first by creation time. limit=None returns all."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Get one session by identifier, or None if unknown."""
        ...

    @abstractmethod
    async def list_location_fixes(
        self, session_id: str | None = None, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[LocationFix]:
        """Location fixes, newest first, optionally for one session. limit=None returns all."""
        ...

    @abstractmethod
    async def list_address_geolocations(
        self, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[AddressGeolocation]:
        """Address lookups, newest first. limit=None returns all."""
        ...

    @abstractmethod
    async def list_interactions(
        self, session_id: str | None = None, limit: int | None = DEFAULT_INTERACTION_LIMIT
    ) -> list[Interaction]:
        """Interaction events, newest first, optionally for one session."""
        ...

    @final
    async def find_near(
        self,
        longitude: float,
        latitude: float,
        max_distance_m: float = DEFAULT_NEAR_DISTANCE_M,
    ) -> list[NearbyFix]:
        """
        Location fixes within max_distance_m of a point, nearest first.

        Args:
            longitude: Query longitude in decimal degrees
            latitude: Query latitude in decimal degrees
            max_distance_m: Search radius in meters (default: 5000)

        Returns:
            Matching fixes with their distance from the query point
        """
        if not coordinates_in_range(latitude, longitude):
            raise ValueError(f"Invalid coordinates: lon={longitude}, lat={latitude}")
        if max_distance_m < 0:
            raise ValueError(f"max_distance_m must be non-negative, got {max_distance_m}")
        return await self._find_near(longitude, latitude, max_distance_m)

    @abstractmethod
    async def _find_near(
        self, longitude: float, latitude: float, max_distance_m: float
    ) -> list[NearbyFix]:
        ...

    @abstractmethod
    async def statistics(self) -> StorageStatistics:
        """Entity counts and the share of sessions with at least one fix."""
        ...

    async def export_all(self) -> ExportSnapshot:
        """
        Snapshot of every entity.

        Entities are read one after another, so the snapshot carries no
        cross-entity transactional guarantee.
        """
        return ExportSnapshot(
            sessions=await self.list_sessions(limit=None),
            location_fixes=await self.list_location_fixes(limit=None),
            address_geolocations=await self.list_address_geolocations(limit=None),
            interactions=await self.list_interactions(limit=None),
        )

    # ==========================================================================
    # Administration
    # ==========================================================================

    @abstractmethod
    async def clear_all(self) -> None:
        """Empty every entity. Callers are responsible for gating this."""
        ...

    def describe(self) -> dict[str, Any]:
        """Backend details for the status command. Optional override."""
        return {"backend": self.backend_name}
