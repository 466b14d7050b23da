# ==============================================================================
# JSON File Storage Implementation
# ==============================================================================
"""
File document store: one JSON array per collection.

Files (inside the configured data directory):
- sessions.json: one document per session; the most recent location fix
  is embedded on the session document under "gps"
- interactions.json: append-only events, capped at the most recent
  max_interactions entries
- address_geolocations.json: successful network-address lookups

Every mutation reads the whole collection, applies the change in memory
(linear scan by session id) and rewrites the whole file through a
temporary file and os.replace().

Limitations:
- No locking. Intended for a single process with low write volume;
  concurrent writers in separate processes can interleave and lose
  updates.
- Within one event loop, each read-modify-write runs without awaiting,
  so coroutines cannot interleave inside a single operation.
- Only the latest fix per session is kept, and fixes for sessions that
  do not exist yet are dropped (no write, None returned).
- Proximity queries are a full scan with haversine distances.
"""

import json
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from visitor_telemetry.base.storage import (
    DEFAULT_FIX_LIMIT,
    DEFAULT_INTERACTION_LIMIT,
    DEFAULT_SESSION_LIMIT,
    TelemetryStorage,
)
from visitor_telemetry.core.errors import StorageUnavailable
from visitor_telemetry.core.geo import rank_by_distance
from visitor_telemetry.core.models import (
    AddressGeolocation,
    Interaction,
    LocationFix,
    NearbyFix,
    Session,
    StorageStatistics,
    merge_session,
    to_iso,
)
from visitor_telemetry.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

SESSIONS_FILE = "sessions.json"
INTERACTIONS_FILE = "interactions.json"
ADDRESS_GEOLOCATIONS_FILE = "address_geolocations.json"

COLLECTION_FILES = (SESSIONS_FILE, INTERACTIONS_FILE, ADDRESS_GEOLOCATIONS_FILE)

# Embedded most-recent fix on a session document
GPS_KEY = "gps"

T = TypeVar("T")


def _newest_first(items: Iterable[T], sort_key: Callable[[T], str], limit: int | None) -> list[T]:
    """Sort newest first; items with equal keys keep later-written first."""
    ordered = sorted(items, key=sort_key)
    ordered.reverse()
    return ordered if limit is None else ordered[:limit]


class JsonFileStorage(TelemetryStorage):
    """
    JSON file implementation of TelemetryStorage.

    Has no constraint layer: the session upsert invariant is enforced
    procedurally by the linear scan, and ConstraintViolation is never raised.
    """

    backend_name = "json"

    def __init__(
        self,
        settings: Settings | None = None,
        data_dir: Path | str | None = None,
        max_interactions: int | None = None,
    ):
        """
        Initialize the file store.

        Args:
            settings: Application settings. If None, uses get_settings().
            data_dir: Override directory. If None, uses settings.storage.data_dir.
            max_interactions: Override interaction cap. If None, uses settings.
        """
        self._settings = settings or get_settings()
        self._data_dir = Path(data_dir or self._settings.storage.data_dir)
        self._max_interactions = max_interactions or self._settings.storage.max_interactions

    @property
    def data_dir(self) -> Path:
        """Directory holding the collection files."""
        return self._data_dir

    # ==========================================================================
    # File Access
    # ==========================================================================

    def _path(self, name: str) -> Path:
        return self._data_dir / name

    def _read(self, name: str) -> list[dict]:
        path = self._path(name)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            raise StorageUnavailable(f"Corrupt collection file {path}: {e}", self.backend_name) from e
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {path}: {e}", self.backend_name) from e

        if not isinstance(data, list):
            raise StorageUnavailable(
                f"Collection file {path} does not contain a JSON array", self.backend_name
            )
        return data

    def _write(self, name: str, documents: list[dict]) -> None:
        path = self._path(name)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(documents, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write {path}: {e}", self.backend_name) from e

    @staticmethod
    def _find_session(documents: list[dict], session_id: str) -> int | None:
        for index, doc in enumerate(documents):
            if doc.get("session_id") == session_id:
                return index
        return None

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        """Create the data directory and any missing collection file."""
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(
                f"Cannot create data directory {self._data_dir}: {e}", self.backend_name
            ) from e

        for name in COLLECTION_FILES:
            if not self._path(name).exists():
                self._write(name, [])

        logger.info("JsonFileStorage initialized (data_dir=%s)", self._data_dir)

    async def close(self) -> None:
        """Nothing to release; files are opened per operation."""
        logger.debug("JsonFileStorage closed")

    async def check_connection(self) -> bool:
        return self._data_dir.is_dir() and os.access(self._data_dir, os.R_OK | os.W_OK)

    def describe(self) -> dict:
        return {"backend": self.backend_name, "data_dir": str(self._data_dir)}

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def _upsert_session(self, session: Session) -> Session:
        documents = self._read(SESSIONS_FILE)
        index = self._find_session(documents, session.session_id)

        existing = Session.model_validate(documents[index]) if index is not None else None
        merged = merge_session(existing, session)
        document = merged.to_document()

        if index is None:
            documents.append(document)
        else:
            gps = documents[index].get(GPS_KEY)
            if gps:
                document[GPS_KEY] = gps
            documents[index] = document

        self._write(SESSIONS_FILE, documents)
        return merged

    async def _insert_location_fix(self, fix: LocationFix) -> LocationFix | None:
        documents = self._read(SESSIONS_FILE)
        index = self._find_session(documents, fix.session_id)
        if index is None:
            logger.debug("Dropping fix for unknown session %s", fix.session_id)
            return None

        documents[index][GPS_KEY] = fix.to_document()
        self._write(SESSIONS_FILE, documents)
        return fix

    async def _insert_address_geolocation(self, geo: AddressGeolocation) -> AddressGeolocation:
        documents = self._read(ADDRESS_GEOLOCATIONS_FILE)
        documents.append(geo.to_document())
        self._write(ADDRESS_GEOLOCATIONS_FILE, documents)
        return geo

    async def _insert_interaction(self, event: Interaction) -> Interaction:
        documents = self._read(INTERACTIONS_FILE)
        documents.append(event.to_document())
        if len(documents) > self._max_interactions:
            documents = documents[-self._max_interactions :]
        self._write(INTERACTIONS_FILE, documents)
        return event

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def list_sessions(self, limit: int | None = DEFAULT_SESSION_LIMIT) -> list[Session]:
        sessions = [Session.model_validate(doc) for doc in self._read(SESSIONS_FILE)]
        return _newest_first(sessions, lambda s: to_iso(s.created_at) or "", limit)

    async def get_session(self, session_id: str) -> Session | None:
        documents = self._read(SESSIONS_FILE)
        index = self._find_session(documents, session_id)
        return Session.model_validate(documents[index]) if index is not None else None

    async def list_location_fixes(
        self, session_id: str | None = None, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[LocationFix]:
        fixes = [
            LocationFix.model_validate(doc[GPS_KEY])
            for doc in self._read(SESSIONS_FILE)
            if doc.get(GPS_KEY) and session_id in (None, doc.get("session_id"))
        ]
        return _newest_first(fixes, lambda f: to_iso(f.created_at) or "", limit)

    async def list_address_geolocations(
        self, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[AddressGeolocation]:
        geos = [AddressGeolocation.model_validate(doc) for doc in self._read(ADDRESS_GEOLOCATIONS_FILE)]
        return _newest_first(geos, lambda g: to_iso(g.created_at) or "", limit)

    async def list_interactions(
        self, session_id: str | None = None, limit: int | None = DEFAULT_INTERACTION_LIMIT
    ) -> list[Interaction]:
        events = [Interaction.model_validate(doc) for doc in self._read(INTERACTIONS_FILE)]
        if session_id is not None:
            events = [e for e in events if e.session_id == session_id]
        return _newest_first(events, lambda e: to_iso(e.timestamp) or "", limit)

    async def _find_near(
        self, longitude: float, latitude: float, max_distance_m: float
    ) -> list[NearbyFix]:
        fixes = await self.list_location_fixes(limit=None)
        return rank_by_distance(fixes, longitude, latitude, max_distance_m)

    async def statistics(self) -> StorageStatistics:
        sessions = self._read(SESSIONS_FILE)
        with_location = sum(1 for doc in sessions if doc.get(GPS_KEY))
        return StorageStatistics.from_counts(
            sessions=len(sessions),
            fixes=with_location,
            interactions=len(self._read(INTERACTIONS_FILE)),
            sessions_with_location=with_location,
        )

    # ==========================================================================
    # Administration
    # ==========================================================================

    async def clear_all(self) -> None:
        """Replace every collection file with an empty array."""
        for name in COLLECTION_FILES:
            self._write(name, [])
        logger.info("JsonFileStorage cleared (data_dir=%s)", self._data_dir)
