# ==============================================================================
# SQLite Storage Implementation
# ==============================================================================
"""
Embedded relational store on SQLite (via aiosqlite).

Normalized tables with declared foreign keys to sessions:
- sessions: one row per session, device and screen decomposed into columns
- device_fingerprints: one row per session (canvas, webgl, audio, fonts)
- gps_locations: immutable location fixes
- ip_geolocations: successful network-address lookups
- interactions: append-only events

Foreign keys are declared on every child table. Enforcement
(PRAGMA foreign_keys) is off by default so fixes and events may arrive
before their session; with SQLITE_ENFORCE_FOREIGN_KEYS=true such writes
raise ConstraintViolation instead.

Session upserts are a single INSERT ... ON CONFLICT(session_id) DO UPDATE
statement; COALESCE keeps stored values when the incoming write omits a
column, and json_patch() merges the free-form extra attributes.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import aiosqlite

from visitor_telemetry.base.storage import (
    DEFAULT_FIX_LIMIT,
    DEFAULT_INTERACTION_LIMIT,
    DEFAULT_SESSION_LIMIT,
    TelemetryStorage,
)
from visitor_telemetry.core.errors import ConstraintViolation, StorageUnavailable
from visitor_telemetry.core.geo import rank_by_distance
from visitor_telemetry.core.models import (
    AddressGeolocation,
    Interaction,
    LocationFix,
    NearbyFix,
    Session,
    StorageStatistics,
    to_iso,
    utc_now,
)
from visitor_telemetry.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ==============================================================================
# Schema
# ==============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    client_ip TEXT,
    user_agent TEXT,
    platform TEXT,
    language TEXT,
    screen_width INTEGER,
    screen_height INTEGER,
    timezone TEXT,
    extra TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS device_fingerprints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL UNIQUE,
    canvas_fingerprint TEXT,
    webgl_fingerprint TEXT,
    audio_fingerprint TEXT,
    fonts_fingerprint TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id)
);

CREATE TABLE IF NOT EXISTS gps_locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fix_id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    accuracy REAL,
    altitude REAL,
    altitude_accuracy REAL,
    heading REAL,
    speed REAL,
    timestamp TEXT,
    tier TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id)
);

CREATE INDEX IF NOT EXISTS idx_gps_locations_session ON gps_locations(session_id);

CREATE TABLE IF NOT EXISTS ip_geolocations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    ip_address TEXT,
    status TEXT,
    country TEXT,
    country_code TEXT,
    region TEXT,
    region_name TEXT,
    city TEXT,
    postal_code TEXT,
    latitude REAL,
    longitude REAL,
    timezone TEXT,
    isp TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id)
);

CREATE TABLE IF NOT EXISTS interactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    timestamp TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id)
);

CREATE INDEX IF NOT EXISTS idx_interactions_session ON interactions(session_id);
"""

# Children before parent, so deletes respect foreign keys
CLEAR_ORDER = (
    "interactions",
    "ip_geolocations",
    "gps_locations",
    "device_fingerprints",
    "sessions",
)

UPSERT_SESSION_SQL = """
INSERT INTO sessions (
    session_id, client_ip, user_agent, platform, language,
    screen_width, screen_height, timezone, extra, created_at, updated_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(session_id) DO UPDATE SET
    client_ip = COALESCE(excluded.client_ip, sessions.client_ip),
    user_agent = COALESCE(excluded.user_agent, sessions.user_agent),
    platform = COALESCE(excluded.platform, sessions.platform),
    language = COALESCE(excluded.language, sessions.language),
    screen_width = COALESCE(excluded.screen_width, sessions.screen_width),
    screen_height = COALESCE(excluded.screen_height, sessions.screen_height),
    timezone = COALESCE(excluded.timezone, sessions.timezone),
    extra = json_patch(sessions.extra, excluded.extra),
    updated_at = excluded.updated_at
"""

UPSERT_FINGERPRINTS_SQL = """
INSERT INTO device_fingerprints (
    session_id, canvas_fingerprint, webgl_fingerprint, audio_fingerprint,
    fonts_fingerprint, created_at
)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(session_id) DO UPDATE SET
    canvas_fingerprint = COALESCE(excluded.canvas_fingerprint, device_fingerprints.canvas_fingerprint),
    webgl_fingerprint = COALESCE(excluded.webgl_fingerprint, device_fingerprints.webgl_fingerprint),
    audio_fingerprint = COALESCE(excluded.audio_fingerprint, device_fingerprints.audio_fingerprint),
    fonts_fingerprint = COALESCE(excluded.fonts_fingerprint, device_fingerprints.fonts_fingerprint)
"""

SELECT_SESSION_SQL = """
SELECT s.*, f.canvas_fingerprint, f.webgl_fingerprint, f.audio_fingerprint, f.fonts_fingerprint
FROM sessions s
LEFT JOIN device_fingerprints f ON f.session_id = s.session_id
"""

INSERT_FIX_SQL = """
INSERT INTO gps_locations (
    fix_id, session_id, latitude, longitude, accuracy, altitude,
    altitude_accuracy, heading, speed, timestamp, tier, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

INSERT_ADDRESS_SQL = """
INSERT INTO ip_geolocations (
    session_id, ip_address, status, country, country_code, region, region_name,
    city, postal_code, latitude, longitude, timezone, isp, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

INSERT_INTERACTION_SQL = """
INSERT INTO interactions (event_id, session_id, event_type, payload, timestamp)
VALUES (?, ?, ?, ?, ?)
"""

STATISTICS_SQL = """
SELECT
    (SELECT COUNT(*) FROM sessions) AS sessions,
    (SELECT COUNT(*) FROM gps_locations) AS fixes,
    (SELECT COUNT(*) FROM interactions) AS interactions,
    (SELECT COUNT(*) FROM sessions s
        WHERE EXISTS (SELECT 1 FROM gps_locations g WHERE g.session_id = s.session_id)
    ) AS sessions_with_location
"""


def _sql_limit(limit: int | None) -> int:
    # SQLite treats a negative LIMIT as unlimited
    return -1 if limit is None else limit


def _encode(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _decode(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session.model_validate(
        {
            "session_id": row["session_id"],
            "client_ip": row["client_ip"],
            "device": {
                "platform": row["platform"],
                "language": row["language"],
                "user_agent": row["user_agent"],
            },
            "screen": {"width": row["screen_width"], "height": row["screen_height"]},
            "timezone": row["timezone"],
            "fingerprints": {
                "canvas": _decode(row["canvas_fingerprint"]),
                "webgl": _decode(row["webgl_fingerprint"]),
                "audio": _decode(row["audio_fingerprint"]),
                "fonts": _decode(row["fonts_fingerprint"]),
            },
            "extra": json.loads(row["extra"] or "{}"),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )


def _row_to_fix(row: aiosqlite.Row) -> LocationFix:
    data = dict(row)
    data.pop("id", None)
    return LocationFix.model_validate(data)


def _row_to_address(row: aiosqlite.Row) -> AddressGeolocation:
    data = dict(row)
    data.pop("id", None)
    return AddressGeolocation.model_validate(data)


def _row_to_interaction(row: aiosqlite.Row) -> Interaction:
    return Interaction.model_validate(
        {
            "event_id": row["event_id"],
            "session_id": row["session_id"],
            "event_type": row["event_type"],
            "payload": json.loads(row["payload"] or "{}"),
            "timestamp": row["timestamp"],
        }
    )


class SQLiteStorage(TelemetryStorage):
    """
    SQLite implementation of TelemetryStorage.

    Uses a single aiosqlite connection for the lifetime of the instance.
    aiosqlite runs the blocking sqlite3 calls on its own connection thread.
    """

    backend_name = "sqlite"

    def __init__(
        self,
        settings: Settings | None = None,
        path: Path | str | None = None,
        enforce_foreign_keys: bool | None = None,
    ):
        """
        Initialize the SQLite store.

        Args:
            settings: Application settings. If None, uses get_settings().
            path: Override database file. If None, uses settings.sqlite.path.
            enforce_foreign_keys: Override PRAGMA foreign_keys. If None, uses settings.
        """
        self._settings = settings or get_settings()
        self._path = Path(path or self._settings.sqlite.path)
        self._enforce_foreign_keys = (
            enforce_foreign_keys
            if enforce_foreign_keys is not None
            else self._settings.sqlite.enforce_foreign_keys
        )
        self._db: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        """Database file path."""
        return self._path

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageUnavailable("Database not initialized. Call initialize() first.", self.backend_name)
        return self._db

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        """Map sqlite3 exceptions onto the storage error taxonomy."""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(f"{action} failed: {e}", self.backend_name) from e
        except sqlite3.Error as e:
            raise StorageUnavailable(f"{action} failed: {e}", self.backend_name) from e

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        """Open the database and create any missing table or index."""
        with self._translate_errors("initialize"):
            if self._db is None:
                try:
                    self._path.parent.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise StorageUnavailable(
                        f"Cannot create database directory {self._path.parent}: {e}",
                        self.backend_name,
                    ) from e
                self._db = await aiosqlite.connect(str(self._path))
                self._db.row_factory = aiosqlite.Row

            pragma = "ON" if self._enforce_foreign_keys else "OFF"
            await self._db.execute(f"PRAGMA foreign_keys = {pragma}")
            await self._db.executescript(SCHEMA)
            await self._db.commit()

        logger.info(
            "SQLiteStorage initialized (path=%s, foreign_keys=%s)",
            self._path,
            self._enforce_foreign_keys,
        )

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._db:
            try:
                await self._db.close()
                logger.info("SQLiteStorage connection closed")
            except Exception as e:
                logger.warning("Error closing connection: %s", e)
            finally:
                self._db = None

    async def check_connection(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except sqlite3.Error:
            return False

    def describe(self) -> dict:
        return {
            "backend": self.backend_name,
            "path": str(self._path),
            "foreign_keys": self._enforce_foreign_keys,
        }

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def _upsert_session(self, session: Session) -> Session:
        db = self.connection
        now = to_iso(utc_now())
        extra = {key: value for key, value in session.extra.items() if value is not None}

        with self._translate_errors("upsert_session"):
            await db.execute(
                UPSERT_SESSION_SQL,
                (
                    session.session_id,
                    session.client_ip,
                    session.device.user_agent,
                    session.device.platform,
                    session.device.language,
                    session.screen.width,
                    session.screen.height,
                    session.timezone,
                    json.dumps(extra),
                    to_iso(session.created_at) or now,
                    now,
                ),
            )
            if not session.fingerprints.is_empty:
                fp = session.fingerprints
                await db.execute(
                    UPSERT_FINGERPRINTS_SQL,
                    (
                        session.session_id,
                        _encode(fp.canvas),
                        _encode(fp.webgl),
                        _encode(fp.audio),
                        _encode(fp.fonts),
                        now,
                    ),
                )
            await db.commit()

        stored = await self.get_session(session.session_id)
        if stored is None:
            raise StorageUnavailable(
                f"Session {session.session_id} missing after upsert", self.backend_name
            )
        return stored

    async def _insert_location_fix(self, fix: LocationFix) -> LocationFix:
        db = self.connection
        with self._translate_errors("record_location_fix"):
            await db.execute(
                INSERT_FIX_SQL,
                (
                    fix.fix_id,
                    fix.session_id,
                    fix.latitude,
                    fix.longitude,
                    fix.accuracy,
                    fix.altitude,
                    fix.altitude_accuracy,
                    fix.heading,
                    fix.speed,
                    to_iso(fix.timestamp),
                    fix.tier.value,
                    to_iso(fix.created_at),
                ),
            )
            await db.commit()
        return fix

    async def _insert_address_geolocation(self, geo: AddressGeolocation) -> AddressGeolocation:
        db = self.connection
        with self._translate_errors("record_address_geolocation"):
            await db.execute(
                INSERT_ADDRESS_SQL,
                (
                    geo.session_id,
                    geo.ip_address,
                    geo.status,
                    geo.country,
                    geo.country_code,
                    geo.region,
                    geo.region_name,
                    geo.city,
                    geo.postal_code,
                    geo.latitude,
                    geo.longitude,
                    geo.timezone,
                    geo.isp,
                    to_iso(geo.created_at),
                ),
            )
            await db.commit()
        return geo

    async def _insert_interaction(self, event: Interaction) -> Interaction:
        db = self.connection
        with self._translate_errors("append_interaction"):
            await db.execute(
                INSERT_INTERACTION_SQL,
                (
                    event.event_id,
                    event.session_id,
                    event.event_type,
                    json.dumps(event.payload),
                    to_iso(event.timestamp),
                ),
            )
            await db.commit()
        return event

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def _fetch_all(self, action: str, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        db = self.connection
        with self._translate_errors(action):
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def list_sessions(self, limit: int | None = DEFAULT_SESSION_LIMIT) -> list[Session]:
        rows = await self._fetch_all(
            "list_sessions",
            SELECT_SESSION_SQL + " ORDER BY s.created_at DESC, s.rowid DESC LIMIT ?",
            (_sql_limit(limit),),
        )
        return [_row_to_session(row) for row in rows]

    async def get_session(self, session_id: str) -> Session | None:
        rows = await self._fetch_all(
            "get_session", SELECT_SESSION_SQL + " WHERE s.session_id = ?", (session_id,)
        )
        return _row_to_session(rows[0]) if rows else None

    async def list_location_fixes(
        self, session_id: str | None = None, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[LocationFix]:
        if session_id is None:
            sql = "SELECT * FROM gps_locations ORDER BY created_at DESC, id DESC LIMIT ?"
            params: tuple = (_sql_limit(limit),)
        else:
            sql = (
                "SELECT * FROM gps_locations WHERE session_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?"
            )
            params = (session_id, _sql_limit(limit))
        rows = await self._fetch_all("list_location_fixes", sql, params)
        return [_row_to_fix(row) for row in rows]

    async def list_address_geolocations(
        self, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[AddressGeolocation]:
        rows = await self._fetch_all(
            "list_address_geolocations",
            "SELECT * FROM ip_geolocations ORDER BY created_at DESC, id DESC LIMIT ?",
            (_sql_limit(limit),),
        )
        return [_row_to_address(row) for row in rows]

    async def list_interactions(
        self, session_id: str | None = None, limit: int | None = DEFAULT_INTERACTION_LIMIT
    ) -> list[Interaction]:
        if session_id is None:
            sql = "SELECT * FROM interactions ORDER BY timestamp DESC, id DESC LIMIT ?"
            params: tuple = (_sql_limit(limit),)
        else:
            sql = (
                "SELECT * FROM interactions WHERE session_id = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT ?"
            )
            params = (session_id, _sql_limit(limit))
        rows = await self._fetch_all("list_interactions", sql, params)
        return [_row_to_interaction(row) for row in rows]

    async def _find_near(
        self, longitude: float, latitude: float, max_distance_m: float
    ) -> list[NearbyFix]:
        # No spatial index: scan every fix and rank by haversine distance
        rows = await self._fetch_all(
            "find_near", "SELECT * FROM gps_locations ORDER BY created_at DESC, id DESC"
        )
        return rank_by_distance(
            (_row_to_fix(row) for row in rows), longitude, latitude, max_distance_m
        )

    async def statistics(self) -> StorageStatistics:
        rows = await self._fetch_all("statistics", STATISTICS_SQL)
        row = rows[0]
        return StorageStatistics.from_counts(
            sessions=row["sessions"],
            fixes=row["fixes"],
            interactions=row["interactions"],
            sessions_with_location=row["sessions_with_location"],
        )

    # ==========================================================================
    # Administration
    # ==========================================================================

    async def clear_all(self) -> None:
        """Delete every row, children before parent, in one transaction."""
        db = self.connection
        with self._translate_errors("clear_all"):
            try:
                for table in CLEAR_ORDER:
                    await db.execute(f"DELETE FROM {table}")
                await db.commit()
            except sqlite3.Error:
                await db.rollback()
                raise
        logger.info("SQLiteStorage cleared (path=%s)", self._path)
