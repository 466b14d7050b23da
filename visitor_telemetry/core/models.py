# ==============================================================================
# Visitor Telemetry Domain Models
# ==============================================================================
"""
Pydantic models for visitor sessions, location fixes, address geolocations
and interaction events.

These models are used for:
- Validating payloads reported by the browser collector (camelCase aliases)
- Serializing documents/rows for every storage backend
- Type safety throughout the application

This module is part of the core domain layer and has no external dependencies
beyond Pydantic.
"""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque identifier for fixes and events."""
    return uuid.uuid4().hex


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime with a fixed-width, sortable UTC representation."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def coordinates_in_range(latitude: float | None, longitude: float | None) -> bool:
    """True for finite WGS84 decimal degrees (latitude within 90, longitude within 180)."""
    if latitude is None or longitude is None:
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def _coerce_epoch(value: Any) -> Any:
    """Accept browser epoch milliseconds alongside ISO strings and datetimes."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    return value


class ProvenanceTier(str, Enum):
    """Which resolution method produced a location fix."""

    DEVICE = "device"
    NETWORK_ADDRESS = "network-address"
    TIMEZONE = "timezone-approximation"
    NONE = "none"


# ==============================================================================
# Session
# ==============================================================================


class DeviceInfo(BaseModel):
    """Browser/device attributes reported by the collector."""

    platform: Optional[str] = None
    language: Optional[str] = None
    user_agent: Optional[str] = Field(
        None, validation_alias=AliasChoices("user_agent", "userAgent")
    )

    model_config = {"populate_by_name": True}


class ScreenInfo(BaseModel):
    """Screen geometry in CSS pixels."""

    width: Optional[int] = Field(None, validation_alias=AliasChoices("width", "screenWidth"))
    height: Optional[int] = Field(None, validation_alias=AliasChoices("height", "screenHeight"))

    model_config = {"populate_by_name": True}

    @property
    def resolution(self) -> str | None:
        if self.width is None or self.height is None:
            return None
        return f"{self.width}x{self.height}"


class Fingerprints(BaseModel):
    """
    Raw fingerprint digests.

    The canvas digest is a data URL, webgl is a vendor/renderer mapping,
    audio is a numeric digest and fonts is a list of detected font names.
    Each value is replaced whole on a later write. Stored as one blob in the
    JSON file store, one JSON string per value on the search backend and
    decomposed into the device_fingerprints table on the relational backend.
    """

    canvas: Any = None
    webgl: Any = None
    audio: Any = None
    fonts: Any = None

    @property
    def is_empty(self) -> bool:
        return all(v is None for v in (self.canvas, self.webgl, self.audio, self.fonts))


class Session(BaseModel):
    """
    One visitor/browsing instance keyed by a client-generated identifier.

    Repeated submissions for the same session_id merge into the stored
    record (last write wins per field); fields absent from a later write
    never erase earlier values. See merge_session().

    Attributes:
        session_id: Client-generated identifier, unique across all backends
        client_ip: Network address the collector request came from
        device: Platform, language and user-agent string
        screen: Screen geometry
        timezone: IANA timezone name reported by the browser
        fingerprints: Canvas/webgl/audio digests and font list
        extra: Remaining free-form collector attributes (referrer, plugins, ...)
        created_at: First time the session was stored
        updated_at: Last upsert time
    """

    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))
    client_ip: Optional[str] = Field(
        None, validation_alias=AliasChoices("client_ip", "clientIP")
    )
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    screen: ScreenInfo = Field(default_factory=ScreenInfo)
    timezone: Optional[str] = None
    fingerprints: Fingerprints = Field(default_factory=Fingerprints)
    extra: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}

    def to_document(self) -> dict:
        """Serialize for JSON-based stores (ISO timestamps)."""
        doc = self.model_dump(mode="json")
        doc["created_at"] = to_iso(self.created_at)
        doc["updated_at"] = to_iso(self.updated_at)
        return doc


_MERGE_EXCLUDE = {"created_at", "updated_at"}


def _deep_merge(base: dict, changes: dict) -> dict:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def session_changes(session: Session) -> dict:
    """Fields carried by a (possibly partial) session write, None values dropped."""
    return session.model_dump(mode="json", exclude_none=True, exclude=_MERGE_EXCLUDE)


def merge_session(
    existing: Session | None, incoming: Session, now: datetime | None = None
) -> Session:
    """
    Merge an incoming session write into the stored record.

    Nested objects (device, screen, extra) merge key by key. Fingerprint
    values are opaque: a later digest replaces the stored one whole.
    created_at is kept from the first write; updated_at is always refreshed.
    """
    now = now or utc_now()
    if existing is None:
        base: dict = {}
        created_at = incoming.created_at or now
    else:
        base = existing.model_dump(mode="json", exclude=_MERGE_EXCLUDE)
        created_at = existing.created_at or now

    changes = session_changes(incoming)
    merged = _deep_merge(base, changes)
    merged["fingerprints"] = {**base.get("fingerprints", {}), **changes.get("fingerprints", {})}
    merged["session_id"] = incoming.session_id
    return Session.model_validate({**merged, "created_at": created_at, "updated_at": now})


# ==============================================================================
# Location
# ==============================================================================


class LocationFix(BaseModel):
    """
    A coordinate pair plus precision and provenance metadata.

    A fix without both latitude and longitude, with coordinates outside the
    WGS84 range, or carrying an error from the device, is never persisted
    (see has_coordinates).
    """

    fix_id: Optional[str] = None
    session_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    latitude: Optional[float] = Field(None, validation_alias=AliasChoices("latitude", "lat"))
    longitude: Optional[float] = Field(
        None, validation_alias=AliasChoices("longitude", "lon", "lng")
    )
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    altitude_accuracy: Optional[float] = Field(
        None, validation_alias=AliasChoices("altitude_accuracy", "altitudeAccuracy")
    )
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[datetime] = None
    tier: ProvenanceTier = ProvenanceTier.DEVICE
    error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, value: Any) -> Any:
        return _coerce_epoch(value)

    @property
    def has_coordinates(self) -> bool:
        return self.error is None and coordinates_in_range(self.latitude, self.longitude)

    def to_document(self) -> dict:
        doc = self.model_dump(mode="json", exclude={"error"})
        doc["timestamp"] = to_iso(self.timestamp)
        doc["created_at"] = to_iso(self.created_at)
        return doc


class NearbyFix(BaseModel):
    """A location fix returned by a proximity query, with its distance."""

    fix: LocationFix
    distance_m: float


class AddressGeolocation(BaseModel):
    """
    Coarse location and ISP metadata derived from a network address.

    Field aliases follow the ip-api.com JSON response so lookup results
    validate directly into this model.
    """

    session_id: Optional[str] = None
    ip_address: Optional[str] = Field(
        None, validation_alias=AliasChoices("ip_address", "query", "ip")
    )
    status: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = Field(
        None, validation_alias=AliasChoices("country_code", "countryCode")
    )
    region: Optional[str] = None
    region_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("region_name", "regionName")
    )
    city: Optional[str] = None
    postal_code: Optional[str] = Field(
        None, validation_alias=AliasChoices("postal_code", "zip")
    )
    latitude: Optional[float] = Field(None, validation_alias=AliasChoices("latitude", "lat"))
    longitude: Optional[float] = Field(None, validation_alias=AliasChoices("longitude", "lon"))
    timezone: Optional[str] = None
    isp: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}

    @property
    def succeeded(self) -> bool:
        """Lookup reported success and carried in-range coordinates."""
        return self.status == "success" and coordinates_in_range(self.latitude, self.longitude)

    def to_document(self) -> dict:
        doc = self.model_dump(mode="json")
        doc["created_at"] = to_iso(self.created_at)
        return doc


# ==============================================================================
# Interactions
# ==============================================================================


class Interaction(BaseModel):
    """An append-only interaction event (click, scroll depth, visibility change...)."""

    event_id: Optional[str] = None
    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))
    event_type: str = Field(..., validation_alias=AliasChoices("event_type", "type"))
    payload: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("payload", "data")
    )
    timestamp: Optional[datetime] = None

    model_config = {"populate_by_name": True}

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, value: Any) -> Any:
        return _coerce_epoch(value)

    @field_validator("payload", mode="before")
    @classmethod
    def wrap_scalar_payload(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return {"value": value}
        return value

    def to_document(self) -> dict:
        doc = self.model_dump(mode="json")
        doc["timestamp"] = to_iso(self.timestamp)
        return doc


# ==============================================================================
# Aggregates
# ==============================================================================


def format_location_rate(sessions_with_location: int, total_sessions: int) -> str:
    """Format the location success rate, e.g. '100%', '66.67%', '0%'."""
    if total_sessions <= 0:
        return "0%"
    pct = sessions_with_location / total_sessions * 100
    return f"{pct:.2f}".rstrip("0").rstrip(".") + "%"


class StorageStatistics(BaseModel):
    """Aggregate counts reported by every backend."""

    sessions: int = 0
    fixes: int = 0
    interactions: int = 0
    sessions_with_location: int = 0
    location_rate: str = "0%"

    @classmethod
    def from_counts(
        cls, sessions: int, fixes: int, interactions: int, sessions_with_location: int
    ) -> "StorageStatistics":
        return cls(
            sessions=sessions,
            fixes=fixes,
            interactions=interactions,
            sessions_with_location=sessions_with_location,
            location_rate=format_location_rate(sessions_with_location, sessions),
        )


class ExportSnapshot(BaseModel):
    """Full dataset snapshot (no cross-entity transactional guarantee)."""

    sessions: list[Session] = Field(default_factory=list)
    location_fixes: list[LocationFix] = Field(default_factory=list)
    address_geolocations: list[AddressGeolocation] = Field(default_factory=list)
    interactions: list[Interaction] = Field(default_factory=list)
    exported_at: datetime = Field(default_factory=utc_now)
