# ==============================================================================
# Ingestion Service
# ==============================================================================
"""
Composes the location pipeline and the storage engine for inbound payloads.

This is the layer an HTTP handler calls after parsing the request body:
- collect(): a browser collector payload (session attributes plus an
  optional device position report)
- track(): a single interaction event

Request parsing, CORS and status-code mapping stay with the caller. A
missing session id raises ValueError (a client error); StorageError
subclasses propagate unchanged (a server error). An unresolved location
is a normal result with has_location=False.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from visitor_telemetry.base.storage import TelemetryStorage
from visitor_telemetry.core.location import LocationResolver, LocationResult
from visitor_telemetry.core.models import (
    AddressGeolocation,
    Interaction,
    LocationFix,
    ProvenanceTier,
    Session,
)
from visitor_telemetry.infrastructure.geolocation import build_address_lookup
from visitor_telemetry.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Headers checked, in order, for the originating client address
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "x-client-ip")

# Collector keys mapped onto Session fields; everything else lands in Session.extra
_DEVICE_KEYS = {"userAgent": "user_agent", "platform": "platform", "language": "language"}
_SCREEN_KEYS = {"screenWidth": "width", "screenHeight": "height"}
_CONSUMED_KEYS = {
    "sessionId",
    "clientIP",
    "device",
    "screen",
    "timezone",
    "fingerprints",
    "gps",
    "timestamp",
}


@dataclass
class CollectResult:
    """
    Outcome of one collect() call.

    Attributes:
        session: The stored (merged) session
        location: Terminal result of the location pipeline
        fix: The persisted fix, or None if nothing was written
        address: The persisted address geolocation, or None
    """

    session: Session
    location: LocationResult
    fix: Optional[LocationFix] = None
    address: Optional[AddressGeolocation] = None

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def tier(self) -> ProvenanceTier:
        return self.location.tier

    @property
    def has_location(self) -> bool:
        return self.location.has_location

    def to_response(self) -> dict:
        """Response body for the collection endpoint."""
        fix = self.location.fix
        return {
            "success": True,
            "sessionId": self.session_id,
            "location": {
                "hasLocation": self.has_location,
                "source": self.tier.value,
                "latitude": fix.latitude if fix else None,
                "longitude": fix.longitude if fix else None,
                "accuracy": fix.accuracy if fix else None,
                "city": self.location.city,
            },
        }


def client_ip_from_headers(headers: Mapping[str, str]) -> str | None:
    """
    Originating client address from proxy headers.

    X-Forwarded-For may carry a chain ("client, proxy1, proxy2"); the first
    entry is the client.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in CLIENT_IP_HEADERS:
        value = lowered.get(name)
        if value:
            return value.split(",")[0].strip() or None
    return None


def _split_block(block: Any, mapping: dict[str, str]) -> tuple[dict, dict]:
    """Split a collector block into modeled fields and leftovers."""
    if not isinstance(block, dict):
        return {}, {}
    modeled = {mapping[key]: value for key, value in block.items() if key in mapping}
    rest = {key: value for key, value in block.items() if key not in mapping}
    return modeled, rest


def session_from_payload(payload: dict, client_ip: str | None = None) -> Session:
    """
    Build a (possibly partial) Session from a collector payload.

    Args:
        payload: Collector body (sessionId, device, screen, timezone, ...)
        client_ip: Address the request came from; overrides payload clientIP

    Returns:
        Session carrying only the attributes present in the payload
    """
    session_id = payload.get("sessionId") or payload.get("session_id")
    if not session_id:
        raise ValueError("Payload is missing sessionId")

    device, device_rest = _split_block(payload.get("device"), _DEVICE_KEYS)
    screen, screen_rest = _split_block(payload.get("screen"), _SCREEN_KEYS)

    timezone_block = payload.get("timezone")
    if isinstance(timezone_block, dict):
        timezone = timezone_block.get("timezone")
        timezone_rest = {k: v for k, v in timezone_block.items() if k != "timezone"}
    else:
        timezone = timezone_block
        timezone_rest = {}

    extra = {key: value for key, value in payload.items() if key not in _CONSUMED_KEYS}
    for key, rest in (("device", device_rest), ("screen", screen_rest), ("timezone", timezone_rest)):
        if rest:
            extra[key] = rest

    fingerprints = payload.get("fingerprints")
    return Session.model_validate(
        {
            "session_id": str(session_id),
            "client_ip": client_ip or payload.get("clientIP"),
            "device": device,
            "screen": screen,
            "timezone": timezone,
            "fingerprints": fingerprints if isinstance(fingerprints, dict) else {},
            "extra": extra,
        }
    )


def build_resolver(settings: Settings | None = None) -> LocationResolver:
    """
    Build the location pipeline from settings.

    The address tier uses the configured lookup (cached in Valkey when
    enabled); its overall bound is the lookup timeout plus one second so
    the HTTP client timeout fires first.

    Args:
        settings: Application settings. If None, uses get_settings().

    Returns:
        LocationResolver. Close resolver.address_lookup when done.
    """
    settings = settings or get_settings()
    return LocationResolver(
        address_lookup=build_address_lookup(settings),
        device_timeout=settings.location.device_timeout_seconds,
        address_timeout=settings.location.lookup_timeout_seconds + 1.0,
    )


class IngestionService:
    """
    Entry point for collector and interaction payloads.

    Args:
        storage: Initialized storage engine (process-wide instance)
        resolver: Location pipeline
    """

    def __init__(self, storage: TelemetryStorage, resolver: LocationResolver):
        self._storage = storage
        self._resolver = resolver

    async def collect(self, payload: dict, client_ip: str | None = None) -> CollectResult:
        """
        Store a collector payload and resolve the visitor's location.

        The session is upserted first, then the pipeline runs with the
        reported position block ("gps"), the client address and the
        reported timezone. The resulting fix and, when the address tier
        produced it, the address geolocation are recorded.

        Args:
            payload: Collector body
            client_ip: Address the request came from

        Returns:
            CollectResult with the stored session and location outcome

        Raises:
            ValueError: If the payload has no sessionId
        """
        session = session_from_payload(payload, client_ip)
        stored = await self._storage.upsert_session(session)

        report = payload.get("gps")
        result = await self._resolver.resolve(
            device=report if isinstance(report, dict) else None,
            client_ip=session.client_ip,
            timezone=stored.timezone,
        )

        fix = None
        if result.fix is not None:
            fix = await self._storage.record_location_fix(stored.session_id, result.fix)
        address = None
        if result.address is not None:
            address = await self._storage.record_address_geolocation(
                stored.session_id, result.address
            )

        logger.info(
            "Collected session %s (location=%s, stored_fix=%s)",
            stored.session_id,
            result.tier.value,
            fix is not None,
        )
        return CollectResult(session=stored, location=result, fix=fix, address=address)

    async def track(self, payload: dict) -> Interaction:
        """
        Append an interaction event.

        Args:
            payload: Event body (sessionId, type, data, timestamp)

        Returns:
            The stored interaction

        Raises:
            ValueError: If sessionId or type is missing
        """
        if not (payload.get("sessionId") or payload.get("session_id")):
            raise ValueError("Payload is missing sessionId")
        if not (payload.get("type") or payload.get("event_type")):
            raise ValueError("Payload is missing type")

        event = await self._storage.append_interaction(payload)
        logger.debug("Tracked %s for session %s", event.event_type, event.session_id)
        return event
