# ==============================================================================
# Location Resolution Pipeline
# ==============================================================================
"""
Three-tier, degrading-precision location resolution.

Tiers are tried in order, each only when the previous one failed or was
not requested:

1. Device-reported position (bounded wait, default 12 seconds)
2. Network-address geolocation (external lookup)
3. Timezone approximation (fixed table of representative cities)

The resolver is an explicit state machine:

    IDLE -> TRY_DEVICE -> TRY_ADDRESS -> TRY_TIMEZONE -> RESOLVED | UNRESOLVED

Every tier is attempted at most once per call and never retried. Tier
failures are recorded as error codes on the result, never raised, so
callers always receive a terminal LocationResult.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from collections.abc import Hashable
from typing import Any, Optional, Union

from pydantic import ValidationError

from visitor_telemetry.core.models import (
    AddressGeolocation,
    LocationFix,
    ProvenanceTier,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_TIMEOUT = 12.0  # seconds


class ResolutionState(str, Enum):
    """States of the resolution state machine."""

    IDLE = "idle"
    TRY_DEVICE = "try-device"
    TRY_ADDRESS = "try-address"
    TRY_TIMEZONE = "try-timezone"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


TERMINAL_STATES = frozenset({ResolutionState.RESOLVED, ResolutionState.UNRESOLVED})


class TierErrorCode(str, Enum):
    """Why a tier did not produce a fix."""

    PERMISSION_DENIED = "permission-denied"
    POSITION_UNAVAILABLE = "position-unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"
    LOOKUP_FAILED = "lookup-failed"
    UNMAPPED_TIMEZONE = "unmapped-timezone"


# ==============================================================================
# Tier Collaborators
# ==============================================================================


class PositionError(Exception):
    """A device position request failed with a known error code."""

    def __init__(self, code: TierErrorCode, message: str = ""):
        super().__init__(message or code.value)
        self.code = code


class PositionSource(ABC):
    """Source of a device-reported position."""

    @abstractmethod
    async def get_position(self) -> LocationFix:
        """
        Request the current device position.

        Returns:
            LocationFix with latitude/longitude populated

        Raises:
            PositionError: The device refused or could not produce a position
        """
        ...


# Browser geolocation error codes, plus the collector's own string codes
_BROWSER_ERROR_CODES: dict[Any, TierErrorCode] = {
    1: TierErrorCode.PERMISSION_DENIED,
    2: TierErrorCode.POSITION_UNAVAILABLE,
    3: TierErrorCode.TIMEOUT,
    "PERMISSION_DENIED": TierErrorCode.PERMISSION_DENIED,
    "POSITION_UNAVAILABLE": TierErrorCode.POSITION_UNAVAILABLE,
    "TIMEOUT": TierErrorCode.TIMEOUT,
    "NOT_SUPPORTED": TierErrorCode.UNSUPPORTED,
}


_FIX_FIELDS = {
    "latitude",
    "longitude",
    "lat",
    "lon",
    "lng",
    "accuracy",
    "altitude",
    "altitudeAccuracy",
    "altitude_accuracy",
    "heading",
    "speed",
    "timestamp",
}


def _reported_error_code(raw: Any) -> TierErrorCode:
    """Map a collector error code; unknown or malformed codes are position-unavailable."""
    if not isinstance(raw, Hashable):
        return TierErrorCode.POSITION_UNAVAILABLE
    return _BROWSER_ERROR_CODES.get(raw, TierErrorCode.POSITION_UNAVAILABLE)


class ReportedPositionSource(PositionSource):
    """
    Adapts a position already reported by the browser collector.

    The collector sends either the coordinates of a successful
    getCurrentPosition() call or an error block such as
    {"error": "User denied the request for Geolocation", "code": 1}.
    """

    def __init__(self, report: dict):
        self._report = report

    async def get_position(self) -> LocationFix:
        report = self._report
        if report.get("error") or report.get("granted") is False:
            code = _reported_error_code(report.get("code"))
            raise PositionError(code, str(report.get("error") or code.value))

        try:
            fix = LocationFix.model_validate(
                {key: value for key, value in report.items() if key in _FIX_FIELDS}
            )
        except ValidationError as exc:
            raise PositionError(TierErrorCode.POSITION_UNAVAILABLE, "malformed position") from exc
        if not fix.has_coordinates:
            raise PositionError(TierErrorCode.POSITION_UNAVAILABLE, "position has no coordinates")
        return fix


class AddressLookupError(Exception):
    """The network-address lookup could not be completed."""


class AddressLookup(ABC):
    """Geolocation lookup for a network address."""

    @abstractmethod
    async def lookup(self, ip_address: str) -> AddressGeolocation:
        """
        Look up coarse location and ISP metadata for an address.

        Args:
            ip_address: IPv4/IPv6 address of the client

        Returns:
            AddressGeolocation (status "fail" when the service had no answer)

        Raises:
            AddressLookupError: The lookup service was unreachable
        """
        ...

    async def close(self) -> None:
        """Release resources held by the lookup. Optional override."""
        pass


# ==============================================================================
# Timezone Approximation
# ==============================================================================


@dataclass(frozen=True)
class ApproximateLocation:
    """Representative coordinates for a timezone."""

    latitude: float
    longitude: float
    city: str


TIMEZONE_COORDINATES: dict[str, ApproximateLocation] = {
    "America/New_York": ApproximateLocation(40.7128, -74.0060, "New York"),
    "America/Los_Angeles": ApproximateLocation(34.0522, -118.2437, "Los Angeles"),
    "America/Chicago": ApproximateLocation(41.8781, -87.6298, "Chicago"),
    "Europe/London": ApproximateLocation(51.5074, -0.1278, "London"),
    "Europe/Paris": ApproximateLocation(48.8566, 2.3522, "Paris"),
    "Asia/Tokyo": ApproximateLocation(35.6762, 139.6503, "Tokyo"),
    "Asia/Shanghai": ApproximateLocation(31.2304, 121.4737, "Shanghai"),
    "Australia/Sydney": ApproximateLocation(-33.8688, 151.2093, "Sydney"),
}


def approximate_from_timezone(timezone: str | None) -> ApproximateLocation | None:
    """Representative location for a timezone name, or None if unmapped."""
    if not timezone:
        return None
    return TIMEZONE_COORDINATES.get(timezone)


# ==============================================================================
# Results
# ==============================================================================


@dataclass
class TierAttempt:
    """Outcome of one tier attempt. code is None on success."""

    tier: ProvenanceTier
    code: Optional[TierErrorCode] = None

    @property
    def succeeded(self) -> bool:
        return self.code is None


@dataclass
class LocationResult:
    """
    Terminal output of the pipeline.

    Attributes:
        state: RESOLVED or UNRESOLVED
        tier: Provenance of the fix, or ProvenanceTier.NONE
        fix: Draft LocationFix to pass to record_location_fix (None if unresolved)
        address: Lookup result when the address tier produced the fix
        city: City name when known (address lookup or timezone table)
        attempts: Ordered record of attempted tiers and their failure codes
    """

    state: ResolutionState = ResolutionState.IDLE
    tier: ProvenanceTier = ProvenanceTier.NONE
    fix: Optional[LocationFix] = None
    address: Optional[AddressGeolocation] = None
    city: Optional[str] = None
    attempts: list[TierAttempt] = field(default_factory=list)

    @property
    def has_location(self) -> bool:
        return self.fix is not None

    def summary(self) -> dict:
        """JSON-friendly summary for logs and CLI output."""
        return {
            "state": self.state.value,
            "tier": self.tier.value,
            "has_location": self.has_location,
            "latitude": self.fix.latitude if self.fix else None,
            "longitude": self.fix.longitude if self.fix else None,
            "accuracy": self.fix.accuracy if self.fix else None,
            "city": self.city,
            "attempts": [
                {"tier": a.tier.value, "code": a.code.value if a.code else None}
                for a in self.attempts
            ],
        }


@dataclass
class _Request:
    device: Optional[PositionSource]
    client_ip: Optional[str]
    timezone: Optional[str]


# ==============================================================================
# Resolver
# ==============================================================================


class LocationResolver:
    """
    Runs the device -> address -> timezone fallback.

    Args:
        address_lookup: Network-address lookup. None skips the address tier.
        device_timeout: Seconds to wait for a device position
        address_timeout: Upper bound in seconds for the address lookup
    """

    def __init__(
        self,
        address_lookup: AddressLookup | None = None,
        device_timeout: float = DEFAULT_DEVICE_TIMEOUT,
        address_timeout: float | None = 10.0,
    ):
        self._address_lookup = address_lookup
        self._device_timeout = device_timeout
        self._address_timeout = address_timeout
        self._steps = {
            ResolutionState.IDLE: self._start,
            ResolutionState.TRY_DEVICE: self._try_device,
            ResolutionState.TRY_ADDRESS: self._try_address,
            ResolutionState.TRY_TIMEZONE: self._try_timezone,
        }

    @property
    def address_lookup(self) -> AddressLookup | None:
        return self._address_lookup

    async def resolve(
        self,
        device: Union[PositionSource, dict, None] = None,
        client_ip: str | None = None,
        timezone: str | None = None,
    ) -> LocationResult:
        """
        Resolve the best available location.

        Args:
            device: Device position source, or a position/error block reported
                by the browser collector. None means not requested.
            client_ip: Network address of the client
            timezone: IANA timezone reported by the client

        Returns:
            LocationResult in a terminal state
        """
        if isinstance(device, dict):
            device = ReportedPositionSource(device)

        request = _Request(device=device, client_ip=client_ip, timezone=timezone)
        result = LocationResult()

        state = ResolutionState.IDLE
        while state not in TERMINAL_STATES:
            state = await self._steps[state](request, result)
        result.state = state

        logger.debug(
            "Location resolution finished (state=%s, tier=%s, attempts=%d)",
            result.state.value,
            result.tier.value,
            len(result.attempts),
        )
        return result

    async def _start(self, request: _Request, result: LocationResult) -> ResolutionState:
        return ResolutionState.TRY_DEVICE

    async def _try_device(self, request: _Request, result: LocationResult) -> ResolutionState:
        if request.device is None:
            return ResolutionState.TRY_ADDRESS

        try:
            fix = await asyncio.wait_for(
                request.device.get_position(), timeout=self._device_timeout
            )
        except PositionError as exc:
            result.attempts.append(TierAttempt(ProvenanceTier.DEVICE, exc.code))
            return ResolutionState.TRY_ADDRESS
        except asyncio.TimeoutError:
            result.attempts.append(TierAttempt(ProvenanceTier.DEVICE, TierErrorCode.TIMEOUT))
            return ResolutionState.TRY_ADDRESS
        except Exception:
            logger.exception("Device position source failed")
            result.attempts.append(
                TierAttempt(ProvenanceTier.DEVICE, TierErrorCode.POSITION_UNAVAILABLE)
            )
            return ResolutionState.TRY_ADDRESS

        if not fix.has_coordinates:
            result.attempts.append(
                TierAttempt(ProvenanceTier.DEVICE, TierErrorCode.POSITION_UNAVAILABLE)
            )
            return ResolutionState.TRY_ADDRESS

        result.attempts.append(TierAttempt(ProvenanceTier.DEVICE))
        result.tier = ProvenanceTier.DEVICE
        result.fix = fix.model_copy(
            update={"tier": ProvenanceTier.DEVICE, "timestamp": fix.timestamp or utc_now()}
        )
        return ResolutionState.RESOLVED

    async def _try_address(self, request: _Request, result: LocationResult) -> ResolutionState:
        if self._address_lookup is None or not request.client_ip:
            return ResolutionState.TRY_TIMEZONE

        try:
            geo = await asyncio.wait_for(
                self._address_lookup.lookup(request.client_ip), timeout=self._address_timeout
            )
        except (AddressLookupError, asyncio.TimeoutError) as exc:
            logger.debug("Address lookup failed: %s", exc)
            geo = None
        except Exception:
            logger.exception("Address lookup raised an unexpected error")
            geo = None

        if geo is None or not geo.succeeded:
            result.attempts.append(
                TierAttempt(ProvenanceTier.NETWORK_ADDRESS, TierErrorCode.LOOKUP_FAILED)
            )
            return ResolutionState.TRY_TIMEZONE

        result.attempts.append(TierAttempt(ProvenanceTier.NETWORK_ADDRESS))
        result.tier = ProvenanceTier.NETWORK_ADDRESS
        result.address = geo
        result.city = geo.city
        result.fix = LocationFix(
            latitude=geo.latitude,
            longitude=geo.longitude,
            timestamp=utc_now(),
            tier=ProvenanceTier.NETWORK_ADDRESS,
        )
        return ResolutionState.RESOLVED

    async def _try_timezone(self, request: _Request, result: LocationResult) -> ResolutionState:
        if not request.timezone:
            return ResolutionState.UNRESOLVED

        approx = approximate_from_timezone(request.timezone)
        if approx is None:
            result.attempts.append(
                TierAttempt(ProvenanceTier.TIMEZONE, TierErrorCode.UNMAPPED_TIMEZONE)
            )
            return ResolutionState.UNRESOLVED

        result.attempts.append(TierAttempt(ProvenanceTier.TIMEZONE))
        result.tier = ProvenanceTier.TIMEZONE
        result.city = approx.city
        result.fix = LocationFix(
            latitude=approx.latitude,
            longitude=approx.longitude,
            timestamp=utc_now(),
            tier=ProvenanceTier.TIMEZONE,
        )
        return ResolutionState.RESOLVED
