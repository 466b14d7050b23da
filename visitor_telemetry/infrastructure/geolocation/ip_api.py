# ==============================================================================
# Network-Address Geolocation (ip-api.com)
# ==============================================================================
"""
Address lookup adapters for the location pipeline's second tier.

Provides:
- IpApiLookup: queries the ip-api.com JSON endpoint with httpx
- CachedAddressLookup: read-through cache in front of any AddressLookup
- build_address_lookup: wires both from settings

Failures (unreachable service, timeouts, non-200 responses, malformed
bodies, private or unparseable addresses) raise AddressLookupError, which
the resolver records as the lookup-failed tier code. A "fail" status from
the service is returned as-is and is never cached.
"""

import ipaddress
import logging

import httpx
from pydantic import ValidationError
from redis.exceptions import RedisError

from visitor_telemetry.base.cache import Cache
from visitor_telemetry.core.location import AddressLookup, AddressLookupError
from visitor_telemetry.core.models import AddressGeolocation
from visitor_telemetry.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Fields requested from ip-api.com (response keys map onto AddressGeolocation aliases)
IP_API_FIELDS = "status,message,query,country,countryCode,region,regionName,city,zip,lat,lon,timezone,isp"

CACHE_KEY_PREFIX = "geo:ip:"


def is_public_address(ip_address: str | None) -> bool:
    """Whether an address is globally routable (worth an external lookup)."""
    if not ip_address:
        return False
    try:
        return ipaddress.ip_address(ip_address.strip()).is_global
    except ValueError:
        return False


class IpApiLookup(AddressLookup):
    """
    AddressLookup backed by the ip-api.com JSON endpoint.

    The free endpoint is plain HTTP and rate limited; it answers with
    {"status": "fail", "message": ...} for reserved or unknown addresses.
    """

    def __init__(
        self,
        url_template: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the lookup.

        Args:
            url_template: URL with an {ip} placeholder. If None, uses settings.
            timeout: Request timeout in seconds. If None, uses settings.
            client: Pre-built httpx client (tests). Closed by the caller.
            settings: Application settings. If None, uses get_settings().
        """
        location = (settings or get_settings()).location
        self._url_template = url_template or location.lookup_url
        timeout = timeout if timeout is not None else location.lookup_timeout_seconds

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def lookup(self, ip_address: str) -> AddressGeolocation:
        if not is_public_address(ip_address):
            raise AddressLookupError("Address is not publicly routable")

        url = self._url_template.format(ip=ip_address.strip())
        try:
            response = await self._client.get(url, params={"fields": IP_API_FIELDS})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise AddressLookupError(f"Lookup request failed: {e}") from e
        except ValueError as e:
            raise AddressLookupError("Lookup returned invalid JSON") from e

        if not isinstance(data, dict):
            raise AddressLookupError("Lookup returned an unexpected body")

        try:
            geo = AddressGeolocation.model_validate(data)
        except ValidationError as e:
            raise AddressLookupError("Lookup returned malformed fields") from e

        if not geo.succeeded:
            logger.debug("Address lookup reported status=%s", geo.status)
        return geo

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CachedAddressLookup(AddressLookup):
    """
    Read-through cache in front of another AddressLookup.

    Only successful lookups are cached. Cache outages fall back to the
    wrapped lookup; the cache is never required for correctness.
    """

    def __init__(self, inner: AddressLookup, cache: Cache, ttl_seconds: int | None = None):
        self._inner = inner
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(ip_address: str) -> str:
        return f"{CACHE_KEY_PREFIX}{ip_address.strip()}"

    async def lookup(self, ip_address: str) -> AddressGeolocation:
        key = self.cache_key(ip_address)

        try:
            cached = await self._cache.get(key)
        except RedisError as e:
            logger.warning("Address cache read failed, querying lookup directly: %s", e)
            cached = None

        if cached is not None:
            return AddressGeolocation.model_validate(cached)

        geo = await self._inner.lookup(ip_address)
        if geo.succeeded:
            try:
                await self._cache.set(
                    key,
                    geo.model_dump(mode="json", exclude={"session_id", "created_at"}),
                    ttl_seconds=self._ttl_seconds,
                )
            except RedisError as e:
                logger.warning("Address cache write failed: %s", e)
        return geo

    async def clear(self) -> int:
        """
        Drop every cached lookup.

        Returns:
            Count of cache entries deleted
        """
        return await self._cache.delete_pattern(f"{CACHE_KEY_PREFIX}*")

    async def close(self) -> None:
        await self._inner.close()
        await self._cache.close()


def build_address_lookup(settings: Settings | None = None) -> AddressLookup:
    """
    Build the configured address lookup.

    Wraps IpApiLookup in a Valkey-backed CachedAddressLookup when
    VALKEY_ENABLED is true.

    Args:
        settings: Application settings. If None, uses get_settings().

    Returns:
        AddressLookup ready for LocationResolver
    """
    settings = settings or get_settings()
    lookup: AddressLookup = IpApiLookup(settings=settings)

    if settings.valkey.enabled:
        from visitor_telemetry.infrastructure.cache import ValkeyCache

        lookup = CachedAddressLookup(
            lookup,
            ValkeyCache(settings.valkey.url),
            ttl_seconds=settings.valkey.lookup_ttl_hours * 3600,
        )
    return lookup
