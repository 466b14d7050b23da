# ==============================================================================
# Tests for Network-Address Lookup Adapters
# ==============================================================================
"""
Unit tests for IpApiLookup and CachedAddressLookup.

HTTP calls go through httpx.MockTransport; the cache is fakeredis.
"""

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from visitor_telemetry.base.cache import Cache
from visitor_telemetry.core.location import AddressLookup, AddressLookupError
from visitor_telemetry.core.models import AddressGeolocation
from visitor_telemetry.infrastructure.geolocation import (
    CachedAddressLookup,
    IpApiLookup,
    build_address_lookup,
    is_public_address,
)
from visitor_telemetry.infrastructure.geolocation.ip_api import IP_API_FIELDS

IP_API_SUCCESS = {
    "status": "success",
    "country": "Ireland",
    "countryCode": "IE",
    "region": "L",
    "regionName": "Leinster",
    "city": "Dublin",
    "zip": "D02",
    "lat": 53.3498,
    "lon": -6.2603,
    "timezone": "Europe/Dublin",
    "isp": "Example ISP",
    "query": "8.8.8.8",
}


def _lookup(handler, settings) -> tuple[IpApiLookup, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    lookup = IpApiLookup(
        url_template="http://ip-api.test/json/{ip}", client=client, settings=settings
    )
    return lookup, requests


class CountingLookup(AddressLookup):
    def __init__(self, response: dict):
        self.response = response
        self.calls = 0
        self.closed = False

    async def lookup(self, ip_address: str) -> AddressGeolocation:
        self.calls += 1
        return AddressGeolocation.model_validate(self.response)

    async def close(self) -> None:
        self.closed = True


class BrokenCache(Cache):
    """A cache whose server is down."""

    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ttl_seconds=None):
        raise RedisConnectionError("connection refused")

    async def delete(self, key):
        raise RedisConnectionError("connection refused")

    async def delete_pattern(self, pattern):
        raise RedisConnectionError("connection refused")

    async def close(self):
        pass


# ==============================================================================
# Address Classification
# ==============================================================================


@pytest.mark.parametrize(
    "address, expected",
    [
        ("8.8.8.8", True),
        (" 8.8.8.8 ", True),
        ("2001:4860:4860::8888", True),
        ("192.168.1.10", False),
        ("10.0.0.1", False),
        ("127.0.0.1", False),
        ("::1", False),
        ("not-an-ip", False),
        ("", False),
        (None, False),
    ],
)
def test_is_public_address(address, expected):
    assert is_public_address(address) is expected


# ==============================================================================
# IpApiLookup
# ==============================================================================


class TestIpApiLookup:
    """Tests for the ip-api.com adapter."""

    async def test_success(self, settings):
        """A success response validates into AddressGeolocation."""
        lookup, requests = _lookup(lambda r: httpx.Response(200, json=IP_API_SUCCESS), settings)

        geo = await lookup.lookup("8.8.8.8")

        assert geo.succeeded is True
        assert (geo.city, geo.country_code, geo.region_name, geo.postal_code) == (
            "Dublin",
            "IE",
            "Leinster",
            "D02",
        )
        assert geo.ip_address == "8.8.8.8"
        assert requests[0].url.path == "/json/8.8.8.8"
        assert requests[0].url.params["fields"] == IP_API_FIELDS

    async def test_fail_status_returned(self, settings):
        """A fail status is returned, not raised."""
        body = {"status": "fail", "message": "reserved range", "query": "8.8.4.4"}
        lookup, _ = _lookup(lambda r: httpx.Response(200, json=body), settings)

        geo = await lookup.lookup("8.8.4.4")

        assert geo.status == "fail"
        assert geo.succeeded is False

    async def test_private_address_not_queried(self, settings):
        """Private addresses fail without a request."""
        lookup, requests = _lookup(lambda r: httpx.Response(200, json=IP_API_SUCCESS), settings)

        with pytest.raises(AddressLookupError):
            await lookup.lookup("192.168.1.10")
        assert requests == []

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="Internal Server Error"),
            httpx.Response(429, text="Too Many Requests"),
            httpx.Response(200, text="<html>not json</html>"),
            httpx.Response(200, json=["unexpected", "list"]),
            httpx.Response(200, json={"status": "success", "lat": "north"}),
        ],
    )
    async def test_bad_responses(self, settings, response):
        """Error statuses and malformed bodies raise AddressLookupError."""
        lookup, _ = _lookup(lambda r: response, settings)

        with pytest.raises(AddressLookupError):
            await lookup.lookup("8.8.8.8")

    async def test_unreachable(self, settings):
        """Transport failures raise AddressLookupError."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        lookup, _ = _lookup(refuse, settings)

        with pytest.raises(AddressLookupError):
            await lookup.lookup("8.8.8.8")

    async def test_injected_client_not_closed(self, settings):
        """close() leaves a caller-provided client open."""
        lookup, _ = _lookup(lambda r: httpx.Response(200, json=IP_API_SUCCESS), settings)

        await lookup.close()

        assert lookup._client.is_closed is False
        await lookup._client.aclose()


# ==============================================================================
# CachedAddressLookup
# ==============================================================================


class TestCachedAddressLookup:
    """Tests for the read-through cache."""

    async def test_second_lookup_served_from_cache(self, fake_cache, fake_redis):
        """Only the first lookup reaches the wrapped adapter."""
        inner = CountingLookup(IP_API_SUCCESS)
        lookup = CachedAddressLookup(inner, fake_cache, ttl_seconds=3600)

        first = await lookup.lookup("8.8.8.8")
        second = await lookup.lookup("8.8.8.8")

        assert inner.calls == 1
        assert second.city == first.city == "Dublin"
        assert second.succeeded is True
        assert 0 < await fake_redis.ttl("geo:ip:8.8.8.8") <= 3600

    async def test_failed_lookup_not_cached(self, fake_cache, fake_redis):
        """A fail status is never written to the cache."""
        inner = CountingLookup({"status": "fail", "query": "8.8.8.8"})
        lookup = CachedAddressLookup(inner, fake_cache)

        await lookup.lookup("8.8.8.8")
        await lookup.lookup("8.8.8.8")

        assert inner.calls == 2
        assert await fake_redis.exists("geo:ip:8.8.8.8") == 0

    async def test_cache_outage_falls_back(self):
        """A cache that cannot be reached does not fail the lookup."""
        inner = CountingLookup(IP_API_SUCCESS)
        lookup = CachedAddressLookup(inner, BrokenCache())

        geo = await lookup.lookup("8.8.8.8")

        assert geo.succeeded is True
        assert inner.calls == 1

    async def test_clear(self, fake_cache, fake_redis):
        """clear() drops cached lookups and leaves other keys alone."""
        await fake_redis.set("unrelated", "1")
        lookup = CachedAddressLookup(CountingLookup(IP_API_SUCCESS), fake_cache)
        await lookup.lookup("8.8.8.8")
        await lookup.lookup("1.1.1.1")

        assert await lookup.clear() == 2
        assert await fake_redis.get("unrelated") == "1"

    async def test_close_closes_inner(self, fake_cache):
        inner = CountingLookup(IP_API_SUCCESS)
        lookup = CachedAddressLookup(inner, fake_cache)

        await lookup.close()

        assert inner.closed is True


# ==============================================================================
# Wiring
# ==============================================================================


class TestBuildAddressLookup:
    """build_address_lookup() honors VALKEY_ENABLED."""

    async def test_without_cache(self, settings):
        lookup = build_address_lookup(settings)
        try:
            assert isinstance(lookup, IpApiLookup)
        finally:
            await lookup.close()

    async def test_with_cache(self, settings):
        settings.valkey.enabled = True
        lookup = build_address_lookup(settings)
        try:
            assert isinstance(lookup, CachedAddressLookup)
        finally:
            await lookup.close()
