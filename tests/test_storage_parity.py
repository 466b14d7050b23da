# ==============================================================================
# Tests for Cross-Backend Storage Behavior
# ==============================================================================
"""
Behavior every TelemetryStorage backend must share.

Each test runs once per backend (json, sqlite, opensearch) through the
parametrized `storage` fixture from conftest.py.

Tests cover:
- The parity scenario (one session, one fix, one interaction)
- Upsert idempotence and field-union merging
- No-coordinate fixes and failed address lookups are never written
- Proximity query filtering and ordering
- Bulk clear completeness
- Export snapshot contents
"""

import pytest

from visitor_telemetry.core.models import (
    AddressGeolocation,
    LocationFix,
    ProvenanceTier,
    Session,
)

# Reference point: Dublin city centre
DUBLIN = (-6.26, 53.35)  # (lon, lat)


def _content(session: Session) -> dict:
    return session.model_dump(mode="json", exclude={"created_at", "updated_at"})


# ==============================================================================
# Parity Scenario
# ==============================================================================


class TestParityScenario:
    """One session, one fix, one interaction: identical results everywhere."""

    async def test_statistics_and_session(self, storage):
        """Statistics report 1/1/1 at 100% and the session keeps its platform."""
        await storage.upsert_session({"sessionId": "s1", "device": {"platform": "X"}})
        await storage.record_location_fix(
            "s1", {"lat": 53.35, "lon": -6.26, "accuracy": 10}
        )
        await storage.append_interaction({"sessionId": "s1", "type": "scroll_50"})

        stats = await storage.statistics()
        assert stats.sessions == 1
        assert stats.fixes == 1
        assert stats.interactions == 1
        assert stats.location_rate == "100%"

        session = await storage.get_session("s1")
        assert session is not None
        assert session.device.platform == "X"

    async def test_fix_round_trip(self, storage):
        """A recorded fix is listed with its coordinates, accuracy and tier."""
        await storage.upsert_session({"sessionId": "s1"})
        stored = await storage.record_location_fix(
            "s1", {"latitude": 53.35, "longitude": -6.26, "accuracy": 10}
        )

        fixes = await storage.list_location_fixes()
        assert len(fixes) == 1
        assert fixes[0].fix_id == stored.fix_id
        assert fixes[0].session_id == "s1"
        assert fixes[0].latitude == 53.35
        assert fixes[0].longitude == -6.26
        assert fixes[0].accuracy == 10
        assert fixes[0].tier == ProvenanceTier.DEVICE

    async def test_fixes_for_one_session(self, storage):
        """list_location_fixes(session_id=...) returns only that session's fixes."""
        await storage.upsert_session({"sessionId": "s1"})
        await storage.upsert_session({"sessionId": "s2"})
        await storage.record_location_fix("s1", {"lat": 53.35, "lon": -6.26})
        await storage.record_location_fix("s2", {"lat": 48.85, "lon": 2.35})

        fixes = await storage.list_location_fixes(session_id="s2")

        assert [(f.session_id, f.latitude) for f in fixes] == [("s2", 48.85)]
        assert await storage.list_location_fixes(session_id="missing") == []
        assert len(await storage.list_location_fixes()) == 2

    async def test_interaction_round_trip(self, storage):
        """Interactions keep type and payload, and filter by session."""
        await storage.append_interaction(
            {"sessionId": "s1", "type": "click", "data": {"x": 10, "y": 20}}
        )
        await storage.append_interaction({"sessionId": "s2", "type": "scroll_50"})

        events = await storage.list_interactions(session_id="s1")
        assert len(events) == 1
        assert events[0].event_type == "click"
        assert events[0].payload == {"x": 10, "y": 20}
        assert events[0].event_id

        assert len(await storage.list_interactions()) == 2

    async def test_unknown_session_is_none(self, storage):
        """get_session returns None for an unknown identifier."""
        assert await storage.get_session("missing") is None

    async def test_empty_statistics(self, storage):
        """An empty store reports zero counts and a 0% rate."""
        stats = await storage.statistics()
        assert (stats.sessions, stats.fixes, stats.interactions) == (0, 0, 0)
        assert stats.location_rate == "0%"

    async def test_partial_location_rate(self, storage):
        """Two of three sessions with a fix report 66.67%."""
        for session_id in ("a", "b", "c"):
            await storage.upsert_session({"sessionId": session_id})
        await storage.record_location_fix("a", {"lat": 1.0, "lon": 1.0})
        await storage.record_location_fix("b", {"lat": 2.0, "lon": 2.0})

        stats = await storage.statistics()
        assert stats.sessions_with_location == 2
        assert stats.location_rate == "66.67%"


# ==============================================================================
# Upsert
# ==============================================================================


class TestUpsertSession:
    """Session upsert merge semantics."""

    async def test_identical_upsert_is_idempotent(self, storage):
        """Upserting the same content twice leaves one identical record."""
        payload = {
            "sessionId": "s1",
            "clientIP": "203.0.113.7",
            "device": {"platform": "MacIntel", "language": "en-US"},
            "screen": {"width": 1920, "height": 1080},
            "timezone": "Europe/Dublin",
        }
        first = await storage.upsert_session(payload)
        second = await storage.upsert_session(payload)

        assert _content(first) == _content(second)
        assert len(await storage.list_sessions()) == 1

    async def test_later_write_wins_and_fields_union(self, storage):
        """A second write overrides overlapping fields and keeps the rest."""
        await storage.upsert_session(
            {
                "sessionId": "s1",
                "device": {"platform": "Win32", "language": "en-US"},
                "timezone": "Europe/London",
                "extra": {"referrer": "https://example.com"},
            }
        )
        merged = await storage.upsert_session(
            {
                "sessionId": "s1",
                "device": {"platform": "MacIntel"},
                "screen": {"width": 1440, "height": 900},
                "extra": {"plugins": 3},
            }
        )

        assert merged.device.platform == "MacIntel"
        assert merged.device.language == "en-US"
        assert merged.timezone == "Europe/London"
        assert merged.screen.resolution == "1440x900"
        assert merged.extra == {"referrer": "https://example.com", "plugins": 3}

        stored = await storage.get_session("s1")
        assert _content(stored) == _content(merged)

    async def test_created_at_kept_updated_at_refreshed(self, storage):
        """created_at is set once; updated_at moves forward."""
        first = await storage.upsert_session({"sessionId": "s1"})
        second = await storage.upsert_session({"sessionId": "s1", "timezone": "Asia/Tokyo"})

        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at

    async def test_fingerprints_merge(self, storage):
        """Fingerprint digests survive a later write that omits them."""
        await storage.upsert_session(
            {
                "sessionId": "s1",
                "fingerprints": {"canvas": "data:image/png;base64,AAA", "fonts": ["Arial"]},
            }
        )
        merged = await storage.upsert_session(
            {"sessionId": "s1", "fingerprints": {"audio": 124.04347527516074}}
        )

        assert merged.fingerprints.canvas == "data:image/png;base64,AAA"
        assert merged.fingerprints.fonts == ["Arial"]
        assert merged.fingerprints.audio == pytest.approx(124.04347527516074)

    async def test_fingerprint_value_replaced_whole(self, storage):
        """A later webgl digest replaces the stored mapping instead of merging into it."""
        await storage.upsert_session(
            {
                "sessionId": "s1",
                "fingerprints": {"webgl": {"vendor": "Intel", "renderer": "Mesa"}},
            }
        )
        await storage.upsert_session(
            {"sessionId": "s1", "fingerprints": {"webgl": {"vendor": "NVIDIA"}}}
        )

        session = await storage.get_session("s1")
        assert session.fingerprints.webgl == {"vendor": "NVIDIA"}
        listed = await storage.list_sessions()
        assert listed[0].fingerprints.webgl == {"vendor": "NVIDIA"}

    async def test_sessions_listed_newest_first(self, storage):
        """list_sessions orders by creation time, newest first."""
        for session_id in ("first", "second", "third"):
            await storage.upsert_session({"sessionId": session_id})

        sessions = await storage.list_sessions()
        assert [s.session_id for s in sessions] == ["third", "second", "first"]

        limited = await storage.list_sessions(limit=2)
        assert [s.session_id for s in limited] == ["third", "second"]


# ==============================================================================
# No-op Writes
# ==============================================================================


class TestNoCoordinateNoWrite:
    """Fixes without coordinates and failed lookups are never persisted."""

    async def test_error_fix_not_written(self, storage):
        """A fix carrying only an error returns None and adds nothing."""
        await storage.upsert_session({"sessionId": "s1"})

        assert await storage.record_location_fix("s1", {"error": "x"}) is None
        assert await storage.list_location_fixes() == []
        assert (await storage.statistics()).fixes == 0

    async def test_half_coordinate_fix_not_written(self, storage):
        """A fix with only a latitude is not written."""
        await storage.upsert_session({"sessionId": "s1"})

        assert await storage.record_location_fix("s1", LocationFix(latitude=10.0)) is None
        assert await storage.record_location_fix("s1", None) is None
        assert await storage.list_location_fixes() == []

    async def test_coordinates_with_error_not_written(self, storage):
        """Coordinates are ignored when the device reported an error."""
        await storage.upsert_session({"sessionId": "s1"})

        fix = LocationFix(latitude=1.0, longitude=2.0, error="permission denied")
        assert await storage.record_location_fix("s1", fix) is None
        assert await storage.list_location_fixes() == []

    @pytest.mark.parametrize(
        "fix",
        [
            {"lat": 200, "lon": 500},
            {"lat": 91.0, "lon": 0.0},
            {"lat": 0.0, "lon": -180.5},
            {"lat": float("nan"), "lon": 1.0},
            {"lat": 1.0, "lon": float("inf")},
        ],
    )
    async def test_out_of_range_fix_not_written(self, storage, fix):
        """Coordinates outside WGS84 count as no coordinates on every backend."""
        await storage.upsert_session({"sessionId": "s1"})

        assert await storage.record_location_fix("s1", fix) is None
        assert await storage.list_location_fixes() == []
        stats = await storage.statistics()
        assert stats.fixes == 0
        assert stats.location_rate == "0%"

    async def test_boundary_coordinates_written(self, storage):
        """The poles and the antimeridian are valid positions."""
        await storage.upsert_session({"sessionId": "s1"})

        assert await storage.record_location_fix("s1", {"lat": 90.0, "lon": -180.0}) is not None
        assert (await storage.statistics()).fixes == 1

    async def test_out_of_range_address_not_written(self, storage):
        """A successful lookup with impossible coordinates is not stored."""
        await storage.upsert_session({"sessionId": "s1"})

        geo = AddressGeolocation(status="success", latitude=123.0, longitude=10.0)
        assert await storage.record_address_geolocation("s1", geo) is None
        assert await storage.list_address_geolocations() == []

    async def test_failed_address_lookup_not_written(self, storage):
        """Only successful address lookups are stored."""
        await storage.upsert_session({"sessionId": "s1"})

        failed = AddressGeolocation(status="fail", ip_address="10.0.0.1")
        assert await storage.record_address_geolocation("s1", failed) is None
        assert await storage.list_address_geolocations() == []

        geo = AddressGeolocation(
            status="success",
            ip_address="203.0.113.7",
            city="Dublin",
            latitude=53.35,
            longitude=-6.26,
        )
        stored = await storage.record_address_geolocation("s1", geo)
        assert stored is not None
        listed = await storage.list_address_geolocations()
        assert [g.city for g in listed] == ["Dublin"]
        assert listed[0].session_id == "s1"


# ==============================================================================
# Proximity
# ==============================================================================


class TestFindNear:
    """Proximity query filtering and ordering."""

    async def _seed(self, storage):
        # One fix per session; roughly 0 m, 1.1 km, 3.3 km and 111 km from DUBLIN
        points = {
            "centre": (53.35, -6.26),
            "near": (53.36, -6.26),
            "mid": (53.38, -6.26),
            "far": (54.35, -6.26),
        }
        for session_id, (lat, lon) in points.items():
            await storage.upsert_session({"sessionId": session_id})
            await storage.record_location_fix(session_id, {"lat": lat, "lon": lon})

    async def test_filters_by_distance_and_orders_nearest_first(self, storage):
        """Only fixes inside the radius come back, nearest first."""
        await self._seed(storage)

        matches = await storage.find_near(*DUBLIN, max_distance_m=5000)

        assert [m.fix.session_id for m in matches] == ["centre", "near", "mid"]
        distances = [m.distance_m for m in matches]
        assert distances == sorted(distances)
        assert all(d <= 5000 for d in distances)
        assert distances[0] == pytest.approx(0.0, abs=1.0)
        assert distances[1] == pytest.approx(1112, rel=0.01)

    async def test_small_radius(self, storage):
        """A tiny radius returns only the coincident fix."""
        await self._seed(storage)

        matches = await storage.find_near(*DUBLIN, max_distance_m=10)
        assert [m.fix.session_id for m in matches] == ["centre"]

    async def test_no_fixes(self, storage):
        """An empty store returns no matches."""
        assert await storage.find_near(*DUBLIN) == []

    async def test_invalid_coordinates_rejected(self, storage):
        """Out-of-range coordinates and negative radii raise ValueError."""
        with pytest.raises(ValueError):
            await storage.find_near(200.0, 0.0)
        with pytest.raises(ValueError):
            await storage.find_near(0.0, 95.0)
        with pytest.raises(ValueError):
            await storage.find_near(0.0, 0.0, max_distance_m=-1)


# ==============================================================================
# Bulk Clear and Export
# ==============================================================================


class TestClearAll:
    """Bulk clear empties every entity."""

    async def test_statistics_zero_after_clear(self, storage):
        """After clear_all every count is zero."""
        await storage.upsert_session({"sessionId": "s1", "device": {"platform": "X"}})
        await storage.record_location_fix("s1", {"lat": 53.35, "lon": -6.26})
        await storage.record_address_geolocation(
            "s1", {"status": "success", "lat": 53.35, "lon": -6.26, "city": "Dublin"}
        )
        await storage.append_interaction({"sessionId": "s1", "type": "click"})

        await storage.clear_all()

        stats = await storage.statistics()
        assert (stats.sessions, stats.fixes, stats.interactions) == (0, 0, 0)
        assert await storage.get_session("s1") is None
        assert await storage.list_address_geolocations() == []

    async def test_store_usable_after_clear(self, storage):
        """Writes succeed after a clear without re-initializing."""
        await storage.upsert_session({"sessionId": "s1"})
        await storage.clear_all()

        await storage.upsert_session({"sessionId": "s2"})
        assert [s.session_id for s in await storage.list_sessions()] == ["s2"]


class TestExportAll:
    """export_all returns every entity."""

    async def test_snapshot_contains_everything(self, storage):
        """The snapshot lists sessions, fixes, lookups and interactions."""
        await storage.upsert_session({"sessionId": "s1"})
        await storage.upsert_session({"sessionId": "s2"})
        await storage.record_location_fix("s1", {"lat": 53.35, "lon": -6.26})
        await storage.record_address_geolocation(
            "s2", {"status": "success", "lat": 48.85, "lon": 2.35, "city": "Paris"}
        )
        await storage.append_interaction({"sessionId": "s1", "type": "click"})
        await storage.append_interaction({"sessionId": "s2", "type": "scroll_50"})

        snapshot = await storage.export_all()

        assert {s.session_id for s in snapshot.sessions} == {"s1", "s2"}
        assert [f.session_id for f in snapshot.location_fixes] == ["s1"]
        assert [g.city for g in snapshot.address_geolocations] == ["Paris"]
        assert len(snapshot.interactions) == 2
