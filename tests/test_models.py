# ==============================================================================
# Tests for Domain Models
# ==============================================================================
"""
Unit tests for payload validation, session merging and rate formatting.
"""

from datetime import datetime, timedelta, timezone

import pytest

from visitor_telemetry.core.models import (
    AddressGeolocation,
    Interaction,
    LocationFix,
    Session,
    StorageStatistics,
    coordinates_in_range,
    format_location_rate,
    merge_session,
    to_iso,
)


class TestAliases:
    """Collector camelCase and ip-api field names validate into the models."""

    def test_session_camel_case(self):
        session = Session.model_validate(
            {
                "sessionId": "s1",
                "clientIP": "8.8.8.8",
                "device": {"userAgent": "Mozilla/5.0 (X11)", "platform": "Linux"},
                "screen": {"screenWidth": 1920, "screenHeight": 1080},
            }
        )

        assert session.session_id == "s1"
        assert session.client_ip == "8.8.8.8"
        assert session.device.user_agent == "Mozilla/5.0 (X11)"
        assert session.screen.resolution == "1920x1080"

    def test_fix_short_names(self):
        fix = LocationFix.model_validate({"lat": 1.5, "lng": 2.5, "altitudeAccuracy": 3.0})
        assert (fix.latitude, fix.longitude, fix.altitude_accuracy) == (1.5, 2.5, 3.0)

    def test_fix_epoch_milliseconds(self):
        fix = LocationFix.model_validate({"lat": 0, "lon": 0, "timestamp": 0})
        assert fix.timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_address_ip_api_names(self):
        geo = AddressGeolocation.model_validate(
            {"status": "success", "lat": 1.0, "lon": 2.0, "zip": "12345", "regionName": "R"}
        )
        assert geo.succeeded is True
        assert (geo.postal_code, geo.region_name) == ("12345", "R")

    def test_interaction_scalar_payload(self):
        event = Interaction.model_validate({"sessionId": "s1", "type": "scroll", "data": 75})
        assert event.payload == {"value": 75}

    def test_interaction_requires_type(self):
        with pytest.raises(ValueError):
            Interaction.model_validate({"sessionId": "s1"})


class TestMergeSession:
    """merge_session() semantics shared by the file and search backends."""

    def test_first_write_sets_created_at(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        merged = merge_session(None, Session(session_id="s1"), now=now)
        assert merged.created_at == merged.updated_at == now

    def test_absent_fields_kept(self):
        first = merge_session(
            None,
            Session.model_validate({"sessionId": "s1", "device": {"platform": "MacIntel"}}),
        )
        later = first.created_at + timedelta(seconds=5)

        merged = merge_session(
            first,
            Session.model_validate({"sessionId": "s1", "device": {"language": "fr-FR"}}),
            now=later,
        )

        assert merged.device.platform == "MacIntel"
        assert merged.device.language == "fr-FR"
        assert merged.created_at == first.created_at
        assert merged.updated_at == later

    def test_later_value_wins(self):
        first = merge_session(None, Session(session_id="s1", timezone="UTC"))
        merged = merge_session(first, Session(session_id="s1", timezone="Asia/Tokyo"))
        assert merged.timezone == "Asia/Tokyo"

    def test_extra_merges_by_key(self):
        first = merge_session(None, Session(session_id="s1", extra={"referrer": "a", "plugins": 3}))
        merged = merge_session(first, Session(session_id="s1", extra={"referrer": "b"}))
        assert merged.extra == {"referrer": "b", "plugins": 3}

    def test_fingerprint_values_not_deep_merged(self):
        first = merge_session(
            None,
            Session.model_validate(
                {
                    "sessionId": "s1",
                    "fingerprints": {"webgl": {"vendor": "A", "renderer": "B"}, "audio": 1.5},
                }
            ),
        )
        merged = merge_session(
            first,
            Session.model_validate({"sessionId": "s1", "fingerprints": {"webgl": {"vendor": "C"}}}),
        )
        assert merged.fingerprints.webgl == {"vendor": "C"}
        assert merged.fingerprints.audio == 1.5


@pytest.mark.parametrize(
    "located, total, expected",
    [
        (0, 0, "0%"),
        (0, 5, "0%"),
        (1, 1, "100%"),
        (1, 2, "50%"),
        (2, 3, "66.67%"),
        (1, 3, "33.33%"),
        (1, 8, "12.5%"),
    ],
)
def test_format_location_rate(located, total, expected):
    assert format_location_rate(located, total) == expected


def test_statistics_from_counts():
    stats = StorageStatistics.from_counts(
        sessions=4, fixes=7, interactions=2, sessions_with_location=3
    )
    assert stats.location_rate == "75%"
    assert stats.fixes == 7


def test_to_iso_naive_is_utc():
    assert to_iso(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05.000000+00:00"
    assert to_iso(None) is None


@pytest.mark.parametrize(
    "latitude, longitude, expected",
    [
        (53.35, -6.26, True),
        (90.0, 180.0, True),
        (-90.0, -180.0, True),
        (90.01, 0.0, False),
        (0.0, 180.01, False),
        (200.0, 500.0, False),
        (float("nan"), 0.0, False),
        (0.0, float("-inf"), False),
        (None, 0.0, False),
    ],
)
def test_coordinates_in_range(latitude, longitude, expected):
    assert coordinates_in_range(latitude, longitude) is expected


def test_out_of_range_fix_has_no_coordinates():
    assert LocationFix(latitude=200.0, longitude=500.0).has_coordinates is False
