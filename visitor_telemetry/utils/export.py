# ==============================================================================
# Export Formats
# ==============================================================================
"""
Serializers for ExportSnapshot.

- snapshot_to_json: the full snapshot as indented JSON
- sessions_to_csv: one row per session in the admin CSV layout, with
  N/A for missing values
"""

import csv
import io
import json

from visitor_telemetry.core.models import (
    AddressGeolocation,
    ExportSnapshot,
    LocationFix,
    to_iso,
)

CSV_HEADER = [
    "Session ID",
    "Timestamp",
    "IP",
    "City",
    "Country",
    "Browser",
    "Platform",
    "Screen Resolution",
    "GPS Latitude",
    "GPS Longitude",
    "GPS Accuracy",
]

MISSING = "N/A"


def snapshot_to_json(snapshot: ExportSnapshot) -> str:
    """Serialize a snapshot as indented JSON."""
    data = snapshot.model_dump(mode="json")
    data["exported_at"] = to_iso(snapshot.exported_at)
    return json.dumps(data, indent=2)


def _or_missing(value) -> str:
    if value is None or value == "":
        return MISSING
    return str(value)


def _browser(user_agent: str | None) -> str | None:
    """First token of the user-agent string (e.g. 'Mozilla/5.0')."""
    if not user_agent:
        return None
    return user_agent.split(" ")[0]


def sessions_to_csv(snapshot: ExportSnapshot) -> str:
    """
    Render sessions as CSV.

    GPS columns come from the session's most recent location fix and
    City/Country from its most recent address geolocation (snapshot lists
    are newest first).

    Args:
        snapshot: Export snapshot

    Returns:
        CSV text including the header row
    """
    latest_fix: dict[str, LocationFix] = {}
    for fix in snapshot.location_fixes:
        latest_fix.setdefault(fix.session_id, fix)

    latest_geo: dict[str, AddressGeolocation] = {}
    for geo in snapshot.address_geolocations:
        latest_geo.setdefault(geo.session_id, geo)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)

    for session in snapshot.sessions:
        fix = latest_fix.get(session.session_id)
        geo = latest_geo.get(session.session_id)
        writer.writerow(
            [
                session.session_id,
                _or_missing(to_iso(session.created_at)),
                _or_missing(session.client_ip),
                _or_missing(geo.city if geo else None),
                _or_missing(geo.country if geo else None),
                _or_missing(_browser(session.device.user_agent)),
                _or_missing(session.device.platform),
                _or_missing(session.screen.resolution),
                _or_missing(fix.latitude if fix else None),
                _or_missing(fix.longitude if fix else None),
                _or_missing(fix.accuracy if fix else None),
            ]
        )

    return buffer.getvalue()
