# ==============================================================================
# Read-back Commands
# ==============================================================================
"""
Read-back commands for sessions, location fixes, interactions and
aggregate statistics.

Every command opens the configured backend, reads, prints either a rich
table or JSON, and closes the backend.
"""

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from visitor_telemetry.base.storage import (
    DEFAULT_FIX_LIMIT,
    DEFAULT_INTERACTION_LIMIT,
    DEFAULT_NEAR_DISTANCE_M,
    DEFAULT_SESSION_LIMIT,
)
from visitor_telemetry.cli.shared import (
    DASH,
    C,
    I,
    fail,
    format_timestamp,
    format_value,
    run_with_storage,
)
from visitor_telemetry.core.models import LocationFix


def _dump(items) -> str:
    return json.dumps([item.model_dump(mode="json") for item in items], indent=2)


def _empty(what: str) -> None:
    print(f"\n  {C.BRIGHT_YELLOW}{I.WARN} No {what} stored{C.RESET}\n")


# ==============================================================================
# Sessions
# ==============================================================================


def sessions_list(
    limit: Annotated[
        int, typer.Option("--limit", "-n", help="Maximum sessions to show")
    ] = DEFAULT_SESSION_LIMIT,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List sessions, newest first.

    Examples:
        telemetry sessions list
        telemetry sessions list -n 20 --json
    """
    sessions = run_with_storage(lambda storage: storage.list_sessions(limit=limit))

    if json_output:
        print(_dump(sessions))
        return
    if not sessions:
        _empty("sessions")
        return

    table = Table(title="Sessions", show_header=True, header_style="bold")
    table.add_column("Session ID")
    table.add_column("Created (UTC)")
    table.add_column("IP")
    table.add_column("Platform")
    table.add_column("Screen")
    table.add_column("Timezone")

    for session in sessions:
        table.add_row(
            session.session_id,
            format_timestamp(session.created_at),
            format_value(session.client_ip),
            format_value(session.device.platform),
            format_value(session.screen.resolution),
            format_value(session.timezone),
        )

    print()
    Console().print(table)
    print(f"  {C.BOLD}Shown:{C.RESET} {len(sessions)}")
    print()


def sessions_get(
    session_id: Annotated[str, typer.Argument(help="Session identifier")],
) -> None:
    """Show one session as JSON, with its location fixes and interactions count.

    Examples:
        telemetry sessions get 3f2c9a...
    """

    async def _read(storage):
        session = await storage.get_session(session_id)
        fixes = await storage.list_location_fixes(session_id=session_id, limit=None)
        events = await storage.list_interactions(session_id=session_id, limit=None)
        return session, fixes, events

    session, fixes, events = run_with_storage(_read)
    if session is None:
        fail(f"Session '{session_id}' not found")

    data = session.model_dump(mode="json")
    data["location_fixes"] = [fix.model_dump(mode="json", exclude={"error"}) for fix in fixes]
    data["interactions"] = len(events)
    print(json.dumps(data, indent=2))


# ==============================================================================
# Locations
# ==============================================================================


def _fix_table(title: str, fixes: list[LocationFix], distances: Optional[list[float]] = None) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Session ID")
    table.add_column("Latitude", justify="right")
    table.add_column("Longitude", justify="right")
    table.add_column("Accuracy (m)", justify="right")
    table.add_column("Source")
    table.add_column("Recorded (UTC)")
    if distances is not None:
        table.add_column("Distance (m)", justify="right", style="bold")

    for index, fix in enumerate(fixes):
        row = [
            format_value(fix.session_id),
            format_value(fix.latitude),
            format_value(fix.longitude),
            format_value(fix.accuracy),
            fix.tier.value,
            format_timestamp(fix.created_at),
        ]
        if distances is not None:
            row.append(f"{distances[index]:,.1f}")
        table.add_row(*row)
    return table


def locations_list(
    session_id: Annotated[
        Optional[str], typer.Option("--session", "-s", help="Only fixes for this session")
    ] = None,
    limit: Annotated[
        int, typer.Option("--limit", "-n", help="Maximum fixes to show")
    ] = DEFAULT_FIX_LIMIT,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List stored location fixes, newest first.

    Examples:
        telemetry locations list
        telemetry locations list --session 3f2c9a... --json
    """
    fixes = run_with_storage(
        lambda storage: storage.list_location_fixes(session_id=session_id, limit=limit)
    )

    if json_output:
        print(_dump(fixes))
        return
    if not fixes:
        _empty("location fixes")
        return

    print()
    Console().print(_fix_table("Location Fixes", fixes))
    print()


def locations_near(
    longitude: Annotated[float, typer.Argument(help="Longitude in decimal degrees")],
    latitude: Annotated[float, typer.Argument(help="Latitude in decimal degrees")],
    distance: Annotated[
        float, typer.Option("--distance", "-d", help="Search radius in meters")
    ] = DEFAULT_NEAR_DISTANCE_M,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Find location fixes within a radius of a point, nearest first.

    Examples:
        telemetry locations near -- -74.006 40.7128
        telemetry locations near 2.3522 48.8566 --distance 10000
    """
    try:
        matches = run_with_storage(
            lambda storage: storage.find_near(longitude, latitude, max_distance_m=distance)
        )
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    if json_output:
        print(_dump(matches))
        return
    if not matches:
        print(
            f"\n  {C.BRIGHT_YELLOW}{I.WARN} No fixes within {distance:,.0f} m of "
            f"({latitude}, {longitude}){C.RESET}\n"
        )
        return

    title = f"Fixes within {distance:,.0f} m of ({latitude}, {longitude})"
    print()
    Console().print(
        _fix_table(title, [m.fix for m in matches], [m.distance_m for m in matches])
    )
    print()


# ==============================================================================
# Interactions
# ==============================================================================


def interactions_list(
    session_id: Annotated[
        Optional[str], typer.Option("--session", "-s", help="Only events for this session")
    ] = None,
    limit: Annotated[
        int, typer.Option("--limit", "-n", help="Maximum events to show")
    ] = DEFAULT_INTERACTION_LIMIT,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List interaction events, newest first.

    Examples:
        telemetry interactions list
        telemetry interactions list --session 3f2c9a... -n 50
    """
    events = run_with_storage(
        lambda storage: storage.list_interactions(session_id=session_id, limit=limit)
    )

    if json_output:
        print(_dump(events))
        return
    if not events:
        _empty("interactions")
        return

    table = Table(title="Interactions", show_header=True, header_style="bold")
    table.add_column("Time (UTC)")
    table.add_column("Session ID")
    table.add_column("Type")
    table.add_column("Data")

    for event in events:
        table.add_row(
            format_timestamp(event.timestamp),
            event.session_id,
            event.event_type,
            json.dumps(event.payload)[:60] if event.payload else DASH,
        )

    print()
    Console().print(table)
    print()


# ==============================================================================
# Statistics
# ==============================================================================


def show_stats(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show entity counts and the location success rate.

    Examples:
        telemetry stats
        telemetry stats --json
    """
    stats = run_with_storage(lambda storage: storage.statistics())

    if json_output:
        print(json.dumps(stats.model_dump(), indent=2))
        return

    print()
    print(f"  {C.BOLD}Sessions:{C.RESET}       {stats.sessions:,}")
    print(f"  {C.BOLD}Location fixes:{C.RESET} {stats.fixes:,}")
    print(f"  {C.BOLD}Interactions:{C.RESET}   {stats.interactions:,}")
    print(
        f"  {C.BOLD}Location rate:{C.RESET}  {C.BRIGHT_GREEN}{stats.location_rate}{C.RESET} "
        f"{C.DIM}({stats.sessions_with_location:,} sessions with a fix){C.RESET}"
    )
    print()
