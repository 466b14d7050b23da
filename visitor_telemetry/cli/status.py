# ==============================================================================
# Status Command
# ==============================================================================
"""
Status command for the visitor telemetry CLI.

Displays storage backend health, entity counts and cache reachability in
either formatted box output or JSON format for programmatic consumption.
"""

import asyncio
import json as json_module
from typing import Annotated, Any

import typer

from visitor_telemetry.cli.shared import (
    BOX_WIDTH,
    C,
    I,
    _box_bottom,
    _box_header,
    _box_line,
    _empty_line,
    _section_header_plain,
    _status_badge,
)
from visitor_telemetry.core.errors import StorageError
from visitor_telemetry.infrastructure.cache import check_valkey_connection
from visitor_telemetry.infrastructure.storage import get_storage
from visitor_telemetry.utils.config import get_settings
from visitor_telemetry.utils.versions import (
    backend_driver,
    client_versions,
    get_telemetry_version,
)


# ==============================================================================
# Data Collection
# ==============================================================================


async def _collect_storage_data() -> dict[str, Any]:
    """Initialize the configured backend and read its counts."""
    storage = get_storage()
    data: dict[str, Any] = {
        "backend": storage.backend_name,
        "connected": False,
        "details": storage.describe(),
        "driver": backend_driver(storage.backend_name),
        "statistics": None,
        "error": None,
    }
    try:
        await storage.initialize()
        data["connected"] = await storage.check_connection()
        if data["connected"]:
            data["statistics"] = (await storage.statistics()).model_dump()
    except StorageError as e:
        data["error"] = str(e)
    finally:
        await storage.close()
    return data


async def _collect_cache_data() -> dict[str, Any]:
    settings = get_settings()
    if not settings.valkey.enabled:
        return {"enabled": False, "connected": False}
    return {
        "enabled": True,
        "connected": await check_valkey_connection(),
        "host": f"{settings.valkey.host}:{settings.valkey.port}",
    }


async def _collect_status_data() -> dict[str, Any]:
    storage, cache = await asyncio.gather(_collect_storage_data(), _collect_cache_data())
    return {
        "version": get_telemetry_version(),
        "libraries": client_versions(),
        "storage": storage,
        "cache": cache,
    }


# ==============================================================================
# Display
# ==============================================================================


def _display_status(data: dict[str, Any]) -> None:
    """Display status in formatted box output."""
    W = BOX_WIDTH

    print()
    print(_box_header(f"VISITOR TELEMETRY STATUS v{data['version']}", W))
    print(_empty_line(W))

    # ── Storage ──────────────────────────────────────────
    print(_section_header_plain("Storage", W))
    print(_empty_line(W))

    storage = data["storage"]
    badge = _status_badge("Connected" if storage["connected"] else "Unreachable", storage["connected"])
    print(_box_line(f"  {C.BOLD}{storage['backend']}{C.RESET}  {badge}", W))
    for key, value in storage["details"].items():
        if key == "backend":
            continue
        label = f"{key.replace('_', ' ').capitalize()}:".ljust(12)
        print(_box_line(f"    {label}{C.WHITE}{value}{C.RESET}", W))
    if storage["driver"]:
        print(_box_line(f"    {'Driver:'.ljust(12)}{C.DIM}{storage['driver']}{C.RESET}", W))
    if storage["error"]:
        print(_box_line(f"    {C.BRIGHT_RED}{storage['error'][: W - 8]}{C.RESET}", W))

    stats = storage["statistics"]
    if stats:
        print(_empty_line(W))
        print(_box_line(f"    Sessions:     {C.WHITE}{stats['sessions']:,}{C.RESET}", W))
        print(_box_line(f"    Fixes:        {C.WHITE}{stats['fixes']:,}{C.RESET}", W))
        print(_box_line(f"    Interactions: {C.WHITE}{stats['interactions']:,}{C.RESET}", W))
        print(_box_line(f"    Location:     {C.WHITE}{stats['location_rate']}{C.RESET}", W))
    print(_empty_line(W))

    # ── Cache ──────────────────────────────────────────
    print(_section_header_plain("Address Lookup Cache", W))
    print(_empty_line(W))

    cache = data["cache"]
    if not cache["enabled"]:
        print(_box_line(f"  {_status_badge('Valkey: disabled', False, is_disabled=True)}", W))
    elif cache["connected"]:
        print(_box_line(f"  {_status_badge('Valkey', True)} {C.DIM}{cache['host']}{C.RESET}", W))
    else:
        print(
            _box_line(
                f"  {C.BRIGHT_RED}{I.CROSS}{C.RESET} {C.BOLD}Valkey{C.RESET} {C.DIM}(unreachable){C.RESET}",
                W,
            )
        )
    print(_empty_line(W))
    print(_box_bottom(W))
    print()


# ==============================================================================
# Command
# ==============================================================================


def show_status(
    json_output: Annotated[
        bool, typer.Option("--json", "-j", help="Output status as JSON")
    ] = False,
) -> None:
    """Show storage backend health and entity counts.

    Examples:
        telemetry status
        telemetry status --json
    """
    data = asyncio.run(_collect_status_data())

    if json_output:
        print(json_module.dumps(data, indent=2, default=str))
    else:
        _display_status(data)

    if not data["storage"]["connected"]:
        raise typer.Exit(1)
