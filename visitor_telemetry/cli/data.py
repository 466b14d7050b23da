# ==============================================================================
# Data Commands
# ==============================================================================
"""
Data management commands for the visitor telemetry CLI.

Commands for exporting the full dataset and clearing every entity from the
configured backend (plus, optionally, the address lookup cache).
"""

import asyncio
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
from redis.exceptions import RedisError

from visitor_telemetry.cli.shared import C, I, fail, run_with_storage
from visitor_telemetry.infrastructure.cache import get_valkey_cache
from visitor_telemetry.infrastructure.geolocation.ip_api import CACHE_KEY_PREFIX
from visitor_telemetry.utils.config import get_settings
from visitor_telemetry.utils.export import sessions_to_csv, snapshot_to_json


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


async def _clear_lookup_cache() -> int:
    cache = get_valkey_cache()
    try:
        return await cache.delete_pattern(f"{CACHE_KEY_PREFIX}*")
    finally:
        await cache.close()


# ==============================================================================
# Commands
# ==============================================================================


def data_export(
    export_format: Annotated[
        ExportFormat, typer.Option("--format", "-f", help="Export format")
    ] = ExportFormat.JSON,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write to this file instead of stdout"),
    ] = None,
) -> None:
    """Export every stored entity as JSON, or sessions as CSV.

    The CSV layout has one row per session with its latest fix and address
    lookup; missing values are written as N/A.

    Examples:
        telemetry data export > snapshot.json
        telemetry data export --format csv -o sessions.csv
    """
    snapshot = run_with_storage(lambda storage: storage.export_all())

    if export_format == ExportFormat.CSV:
        text = sessions_to_csv(snapshot)
    else:
        text = snapshot_to_json(snapshot) + "\n"

    if output is None:
        print(text, end="")
        return

    try:
        output.write_text(text, encoding="utf-8")
    except OSError as e:
        fail(f"Cannot write {output}: {e}")

    print(
        f"{C.BRIGHT_GREEN}{I.CHECK} Exported {len(snapshot.sessions):,} sessions to "
        f"{C.WHITE}{output}{C.RESET}"
    )


def data_clear(
    confirm: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
    include_cache: Annotated[
        bool, typer.Option("--cache", help="Also drop cached address lookups from Valkey")
    ] = False,
) -> None:
    """Delete every session, fix, address lookup and interaction.

    Examples:
        telemetry data clear       # With confirmation prompt
        telemetry data clear -y    # Skip confirmation
    """
    settings = get_settings()
    backend = settings.storage.backend

    if not confirm:
        print()
        typer.confirm(
            f"This will DELETE all telemetry from the '{backend}' backend. Are you sure?",
            abort=True,
        )
    print()

    print(f"  Clearing {C.WHITE}{backend}{C.RESET} storage...")
    run_with_storage(lambda storage: storage.clear_all())
    print(f"{C.BRIGHT_GREEN}{I.CHECK} Storage cleared{C.RESET}")

    if include_cache:
        print("  Clearing address lookup cache...")
        if not settings.valkey.enabled:
            print(f"{C.BRIGHT_YELLOW}{I.STOP} Valkey cache disabled, skipping{C.RESET}")
        else:
            try:
                deleted = asyncio.run(_clear_lookup_cache())
                print(f"{C.BRIGHT_GREEN}{I.CHECK} Removed {deleted:,} cached lookups{C.RESET}")
            except RedisError as e:
                print(f"{C.BRIGHT_YELLOW}{I.STOP} Valkey not available, skipping: {e}{C.RESET}")

    print()
