# ==============================================================================
# Ingest and Locate Commands
# ==============================================================================
"""
Commands that drive the ingestion service and the location pipeline
without an HTTP front end.

- ingest: feed collector payloads and interaction events from a JSON file
- locate: run the address and timezone tiers for an address/timezone pair
"""

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any, Optional

import typer

from visitor_telemetry.cli.shared import C, I, fail
from visitor_telemetry.core.errors import StorageError
from visitor_telemetry.infrastructure.storage import get_storage
from visitor_telemetry.ingestion import IngestionService, build_resolver


def _load_payloads(path: Path) -> list[dict]:
    """Read one payload object or a list of them."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        fail(f"Cannot read {path}: {e}")
    except json.JSONDecodeError as e:
        fail(f"Invalid JSON in {path}: {e}")

    payloads = data if isinstance(data, list) else [data]
    if not all(isinstance(p, dict) for p in payloads):
        fail(f"{path} must contain a JSON object or an array of objects")
    return payloads


def _is_interaction(payload: dict) -> bool:
    return "type" in payload or "event_type" in payload


def _exit_if_rejected(results: list[dict[str, Any]]) -> None:
    if any(item["kind"] == "rejected" for item in results):
        raise typer.Exit(1)


async def _ingest(payloads: list[dict], client_ip: Optional[str]) -> list[dict[str, Any]]:
    resolver = build_resolver()
    results: list[dict[str, Any]] = []
    try:
        async with get_storage() as storage:
            service = IngestionService(storage, resolver)
            for payload in payloads:
                try:
                    if _is_interaction(payload):
                        event = await service.track(payload)
                        results.append(
                            {
                                "kind": "interaction",
                                "sessionId": event.session_id,
                                "type": event.event_type,
                            }
                        )
                    else:
                        collected = await service.collect(payload, client_ip=client_ip)
                        results.append({"kind": "session", **collected.to_response()})
                except ValueError as e:
                    results.append({"kind": "rejected", "error": str(e)})
    finally:
        if resolver.address_lookup is not None:
            await resolver.address_lookup.close()
    return results


async def _locate(client_ip: Optional[str], timezone: Optional[str]) -> dict[str, Any]:
    resolver = build_resolver()
    try:
        result = await resolver.resolve(client_ip=client_ip, timezone=timezone)
    finally:
        if resolver.address_lookup is not None:
            await resolver.address_lookup.close()
    return result.summary()


# ==============================================================================
# Commands
# ==============================================================================


def ingest_file(
    payload_file: Annotated[
        Path, typer.Argument(help="JSON file with a payload object or an array of payloads")
    ],
    client_ip: Annotated[
        Optional[str], typer.Option("--ip", help="Client address to attribute the payloads to")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Store collector payloads and interaction events from a file.

    Objects carrying a "type" are appended as interactions; every other
    object is treated as a collector payload (session attributes plus an
    optional "gps" block) and runs through the location pipeline.

    Examples:
        telemetry ingest visit.json
        telemetry ingest visits.json --ip 203.0.113.7
    """
    payloads = _load_payloads(payload_file)

    try:
        results = asyncio.run(_ingest(payloads, client_ip))
    except StorageError as e:
        fail(f"Storage error: {e}")

    if json_output:
        print(json.dumps(results, indent=2))
        _exit_if_rejected(results)
        return

    print()
    for item in results:
        match item["kind"]:
            case "session":
                location = item["location"]
                where = (
                    f"{location['source']} ({location['latitude']}, {location['longitude']})"
                    if location["hasLocation"]
                    else "no location"
                )
                print(
                    f"{C.BRIGHT_GREEN}{I.CHECK} Session {C.WHITE}{item['sessionId']}{C.RESET}"
                    f" {C.DIM}{I.ARROW} {where}{C.RESET}"
                )
            case "interaction":
                print(
                    f"{C.BRIGHT_GREEN}{I.CHECK} {item['type']}{C.RESET} "
                    f"{C.DIM}for {item['sessionId']}{C.RESET}"
                )
            case _:
                print(f"{C.BRIGHT_YELLOW}{I.WARN} Skipped payload: {item['error']}{C.RESET}")
    print()
    _exit_if_rejected(results)


def locate(
    client_ip: Annotated[
        Optional[str], typer.Option("--ip", help="Network address to geolocate")
    ] = None,
    timezone: Annotated[
        Optional[str], typer.Option("--timezone", "-t", help="IANA timezone (e.g. Europe/Paris)")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Resolve a location from a network address and/or timezone.

    Nothing is stored. The device tier is skipped since no browser is
    involved.

    Examples:
        telemetry locate --ip 203.0.113.7
        telemetry locate --timezone Asia/Tokyo --json
    """
    summary = asyncio.run(_locate(client_ip, timezone))

    if json_output:
        print(json.dumps(summary, indent=2))
        return

    print()
    if summary["has_location"]:
        print(
            f"{C.BRIGHT_GREEN}{I.CHECK} Resolved via {C.WHITE}{summary['tier']}{C.RESET}"
        )
        print(f"    Latitude:  {C.WHITE}{summary['latitude']}{C.RESET}")
        print(f"    Longitude: {C.WHITE}{summary['longitude']}{C.RESET}")
        if summary["city"]:
            print(f"    City:      {C.WHITE}{summary['city']}{C.RESET}")
    else:
        print(f"{C.BRIGHT_YELLOW}{I.STOP} Unresolved{C.RESET}")

    for attempt in summary["attempts"]:
        outcome = (
            f"{C.BRIGHT_GREEN}ok{C.RESET}"
            if attempt["code"] is None
            else f"{C.BRIGHT_RED}{attempt['code']}{C.RESET}"
        )
        print(f"    {C.DIM}{attempt['tier']}:{C.RESET} {outcome}")
    print()

    if not summary["has_location"]:
        raise typer.Exit(1)
