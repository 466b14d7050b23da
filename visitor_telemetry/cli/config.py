# ==============================================================================
# Config Commands
# ==============================================================================
"""
Configuration display command for the visitor telemetry CLI.
"""

import json
from typing import Annotated

import typer

from visitor_telemetry.cli.shared import C
from visitor_telemetry.utils.config import Settings, get_settings


def _config_dict(settings: Settings) -> dict:
    """Effective configuration as a JSON-friendly dict (includes secrets)."""
    return {
        "storage": {
            "backend": settings.storage.backend,
            "data_dir": str(settings.storage.data_dir),
            "max_interactions": settings.storage.max_interactions,
        },
        "sqlite": {
            "path": str(settings.sqlite.path),
            "enforce_foreign_keys": settings.sqlite.enforce_foreign_keys,
        },
        "opensearch": {
            "host": settings.opensearch.host,
            "port": settings.opensearch.port,
            "ssl_enabled": settings.opensearch.use_ssl,
            "verify_certs": settings.opensearch.verify_certs,
            "user": settings.opensearch.user,
            "password": settings.opensearch.password,
            "index_prefix": settings.opensearch.index_prefix,
            "refresh_writes": settings.opensearch.refresh_writes,
        },
        "valkey": {
            "enabled": settings.valkey.enabled,
            "host": settings.valkey.host,
            "port": settings.valkey.port,
            "ssl_enabled": settings.valkey.ssl,
            "password": settings.valkey.password,
            "lookup_ttl_hours": settings.valkey.lookup_ttl_hours,
        },
        "location": {
            "device_timeout_seconds": settings.location.device_timeout_seconds,
            "lookup_url": settings.location.lookup_url,
            "lookup_timeout_seconds": settings.location.lookup_timeout_seconds,
        },
        "log_level": settings.log_level,
    }


# ==============================================================================
# Commands
# ==============================================================================


def config_show(
    json_output: Annotated[
        bool, typer.Option("--json", "-j", help="Output configuration as JSON")
    ] = False,
) -> None:
    """Display current configuration (includes secrets in JSON mode)."""
    settings = get_settings()

    if json_output:
        print(json.dumps(_config_dict(settings), indent=2))
        return

    # Human-readable output
    print()
    print(f"{C.BOLD}Configuration{C.RESET}")
    print()

    # Storage
    print(f"{C.CYAN}Storage{C.RESET}")
    print(f"  Backend:    {C.WHITE}{settings.storage.backend}{C.RESET}")
    match settings.storage.backend:
        case "json":
            print(f"  Data Dir:   {C.WHITE}{settings.storage.data_dir}{C.RESET}")
            print(f"  Max Events: {C.WHITE}{settings.storage.max_interactions:,}{C.RESET}")
        case "sqlite":
            print(f"  Database:   {C.WHITE}{settings.sqlite.path}{C.RESET}")
            fk = "enforced" if settings.sqlite.enforce_foreign_keys else "not enforced"
            print(f"  FKs:        {C.WHITE}{fk}{C.RESET}")
        case "opensearch":
            print(f"  Host:       {C.WHITE}{settings.opensearch.host}{C.RESET}")
            print(f"  Port:       {C.WHITE}{settings.opensearch.port}{C.RESET}")
            opensearch_ssl = "enabled" if settings.opensearch.use_ssl else "disabled"
            print(f"  SSL:        {C.WHITE}{opensearch_ssl}{C.RESET}")
            print(f"  User:       {C.WHITE}{settings.opensearch.user}{C.RESET}")
            print(f"  Indices:    {C.WHITE}{settings.opensearch.index_prefix}-*{C.RESET}")
    print()

    # Location pipeline
    print(f"{C.CYAN}Location{C.RESET}")
    print(f"  Device:     {C.WHITE}{settings.location.device_timeout_seconds:g}s timeout{C.RESET}")
    print(f"  Lookup:     {C.WHITE}{settings.location.lookup_url}{C.RESET}")
    print(f"  Timeout:    {C.WHITE}{settings.location.lookup_timeout_seconds:g}s{C.RESET}")
    print()

    # Valkey
    print(f"{C.CYAN}Valkey{C.RESET}")
    valkey_status = "enabled" if settings.valkey.enabled else "disabled"
    print(f"  Status:     {C.WHITE}{valkey_status}{C.RESET}")
    print(f"  Host:       {C.WHITE}{settings.valkey.host}{C.RESET}")
    print(f"  Port:       {C.WHITE}{settings.valkey.port}{C.RESET}")
    print(f"  TTL:        {C.WHITE}{settings.valkey.lookup_ttl_hours} hours{C.RESET}")
    print()
