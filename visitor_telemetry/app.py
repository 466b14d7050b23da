# ==============================================================================
# Visitor Telemetry CLI
# ==============================================================================
"""
Command-line interface for the visitor telemetry store.

Usage:
    telemetry --help
    telemetry status
    telemetry config show
    telemetry sessions list
    telemetry sessions get SESSION_ID
    telemetry locations list
    telemetry locations near -- -74.006 40.7128 --distance 5000
    telemetry interactions list --session SESSION_ID
    telemetry stats
    telemetry data export --format csv -o sessions.csv
    telemetry data clear -y
    telemetry ingest visit.json --ip 203.0.113.7
    telemetry locate --timezone Europe/Paris
"""

import logging
import warnings

# Suppress noisy warnings before any imports
warnings.filterwarnings("ignore", category=DeprecationWarning)

# ==============================================================================
# App Configuration
# ==============================================================================
# Set consistent terminal width for help output formatting
import os

import typer

from visitor_telemetry.utils.config import get_settings

if "COLUMNS" not in os.environ:
    os.environ["COLUMNS"] = "115"

app = typer.Typer(
    name="telemetry",
    help="Visitor telemetry storage and location resolution CLI",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def configure_logging() -> None:
    """Configure logging from LOG_LEVEL before any command runs."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Client libraries log every request at INFO
    for name in ("opensearch", "httpx", "httpcore", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


sessions_app = typer.Typer(
    help="Session read-back",
    no_args_is_help=True,
)
app.add_typer(sessions_app, name="sessions")

# Register read-back commands from cli.sessions module
from visitor_telemetry.cli.sessions import (
    interactions_list,
    locations_list,
    locations_near,
    sessions_get,
    sessions_list,
    show_stats,
)

sessions_app.command("list")(sessions_list)
sessions_app.command("get")(sessions_get)

locations_app = typer.Typer(
    help="Location fixes and proximity search",
    no_args_is_help=True,
)
app.add_typer(locations_app, name="locations")

locations_app.command("list")(locations_list)
locations_app.command("near")(locations_near)

interactions_app = typer.Typer(
    help="Interaction events",
    no_args_is_help=True,
)
app.add_typer(interactions_app, name="interactions")

interactions_app.command("list")(interactions_list)

app.command("stats")(show_stats)

data_app = typer.Typer(
    help="Data management operations",
    no_args_is_help=True,
)
app.add_typer(data_app, name="data")

# Register data commands from cli.data module
from visitor_telemetry.cli.data import data_clear, data_export

data_app.command("export")(data_export)
data_app.command("clear")(data_clear)

config_app = typer.Typer(
    help="Configuration management",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")

# Register config commands from cli.config module
from visitor_telemetry.cli.config import config_show

config_app.command("show")(config_show)

# Ingestion commands are imported from visitor_telemetry.cli.ingest
from visitor_telemetry.cli.ingest import ingest_file, locate

app.command("ingest")(ingest_file)
app.command("locate")(locate)

# Status command is imported from visitor_telemetry.cli.status
from visitor_telemetry.cli.status import show_status

app.command("status")(show_status)


# ==============================================================================
# Entry Point
# ==============================================================================


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
