# ==============================================================================
# CLI Commands Module
# ==============================================================================
"""
CLI commands for the visitor telemetry store.

Commands are organized into separate modules for maintainability:
- shared.py: Common utilities, constants, and helpers
- status.py: Status command showing backend health
- config.py: Effective configuration
- sessions.py: Read-back commands (sessions, locations, interactions, stats)
- data.py: Export and bulk clear
- ingest.py: Payload ingestion and ad hoc location resolution
"""

from visitor_telemetry.cli.shared import (
    # Constants
    BOX_WIDTH,
    # Classes
    Box,
    Colors,
    Icons,
    # Aliases
    B,
    C,
    I,
    # Helpers
    fail,
    run_with_storage,
)

__all__ = [
    "BOX_WIDTH",
    "Box",
    "Colors",
    "Icons",
    "B",
    "C",
    "I",
    "fail",
    "run_with_storage",
]
