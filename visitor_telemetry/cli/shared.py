# ==============================================================================
# Shared Utilities for CLI Commands
# ==============================================================================
"""
Shared utilities, constants, and helper functions used across CLI command modules.

This module provides:
- ANSI color codes and box-drawing characters
- Storage helpers that open the configured backend for one command
- Box drawing helpers for formatted output
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import typer

from visitor_telemetry.base.storage import TelemetryStorage
from visitor_telemetry.core.errors import StorageError
from visitor_telemetry.infrastructure.storage import get_storage

T = TypeVar("T")

# ==============================================================================
# Constants
# ==============================================================================

# Box drawing width (unified for all commands)
BOX_WIDTH = 68

# Placeholder for missing values in tables
DASH = "—"


# ==============================================================================
# ANSI Colors and Box Drawing
# ==============================================================================


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    # Colors
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    # Bright colors
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"


class Box:
    """Unicode box-drawing characters."""

    H = "─"  # horizontal
    V = "│"  # vertical
    TL = "┌"  # top-left
    TR = "┐"  # top-right
    BL = "└"  # bottom-left
    BR = "┘"  # bottom-right
    LT = "├"  # left-tee
    RT = "┤"  # right-tee


class Icons:
    """Status icons using Unicode symbols."""

    CHECK = "✓"
    CROSS = "✗"
    WARN = "!"
    ARROW = "→"
    STOP = "□"


# Module-level aliases for convenience
C, B, I = Colors, Box, Icons


# ==============================================================================
# Storage Helpers
# ==============================================================================


def fail(message: str) -> NoReturn:
    """Print an error line and exit with status 1."""
    print(f"{C.BRIGHT_RED}{I.CROSS} {message}{C.RESET}")
    raise typer.Exit(1)


def run_with_storage(operation: Callable[[TelemetryStorage], Awaitable[T]]) -> T:
    """
    Open the configured backend, run one operation, and close it.

    StorageError (unreachable backend, corrupt file, constraint violation)
    is printed and turned into exit status 1.

    Args:
        operation: Coroutine function receiving the initialized storage

    Returns:
        Whatever the operation returns
    """

    async def _run() -> T:
        async with get_storage() as storage:
            return await operation(storage)

    try:
        return asyncio.run(_run())
    except StorageError as e:
        print(f"{C.BRIGHT_RED}{I.CROSS} Storage error: {e}{C.RESET}")
        raise typer.Exit(1) from e


def format_value(value: Any) -> str:
    """Render an optional value for a table cell."""
    if value is None or value == "":
        return DASH
    if isinstance(value, float):
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def format_timestamp(value: Any) -> str:
    """Render a datetime as 'YYYY-MM-DD HH:MM:SS' (UTC)."""
    if value is None:
        return DASH
    return value.strftime("%Y-%m-%d %H:%M:%S")


# ==============================================================================
# Box Drawing Helpers
# ==============================================================================

# Regex pattern for stripping ANSI escape codes
_ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


def _visible_len(s: str) -> int:
    """Calculate visible length of string, ignoring ANSI escape codes."""
    return len(_ANSI_ESCAPE_PATTERN.sub("", s))


def _box_header(title: str, width: int = BOX_WIDTH) -> str:
    """Create a single-line box header."""
    inner_width = width - 2
    title_padded = f" {title} "
    left_bar = (inner_width - len(title_padded)) // 2
    right_bar = inner_width - left_bar - len(title_padded)
    return (
        f"{C.CYAN}{B.TL}{B.H * left_bar}{C.BOLD}{C.WHITE}{title_padded}"
        f"{C.RESET}{C.CYAN}{B.H * right_bar}{B.TR}{C.RESET}"
    )


def _section_header_plain(title: str, width: int = BOX_WIDTH) -> str:
    """Create a section header without icon."""
    inner_width = width - 2
    title_padded = f" {title} "
    bar_len = inner_width - len(title_padded) - 1  # -1 for the first H after LT
    return (
        f"{C.CYAN}{B.LT}{B.H}{C.BOLD}{title_padded}{C.RESET}{C.CYAN}{B.H * bar_len}{B.RT}{C.RESET}"
    )


def _box_line(content: str, width: int = BOX_WIDTH) -> str:
    """Create a line inside the box with proper padding to right border."""
    inner_width = width - 2
    padding = max(inner_width - _visible_len(content), 0)
    return f"{C.CYAN}{B.V}{C.RESET}{content}{' ' * padding}{C.CYAN}{B.V}{C.RESET}"


def _empty_line(width: int = BOX_WIDTH) -> str:
    """Create an empty line inside the box."""
    return f"{C.CYAN}{B.V}{' ' * (width - 2)}{B.V}{C.RESET}"


def _box_bottom(width: int = BOX_WIDTH) -> str:
    """Create a plain box bottom border."""
    return f"{C.CYAN}{B.BL}{B.H * (width - 2)}{B.BR}{C.RESET}"


def _status_badge(status: str, is_ok: bool, is_disabled: bool = False) -> str:
    """Create a colored status badge."""
    if is_ok:
        return f"{C.BRIGHT_GREEN}{I.CHECK} {status}{C.RESET}"
    if is_disabled:
        return f"{C.DIM}{I.STOP} {status}{C.RESET}"
    return f"{C.BRIGHT_RED}{I.CROSS} {status}{C.RESET}"
