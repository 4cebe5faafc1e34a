"""Logging utilities for gridconquest.

Provides color-coded console output to distinguish pure computation from store I/O.
"""

import os
from enum import Enum

from .config import Config


class Color(Enum):
    """ANSI color codes for terminal output."""

    # Colors for operation types
    BLUE = "\033[94m"      # Deterministic operations (rasterize, resolve, scoring)
    YELLOW = "\033[93m"    # Store reads/commits
    RED = "\033[91m"       # Errors, fallbacks and retries
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata

    # Formatting
    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if GRIDCONQUEST_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("GRIDCONQUEST_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def debug_enabled() -> bool:
    return Config.LOG_LEVEL.upper() == "DEBUG"


def log_deterministic(message: str) -> None:
    """Log a deterministic operation (blue)."""
    print(colored(f"{LOG_TAG_DETERMINISTIC} {message}", Color.BLUE))


def log_store(message: str) -> None:
    """Log a store read/commit (yellow)."""
    print(colored(f"{LOG_TAG_STORE} {message}", Color.YELLOW))


def log_error(message: str) -> None:
    """Log an error, fallback or retry (red)."""
    print(colored(f"{LOG_TAG_ERROR} {message}", Color.RED))


def log_success(message: str) -> None:
    """Log a success (green)."""
    print(colored(f"{LOG_TAG_SUCCESS} {message}", Color.GREEN))


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    print(colored(f"{LOG_TAG_INFO} {message}", Color.CYAN))


def log_debug(message: str) -> None:
    """Log per-cell detail, only when LOG_LEVEL=DEBUG."""
    if debug_enabled():
        print(colored(f"{LOG_TAG_DEBUG} {message}", Color.CYAN))


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"  # Pure computation
LOG_TAG_STORE = "[DB]"         # Store I/O
LOG_TAG_ERROR = "[!]"          # Error/retry/fallback
LOG_TAG_SUCCESS = "[✓]"        # Success
LOG_TAG_INFO = "[i]"           # Information
LOG_TAG_DEBUG = "[..]"         # Debug detail
