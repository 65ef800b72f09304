"""CLI utilities for formatting and parsing."""

from .formatting import (
    console,
    format_age,
    format_percent,
    print_error,
    print_line,
    print_state,
)
from .parsers import parse_duration

__all__ = [
    "console",
    "print_line",
    "print_state",
    "print_error",
    "format_age",
    "format_percent",
    "parse_duration",
]
