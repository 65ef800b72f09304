"""Formatting utilities for CLI output using Rich."""

from rich.console import Console
from rich.text import Text

# Shared console instance for consistent output
console = Console()

STATE_STYLES = {
    "started": "bold green",
    "running": "bold green",
    "stopped": "green",
    "already_running": "yellow",
    "not_running": "yellow",
    "orphan": "bold red",
    "port_conflict": "bold red",
    "failed": "bold red",
}


def print_line(line: str, style: str | None = None) -> None:
    """Print a single unwrapped line.

    Args:
        line: Text to print. Square brackets are printed literally.
        style: Optional Rich style name.
    """
    console.print(Text(line, style=style or ""), soft_wrap=True)


def print_state(state: str, line: str) -> None:
    """Print a lifecycle status line colored by its state.

    Args:
        state: Lifecycle state value (e.g. "running", "port_conflict").
        line: The status line to print.
    """
    print_line(line, STATE_STYLES.get(state))


def print_error(msg: str) -> None:
    """Print an error message in red.

    Args:
        msg: The error message to display.
    """
    print_line(f"Error: {msg}", "bold red")


def format_percent(fraction: float | None) -> str:
    """Format a 0-1 utilization fraction as a whole percentage.

    Args:
        fraction: Utilization fraction, or None when unknown.

    Returns:
        A string like "42%", or "--" when the value is unknown.
    """
    if fraction is None:
        return "--"
    return f"{round(fraction * 100)}%"


def format_age(seconds: float) -> str:
    """Format an elapsed number of seconds as a short age string.

    Args:
        seconds: Elapsed seconds.

    Returns:
        A string like "2d", "5h", "30m" or "now".
    """
    total_seconds = int(seconds)

    if total_seconds < 60:
        return "now"

    minutes = total_seconds // 60
    hours = total_seconds // 3600
    days = total_seconds // 86400

    if days > 0:
        return f"{days}d"
    if hours > 0:
        return f"{hours}h"
    return f"{minutes}m"
