"""Rate-limit usage CLI command."""

import json
import time

import click

from gauge.config import GaugePaths
from gauge.proxy.ratelimit import RateLimitCache

from ._utils import format_age, format_percent, parse_duration, print_line
from .main import main


def _usage_style(fraction: float) -> str:
    if fraction >= 0.9:
        return "bold red"
    if fraction >= 0.7:
        return "yellow"
    return "green"


@main.command()
@click.option(
    "--max-age",
    default="10m",
    help="Ignore readings older than this (e.g. 30s, 10m, 1h; default: 10m)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the raw snapshot as JSON")
def usage(max_age: str, as_json: bool) -> None:
    """Show the latest rate-limit utilization seen by the proxy.

    \b
    Examples:
        gauge usage
        gauge usage --max-age 1h
        gauge usage --json
    """
    max_age_seconds = parse_duration(max_age).total_seconds()
    cache = RateLimitCache(GaugePaths().cache_file)
    snapshot = cache.read(max_age_seconds=max_age_seconds)

    if snapshot is None:
        print_line("no fresh rate-limit data (is the proxy running?)", "yellow")
        return

    if as_json:
        click.echo(json.dumps(snapshot.to_dict()))
        return

    age = format_age(snapshot.age_seconds(time.time()))
    line = (
        f"5h {format_percent(snapshot.five_hour_utilization)} · "
        f"7d {format_percent(snapshot.seven_day_utilization)} · {age}"
    )
    if snapshot.tokens_remaining is not None and snapshot.tokens_limit:
        line += f" · {snapshot.tokens_remaining:,}/{snapshot.tokens_limit:,} tokens"
    print_line(line, _usage_style(snapshot.five_hour_utilization))
