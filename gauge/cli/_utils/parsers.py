"""Parsing utilities for CLI input."""

import re
from datetime import timedelta

import click

_DURATION = re.compile(r"([0-9]+)([smhd])")

_SECONDS_PER_UNIT = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(duration_str: str) -> timedelta:
    """Turn ``<count><unit>`` into a timedelta.

    The unit is one of ``s``, ``m``, ``h`` or ``d`` (case-insensitive) and
    the count must be a positive integer, e.g. ``90s``, ``5m``, ``2h``.

    Raises:
        click.BadParameter: If the text is not a positive duration.
    """
    match = _DURATION.fullmatch(duration_str.strip().lower())
    if match is None:
        raise click.BadParameter(
            f"Invalid duration {duration_str!r}: expected a count followed by s, m, h or d."
        )

    count, unit = match.groups()
    if int(count) == 0:
        raise click.BadParameter(f"Invalid duration {duration_str!r}: must be longer than zero.")

    return timedelta(seconds=int(count) * _SECONDS_PER_UNIT[unit])
