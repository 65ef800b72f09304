"""Main CLI entry point for gauge."""

import click

from gauge import __version__


@click.group()
@click.version_option(version=__version__, prog_name="gauge")
@click.pass_context
def main(ctx: click.Context) -> None:
    """gauge - live rate-limit gauge for Claude Code.

    Runs a local proxy that relays Claude Code traffic to the API and
    records the rate-limit utilization it sees for the statusline.

    \b
    Examples:
        gauge start                 Start the supervised proxy in the background
        gauge status                Show whether the proxy is running
        gauge stop                  Stop the proxy
        gauge usage                 Show the latest rate-limit reading
    """
    ctx.ensure_object(dict)


# The command modules attach themselves to ``main`` as a side effect of import.
from gauge.cli import proxy, usage  # noqa: E402,F401

if __name__ == "__main__":
    main()
