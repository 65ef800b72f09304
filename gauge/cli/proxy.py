"""Proxy lifecycle CLI commands."""

import click

from gauge.config import GaugePaths, resolve_port
from gauge.exceptions import ConfigurationError
from gauge.lifecycle import LOG_PREFIX, LifecycleController

from ._utils import print_error, print_state
from .main import main

port_option = click.option(
    "--port",
    "-p",
    default=None,
    help="Proxy port (default: $GAUGE_PROXY_PORT or 3456)",
)


def _controller(port: str | None) -> LifecycleController | None:
    try:
        return LifecycleController(port=resolve_port(port), paths=GaugePaths())
    except ConfigurationError as e:
        print_error(f"{LOG_PREFIX} {e}")
        return None


@main.command()
@port_option
def start(port: str | None) -> None:
    """Start the supervised proxy in the background.

    \b
    Usage with Claude Code:
        gauge start
        ANTHROPIC_BASE_URL=http://127.0.0.1:3456 claude
    """
    controller = _controller(port)
    if controller is None:
        return
    result = controller.start()
    print_state(result.state.value, result.line)


@main.command()
@port_option
def stop(port: str | None) -> None:
    """Stop the background proxy and its supervisor."""
    controller = _controller(port)
    if controller is None:
        return
    result = controller.stop()
    print_state(result.state.value, result.line)


@main.command()
@port_option
def status(port: str | None) -> None:
    """Show whether the background proxy is running."""
    controller = _controller(port)
    if controller is None:
        return
    result = controller.status()
    print_state(result.state.value, result.line)


@main.command()
@port_option
@click.option("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
@click.option("--max-connections", default=50, type=int, help="Concurrent client connections")
def serve(port: str | None, host: str, max_connections: int) -> None:
    """Run the proxy in the foreground (unsupervised).

    \b
    The proxy writes the PID file once it is listening and removes it
    on exit. Press Ctrl+C to stop.
    """
    from gauge.config import ProxyConfig
    from gauge.proxy.server import run_server

    try:
        config = ProxyConfig(host=host, port=resolve_port(port), max_connections=max_connections)
    except ConfigurationError as e:
        print_error(str(e))
        raise SystemExit(1) from None

    try:
        run_server(config)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
@port_option
@click.option("--no-liveness", is_flag=True, help="Keep running when no Claude Code process exists")
def supervise(port: str | None, no_liveness: bool) -> None:
    """Run the supervisor in the foreground."""
    from gauge.config import SupervisorConfig
    from gauge.supervisor import run_supervisor

    try:
        config = SupervisorConfig(port=resolve_port(port), liveness_enabled=not no_liveness)
    except ConfigurationError as e:
        print_error(str(e))
        raise SystemExit(1) from None

    run_supervisor(config)
