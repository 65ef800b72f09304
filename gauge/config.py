"""Configuration models for gauge.

Every tier (proxy, supervisor, lifecycle controller) reads its settings from
the dataclasses below. Values that operators tune without code changes are
read from the environment:

    GAUGE_PROXY_PORT    local listener port (default 3456)
    GAUGE_HOME          state directory (default ~/.claude)
    GAUGE_SUPERVISED    set to "1" by the supervisor on its proxy child
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigurationError

PORT_ENV_VAR = "GAUGE_PROXY_PORT"
HOME_ENV_VAR = "GAUGE_HOME"
SUPERVISED_ENV_VAR = "GAUGE_SUPERVISED"

DEFAULT_PORT = 3456
UPSTREAM_HOST = "api.anthropic.com"
RATE_LIMIT_PATH_PREFIX = "/v1/messages"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for a gauge process (stderr)."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def default_state_dir() -> Path:
    env_path = os.environ.get(HOME_ENV_VAR, "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".claude"


def is_supervised() -> bool:
    """True when this process was spawned by the supervisor."""
    return os.environ.get(SUPERVISED_ENV_VAR, "").strip() in ("1", "true")


def resolve_port(value: str | int | None = None) -> int:
    """Resolve the listener port: explicit value, then env, then default.

    Raises:
        ConfigurationError: If the chosen value is not an integer in 1-65535.
    """
    source = "argument"
    if value is None or value == "":
        value = os.environ.get(PORT_ENV_VAR, "").strip() or None
        source = PORT_ENV_VAR
    if value is None:
        return DEFAULT_PORT

    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            "Invalid port", details={"value": value, "source": source}
        ) from None

    if not 1 <= port <= 65535:
        raise ConfigurationError("Port out of range", details={"value": port, "source": source})
    return port


@dataclass
class GaugePaths:
    """Well-known files shared by the proxy, supervisor and controller."""

    state_dir: Path = field(default_factory=default_state_dir)
    cache_filename: str = "gauge-rate-limits.json"
    pid_filename: str = "gauge-proxy.pid"
    log_filename: str = "gauge-proxy.log"

    @property
    def cache_file(self) -> Path:
        return self.state_dir / self.cache_filename

    @property
    def pid_file(self) -> Path:
        return self.state_dir / self.pid_filename

    @property
    def log_file(self) -> Path:
        return self.state_dir / self.log_filename

    def ensure(self) -> None:
        """Create the state directory; failures are left to the writers."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass


@dataclass
class ProxyConfig:
    """Proxy server configuration."""

    # Server
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT

    # Upstream
    upstream_host: str = UPSTREAM_HOST
    upstream_port: int = 443
    upstream_timeout_seconds: float = 300.0

    # Limits
    max_connections: int = 50
    max_body_bytes: int = 100 * 1024 * 1024  # 100 MB

    # Rate-limit telemetry
    rate_limit_path_prefix: str = RATE_LIMIT_PATH_PREFIX
    zero_suppression_window_seconds: float = 300.0

    # Lifecycle
    supervised: bool = field(default_factory=is_supervised)
    graceful_shutdown_seconds: float = 5.0

    paths: GaugePaths = field(default_factory=GaugePaths)

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ConfigurationError(
                "max_connections must be positive", details={"value": self.max_connections}
            )
        if self.max_body_bytes < 1:
            raise ConfigurationError(
                "max_body_bytes must be positive", details={"value": self.max_body_bytes}
            )

    @property
    def upstream_url(self) -> str:
        if self.upstream_port == 443:
            return f"https://{self.upstream_host}"
        return f"https://{self.upstream_host}:{self.upstream_port}"


@dataclass
class SupervisorConfig:
    """Supervisor (watchdog) configuration."""

    port: int = DEFAULT_PORT

    # Restart backoff
    min_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    healthy_uptime_seconds: float = 60.0

    # Client liveness polling
    liveness_enabled: bool = True
    liveness_interval_seconds: float = 30.0
    liveness_failure_threshold: int = 2
    client_process_names: tuple[str, ...] = ("claude",)

    child_stop_timeout_seconds: float = 5.0

    paths: GaugePaths = field(default_factory=GaugePaths)

    def __post_init__(self) -> None:
        if self.min_backoff_seconds <= 0 or self.max_backoff_seconds < self.min_backoff_seconds:
            raise ConfigurationError(
                "Invalid backoff bounds",
                details={"min": self.min_backoff_seconds, "max": self.max_backoff_seconds},
            )
        if self.liveness_failure_threshold < 1:
            raise ConfigurationError(
                "liveness_failure_threshold must be positive",
                details={"value": self.liveness_failure_threshold},
            )
