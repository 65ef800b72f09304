"""
gauge - live rate-limit gauge for Claude Code.

gauge runs a small local proxy between Claude Code and the Anthropic API.
Every request is relayed unchanged; responses from the messages endpoint
carry rate-limit utilization headers, which the proxy records in
``~/.claude/gauge-rate-limits.json`` for a statusline to display.

Quick Start:

    gauge start
    ANTHROPIC_BASE_URL=http://127.0.0.1:3456 claude

The proxy runs under a supervisor that restarts it with backoff if it
crashes and shuts everything down once no Claude Code process remains.

Reading the cache from Python:

    from gauge import GaugePaths, RateLimitCache

    snapshot = RateLimitCache(GaugePaths().cache_file).read(max_age_seconds=600)
    if snapshot is not None:
        print(f"5h utilization: {snapshot.five_hour_utilization:.0%}")
"""

from .config import GaugePaths, ProxyConfig, SupervisorConfig, resolve_port
from .exceptions import ConfigurationError, GaugeError, LifecycleError, PayloadTooLargeError
from .lifecycle import LifecycleController, LifecycleResult, PidFile, ProxyState
from .proxy import RateLimitCache, RateLimitSnapshot, filter_headers

__version__ = "0.3.0"

__all__ = [
    "__version__",
    # Config
    "GaugePaths",
    "ProxyConfig",
    "SupervisorConfig",
    "resolve_port",
    # Lifecycle
    "LifecycleController",
    "LifecycleResult",
    "PidFile",
    "ProxyState",
    # Rate limits
    "RateLimitCache",
    "RateLimitSnapshot",
    "filter_headers",
    # Exceptions
    "GaugeError",
    "ConfigurationError",
    "LifecycleError",
    "PayloadTooLargeError",
]
