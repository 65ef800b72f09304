"""Watchdog supervisor for the gauge proxy.

Spawns the proxy server as a child process and restarts it whenever it
exits, with exponential backoff that resets after a healthy run. A separate
liveness poll watches for the coding-assistant CLI; once it has been absent
for consecutive polls, the supervisor stops its child and exits so no
orphaned proxy outlives its last client.

Usage:
    python -m gauge.supervisor 3456
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import psutil

from .config import SUPERVISED_ENV_VAR, SupervisorConfig, configure_logging, resolve_port
from .lifecycle import PidFile

logger = logging.getLogger("gauge.supervisor")


class SupervisorState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF_WAIT = "backoff_wait"
    STOPPED = "stopped"


class Backoff:
    """Restart delay policy.

    Each child exit doubles the delay (capped at ``maximum``) unless the
    child stayed up longer than ``healthy_uptime``, which resets it to
    ``minimum``.
    """

    def __init__(self, minimum: float, maximum: float, healthy_uptime: float):
        self.minimum = minimum
        self.maximum = maximum
        self.healthy_uptime = healthy_uptime
        self.current = minimum

    def next_delay(self, uptime: float) -> float:
        if uptime > self.healthy_uptime:
            self.current = self.minimum
        else:
            self.current = min(self.current * 2, self.maximum)
        return self.current


class ClientProbe:
    """Looks for a running coding-assistant CLI process.

    Matches the process name, or the first two command-line arguments by
    basename, since the CLI usually runs as ``node /path/to/claude``.
    """

    def __init__(self, names: tuple[str, ...] | list[str]):
        self.names = {name.lower() for name in names}

    def matches(self, info: dict[str, Any]) -> bool:
        name = (info.get("name") or "").lower()
        if name in self.names:
            return True
        for arg in (info.get("cmdline") or [])[:2]:
            if os.path.basename(arg).lower() in self.names:
                return True
        return False

    def __call__(self) -> bool:
        own_pid = os.getpid()
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                info = proc.info
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if info.get("pid") == own_pid:
                continue
            if self.matches(info):
                return True
        return False


def proxy_command(port: int) -> list[str]:
    return [sys.executable, "-m", "gauge.proxy.server", str(port)]


async def spawn_proxy(port: int) -> asyncio.subprocess.Process:
    env = {**os.environ, SUPERVISED_ENV_VAR: "1"}
    return await asyncio.create_subprocess_exec(
        *proxy_command(port),
        stdin=subprocess.DEVNULL,
        env=env,
    )


class Supervisor:
    """Keeps one proxy child alive until stopped or the client goes away.

    Args:
        config: Supervisor configuration.
        spawn: Coroutine function returning a started child process.
        probe: Callable returning True while the client CLI is present.
        clock: Monotonic time source, in seconds.
        sleep: Coroutine used for backoff waits. Defaults to a wait that
            returns early when a stop is requested.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        spawn: Callable[[], Awaitable[Any]] | None = None,
        probe: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.config = config
        self.backoff = Backoff(
            config.min_backoff_seconds,
            config.max_backoff_seconds,
            config.healthy_uptime_seconds,
        )
        self.state = SupervisorState.STARTING
        self.child: Any = None
        self.last_start_time = 0.0
        self.liveness_failures = 0
        self.restarts = 0

        self._spawn = spawn or (lambda: spawn_proxy(config.port))
        self._probe = probe or ClientProbe(config.client_process_names)
        self._clock = clock
        self._sleep = sleep or self._wait_for_stop
        self._stopping = False
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping

    def request_stop(self) -> None:
        """Suppress further restarts and wake the run loop."""
        if not self._stopping:
            logger.info("supervisor stopping")
        self._stopping = True
        self._stop_event.set()

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        poll = None
        if self.config.liveness_enabled:
            poll = asyncio.ensure_future(self._poll_liveness())

        try:
            while not self._stopping:
                try:
                    uptime = await self._run_child()
                    if self._stopping:
                        break
                    delay = self.backoff.next_delay(uptime)
                except Exception:
                    logger.exception("supervisor error while handling child exit")
                    delay = self.backoff.maximum

                self.state = SupervisorState.BACKOFF_WAIT
                logger.info(f"restarting proxy in {delay:.1f}s")
                await self._sleep(delay)
                self.restarts += 1
        finally:
            self.state = SupervisorState.STOPPED
            if poll is not None:
                poll.cancel()
                await asyncio.gather(poll, return_exceptions=True)
            await self._terminate_child()

    async def _run_child(self) -> float:
        """Start one child and wait for it to exit (or for a stop request).

        Returns the child's uptime in seconds.
        """
        self.state = SupervisorState.STARTING
        self.last_start_time = self._clock()
        try:
            self.child = await self._spawn()
        except OSError as e:
            logger.error(f"failed to spawn proxy: {e}")
            self.child = None
            return 0.0

        self.state = SupervisorState.RUNNING
        logger.info(f"proxy started (pid {self.child.pid})")

        waiter = asyncio.ensure_future(self.child.wait())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not waiter.done():
                waiter.cancel()
            await asyncio.gather(waiter, stopper, return_exceptions=True)

        uptime = self._clock() - self.last_start_time
        if waiter.done() and not waiter.cancelled():
            logger.warning(
                f"proxy (pid {self.child.pid}) exited with code {waiter.result()} "
                f"after {uptime:.1f}s"
            )
            self.child = None
        return uptime

    async def _terminate_child(self) -> None:
        child = self.child
        self.child = None
        if child is None or child.returncode is not None:
            return
        try:
            child.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(child.wait(), timeout=self.config.child_stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"proxy (pid {child.pid}) ignored SIGTERM; killing")
            try:
                child.kill()
            except ProcessLookupError:
                return
            await child.wait()

    async def _poll_liveness(self) -> None:
        while not self._stopping:
            await self._wait_for_stop(self.config.liveness_interval_seconds)
            if self._stopping:
                return
            await self.check_liveness()

    async def check_liveness(self) -> None:
        """Run one liveness poll; probe errors are logged and not counted."""
        try:
            present = await asyncio.to_thread(self._probe)
        except Exception as e:
            logger.warning(f"liveness probe failed: {e!r}")
            return

        if present:
            self.liveness_failures = 0
            return

        self.liveness_failures += 1
        logger.info(
            f"no client process detected ({self.liveness_failures}/"
            f"{self.config.liveness_failure_threshold})"
        )
        if self.liveness_failures >= self.config.liveness_failure_threshold:
            logger.info("client gone; shutting down")
            self.request_stop()


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(f"uncaught: {context.get('message', 'unhandled error')}: {exc!r}")


async def _supervise(config: SupervisorConfig) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_log_unhandled)

    supervisor = Supervisor(config)
    if os.name != "nt":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, supervisor.request_stop)

    await supervisor.run()


def run_supervisor(config: SupervisorConfig | None = None) -> None:
    """Run the supervisor until signalled or the client goes away."""
    configure_logging()
    config = config or SupervisorConfig()
    config.paths.ensure()
    pid_file = PidFile(config.paths.pid_file)

    logger.info(f"supervisor (pid {os.getpid()}) starting proxy on port {config.port}")
    try:
        asyncio.run(_supervise(config))
    except KeyboardInterrupt:
        pass
    finally:
        if pid_file.read() == os.getpid():
            pid_file.remove()
        logger.info("supervisor exited")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="gauge proxy supervisor")
    parser.add_argument("port", nargs="?", default=None, help="Proxy listen port")
    parser.add_argument(
        "--no-liveness", action="store_true", help="Do not exit when the client CLI is gone"
    )
    args = parser.parse_args(argv)

    run_supervisor(
        SupervisorConfig(port=resolve_port(args.port), liveness_enabled=not args.no_liveness)
    )


if __name__ == "__main__":
    main()
