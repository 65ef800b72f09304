"""Start, stop and inspect the background proxy.

Ownership of the PID file:

- ``gauge start`` launches the supervisor detached and records the
  *supervisor's* PID; stopping the supervisor stops its proxy child.
- A supervised proxy (``GAUGE_SUPERVISED=1``) never touches the file.
- An unsupervised proxy (``gauge serve``) writes its own PID once its socket
  is bound and removes it on shutdown.

Every operation returns a :class:`LifecycleResult`; PID file and port probe
failures degrade to "absent" rather than raising.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import psutil

from .config import GaugePaths, resolve_port
from .exceptions import LifecycleError

logger = logging.getLogger("gauge.lifecycle")

# Linux pid_max upper bound (2**22)
MAX_PID = 4_194_304

LOG_PREFIX = "[gauge-proxy]"


class PidFile:
    """Single decimal PID stored at a well-known path."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def read(self) -> int | None:
        """Return the recorded PID, or None if missing, malformed or out of range."""
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError):
            return None
        if not (raw.isascii() and raw.isdecimal()):
            return None
        pid = int(raw)
        if pid <= 0 or pid > MAX_PID:
            return None
        return pid

    def write(self, pid: int) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(str(pid), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to write PID file {self.path}: {e}")
            return False
        return True

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove PID file {self.path}: {e}")


def is_process_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


def is_port_bound(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Probe whether something is accepting connections on ``host:port``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def supervisor_command(port: int) -> list[str]:
    return [sys.executable, "-m", "gauge.supervisor", str(port)]


def spawn_detached(command: list[str], log_file: Path) -> int:
    """Start ``command`` in its own session with output appended to ``log_file``.

    Raises:
        LifecycleError: If the process could not be started.
    """
    kwargs: dict = {
        "stdin": subprocess.DEVNULL,
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    try:
        log_handle = open(log_file, "ab")
    except OSError:
        log_handle = None
    kwargs["stdout"] = log_handle or subprocess.DEVNULL
    kwargs["stderr"] = log_handle or subprocess.DEVNULL

    try:
        proc = subprocess.Popen(command, **kwargs)
    except OSError as e:
        raise LifecycleError("Failed to start supervisor", details={"error": str(e)}) from e
    finally:
        if log_handle is not None:
            log_handle.close()
    return proc.pid


class ProxyState(str, Enum):
    """Outcome of a lifecycle operation."""

    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    RUNNING = "running"
    PORT_CONFLICT = "port_conflict"
    ORPHAN = "orphan"
    STOPPED = "stopped"
    NOT_RUNNING = "not_running"
    FAILED = "failed"


@dataclass
class LifecycleResult:
    state: ProxyState
    message: str
    pid: int | None = None
    port: int | None = None

    @property
    def line(self) -> str:
        return f"{LOG_PREFIX} {self.message}"


@dataclass
class LifecycleController:
    """External start/stop/status operations for the background proxy."""

    port: int = field(default_factory=resolve_port)
    host: str = "127.0.0.1"
    paths: GaugePaths = field(default_factory=GaugePaths)
    spawn: Callable[[list[str], Path], int] = spawn_detached

    def __post_init__(self) -> None:
        self.pid_file = PidFile(self.paths.pid_file)

    def _live_pid(self) -> int | None:
        pid = self.pid_file.read()
        if pid is not None and is_process_alive(pid):
            return pid
        return None

    def start(self) -> LifecycleResult:
        existing = self._live_pid()
        if existing is not None:
            return LifecycleResult(
                ProxyState.ALREADY_RUNNING,
                f"already running (pid {existing})",
                pid=existing,
                port=self.port,
            )

        if is_port_bound(self.port, self.host):
            self.pid_file.remove()
            return LifecycleResult(
                ProxyState.PORT_CONFLICT,
                f"port {self.port} is already in use by another process; not starting",
                port=self.port,
            )

        # Clean stale PID file
        self.pid_file.remove()
        self.paths.ensure()

        try:
            pid = self.spawn(supervisor_command(self.port), self.paths.log_file)
        except LifecycleError as e:
            return LifecycleResult(ProxyState.FAILED, f"failed to start: {e}", port=self.port)

        self.pid_file.write(pid)
        logger.info(f"supervisor started (pid {pid}) on port {self.port}")
        return LifecycleResult(
            ProxyState.STARTED, f"started (pid {pid}) on port {self.port}", pid=pid, port=self.port
        )

    def stop(self) -> LifecycleResult:
        pid = self.pid_file.read()
        if pid is None:
            self.pid_file.remove()
            return LifecycleResult(ProxyState.NOT_RUNNING, "not running (no PID file)")

        if not is_process_alive(pid):
            self.pid_file.remove()
            return LifecycleResult(ProxyState.NOT_RUNNING, "not running (stale PID file)")

        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            self.pid_file.remove()
            return LifecycleResult(ProxyState.FAILED, f"failed to stop: {e}", pid=pid)

        self.pid_file.remove()
        return LifecycleResult(ProxyState.STOPPED, f"stopped (pid {pid})", pid=pid)

    def status(self) -> LifecycleResult:
        pid = self._live_pid()
        if pid is not None:
            return LifecycleResult(
                ProxyState.RUNNING,
                f"running (pid {pid}) on port {self.port}",
                pid=pid,
                port=self.port,
            )

        self.pid_file.remove()
        if is_port_bound(self.port, self.host):
            return LifecycleResult(
                ProxyState.ORPHAN,
                f"port {self.port} is held by a process without a PID file (orphan proxy?)",
                port=self.port,
            )
        return LifecycleResult(ProxyState.NOT_RUNNING, "not running")
