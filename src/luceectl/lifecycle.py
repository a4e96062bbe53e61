"""Launch, readiness polling and termination of server processes.

The manager only talks to the server through the OS (process handles, psutil)
and the network (HTTP readiness probes); it never shares memory with it.
"""
from __future__ import annotations

import logging
import signal
import subprocess
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO

import psutil

LOGGER = logging.getLogger(__name__)


class LifecycleError(RuntimeError):
    """Raised when a server process cannot be launched or controlled."""


class ReadinessTimeoutError(LifecycleError):
    """Raised when the server does not answer before the startup timeout."""


class ServerState(Enum):
    """Coarse process state tracked while starting and stopping."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class LaunchPlan:
    """Everything needed to spawn the server process."""

    command: tuple[str, ...]
    env: Mapping[str, str]
    cwd: Path
    stdout_path: Path | None = None
    stderr_path: Path | None = None

    def describe(self) -> str:
        """Return the command line as a single string."""
        return " ".join(self.command)


def is_process_alive(pid: int) -> bool:
    """Return whether *pid* names a live, non-zombie process."""
    if pid <= 0:
        return False
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Surface 3xx responses as ``HTTPError`` instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[no-untyped-def]
        return None


_PROBE_OPENER = urllib.request.build_opener(_NoRedirect)


def probe_http(host: str, port: int, timeout: float, *, scheme: str = "http") -> bool:
    """Return ``True`` once anything answers HTTP on *host*:*port*.

    Any HTTP response, including redirects and 4xx/5xx statuses, counts as
    ready. Redirects are not followed; the HTTPS redirect points at a
    self-signed connector.
    """
    url = f"{scheme}://{host}:{port}/"
    try:
        with _PROBE_OPENER.open(url, timeout=timeout):
            return True
    except urllib.error.HTTPError:
        return True
    except (urllib.error.URLError, OSError, ValueError):
        return False


@dataclass(slots=True)
class ProcessManager:
    """Spawn and supervise server processes."""

    startup_timeout: float = 30.0
    poll_interval: float = 1.0
    stop_timeout: float = 10.0
    probe: Callable[[str, int, float], bool] = probe_http
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    state: ServerState = field(default=ServerState.STOPPED)

    # ------------------------------------------------------------------
    def launch(self, plan: LaunchPlan, *, foreground: bool = False) -> subprocess.Popen[bytes]:
        """Spawn the process described by *plan*.

        Foreground launches inherit the terminal. Background launches write to
        the plan's log files and run in their own session so they survive the
        CLI exiting.
        """
        self.state = ServerState.STARTING
        LOGGER.debug("Launching %s (cwd=%s)", plan.describe(), plan.cwd)
        try:
            if foreground:
                return subprocess.Popen(  # noqa: S603
                    list(plan.command),
                    cwd=str(plan.cwd),
                    env=dict(plan.env),
                )
            with _open_logs(plan.stdout_path, plan.stderr_path) as (stdout, stderr):
                return subprocess.Popen(  # noqa: S603
                    list(plan.command),
                    cwd=str(plan.cwd),
                    env=dict(plan.env),
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
        except OSError as exc:
            self.state = ServerState.STOPPED
            raise LifecycleError(f"Failed to launch {plan.command[0]}: {exc}") from exc

    def wait_until_ready(
        self,
        host: str,
        port: int,
        *,
        process: subprocess.Popen[bytes] | None = None,
        timeout: float | None = None,
    ) -> float:
        """Poll the HTTP listener until it answers; return the elapsed seconds.

        Raises :class:`ReadinessTimeoutError` after *timeout* (defaults to the
        manager's startup timeout) and :class:`LifecycleError` when *process*
        exits before becoming ready.
        """
        limit = self.startup_timeout if timeout is None else timeout
        started = self.clock()
        while True:
            if process is not None:
                code = process.poll()
                if code is not None:
                    self.state = ServerState.STOPPED
                    raise LifecycleError(f"Server process exited with code {code} during startup.")
            if self.probe(host, port, min(self.poll_interval, 5.0)):
                self.state = ServerState.RUNNING
                return self.clock() - started
            elapsed = self.clock() - started
            if elapsed >= limit:
                raise ReadinessTimeoutError(
                    f"Server did not respond on http://{host}:{port}/ within {limit:.0f}s."
                )
            self.sleep(self.poll_interval)

    def run_foreground(
        self,
        process: subprocess.Popen[bytes],
        *,
        on_exit: Callable[[], None] | None = None,
    ) -> int:
        """Block until *process* exits; Ctrl+C or SIGTERM stop it gracefully.

        *on_exit* runs in every case (normal exit, interrupt, or error).
        """
        previous = signal.getsignal(signal.SIGTERM)

        def _raise_interrupt(signum: int, frame: object) -> None:
            raise KeyboardInterrupt

        try:
            signal.signal(signal.SIGTERM, _raise_interrupt)
        except ValueError:  # pragma: no cover - not in the main thread
            previous = None
        self.state = ServerState.RUNNING
        try:
            return process.wait()
        except KeyboardInterrupt:
            LOGGER.info("Interrupted; stopping server process %s", process.pid)
            self.stop_process(process)
            return process.returncode if process.returncode is not None else 130
        finally:
            if previous is not None:
                signal.signal(signal.SIGTERM, previous)
            self.state = ServerState.STOPPED
            if on_exit is not None:
                on_exit()

    def stop_process(self, process: subprocess.Popen[bytes]) -> None:
        """Terminate a process we spawned, escalating to kill after the grace period."""
        self.terminate(process.pid)
        try:
            process.wait(timeout=1)
        except subprocess.TimeoutExpired:  # pragma: no cover - psutil already reaped it
            process.kill()

    def terminate(self, pid: int, *, timeout: float | None = None) -> bool:
        """Terminate *pid* and its children; return ``False`` if it was already gone.

        Sends SIGTERM, waits up to *timeout* (the manager's stop timeout by
        default), then SIGKILLs whatever survived.
        """
        grace = self.stop_timeout if timeout is None else timeout
        try:
            parent = psutil.Process(pid)
            children = parent.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        self.state = ServerState.STOPPING
        targets = [parent, *children]
        for target in targets:
            try:
                target.terminate()
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
        _, alive = psutil.wait_procs(targets, timeout=grace)
        for target in alive:
            LOGGER.warning("Process %s ignored SIGTERM; killing it.", target.pid)
            try:
                target.kill()
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
        if alive:
            psutil.wait_procs(alive, timeout=5)
        self.state = ServerState.STOPPED
        return True


@contextmanager
def _open_logs(
    stdout_path: Path | None,
    stderr_path: Path | None,
) -> Iterator[tuple[IO[bytes] | int, IO[bytes] | int]]:
    handles: list[IO[bytes]] = []
    try:
        streams: list[IO[bytes] | int] = []
        for path in (stdout_path, stderr_path):
            if path is None:
                streams.append(subprocess.DEVNULL)
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = path.open("ab")
            handles.append(handle)
            streams.append(handle)
        yield streams[0], streams[1]
    finally:
        for handle in handles:
            handle.close()


def run_command(
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str] | None:
    """Run a short helper command; return ``None`` when it cannot run or times out."""
    try:
        return subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
            env=dict(env) if env is not None else None,
            timeout=timeout,
        )
    except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired) as exc:
        LOGGER.debug("Command %s failed to run: %s", args[0] if args else "?", exc)
        return None


__all__ = [
    "LaunchPlan",
    "LifecycleError",
    "ProcessManager",
    "ReadinessTimeoutError",
    "ServerState",
    "is_process_alive",
    "probe_http",
    "run_command",
]
