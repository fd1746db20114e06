"""Server process handle: spawn, readiness gate, identity check and kill.

A :class:`ProcessHandle` is the persisted snapshot of a spawned server. It is
rewritten on every resume and cleared when the node is stopped. Liveness is
never inferred from the PID alone: the PID must still resolve to an
executable with the expected file name, otherwise the handle is treated as
stale (the PID may have been recycled by an unrelated program).

OS process inspection goes through the :class:`ProcessInspector` protocol so
tests can substitute canned answers for the real ``psutil`` queries.
"""
from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import psutil

from .config import ReadinessConfig
from .errors import ProcessError, ValidationError

LOGGER = logging.getLogger(__name__)

SERVICE_LOG_NAME = "service.log"
SERVER_BINARY_NAMES = frozenset({"vault", "bao", "openbao"})
PRODUCT_BINARIES: dict[str, tuple[str, ...]] = {
    "": ("openbao", "bao", "vault"),
    "bao": ("openbao", "bao"),
    "vault": ("vault",),
}


class ProcessInspector(Protocol):
    """Capability used to query and signal OS processes."""

    def exe(self, pid: int) -> str | None:
        """Return the executable path of *pid*, or ``None`` when it is gone."""

    def terminate(self, pid: int) -> None:
        """Ask *pid* to exit."""

    def kill(self, pid: int) -> None:
        """Forcefully kill *pid*."""

    def wait(self, pid: int, timeout: float) -> bool:
        """Wait for *pid* to exit; return ``True`` when it did."""


class PsutilInspector:
    """:class:`ProcessInspector` backed by ``psutil``."""

    def exe(self, pid: int) -> str | None:
        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return None
            return process.exe()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied as exc:
            raise ProcessError(f"Permission denied inspecting process {pid}: {exc}") from exc

    def terminate(self, pid: int) -> None:
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return

    def kill(self, pid: int) -> None:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            return

    def wait(self, pid: int, timeout: float) -> bool:
        try:
            psutil.Process(pid).wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            return False
        return True


def resolve_binary(product: str, env: Mapping[str, str] | None = None) -> str:
    """Return the absolute path of the server binary for *product*.

    ``""`` prefers OpenBao (``openbao`` then ``bao``) and falls back to
    ``vault``. Each candidate may be overridden through ``<NAME>_BINARY``
    (for example ``OPENBAO_BINARY``) before the ``PATH`` lookup.
    """
    if product not in PRODUCT_BINARIES:
        raise ValidationError(
            f"Invalid node type {product!r}: expected '' (auto), 'bao' or 'vault'."
        )
    resolved_env = os.environ if env is None else env
    search_path = resolved_env.get("PATH")
    tried: list[str] = []
    for ref in PRODUCT_BINARIES[product]:
        candidate = resolved_env.get(f"{ref.upper()}_BINARY") or ref
        tried.append(candidate)
        found = shutil.which(candidate, path=search_path)
        if found:
            return os.path.abspath(found)
    joined = ", ".join(tried)
    raise ProcessError(f"Unable to find a server binary for type {product or 'auto'!r}; tried: {joined}.")


@dataclass(slots=True)
class ProcessHandle:
    """Runtime descriptor of a spawned server process."""

    binary: str = ""
    args: list[str] = field(default_factory=list)
    directory: str = ""
    connect_address: str = ""
    pid: int = 0

    @property
    def log_path(self) -> Path:
        """Location of the merged stdout/stderr log."""
        return Path(self.directory) / SERVICE_LOG_NAME

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {
            "binary": self.binary,
            "args": list(self.args),
            "directory": self.directory,
            "connection_address": self.connect_address,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProcessHandle:
        """Rebuild a handle from :meth:`to_dict` output."""
        args = data.get("args") or []
        if not isinstance(args, list):
            raise ValidationError("Process field 'args' must be a list.")
        pid = data.get("pid") or 0
        if isinstance(pid, bool) or not isinstance(pid, int):
            raise ValidationError("Process field 'pid' must be an integer.")
        return cls(
            binary=str(data.get("binary") or ""),
            args=[str(arg) for arg in args],
            directory=str(data.get("directory") or ""),
            connect_address=str(data.get("connection_address") or ""),
            pid=pid,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(
        self,
        inspector: ProcessInspector,
        readiness: ReadinessConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Spawn the server and wait until its listener accepts connections."""
        readiness = readiness or ReadinessConfig()
        if not self.binary:
            raise ProcessError("No server binary recorded for this process handle.")
        directory = Path(self.directory)
        directory.mkdir(parents=True, exist_ok=True)
        command = [self.binary, *self.args]

        with self.log_path.open("wb") as log_handle:
            try:
                process = subprocess.Popen(
                    command,
                    cwd=str(directory),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                raise ProcessError(f"Failed to start server (cli: {command}): {exc}") from exc
        LOGGER.debug("Spawned %s (pid %s) in %s", self.binary, process.pid, directory)

        try:
            self._wait_ready(process, readiness, sleep=sleep, clock=clock)
        except ProcessError as exc:
            _stop_child(process)
            raise ProcessError(
                self._with_logs(
                    f"Failed to wait for listener ({self.connect_address}) to come up "
                    f"(cli: {command}): {exc}"
                )
            ) from exc

        self.pid = process.pid
        try:
            self.validate_running(inspector)
        except ProcessError as exc:
            _stop_child(process)
            self.pid = 0
            raise ProcessError(
                self._with_logs(
                    f"Failed to confirm the started server's identity (cli: {command}): {exc}\n"
                    "\tUsually this means the server bound to this port was not started by devbao."
                )
            ) from exc

    def validate_running(self, inspector: ProcessInspector) -> None:
        """Raise :class:`ProcessError` unless the PID is our server binary."""
        if self.pid <= 0:
            raise ProcessError("No process id recorded.")
        executable = inspector.exe(self.pid)
        if not executable:
            raise ProcessError(f"Process {self.pid} is not running.")
        actual = os.path.basename(executable)
        if self.binary:
            expected = {
                os.path.basename(self.binary),
                os.path.basename(os.path.realpath(self.binary)),
            }
        else:
            expected = set(SERVER_BINARY_NAMES)
        if actual not in expected:
            raise ProcessError(
                f"Process with pid {self.pid} is no longer the original process: "
                f"expected one of {sorted(expected)}, found {actual!r}."
            )

    def is_running(self, inspector: ProcessInspector) -> bool:
        """Return ``True`` when :meth:`validate_running` succeeds."""
        try:
            self.validate_running(inspector)
        except ProcessError:
            return False
        return True

    def kill(self, inspector: ProcessInspector, *, timeout: float = 5.0) -> bool:
        """Stop the process; return ``True`` when a live process was signalled.

        A zero PID is a no-op and a PID that no longer validates is treated as
        already gone; both leave the handle with ``pid == 0``.
        """
        if self.pid == 0:
            return False
        if not self.is_running(inspector):
            self.pid = 0
            return False

        inspector.terminate(self.pid)
        if not inspector.wait(self.pid, timeout):
            LOGGER.info("Process %s ignored SIGTERM; killing", self.pid)
            inspector.kill(self.pid)
            if not inspector.wait(self.pid, timeout):
                raise ProcessError(f"Process {self.pid} did not exit after being killed.")
        self.pid = 0
        return True

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------
    def read_logs(self) -> str:
        """Return the service log, flagging truncated or empty output."""
        try:
            logs = self.log_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ProcessError(f"Failed to read logs ({self.log_path}): {exc}") from exc
        if not logs:
            return "\n\t(no logs)\n"
        if not logs.endswith("\n"):
            # The server may still be writing; mark the last line as partial.
            logs += "\n\t(logs truncated)\n"
        return logs

    def _with_logs(self, message: str) -> str:
        try:
            logs = self.read_logs()
        except ProcessError as exc:
            return f"{message}\n\t(failed to read logs: {exc})"
        return f"{message}\n\n==== SERVER LOGS ====\n\n{logs}"

    def _wait_ready(
        self,
        process: subprocess.Popen[bytes],
        readiness: ReadinessConfig,
        *,
        sleep: Callable[[float], None],
        clock: Callable[[], float],
    ) -> None:
        host, port = split_host_port(self.connect_address)
        # Give a server that fails to bind a chance to exit before probing.
        sleep(readiness.initial_delay)
        deadline = clock() + readiness.timeout
        while True:
            code = process.poll()
            if code is not None:
                raise ProcessError(f"server exited early with status {code}")
            if _can_connect(host, port, readiness.interval):
                return
            if clock() >= deadline:
                raise ProcessError(
                    f"no listener on {self.connect_address} after {readiness.timeout:g}s; "
                    f"check logs at {self.log_path}"
                )
            sleep(readiness.interval)


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts."""
    host, sep, port_text = address.rpartition(":")
    if not sep or not host or not port_text:
        raise ValidationError(f"Malformed address {address!r}: expected host:port.")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValidationError(f"Malformed address {address!r}: IPv6 hosts need brackets.")
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValidationError(f"Malformed port in address {address!r}.") from exc
    if not 0 < port < 65536:
        raise ValidationError(f"Port out of range in address {address!r}.")
    return host, port


def tail_file(path: Path, lines: int = 15) -> list[str]:
    """Return the last *lines* lines of *path*."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]


def follow_file(
    path: Path,
    *,
    poll_interval: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> Iterator[str]:
    """Yield lines appended to *path* until *should_stop* returns ``True``."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        handle.seek(0, os.SEEK_END)
        pending = ""
        while not should_stop():
            chunk = handle.readline()
            if not chunk:
                sleep(poll_interval)
                continue
            pending += chunk
            if pending.endswith("\n"):
                yield pending.rstrip("\n")
                pending = ""


def _can_connect(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _stop_child(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=5)


__all__ = [
    "PRODUCT_BINARIES",
    "ProcessHandle",
    "ProcessInspector",
    "PsutilInspector",
    "SERVICE_LOG_NAME",
    "follow_file",
    "resolve_binary",
    "split_host_port",
    "tail_file",
]
