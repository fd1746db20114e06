"""Tests for process spawning, identity checks and log helpers."""
from __future__ import annotations

import socket
import sys
from pathlib import Path

import pytest

from devbao.config import ReadinessConfig
from devbao.errors import ProcessError, ValidationError
from devbao.process import (
    ProcessHandle,
    PsutilInspector,
    follow_file,
    resolve_binary,
    split_host_port,
    tail_file,
)


class StubInspector:
    """Inspector over a fixed process table."""

    def __init__(self, processes: dict[int, str], *, stubborn: bool = False) -> None:
        self.processes = dict(processes)
        self.stubborn = stubborn
        self.signals: list[tuple[str, int]] = []

    def exe(self, pid: int) -> str | None:
        return self.processes.get(pid)

    def terminate(self, pid: int) -> None:
        self.signals.append(("term", pid))
        if not self.stubborn:
            self.processes.pop(pid, None)

    def kill(self, pid: int) -> None:
        self.signals.append(("kill", pid))
        self.processes.pop(pid, None)

    def wait(self, pid: int, timeout: float) -> bool:
        return pid not in self.processes


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


# ---------------------------------------------------------------------------
# Binary resolution and addresses
# ---------------------------------------------------------------------------
def _executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def test_resolve_binary_prefers_openbao(tmp_path: Path) -> None:
    """Auto detection prefers OpenBao and falls back to Vault."""
    bin_dir = tmp_path / "bin"
    _executable(bin_dir / "vault")
    _executable(bin_dir / "bao")

    assert resolve_binary("", {"PATH": str(bin_dir)}) == str(bin_dir / "bao")
    assert resolve_binary("vault", {"PATH": str(bin_dir)}) == str(bin_dir / "vault")


def test_resolve_binary_honours_override_variable(tmp_path: Path) -> None:
    """<NAME>_BINARY overrides the PATH lookup."""
    custom = _executable(tmp_path / "opt" / "my-vault")

    assert resolve_binary("vault", {"PATH": "", "VAULT_BINARY": str(custom)}) == str(custom)


def test_resolve_binary_reports_candidates(tmp_path: Path) -> None:
    """A missing binary lists every candidate tried."""
    with pytest.raises(ProcessError, match="tried: openbao, bao"):
        resolve_binary("bao", {"PATH": str(tmp_path)})


def test_resolve_binary_rejects_unknown_product() -> None:
    """Unknown products are validation errors."""
    with pytest.raises(ValidationError, match="Invalid node type"):
        resolve_binary("consul", {"PATH": ""})


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("127.0.0.1:8200", ("127.0.0.1", 8200)),
        ("0.0.0.0:8300", ("0.0.0.0", 8300)),
        ("[::1]:8200", ("::1", 8200)),
        ("localhost:1", ("localhost", 1)),
    ],
)
def test_split_host_port(address: str, expected: tuple[str, int]) -> None:
    """Host and port are split, IPv6 brackets removed."""
    assert split_host_port(address) == expected


@pytest.mark.parametrize("address", ["127.0.0.1", "127.0.0.1:http", "127.0.0.1:0", "127.0.0.1:70000"])
def test_split_host_port_rejects_malformed(address: str) -> None:
    """Missing or out-of-range ports are rejected."""
    with pytest.raises(ValidationError):
        split_host_port(address)


# ---------------------------------------------------------------------------
# Identity and kill
# ---------------------------------------------------------------------------
def test_validate_running_checks_executable_name() -> None:
    """A recycled PID running another program is not ours."""
    handle = ProcessHandle(binary="/usr/bin/bao", pid=10)

    handle.validate_running(StubInspector({10: "/usr/bin/bao"}))
    with pytest.raises(ProcessError, match="no longer the original process"):
        handle.validate_running(StubInspector({10: "/usr/bin/python3"}))
    with pytest.raises(ProcessError, match="not running"):
        handle.validate_running(StubInspector({}))


def test_validate_running_without_binary_accepts_server_names() -> None:
    """Handles without a recorded binary accept any known server name."""
    handle = ProcessHandle(pid=10)

    handle.validate_running(StubInspector({10: "/opt/vault"}))
    with pytest.raises(ProcessError):
        handle.validate_running(StubInspector({10: "/opt/nginx"}))


def test_kill_terminates_and_clears_pid() -> None:
    """Killing a live process clears the recorded PID."""
    inspector = StubInspector({10: "/usr/bin/bao"})
    handle = ProcessHandle(binary="/usr/bin/bao", pid=10)

    assert handle.kill(inspector) is True
    assert handle.pid == 0
    assert inspector.signals == [("term", 10)]


def test_kill_escalates_when_terminate_is_ignored() -> None:
    """A process ignoring SIGTERM is killed."""
    inspector = StubInspector({10: "/usr/bin/bao"}, stubborn=True)
    handle = ProcessHandle(binary="/usr/bin/bao", pid=10)

    assert handle.kill(inspector, timeout=0.01) is True
    assert inspector.signals == [("term", 10), ("kill", 10)]


def test_kill_of_stale_pid_is_a_noop() -> None:
    """A PID that no longer validates is never signalled."""
    inspector = StubInspector({10: "/usr/sbin/sshd"})
    handle = ProcessHandle(binary="/usr/bin/bao", pid=10)

    assert handle.kill(inspector) is False
    assert handle.pid == 0
    assert inspector.signals == []
    assert ProcessHandle().kill(inspector) is False


def test_handle_dict_roundtrip_and_validation() -> None:
    """Persisted handles decode back and reject malformed fields."""
    handle = ProcessHandle(binary="/bin/bao", args=["server"], directory="/d", connect_address="127.0.0.1:8200", pid=5)

    assert ProcessHandle.from_dict(handle.to_dict()) == handle
    with pytest.raises(ValidationError, match="pid"):
        ProcessHandle.from_dict({"pid": "5"})
    with pytest.raises(ValidationError, match="args"):
        ProcessHandle.from_dict({"args": "server"})


# ---------------------------------------------------------------------------
# Spawning real processes
# ---------------------------------------------------------------------------
@pytest.mark.mutation_timeout
def test_start_waits_for_listener_and_kill_stops_it(tmp_path: Path) -> None:
    """A spawned process that binds its port is started, verified and stopped."""
    port = _free_port()
    script = (
        "import socket, time\n"
        "s = socket.socket()\n"
        "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
        f"s.bind(('127.0.0.1', {port}))\n"
        "s.listen()\n"
        "print('listening', flush=True)\n"
        "time.sleep(60)\n"
    )
    handle = ProcessHandle(
        binary=sys.executable,
        args=["-c", script],
        directory=str(tmp_path / "node"),
        connect_address=f"127.0.0.1:{port}",
    )
    inspector = PsutilInspector()

    handle.start(inspector, ReadinessConfig(timeout=15.0, interval=0.05, initial_delay=0.05))
    try:
        assert handle.pid > 0
        assert handle.is_running(inspector)
    finally:
        assert handle.kill(inspector) is True
    assert handle.pid == 0


@pytest.mark.mutation_timeout
def test_start_reports_early_exit_with_logs(tmp_path: Path) -> None:
    """A server that exits before listening fails with its log attached."""
    handle = ProcessHandle(
        binary=sys.executable,
        args=["-c", "import sys; print('bind: address already in use'); sys.exit(3)"],
        directory=str(tmp_path / "node"),
        connect_address=f"127.0.0.1:{_free_port()}",
    )

    with pytest.raises(ProcessError) as excinfo:
        handle.start(PsutilInspector(), ReadinessConfig(timeout=15.0, interval=0.05, initial_delay=0.2))

    message = str(excinfo.value)
    assert "exited early with status 3" in message
    assert "bind: address already in use" in message
    assert handle.pid == 0


def test_start_without_binary_fails(tmp_path: Path) -> None:
    """Handles must know which binary to run."""
    handle = ProcessHandle(directory=str(tmp_path), connect_address="127.0.0.1:8200")

    with pytest.raises(ProcessError, match="No server binary"):
        handle.start(StubInspector({}))


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------
def test_read_logs_marks_empty_and_partial_output(tmp_path: Path) -> None:
    """Empty logs and a missing trailing newline are flagged."""
    handle = ProcessHandle(directory=str(tmp_path))
    handle.log_path.write_text("", encoding="utf-8")
    assert "(no logs)" in handle.read_logs()

    handle.log_path.write_text("line one\nline tw", encoding="utf-8")
    assert handle.read_logs().endswith("(logs truncated)\n")


def test_read_logs_missing_file_raises(tmp_path: Path) -> None:
    """Unreadable logs raise ProcessError."""
    with pytest.raises(ProcessError, match="Failed to read logs"):
        ProcessHandle(directory=str(tmp_path / "missing")).read_logs()


def test_tail_file_returns_last_lines(tmp_path: Path) -> None:
    """Only the requested number of trailing lines is returned."""
    path = tmp_path / "service.log"
    path.write_text("".join(f"line {index}\n" for index in range(40)), encoding="utf-8")

    assert tail_file(path) == [f"line {index}" for index in range(25, 40)]
    assert tail_file(path, 2) == ["line 38", "line 39"]


def test_follow_file_yields_appended_lines(tmp_path: Path) -> None:
    """Following starts at the end and yields complete appended lines."""
    path = tmp_path / "service.log"
    path.write_text("old\n", encoding="utf-8")
    pending = ["first\n", "sec", "ond\n"]
    seen: list[str] = []

    def sleep(_: float) -> None:
        if pending:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(pending.pop(0))

    for line in follow_file(path, sleep=sleep, should_stop=lambda: len(seen) >= 2):
        seen.append(line)

    assert seen == ["first", "second"]
