"""Pytest configuration helpers and in-memory server fakes for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx
import pytest

from devbao.cluster import ClusterManager
from devbao.config import ReadinessConfig
from devbao.node import NodeManager
from devbao.process import ProcessHandle
from devbao.retry import Backoff
from devbao.state import StateRegistry
from devbao.templates import TemplateEngine

UNAUTHENTICATED_PATHS = {
    "sys/init",
    "sys/seal-status",
    "sys/unseal",
    "sys/leader",
    "sys/storage/raft/join",
}
BOOT_MARKER = ".fake-server"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


# ---------------------------------------------------------------------------
# Clock and processes
# ---------------------------------------------------------------------------
class FakeClock:
    """Monotonic clock that only advances when something sleeps."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeInspector:
    """Process table keyed by PID; terminating a PID stops its fake server."""

    def __init__(self, network: FakeNetwork) -> None:
        self.network = network
        self.processes: dict[int, str] = {}
        self.terminated: list[int] = []
        self._next_pid = 4100

    def spawn(self, executable: str) -> int:
        self._next_pid += 1
        self.processes[self._next_pid] = executable
        return self._next_pid

    def exe(self, pid: int) -> str | None:
        return self.processes.get(pid)

    def terminate(self, pid: int) -> None:
        if self.processes.pop(pid, None) is not None:
            self.terminated.append(pid)
            self.network.stop_pid(pid)

    def kill(self, pid: int) -> None:
        self.terminate(pid)

    def wait(self, pid: int, timeout: float) -> bool:
        return pid not in self.processes


# ---------------------------------------------------------------------------
# Fake server
# ---------------------------------------------------------------------------
@dataclass
class RaftGroup:
    """Shared Raft membership of joined fake servers."""

    members: list[FakeServer] = field(default_factory=list)
    leader: FakeServer | None = None

    def elect(self) -> None:
        if self.leader is not None and self.leader.running and not self.leader.sealed:
            return
        self.leader = next(
            (member for member in self.members if member.running and not member.sealed),
            None,
        )


class FakeServer:
    """Just enough of the administrative API to drive devbao's workflows."""

    def __init__(self, network: FakeNetwork, name: str, address: str) -> None:
        self.network = network
        self.name = name
        self.address = address
        self.running = True
        self.pid = 0
        self.directory: Path | None = None
        self.initialized = False
        self.sealed = True
        self.root_token = ""
        self.keys: list[str] = []
        self.threshold = 0
        self.progress = 0
        self.auto_unseal = False
        self.raft = True
        self.group: RaftGroup | None = None
        self.mounts: dict[str, dict[str, Any]] = {
            "sys/": {"type": "system"},
            "cubbyhole/": {"type": "cubbyhole"},
        }
        self.auth: dict[str, dict[str, Any]] = {"token/": {"type": "token"}}
        self.audit: dict[str, dict[str, Any]] = {}
        self.policies: dict[str, str] = {}
        self.logical: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, dict[str, Any]]] = []
        self.failures: dict[tuple[str, str], tuple[int, list[str]]] = {}
        self.response_warnings: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    @property
    def url(self) -> str:
        return f"http://{self.address}"

    @property
    def cluster_address(self) -> str:
        host, _, port = self.address.rpartition(":")
        return f"{host}:{int(port) + 1}"

    @property
    def is_leader(self) -> bool:
        return self.group is not None and self.group.leader is self

    def make_dev(self, token: str) -> None:
        self.initialized = True
        self.sealed = False
        self.root_token = token
        self.raft = False

    def stop(self) -> None:
        self.running = False
        self.sealed = True
        self.progress = 0
        if self.group is not None and self.group.leader is self:
            self.group.leader = None
            self.group.elect()

    def _unsealed(self) -> None:
        self.sealed = False
        self.progress = 0
        if not self.raft:
            return
        if self.group is None:
            self.group = RaftGroup(members=[self])
        self.group.elect()

    # ------------------------------------------------------------------
    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1/")
        method = request.method
        body: dict[str, Any] = json.loads(request.content) if request.content else {}
        self.requests.append((method, path, body))

        failure = self.failures.get((method, path))
        if failure is not None:
            status, errors = failure
            return httpx.Response(status, json={"errors": errors})

        if path not in UNAUTHENTICATED_PATHS:
            if self.sealed:
                return httpx.Response(503, json={"errors": ["Vault is sealed"]})
            if request.headers.get("X-Vault-Token") != self.root_token:
                return httpx.Response(403, json={"errors": ["permission denied"]})

        return self._route(method, path, body)

    def _route(self, method: str, path: str, body: dict[str, Any]) -> httpx.Response:
        if path == "sys/init":
            return self._init(method, body)
        if path == "sys/seal-status":
            return _ok(self._seal_status())
        if path == "sys/unseal":
            return self._unseal(body)
        if path == "sys/seal":
            self.sealed = True
            if self.group is not None and self.group.leader is self:
                self.group.leader = None
                self.group.elect()
            return httpx.Response(204)
        if path == "sys/leader":
            leader = self.group.leader if self.group is not None else None
            return _ok(
                {
                    "ha_enabled": self.raft,
                    "is_self": self.is_leader,
                    "leader_address": leader.url if leader is not None else "",
                }
            )
        if path == "sys/storage/raft/join":
            return self._raft_join(body)
        if path == "sys/ha-status":
            return self._ha_status()
        if path == "sys/storage/raft/configuration":
            servers = [
                {"node_id": member.name, "address": member.cluster_address}
                for member in (self.group.members if self.group is not None else [])
            ]
            return _ok({"data": {"config": {"servers": servers}}})
        if path == "sys/storage/raft/remove-peer":
            return self._remove_peer(body)
        if path == "sys/mounts":
            return _ok({"data": dict(self.mounts)})
        if path.startswith("sys/mounts/"):
            return _toggle(self.mounts, path.removeprefix("sys/mounts/"), method, body)
        if path == "sys/auth":
            return _ok({"data": dict(self.auth)})
        if path.startswith("sys/auth/"):
            return _toggle(self.auth, path.removeprefix("sys/auth/"), method, body)
        if path.startswith("sys/policies/acl/"):
            name = path.removeprefix("sys/policies/acl/")
            if method == "DELETE":
                self.policies.pop(name, None)
            else:
                self.policies[name] = body["policy"]
            return httpx.Response(204)
        if path == "sys/audit":
            return _ok({"data": dict(self.audit)})
        if path.startswith("sys/audit/"):
            return self._enable_audit(path.removeprefix("sys/audit/"), body)
        return self._logical(method, path, body)

    def _seal_status(self) -> dict[str, Any]:
        return {
            "sealed": self.sealed,
            "initialized": self.initialized,
            "t": self.threshold,
            "n": len(self.keys),
            "progress": self.progress,
        }

    def _init(self, method: str, body: dict[str, Any]) -> httpx.Response:
        if method == "GET":
            return _ok({"initialized": self.initialized})
        if self.initialized:
            return httpx.Response(400, json={"errors": ["Vault is already initialized"]})
        recovery = "recovery_shares" in body
        shares = int(body.get("recovery_shares") or body.get("secret_shares") or 1)
        self.threshold = int(body.get("recovery_threshold") or body.get("secret_threshold") or 1)
        self.keys = [f"{self.name}-key-{index}" for index in range(shares)]
        self.root_token = f"root.{self.name}"
        self.initialized = True
        if recovery:
            self._unsealed()
            return _ok({"root_token": self.root_token, "recovery_keys_base64": list(self.keys)})
        return _ok({"root_token": self.root_token, "keys_base64": list(self.keys)})

    def _unseal(self, body: dict[str, Any]) -> httpx.Response:
        if body.get("key") not in self.keys:
            return httpx.Response(400, json={"errors": ["invalid key"]})
        if self.sealed:
            self.progress += 1
            if self.progress >= self.threshold:
                self._unsealed()
        return _ok(self._seal_status())

    def _raft_join(self, body: dict[str, Any]) -> httpx.Response:
        leader = self.network.server_for_url(str(body.get("leader_api_addr") or ""))
        if leader is None or not leader.is_leader or leader.group is None:
            return httpx.Response(500, json={"errors": ["failed to join raft cluster"]})
        self.initialized = True
        self.keys = list(leader.keys)
        self.threshold = leader.threshold
        self.root_token = leader.root_token
        self.group = leader.group
        if self not in leader.group.members:
            leader.group.members.append(self)
        if self.auto_unseal:
            self._unsealed()
        return _ok({"joined": self.auto_unseal})

    def _ha_status(self) -> httpx.Response:
        members = self.group.members if self.group is not None else []
        nodes = [
            {
                "hostname": member.name,
                "api_address": member.url,
                "cluster_address": f"https://{member.cluster_address}",
                "active_node": member.is_leader,
            }
            for member in members
            if member.running and not member.sealed
        ]
        return _ok({"nodes": nodes})

    def _remove_peer(self, body: dict[str, Any]) -> httpx.Response:
        group = self.group
        server_id = body.get("server_id")
        if group is None or not any(member.name == server_id for member in group.members):
            return httpx.Response(400, json={"errors": [f"no such peer {server_id}"]})
        for member in list(group.members):
            if member.name == server_id:
                group.members.remove(member)
                member.group = None
        return httpx.Response(204)

    def _enable_audit(self, name: str, body: dict[str, Any]) -> httpx.Response:
        key = f"{name}/"
        if key in self.audit:
            return httpx.Response(400, json={"errors": ["path already in use"]})
        self.audit[key] = {"type": body.get("type"), "options": body.get("options", {})}
        file_path = body.get("options", {}).get("file_path")
        if file_path:
            Path(file_path).parent.mkdir(parents=True, exist_ok=True)
            with Path(file_path).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps({"type": "request", "device": name}) + "\n")
        return httpx.Response(204)

    def _logical(self, method: str, path: str, body: dict[str, Any]) -> httpx.Response:
        if method == "GET":
            stored = self.logical.get(path)
            if stored is None:
                return httpx.Response(404, json={"errors": []})
            return _ok({"data": stored})
        if method == "DELETE":
            self.logical.pop(path, None)
            return httpx.Response(204)
        self.logical[path] = body
        data: dict[str, Any] = {}
        if path.endswith("root/generate/internal"):
            data = {"certificate": f"-----BEGIN CERTIFICATE-----\nroot {self.name}\n-----END CERTIFICATE-----"}
        elif path.endswith("intermediate/generate/internal"):
            data = {"csr": "-----BEGIN CERTIFICATE REQUEST-----\nint\n-----END CERTIFICATE REQUEST-----"}
        elif path.endswith("root/sign-intermediate"):
            data = {"certificate": "-----BEGIN CERTIFICATE-----\nint\n-----END CERTIFICATE-----"}
        elif path.endswith("issuers/import/cert"):
            data = {"imported_issuers": [f"issuer-{len(self.requests)}"]}
        payload: dict[str, Any] = {"data": data}
        if path in self.response_warnings:
            payload["warnings"] = list(self.response_warnings[path])
        return _ok(payload)


def _ok(payload: dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, json=payload)


def _toggle(table: dict[str, dict[str, Any]], path: str, method: str, body: dict[str, Any]) -> httpx.Response:
    key = f"{path}/"
    if method == "DELETE":
        table.pop(key, None)
        return httpx.Response(204)
    if key in table:
        return httpx.Response(400, json={"errors": [f"path is already in use at {key}"]})
    table[key] = dict(body)
    return httpx.Response(204)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------
class FakeNetwork:
    """Routes httpx requests to fake servers by ``host:port``."""

    def __init__(self) -> None:
        self.servers: dict[str, FakeServer] = {}
        self.inspector = FakeInspector(self)
        self.transport = httpx.MockTransport(self._dispatch)

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        server = self.servers.get(f"{request.url.host}:{request.url.port}")
        if server is None or not server.running:
            raise httpx.ConnectError("connection refused", request=request)
        return server.handle(request)

    def add_server(self, address: str, name: str = "fake") -> FakeServer:
        server = FakeServer(self, name, address)
        self.servers[address] = server
        return server

    def server_for_url(self, url: str) -> FakeServer | None:
        parts = urlsplit(url)
        return self.servers.get(f"{parts.hostname}:{parts.port}")

    def server(self, name: str) -> FakeServer:
        for server in self.servers.values():
            if server.name == name:
                return server
        raise KeyError(name)

    def stop_pid(self, pid: int) -> None:
        for server in self.servers.values():
            if server.pid == pid:
                server.stop()

    def boot(self, handle: ProcessHandle, pid: int) -> FakeServer:
        """Start (or restart) the fake server behind *handle*."""
        directory = Path(handle.directory)
        name = directory.name
        marker = directory / BOOT_MARKER
        existing = self.servers.get(handle.connect_address)
        restart = existing is not None and existing.name == name and marker.exists()
        if restart:
            assert existing is not None
            server = existing
            server.running = True
        else:
            server = self.add_server(handle.connect_address, name)
        server.pid = pid
        server.directory = directory

        if "-dev" in handle.args:
            token = next(
                (arg.split("=", 1)[1] for arg in handle.args if arg.startswith("-dev-root-token-id=")),
                "devroot",
            )
            server.make_dev(token)
        else:
            config_file = next(
                (arg.split("=", 1)[1] for arg in handle.args if arg.startswith("-config=")),
                "",
            )
            text = Path(config_file).read_text(encoding="utf-8") if config_file else ""
            server.auto_unseal = 'seal "' in text
            server.raft = 'storage "raft"' in text
            if restart and server.initialized and server.auto_unseal:
                server._unsealed()

        marker.write_text(name, encoding="utf-8")
        handle.log_path.write_text(f"==> {name} started\n==> listening on {handle.connect_address}\n", encoding="utf-8")
        return server


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    """Deterministic clock whose sleep advances time."""
    return FakeClock()


@pytest.fixture
def backoff(clock: FakeClock) -> Backoff:
    """Short backoff schedule driven by the fake clock."""
    return Backoff(timeout=5.0, initial_delay=0.01, max_delay=0.05, jitter=0.0, sleep=clock.sleep, clock=clock)


@pytest.fixture
def network(monkeypatch: pytest.MonkeyPatch) -> Iterator[FakeNetwork]:
    """Fake network; spawning a process boots a fake server instead."""
    net = FakeNetwork()

    def fake_start(
        self: ProcessHandle,
        inspector: FakeInspector,
        readiness: ReadinessConfig | None = None,
        **_: object,
    ) -> None:
        pid = inspector.spawn(self.binary)
        net.boot(self, pid)
        self.pid = pid

    monkeypatch.setattr(ProcessHandle, "start", fake_start)
    yield net


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """Executable placeholder resolved as the OpenBao binary."""
    path = tmp_path / "bin" / "bao"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Empty registry rooted in the test's temporary directory."""
    reg = StateRegistry(tmp_path / "state")
    reg.ensure_root()
    return reg


@pytest.fixture
def templates() -> TemplateEngine:
    """Template engine using the packaged templates."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture
def nodes(
    registry: StateRegistry,
    templates: TemplateEngine,
    network: FakeNetwork,
    backoff: Backoff,
    fake_binary: Path,
) -> NodeManager:
    """Node manager wired to the fake network and process table."""
    return NodeManager(
        registry,
        templates,
        inspector=network.inspector,
        backoff=backoff,
        transport=network.transport,
        env={"OPENBAO_BINARY": str(fake_binary), "PATH": ""},
    )


@pytest.fixture
def clusters(registry: StateRegistry, nodes: NodeManager, backoff: Backoff) -> ClusterManager:
    """Cluster manager sharing the node manager's fakes."""
    return ClusterManager(registry, nodes, backoff=backoff)
