"""Node records and the lifecycle operations that act on them.

A :class:`Node` is the persisted description of one managed server: its
instance configuration, the process handle of the last spawn, the credentials
obtained from initialization and its cluster membership. :class:`NodeManager`
owns the filesystem registry and every collaborator needed to move a node
through its states::

    build -> start/resume -> initialize -> unseal -> (seal | kill) -> clean

All operations read and write the registry; disk is the source of truth and
in-memory nodes are snapshots that must be saved after mutation.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx

from .api import ServerClient
from .config import ReadinessConfig
from .errors import (
    ConsistencyError,
    DevbaoError,
    NotFoundError,
    ProcessError,
    RemoteAPIError,
    StateConflictError,
    ValidationError,
)
from .instance_config import ConnectInfo, InstanceConfig
from .process import ProcessHandle, ProcessInspector, PsutilInspector, resolve_binary
from .retry import Backoff, poll_until, retry_with_backoff
from .state import StateRegistry
from .templates import TemplateEngine, write_text_atomic
from .tls import TLS_CA_NAME

LOGGER = logging.getLogger(__name__)

PRODUCT_TYPES = ("", "bao", "vault")
INSTANCE_CONFIG_NAME = "config.hcl"
INIT_SHARES = 3
INIT_THRESHOLD = 2


# ---------------------------------------------------------------------------
# Node record
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Node:
    """Persisted state of one managed server instance."""

    name: str
    product: str = ""
    config: InstanceConfig = field(default_factory=InstanceConfig)
    process: ProcessHandle | None = None
    addr: str = ""
    token: str = ""
    unseal_keys: list[str] = field(default_factory=list)
    cluster: str = ""
    pending_join: str = ""

    @property
    def is_dev(self) -> bool:
        """``True`` when the node runs an ephemeral dev-mode server."""
        return self.config.is_dev

    @property
    def pid(self) -> int:
        """PID of the last spawn, zero when none is recorded."""
        return self.process.pid if self.process is not None else 0

    def validate(self) -> None:
        """Check record invariants and normalise derived fields."""
        if not self.name:
            raise ValidationError("Node name must not be empty.")
        if self.product not in PRODUCT_TYPES:
            raise ValidationError(
                f"Invalid node type {self.product!r}: expected either empty (auto), "
                "OpenBao ('bao'), or HashiCorp Vault ('vault')."
            )
        if self.config.dev is not None and not self.token and self.config.dev.token:
            self.token = self.config.dev.token
        for index, key in enumerate(self.unseal_keys):
            if not key:
                raise ValidationError(f"Blank unseal key at index {index} for node {self.name!r}.")
        if self.is_dev and (self.cluster or self.pending_join):
            raise ValidationError(
                f"Node {self.name!r} is a dev-mode node and cannot belong to cluster "
                f"{self.cluster or self.pending_join!r}."
            )
        if self.addr:
            parts = urlsplit(self.addr)
            if parts.scheme not in {"http", "https"} or not parts.netloc:
                raise ValidationError(f"Node address {self.addr!r} must be an http(s) URL.")
        self.config.validate()

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {
            "name": self.name,
            "type": self.product,
            "config": self.config.to_dict(),
            "exec": self.process.to_dict() if self.process is not None else None,
            "addr": self.addr,
            "token": self.token,
            "unseal_keys": list(self.unseal_keys),
            "cluster": self.cluster,
            "pending_join": self.pending_join,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Node:
        """Rebuild and validate a node from :meth:`to_dict` output."""
        config_data = data.get("config")
        if not isinstance(config_data, Mapping):
            raise ValidationError("Node record is missing its 'config' object.")
        exec_data = data.get("exec")
        keys = data.get("unseal_keys") or []
        if not isinstance(keys, list):
            raise ValidationError("Node field 'unseal_keys' must be a list.")
        node = cls(
            name=str(data.get("name") or ""),
            product=str(data.get("type") or ""),
            config=InstanceConfig.from_dict(config_data),
            process=ProcessHandle.from_dict(exec_data) if isinstance(exec_data, Mapping) else None,
            addr=str(data.get("addr") or ""),
            token=str(data.get("token") or ""),
            unseal_keys=[str(key) for key in keys],
            cluster=str(data.get("cluster") or ""),
            pending_join=str(data.get("pending_join") or ""),
        )
        node.validate()
        return node


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class NodeManager:
    """Lifecycle operations over nodes persisted in a :class:`StateRegistry`."""

    def __init__(
        self,
        registry: StateRegistry,
        templates: TemplateEngine,
        *,
        inspector: ProcessInspector | None = None,
        readiness: ReadinessConfig | None = None,
        backoff: Backoff | None = None,
        http_timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.registry = registry
        self.templates = templates
        self.inspector = inspector or PsutilInspector()
        self.readiness = readiness or ReadinessConfig()
        self.backoff = backoff or Backoff()
        self.http_timeout = http_timeout
        self.transport = transport
        self.env = env

    # ------------------------------------------------------------------
    # Registry access
    # ------------------------------------------------------------------
    def directory(self, node: Node | str) -> Path:
        """Working directory of *node*."""
        name = node.name if isinstance(node, Node) else node
        return self.registry.node_dir(name)

    def exists(self, name: str) -> bool:
        """Return ``True`` when *name* has a persisted record."""
        return self.registry.node_exists(name)

    def list_nodes(self) -> list[str]:
        """Names of every persisted node."""
        return self.registry.list_nodes()

    def load(self, name: str) -> Node:
        """Load and validate the persisted record of *name*."""
        data = self.registry.read_node(name)
        try:
            node = Node.from_dict(data)
        except ValidationError as exc:
            raise ValidationError(f"Invalid node ({name}) configuration: {exc}") from exc
        if node.name != name:
            raise ConsistencyError(f"Node record in directory {name!r} is named {node.name!r}.")
        return node

    def save(self, node: Node) -> None:
        """Validate and persist *node*."""
        try:
            node.validate()
        except ValidationError as exc:
            raise ValidationError(f"Failed validating node {node.name!r} prior to saving: {exc}") from exc
        self.registry.write_node(node.name, node.to_dict())

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def build(
        self,
        name: str,
        product: str,
        options: Sequence[object],
        *,
        force: bool = False,
    ) -> Node:
        """Assemble a node from typed options and persist it without spawning."""
        if self.exists(name) and not force:
            raise StateConflictError(
                f"Node {name!r} already exists; use force to replace it."
            )
        node = Node(name=name, product=product, config=InstanceConfig.from_options(options))
        node.validate()
        if self.exists(name):
            self.clean(name, force=True)
        self.save(node)
        LOGGER.info("Built node %s (%s)", name, product or "auto")
        return node

    # ------------------------------------------------------------------
    # Addresses and clients
    # ------------------------------------------------------------------
    def connect_info(self, node: Node) -> ConnectInfo:
        """Where and how to reach *node*'s API."""
        directory = self.directory(node)
        if node.addr:
            parts = urlsplit(node.addr)
            tls = parts.scheme == "https"
            ca_path = directory / TLS_CA_NAME if tls and (directory / TLS_CA_NAME).exists() else None
            return ConnectInfo(parts.netloc, tls, ca_path)
        return node.config.connect_info(directory)

    def connect_url(self, node: Node) -> str:
        """Base URL of *node*'s API."""
        if node.addr:
            return node.addr.rstrip("/")
        return self.connect_info(node).url

    def client(self, node: Node, *, token: str | None = None) -> ServerClient:
        """Return an API client authenticated with *node*'s token."""
        info = self.connect_info(node)
        return ServerClient(
            self.connect_url(node),
            node.token if token is None else token,
            ca_path=info.ca_path if info.tls else None,
            timeout=self.http_timeout,
            transport=self.transport,
        )

    def get_env(self, node: Node) -> dict[str, str]:
        """Environment variables that point the server CLI at *node*."""
        info = self.connect_info(node)
        env = {"VAULT_ADDR": self.connect_url(node), "VAULT_TOKEN": node.token}
        if info.tls and info.ca_path is not None:
            env["VAULT_CACERT"] = str(info.ca_path)
        return env

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------
    def is_running(self, node: Node) -> bool:
        """Return ``True`` when the recorded PID is still our server."""
        return node.process is not None and node.process.is_running(self.inspector)

    def start(self, node: Node) -> list[str]:
        """Stop any previous process, wipe the node directory and launch fresh."""
        try:
            self.kill(node)
        except NotFoundError:
            LOGGER.debug("Node %s had no persisted record to stop", node.name)
        self.registry.remove_node(node.name)
        return self.resume(node)

    def resume(self, node: Node) -> list[str]:
        """Re-render configuration and spawn the server from existing state."""
        warnings: list[str] = []
        if node.is_dev:
            warnings.append(
                f"Node {node.name} is a dev mode instance; its storage was not persistent "
                "and will have different state."
            )
        handle = self._build_process(node)
        handle.binary = resolve_binary(node.product, self.env)
        handle.start(self.inspector, self.readiness)
        node.process = handle
        self.save(node)
        LOGGER.info("Started node %s (pid %s)", node.name, handle.pid)
        return warnings

    def kill(self, node: Node) -> bool:
        """Stop the node's process; fall back to the on-disk PID when unknown."""
        handle = node.process
        if handle is None or handle.pid == 0:
            disk = self.load(node.name)
            handle = disk.process
        if handle is None:
            return False
        stopped = handle.kill(self.inspector)
        if node.process is not None:
            node.process.pid = 0
        if self.exists(node.name):
            self.save(node)
        return stopped

    def clean(self, name: str, *, force: bool = False) -> list[str]:
        """Stop and remove node *name*; succeed when it is already gone.

        With *force* a record that cannot be loaded is reported as a warning
        and its directory removed regardless.
        """
        warnings: list[str] = []
        if not self.registry.node_dir(name).exists():
            return [f"Node {name} was already removed."]
        try:
            node = self.load(name)
        except NotFoundError:
            node = None
        except DevbaoError as exc:
            if not force:
                raise DevbaoError(f"Failed to load node {name} to determine state: {exc}") from exc
            LOGGER.warning("Ignoring unreadable record for node %s: %s", name, exc)
            warnings.append(f"Ignored unreadable record for node {name}: {exc}")
            node = None

        if node is not None and self.is_running(node):
            assert node.process is not None
            LOGGER.info("Stopping node %s (pid %s) prior to removal", name, node.process.pid)
            node.process.kill(self.inspector)
        self.registry.remove_node(name)
        return warnings

    def _build_process(self, node: Node) -> ProcessHandle:
        try:
            node.validate()
        except ValidationError as exc:
            raise ValidationError(f"Failed to validate node definition: {exc}") from exc
        directory = self.directory(node)
        directory.mkdir(parents=True, exist_ok=True)

        connect_address = self.connect_info(node).address
        args = node.config.args(directory)
        rendered = node.config.render(directory, self.templates)
        if rendered is None and not node.is_dev:
            raise ValidationError(
                "Expected non-dev server to have non-empty configuration; "
                "are listeners or storage missing?"
            )
        if rendered is not None:
            path = directory / INSTANCE_CONFIG_NAME
            write_text_atomic(path, rendered)
            args.append(f"-config={path}")
        return ProcessHandle(args=args, directory=str(directory), connect_address=connect_address)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    def initialize(self, node: Node) -> None:
        """Initialize the server and store its root token and key shares."""
        with self.client(node) as client:
            try:
                initialized = client.init_status()
            except RemoteAPIError as exc:
                raise RemoteAPIError(f"Failed to read initialization status of node {node.name}: {exc}") from exc
            if initialized:
                raise StateConflictError(f"Node {node.name} is already initialized.")
            if node.token or node.unseal_keys:
                raise StateConflictError(
                    f"Refusing to overwrite existing token or unseal keys of node {node.name}."
                )
            result = client.init(
                shares=INIT_SHARES,
                threshold=INIT_THRESHOLD,
                recovery=bool(node.config.seals),
            )

        if result.keys_base64 and result.recovery_keys_base64:
            raise RemoteAPIError(
                "Both unseal keys and recovery keys were provided in the init response."
            )
        node.unseal_keys = list(result.keys_base64 or result.recovery_keys_base64)
        node.token = result.root_token
        self.save(node)
        LOGGER.info("Initialized node %s with %d key shares", node.name, len(node.unseal_keys))

    def unseal(self, node: Node) -> bool:
        """Submit stored key shares until the node reports unsealed.

        Returns ``False`` when the node was already unsealed before any key
        was sent and ``True`` when this call unsealed it.
        """
        if not node.unseal_keys:
            raise ValidationError(f"No unseal keys stored for node {node.name}.")
        with self.client(node) as client:
            for index, key in enumerate(node.unseal_keys):
                status = client.seal_status()
                if not status.sealed:
                    if index == 0:
                        return False
                    return True
                client.unseal(key)
            if client.seal_status().sealed:
                raise RemoteAPIError(
                    f"Node {node.name} is still sealed after submitting all "
                    f"{len(node.unseal_keys)} stored key shares."
                )
        LOGGER.info("Unsealed node %s", node.name)
        return True

    def seal(self, node: Node) -> None:
        """Seal the node."""
        with self.client(node) as client:
            client.seal()

    def set_token(self, node: Node, token: str) -> bool:
        """Replace the stored token; validate it against the API when running."""
        node.token = token
        validated = False
        if self.is_running(node):
            with self.client(node) as client:
                try:
                    client.list_mounts()
                except RemoteAPIError as exc:
                    raise RemoteAPIError(f"Token validation failed: {exc}") from exc
            validated = True
        self.save(node)
        return validated

    def set_address(self, node: Node, address: str) -> bool:
        """Override the connection URL; validate reachability when running."""
        node.addr = address
        node.validate()
        validated = False
        if self.is_running(node):
            with self.client(node) as client:
                try:
                    client.init_status()
                except RemoteAPIError as exc:
                    raise RemoteAPIError(f"Address validation failed: {exc}") from exc
            validated = True
        self.save(node)
        return validated

    def set_unseal_keys(self, node: Node, keys: Sequence[str]) -> None:
        """Replace the stored key shares."""
        node.unseal_keys = list(keys)
        self.save(node)

    # ------------------------------------------------------------------
    # Post-unseal setup and stabilisation
    # ------------------------------------------------------------------
    def post_unseal(self, node: Node) -> list[str]:
        """Enable the node's configured audit devices that are not yet present."""
        if not node.config.audits:
            return []
        directory = self.directory(node)
        enabled: list[str] = []
        with self.client(node) as client:
            existing = retry_with_backoff(
                client.list_audit,
                max_attempts=5,
                base_delay=self.backoff.initial_delay,
                max_delay=self.backoff.max_delay,
                retry_on=(RemoteAPIError,),
                sleep=self.backoff.sleep,
            )
            for audit in node.config.audits:
                name = audit.device_name
                if f"{name}/" in existing:
                    continue
                try:
                    client.enable_audit(name, audit.kind, audit.options(directory))
                except RemoteAPIError as exc:
                    raise RemoteAPIError(f"Failed to enable audit device {name} on node {node.name}: {exc}") from exc
                enabled.append(name)
        return enabled

    def wait_until_responsive(self, node: Node) -> None:
        """Poll until the API answers a seal-status request."""
        with self.client(node) as client:
            poll_until(
                lambda: client.seal_status() is not None,
                backoff=self.backoff,
                description=f"node {node.name} to respond",
            )

    def wait_until_unsealed(self, node: Node) -> None:
        """Poll until the node reports unsealed."""
        with self.client(node) as client:
            poll_until(
                lambda: not client.seal_status().sealed,
                backoff=self.backoff,
                description=f"node {node.name} to unseal",
            )

    def validate_running(self, node: Node) -> None:
        """Raise :class:`ProcessError` unless *node* has a live server process."""
        if node.process is None:
            raise ProcessError(f"Node {node.name} has no recorded process.")
        node.process.validate_running(self.inspector)


__all__ = ["INSTANCE_CONFIG_NAME", "Node", "NodeManager", "PRODUCT_TYPES"]
