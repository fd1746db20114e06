"""Thin client for the server's administrative HTTP API.

Only the endpoints the node, cluster and profile layers rely on are wrapped
with typed helpers; everything else goes through :meth:`ServerClient.read`,
:meth:`ServerClient.write`, :meth:`ServerClient.delete` and
:meth:`ServerClient.merge_patch`. Every failure surfaces as
:class:`~devbao.errors.RemoteAPIError` with the server's error list attached.
"""
from __future__ import annotations

import logging
import ssl
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .errors import RemoteAPIError

LOGGER = logging.getLogger(__name__)

TOKEN_HEADER = "X-Vault-Token"
MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"
DEFAULT_TIMEOUT = 10.0


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class APIResponse:
    """Decoded JSON body of a logical response."""

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> dict[str, Any]:
        """The ``data`` object, or an empty mapping."""
        data = self.raw.get("data")
        return data if isinstance(data, dict) else {}

    @property
    def warnings(self) -> list[str]:
        """Server-side warnings attached to the response."""
        warnings = self.raw.get("warnings")
        if not isinstance(warnings, list):
            return []
        return [str(item) for item in warnings]


@dataclass(frozen=True)
class SealStatus:
    """Subset of ``sys/seal-status``."""

    sealed: bool
    initialized: bool = True
    progress: int = 0
    threshold: int = 0
    shares: int = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> SealStatus:
        """Decode the unwrapped status body."""
        if "sealed" not in payload:
            raise RemoteAPIError("Seal status response is missing the 'sealed' field.")
        return cls(
            sealed=bool(payload["sealed"]),
            initialized=bool(payload.get("initialized", True)),
            progress=int(payload.get("progress") or 0),
            threshold=int(payload.get("t") or 0),
            shares=int(payload.get("n") or 0),
        )


@dataclass(frozen=True)
class InitResult:
    """Credentials returned by ``sys/init``."""

    root_token: str
    keys_base64: list[str] = field(default_factory=list)
    recovery_keys_base64: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LeaderStatus:
    """Subset of ``sys/leader``."""

    is_self: bool
    ha_enabled: bool = False
    leader_address: str = ""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class ServerClient:
    """Administrative API client bound to one node."""

    def __init__(
        self,
        address: str,
        token: str = "",
        *,
        ca_path: Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.address = address.rstrip("/")
        self.token = token
        headers = {TOKEN_HEADER: token} if token else {}
        verify: bool | ssl.SSLContext = True
        if ca_path is not None and ca_path.exists():
            verify = ssl.create_default_context(cafile=str(ca_path))
        self._client = httpx.Client(
            base_url=self.address,
            headers=headers,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    def __enter__(self) -> ServerClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying connection pool."""
        self._client.close()

    # ------------------------------------------------------------------
    # Core request handling
    # ------------------------------------------------------------------
    def request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        allow_missing: bool = False,
    ) -> APIResponse | None:
        """Issue ``method`` against ``/v1/<path>`` and decode the body.

        Returns ``None`` for a 404 when *allow_missing* is set.
        """
        url = f"/v1/{path.lstrip('/')}"
        try:
            response = self._client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise RemoteAPIError(f"{method} {url} on {self.address} failed: {exc}") from exc

        if response.status_code == 404 and allow_missing:
            return None
        body = _decode_body(response)
        if response.status_code >= 400:
            errors = body.get("errors") if isinstance(body.get("errors"), list) else []
            detail = "; ".join(str(item) for item in errors) or response.reason_phrase
            raise RemoteAPIError(
                f"{method} {url} on {self.address} returned {response.status_code}: {detail}",
                status=response.status_code,
                errors=[str(item) for item in errors],
            )
        LOGGER.debug("%s %s -> %s", method, url, response.status_code)
        return APIResponse(body)

    def _call(self, method: str, path: str, json: Mapping[str, Any] | None = None) -> APIResponse:
        response = self.request(method, path, json=json)
        assert response is not None
        return response

    # ------------------------------------------------------------------
    # Generic logical operations
    # ------------------------------------------------------------------
    def read(self, path: str) -> APIResponse | None:
        """Read *path*; ``None`` when nothing is stored there."""
        return self.request("GET", path, allow_missing=True)

    def write(self, path: str, data: Mapping[str, Any] | None = None) -> APIResponse:
        """Write *data* to *path*."""
        return self._call("POST", path, dict(data or {}))

    def delete(self, path: str) -> APIResponse:
        """Delete *path*."""
        return self._call("DELETE", path)

    def merge_patch(self, path: str, data: Mapping[str, Any]) -> APIResponse:
        """Apply a JSON merge patch to *path*."""
        response = self.request(
            "PATCH",
            path,
            json=dict(data),
            headers={"Content-Type": MERGE_PATCH_CONTENT_TYPE},
        )
        assert response is not None
        return response

    # ------------------------------------------------------------------
    # Initialization and sealing
    # ------------------------------------------------------------------
    def init_status(self) -> bool:
        """Return whether the server has been initialized."""
        raw = self._call("GET", "sys/init").raw
        if "initialized" not in raw:
            raise RemoteAPIError("Init status response is missing the 'initialized' field.")
        return bool(raw["initialized"])

    def init(self, *, shares: int, threshold: int, recovery: bool = False) -> InitResult:
        """Initialize the server with operator (or recovery) key shares."""
        if recovery:
            body = {"recovery_shares": shares, "recovery_threshold": threshold}
        else:
            body = {"secret_shares": shares, "secret_threshold": threshold}
        raw = self._call("PUT", "sys/init", body).raw
        token = raw.get("root_token")
        if not isinstance(token, str) or not token:
            raise RemoteAPIError("Init response did not include a root token.")
        return InitResult(
            root_token=token,
            keys_base64=[str(key) for key in raw.get("keys_base64") or []],
            recovery_keys_base64=[str(key) for key in raw.get("recovery_keys_base64") or []],
        )

    def seal_status(self) -> SealStatus:
        """Return the current seal state."""
        return SealStatus.from_payload(self._call("GET", "sys/seal-status").raw)

    def unseal(self, key: str) -> SealStatus:
        """Submit one unseal key share."""
        return SealStatus.from_payload(self._call("PUT", "sys/unseal", {"key": key}).raw)

    def seal(self) -> None:
        """Seal the server."""
        self._call("PUT", "sys/seal")

    # ------------------------------------------------------------------
    # HA and Raft
    # ------------------------------------------------------------------
    def leader(self) -> LeaderStatus:
        """Return whether this node currently holds HA leadership."""
        raw = self._call("GET", "sys/leader").raw
        return LeaderStatus(
            is_self=bool(raw.get("is_self", False)),
            ha_enabled=bool(raw.get("ha_enabled", False)),
            leader_address=str(raw.get("leader_address") or ""),
        )

    def raft_join(
        self,
        leader_api_addr: str,
        *,
        retry: bool = True,
        leader_ca_cert: str | None = None,
    ) -> bool:
        """Ask this node to join the Raft cluster led by *leader_api_addr*."""
        body: dict[str, Any] = {"leader_api_addr": leader_api_addr, "retry": retry}
        if leader_ca_cert:
            body["leader_ca_cert"] = leader_ca_cert
        raw = self._call("POST", "sys/storage/raft/join", body).raw
        return bool(raw.get("joined", False))

    def raft_configuration(self) -> list[dict[str, Any]]:
        """Return the Raft server list."""
        data = self._call("GET", "sys/storage/raft/configuration").data
        config = data.get("config")
        servers = config.get("servers") if isinstance(config, dict) else None
        if not isinstance(servers, list):
            raise RemoteAPIError("Raft configuration response is missing config.servers.")
        return [server for server in servers if isinstance(server, dict)]

    def raft_remove_peer(self, server_id: str) -> None:
        """Remove *server_id* from the Raft configuration."""
        self._call("POST", "sys/storage/raft/remove-peer", {"server_id": server_id})

    def ha_status(self) -> list[dict[str, Any]]:
        """Return the HA node list with API and cluster addresses."""
        response = self._call("GET", "sys/ha-status")
        nodes = response.data.get("nodes", response.raw.get("nodes"))
        if not isinstance(nodes, list):
            raise RemoteAPIError("HA status response is missing the node list.")
        return [node for node in nodes if isinstance(node, dict)]

    # ------------------------------------------------------------------
    # Mounts, auth methods, policies and audit devices
    # ------------------------------------------------------------------
    def list_mounts(self) -> dict[str, Any]:
        """Return secret engine mounts keyed by ``<path>/``."""
        response = self._call("GET", "sys/mounts")
        return response.data or {
            key: value for key, value in response.raw.items() if key.endswith("/")
        }

    def mount(
        self,
        path: str,
        engine_type: str,
        *,
        config: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> None:
        """Enable a secrets engine at *path*."""
        body: dict[str, Any] = {"type": engine_type}
        if config:
            body["config"] = dict(config)
        if options:
            body["options"] = dict(options)
        self._call("POST", f"sys/mounts/{path}", body)

    def unmount(self, path: str) -> None:
        """Disable the secrets engine at *path*."""
        self._call("DELETE", f"sys/mounts/{path}")

    def list_auth(self) -> dict[str, Any]:
        """Return enabled auth methods keyed by ``<path>/``."""
        response = self._call("GET", "sys/auth")
        return response.data or {
            key: value for key, value in response.raw.items() if key.endswith("/")
        }

    def enable_auth(self, path: str, method_type: str) -> None:
        """Enable an auth method at *path*."""
        self._call("POST", f"sys/auth/{path}", {"type": method_type})

    def disable_auth(self, path: str) -> None:
        """Disable the auth method at *path*."""
        self._call("DELETE", f"sys/auth/{path}")

    def put_policy(self, name: str, policy: str) -> None:
        """Create or replace an ACL policy."""
        self._call("PUT", f"sys/policies/acl/{name}", {"policy": policy})

    def delete_policy(self, name: str) -> None:
        """Delete an ACL policy."""
        self._call("DELETE", f"sys/policies/acl/{name}")

    def list_audit(self) -> dict[str, Any]:
        """Return enabled audit devices keyed by ``<name>/``."""
        response = self._call("GET", "sys/audit")
        return response.data or {
            key: value for key, value in response.raw.items() if key.endswith("/")
        }

    def enable_audit(self, name: str, device_type: str, options: Mapping[str, Any]) -> None:
        """Enable an audit device called *name*."""
        self._call("PUT", f"sys/audit/{name}", {"type": device_type, "options": dict(options)})


def _decode_body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError as exc:
        if response.status_code >= 400:
            return {"errors": [response.text.strip()]}
        raise RemoteAPIError(
            f"Server returned a non-JSON body for {response.request.url}: {exc}",
            status=response.status_code,
        ) from exc
    if not isinstance(body, dict):
        raise RemoteAPIError(
            f"Server returned an unexpected JSON shape for {response.request.url}.",
            status=response.status_code,
        )
    return body


__all__ = [
    "APIResponse",
    "InitResult",
    "LeaderStatus",
    "SealStatus",
    "ServerClient",
]
