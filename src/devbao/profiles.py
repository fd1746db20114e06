"""Scripted feature sets applied to a ready node over its API.

Each profile is a fixed sequence of administrative calls together with the
exact inverse used by ``remove``. Applying a profile that already finished is
a no-op reported as a warning, so re-running a cluster or node start with the
same profiles is safe. Mounts and auth methods already enabled with the right
type are kept, so an apply that failed partway can simply be run again; the
pki profile instead tears its leftovers down first since its issuers and keys
cannot be generated twice under the same names.

Server warnings returned by individual calls are collected and handed back to
the caller; when a call fails, :class:`ProfileError` carries everything
collected up to that point.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .api import APIResponse, ServerClient
from .errors import RemoteAPIError, ValidationError
from .retry import retry_with_backoff

LOGGER = logging.getLogger(__name__)


class ProfileError(RemoteAPIError):
    """Raised when a profile step fails; carries the warnings collected so far."""

    def __init__(
        self,
        message: str,
        *,
        warnings: list[str] | None = None,
        status: int | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message, status=status, errors=errors)
        self.warnings = list(warnings or [])


# ---------------------------------------------------------------------------
# Script session
# ---------------------------------------------------------------------------
class _Session:
    """Wrap a client so every call records warnings and names its failure."""

    def __init__(self, client: ServerClient, profile: str, sleep: Callable[[float], None]) -> None:
        self.client = client
        self.profile = profile
        self.sleep = sleep
        self.warnings: list[str] = []

    def fail(self, action: str, path: str, exc: RemoteAPIError) -> ProfileError:
        return ProfileError(
            f"Profile {self.profile}: failed to {action} {path}: {exc}",
            warnings=self.warnings,
            status=exc.status,
            errors=exc.errors,
        )

    def _collect(self, path: str, response: APIResponse) -> APIResponse:
        for warning in response.warnings:
            self.warnings.append(f"from {path}:\n\t{warning}")
        return response

    def write(self, path: str, data: Mapping[str, Any], *, retries: int = 1) -> APIResponse:
        try:
            response = retry_with_backoff(
                lambda: self.client.write(path, data),
                max_attempts=retries,
                base_delay=0.25,
                max_delay=2.0,
                retry_on=(RemoteAPIError,),
                sleep=self.sleep,
            )
        except RemoteAPIError as exc:
            raise self.fail("write", path, exc) from exc
        return self._collect(path, response)

    def patch(self, path: str, data: Mapping[str, Any]) -> APIResponse:
        try:
            response = self.client.merge_patch(path, data)
        except RemoteAPIError as exc:
            raise self.fail("patch", path, exc) from exc
        return self._collect(path, response)

    def _exists(self, table: Mapping[str, Any], path: str, expected_type: str, kind: str) -> bool:
        """True when *path* is already enabled as *expected_type*."""
        entry = table.get(f"{path}/")
        if entry is None:
            return False
        found = entry.get("type") if isinstance(entry, Mapping) else None
        if found != expected_type:
            raise ProfileError(
                f"Profile {self.profile}: {path} is already in use by a {found} {kind}, not {expected_type}.",
                warnings=self.warnings,
            )
        LOGGER.info("Profile %s: %s %s already enabled at %s", self.profile, expected_type, kind, path)
        return True

    def mount(
        self,
        path: str,
        engine_type: str,
        *,
        config: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            mounts = self.client.list_mounts()
        except RemoteAPIError as exc:
            raise self.fail("list mounts before mounting", path, exc) from exc
        if self._exists(mounts, path, engine_type, "secrets engine"):
            return
        try:
            self.client.mount(path, engine_type, config=config, options=options)
        except RemoteAPIError as exc:
            raise self.fail("mount", path, exc) from exc

    def unmount(self, path: str) -> None:
        try:
            self.client.unmount(path)
        except RemoteAPIError as exc:
            raise self.fail("unmount", path, exc) from exc

    def enable_auth(self, path: str, method_type: str) -> None:
        try:
            methods = self.client.list_auth()
        except RemoteAPIError as exc:
            raise self.fail("list auth methods before enabling", path, exc) from exc
        if self._exists(methods, path, method_type, "auth method"):
            return
        try:
            self.client.enable_auth(path, method_type)
        except RemoteAPIError as exc:
            raise self.fail("enable auth method", path, exc) from exc

    def disable_auth(self, path: str) -> None:
        try:
            self.client.disable_auth(path)
        except RemoteAPIError as exc:
            raise self.fail("disable auth method", path, exc) from exc

    def put_policy(self, name: str, policy: str) -> None:
        try:
            self.client.put_policy(name, policy)
        except RemoteAPIError as exc:
            raise self.fail("write policy", name, exc) from exc

    def delete_policy(self, name: str) -> None:
        try:
            self.client.delete_policy(name)
        except RemoteAPIError as exc:
            raise self.fail("delete policy", name, exc) from exc


# ---------------------------------------------------------------------------
# pki
# ---------------------------------------------------------------------------
PKI_ROOT_MOUNT = "pki-root"
PKI_INT_MOUNT = "pki-int"


def _pki_urls() -> dict[str, object]:
    return {
        "issuing_certificates": "{{cluster_aia_path}}/issuer/{{issuer_id}}/der",
        "crl_distribution_points": "{{cluster_aia_path}}/issuer/{{issuer_id}}/crl/der",
        "ocsp_servers": "{{cluster_aia_path}}/ocsp",
        "enable_templating": True,
    }


def _apply_pki(session: _Session) -> None:
    address = session.client.address

    session.mount(PKI_ROOT_MOUNT, "pki", config={"max_lease_ttl": "87600h"})
    root = session.write(
        f"{PKI_ROOT_MOUNT}/root/generate/internal",
        {
            "common_name": "Example Root X1",
            "issuer_name": "root-x1",
            "key_name": "key-root-x1",
            "key_type": "ec",
            "key_bits": "256",
            "ttl": "87600h",
        },
    )
    root_certificate = root.data.get("certificate")
    if not isinstance(root_certificate, str) or not root_certificate:
        raise session.fail(
            "read certificate from",
            f"{PKI_ROOT_MOUNT}/root/generate/internal",
            RemoteAPIError("response carried no certificate"),
        )
    session.patch(f"{PKI_ROOT_MOUNT}/issuer/root-x1", {"leaf_not_after_behavior": "permit"})
    session.write(
        f"{PKI_ROOT_MOUNT}/config/cluster",
        {"path": f"{address}/v1/{PKI_ROOT_MOUNT}", "aia_path": f"{address}/v1/{PKI_ROOT_MOUNT}"},
    )
    session.write(f"{PKI_ROOT_MOUNT}/config/urls", _pki_urls())
    session.write(f"{PKI_ROOT_MOUNT}/config/crl", {"auto_rebuild": True})

    session.mount(PKI_INT_MOUNT, "pki", config={"max_lease_ttl": "2160h"})
    session.write(
        f"{PKI_INT_MOUNT}/config/cluster",
        {"path": f"{address}/v1/{PKI_INT_MOUNT}", "aia_path": f"{address}/v1/{PKI_INT_MOUNT}"},
    )
    session.write(f"{PKI_INT_MOUNT}/config/urls", _pki_urls())
    session.write(f"{PKI_INT_MOUNT}/config/acme", {"enabled": True})
    session.write(f"{PKI_INT_MOUNT}/config/crl", {"auto_rebuild": True})

    csr_path = f"{PKI_INT_MOUNT}/intermediate/generate/internal"
    csr = session.write(
        csr_path,
        {"common_name": "Example Int R1", "key_name": "key-int-r1", "key_type": "ec", "key_bits": "256"},
    ).data.get("csr")
    if not isinstance(csr, str) or not csr:
        raise session.fail("read CSR from", csr_path, RemoteAPIError("response carried no csr"))

    sign_path = f"{PKI_ROOT_MOUNT}/root/sign-intermediate"
    certificate = session.write(sign_path, {"csr": csr, "ttl": "4380h"}).data.get("certificate")
    if not isinstance(certificate, str) or not certificate:
        raise session.fail("read certificate from", sign_path, RemoteAPIError("response carried no certificate"))

    import_path = f"{PKI_INT_MOUNT}/issuers/import/cert"
    session.write(import_path, {"pem_bundle": certificate})
    session.patch(
        f"{PKI_INT_MOUNT}/issuer/default",
        {"issuer_name": "int-r1", "leaf_not_after_behavior": "truncate"},
    )
    imported = session.write(import_path, {"pem_bundle": root_certificate}).data.get("imported_issuers")
    if not isinstance(imported, list) or not imported:
        raise session.fail(
            "import root issuer into",
            import_path,
            RemoteAPIError("no issuers were imported"),
        )
    session.patch(f"{PKI_INT_MOUNT}/issuer/{imported[0]}", {"issuer_name": "root-r1"})

    session.write(
        f"{PKI_INT_MOUNT}/roles/testing",
        {"allow_any_name": True, "enforce_hostnames": False, "key_type": "any", "ttl": "2160h"},
    )


def _remove_pki(session: _Session) -> None:
    session.unmount(PKI_INT_MOUNT)
    session.unmount(PKI_ROOT_MOUNT)


# ---------------------------------------------------------------------------
# transit
# ---------------------------------------------------------------------------
TRANSIT_MOUNT = "transit"
TRANSIT_KEY = "auto-unseal"


def _apply_transit(session: _Session) -> None:
    session.mount(TRANSIT_MOUNT, "transit")
    session.write(f"{TRANSIT_MOUNT}/keys/{TRANSIT_KEY}", {"type": "aes256-gcm96"})


def _remove_transit(session: _Session) -> None:
    session.unmount(TRANSIT_MOUNT)


# ---------------------------------------------------------------------------
# userpass
# ---------------------------------------------------------------------------
USERPASS_PATH = "userpass"
USERPASS_POLICIES = {
    "admin": 'path "*" {\n  capabilities = ["create", "read", "update", "patch", "delete", "list", "sudo"]\n}\n',
    "reader": 'path "*" {\n  capabilities = ["read", "list"]\n}\n',
}


def _apply_userpass(session: _Session) -> None:
    session.enable_auth(USERPASS_PATH, "userpass")
    for name, policy in USERPASS_POLICIES.items():
        session.put_policy(name, policy)
    for name in USERPASS_POLICIES:
        session.write(
            f"auth/{USERPASS_PATH}/users/{name}",
            {"password": name, "token_policies": [name]},
        )


def _remove_userpass(session: _Session) -> None:
    for name in reversed(list(USERPASS_POLICIES)):
        session.delete_policy(name)
    session.disable_auth(USERPASS_PATH)


# ---------------------------------------------------------------------------
# kv
# ---------------------------------------------------------------------------
KV_MOUNT = "secret"


def _apply_kv(session: _Session) -> None:
    session.mount(KV_MOUNT, "kv", options={"version": "2"})
    # A fresh KV v2 mount rejects writes until its upgrade finishes.
    session.write(
        f"{KV_MOUNT}/data/sample",
        {"data": {"username": "devbao", "password": "devbao"}},
        retries=5,
    )


def _remove_kv(session: _Session) -> None:
    session.unmount(KV_MOUNT)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Profile:
    """A named feature set with its setup and teardown scripts."""

    name: str
    description: str
    mounts: tuple[str, ...]
    auth_methods: tuple[str, ...]
    apply: Callable[[_Session], None]
    remove: Callable[[_Session], None]
    #: Path written by the last step; readable only once an apply finished.
    marker: str
    #: Leftovers of an interrupted apply are torn down before trying again.
    reset_partial: bool = False

    def is_partial(self, client: ServerClient) -> bool:
        """Return ``True`` when any mount or auth method of the profile exists."""
        if self.mounts:
            mounts = client.list_mounts()
            if any(f"{path}/" in mounts for path in self.mounts):
                return True
        if self.auth_methods:
            methods = client.list_auth()
            return any(f"{path}/" in methods for path in self.auth_methods)
        return False

    def is_applied(self, client: ServerClient) -> bool:
        """Return ``True`` when every mount and auth method exists and the last step ran."""
        if self.mounts:
            mounts = client.list_mounts()
            if not all(f"{path}/" in mounts for path in self.mounts):
                return False
        if self.auth_methods:
            methods = client.list_auth()
            if not all(f"{path}/" in methods for path in self.auth_methods):
                return False
        return client.read(self.marker) is not None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "name": self.name,
            "description": self.description,
            "mounts": list(self.mounts),
            "auth_methods": list(self.auth_methods),
        }


PROFILES: dict[str, Profile] = {
    profile.name: profile
    for profile in (
        Profile(
            name="pki",
            description="enable a two-tier root & intermediate CA hierarchy",
            mounts=(PKI_ROOT_MOUNT, PKI_INT_MOUNT),
            auth_methods=(),
            apply=_apply_pki,
            remove=_remove_pki,
            marker=f"{PKI_INT_MOUNT}/roles/testing",
            reset_partial=True,
        ),
        Profile(
            name="transit",
            description="enable transit for auto-unseal of another cluster",
            mounts=(TRANSIT_MOUNT,),
            auth_methods=(),
            apply=_apply_transit,
            remove=_remove_transit,
            marker=f"{TRANSIT_MOUNT}/keys/{TRANSIT_KEY}",
        ),
        Profile(
            name="userpass",
            description="enable userpass auth with sample admin and reader users",
            mounts=(),
            auth_methods=(USERPASS_PATH,),
            apply=_apply_userpass,
            remove=_remove_userpass,
            marker=f"auth/{USERPASS_PATH}/users/reader",
        ),
        Profile(
            name="kv",
            description="mount a KV v2 engine at secret/ with a sample secret",
            mounts=(KV_MOUNT,),
            auth_methods=(),
            apply=_apply_kv,
            remove=_remove_kv,
            marker=f"{KV_MOUNT}/data/sample",
        ),
    )
}


def list_profiles() -> list[Profile]:
    """Every known profile, in application order."""
    return list(PROFILES.values())


def get_profile(name: str) -> Profile:
    """Return profile *name* or raise :class:`ValidationError`."""
    try:
        return PROFILES[name]
    except KeyError:
        known = ", ".join(PROFILES)
        raise ValidationError(f"Unknown profile {name!r}; expected one of: {known}.") from None


def apply_profile(
    client: ServerClient,
    name: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Apply profile *name* through *client*; return collected warnings."""
    profile = get_profile(name)
    if profile.is_applied(client):
        return [f"Profile {name} is already applied on {client.address}; skipping."]
    session = _Session(client, name, sleep)
    if profile.reset_partial and profile.is_partial(client):
        LOGGER.warning("Profile %s was partially applied on %s; removing it first", name, client.address)
        session.warnings.append(
            f"Profile {name} was partially applied on {client.address}; re-applying from scratch."
        )
        profile.remove(session)
    profile.apply(session)
    LOGGER.info("Applied profile %s on %s", name, client.address)
    return session.warnings


def remove_profile(
    client: ServerClient,
    name: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Tear down profile *name* through *client*; return collected warnings."""
    profile = get_profile(name)
    session = _Session(client, name, sleep)
    profile.remove(session)
    LOGGER.info("Removed profile %s from %s", name, client.address)
    return session.warnings


__all__ = [
    "PROFILES",
    "Profile",
    "ProfileError",
    "apply_profile",
    "get_profile",
    "list_profiles",
    "remove_profile",
]
