"""Tests for the scripted feature profiles."""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from devbao.api import ServerClient
from devbao.errors import ValidationError
from devbao.instance_config import InmemStorage, TCPListener
from devbao.node import NodeManager
from devbao.profiles import ProfileError, apply_profile, get_profile, list_profiles, remove_profile

if TYPE_CHECKING:
    from conftest import FakeNetwork, FakeServer


@pytest.fixture
def ready(nodes: NodeManager, network: FakeNetwork) -> tuple[ServerClient, FakeServer]:
    """An initialized, unsealed node and an authenticated client for it."""
    node = nodes.build("alpha", "", [TCPListener("127.0.0.1:8200"), InmemStorage()])
    nodes.start(node)
    nodes.initialize(node)
    nodes.unseal(node)
    return nodes.client(node), network.server("alpha")


def test_list_profiles_in_application_order() -> None:
    """Profiles are listed with their descriptions."""
    names = [profile.name for profile in list_profiles()]

    assert names == ["pki", "transit", "userpass", "kv"]
    assert get_profile("kv").to_dict()["mounts"] == ["secret"]


def test_unknown_profile_is_rejected(ready: tuple[ServerClient, FakeServer]) -> None:
    """Unknown profile names list the known ones."""
    client, _ = ready

    with pytest.raises(ValidationError, match="expected one of: pki, transit, userpass, kv"):
        apply_profile(client, "ldap")


def test_pki_profile_builds_two_tier_hierarchy(ready: tuple[ServerClient, FakeServer]) -> None:
    """The pki profile mounts both CAs, cross-signs and creates a role."""
    client, server = ready

    assert apply_profile(client, "pki", sleep=lambda _: None) == []

    assert {"pki-root/", "pki-int/"} <= set(server.mounts)
    assert server.logical["pki-root/root/sign-intermediate"]["csr"].startswith("-----BEGIN CERTIFICATE REQUEST")
    assert server.logical["pki-int/roles/testing"]["allow_any_name"] is True
    assert server.logical["pki-int/config/cluster"]["path"] == "http://127.0.0.1:8200/v1/pki-int"
    patches = [path for method, path, _ in server.requests if method == "PATCH"]
    assert patches[0] == "pki-root/issuer/root-x1"
    assert patches[-1].startswith("pki-int/issuer/issuer-")


def test_profile_is_skipped_when_already_applied(ready: tuple[ServerClient, FakeServer]) -> None:
    """Re-applying a profile whose mounts exist only warns."""
    client, server = ready
    apply_profile(client, "transit")
    writes = len(server.requests)

    warnings = apply_profile(client, "transit")

    assert warnings == ["Profile transit is already applied on http://127.0.0.1:8200; skipping."]
    assert not any(method == "POST" for method, _, _ in server.requests[writes:])


def test_userpass_profile_apply_and_remove(ready: tuple[ServerClient, FakeServer]) -> None:
    """userpass enables the auth method with policies; removal undoes both."""
    client, server = ready

    apply_profile(client, "userpass")

    assert "userpass/" in server.auth
    assert set(server.policies) == {"admin", "reader"}
    assert server.logical["auth/userpass/users/reader"]["token_policies"] == ["reader"]

    remove_profile(client, "userpass")

    assert "userpass/" not in server.auth
    assert server.policies == {}


def test_remove_profile_unmounts(ready: tuple[ServerClient, FakeServer]) -> None:
    """Removal disables every mount the profile created."""
    client, server = ready
    apply_profile(client, "pki")

    remove_profile(client, "pki")

    assert "pki-root/" not in server.mounts
    assert "pki-int/" not in server.mounts


def test_server_warnings_are_collected(ready: tuple[ServerClient, FakeServer]) -> None:
    """Warnings in API responses are returned with their path."""
    client, server = ready
    server.response_warnings["transit/keys/auto-unseal"] = ["key type is deprecated"]

    warnings = apply_profile(client, "transit")

    assert warnings == ["from transit/keys/auto-unseal:\n\tkey type is deprecated"]


def test_kv_write_is_retried_until_mount_upgrades(ready: tuple[ServerClient, FakeServer]) -> None:
    """The sample secret write retries while the mount is not ready."""
    client, server = ready
    server.failures[("POST", "secret/data/sample")] = (400, ["upgrading"])
    sleeps: list[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            del server.failures[("POST", "secret/data/sample")]

    apply_profile(client, "kv", sleep=sleep)

    assert len(sleeps) == 2
    assert server.logical["secret/data/sample"]["data"]["username"] == "devbao"


def test_failure_carries_collected_warnings(ready: tuple[ServerClient, FakeServer]) -> None:
    """A failing step names itself and keeps earlier warnings."""
    client, server = ready
    server.response_warnings["pki-root/root/generate/internal"] = ["short ttl"]
    server.failures[("POST", "pki-int/config/acme")] = (500, ["acme unavailable"])

    with pytest.raises(ProfileError, match="Profile pki: failed to write pki-int/config/acme") as excinfo:
        apply_profile(client, "pki")

    assert excinfo.value.warnings == ["from pki-root/root/generate/internal:\n\tshort ttl"]
    assert excinfo.value.errors == ["acme unavailable"]
    assert excinfo.value.status == 500


def test_pki_profile_reapplies_after_partial_failure(ready: tuple[ServerClient, FakeServer]) -> None:
    """A pki apply that failed partway is torn down and applied again."""
    client, server = ready
    server.failures[("POST", "pki-int/config/acme")] = (500, ["acme unavailable"])
    with pytest.raises(ProfileError):
        apply_profile(client, "pki")
    del server.failures[("POST", "pki-int/config/acme")]
    before = len(server.requests)

    warnings = apply_profile(client, "pki")

    assert warnings == ["Profile pki was partially applied on http://127.0.0.1:8200; re-applying from scratch."]
    calls = [(method, path) for method, path, _ in server.requests[before:]]
    assert calls.index(("DELETE", "sys/mounts/pki-root")) < calls.index(("POST", "sys/mounts/pki-root"))
    assert {"pki-root/", "pki-int/"} <= set(server.mounts)
    assert server.logical["pki-int/roles/testing"]["allow_any_name"] is True
    assert get_profile("pki").is_applied(client)


def test_userpass_profile_resumes_with_enabled_auth_method(ready: tuple[ServerClient, FakeServer]) -> None:
    """An auth method left enabled by a failed apply is kept on the next run."""
    client, server = ready
    server.failures[("POST", "auth/userpass/users/reader")] = (500, ["storage busy"])
    with pytest.raises(ProfileError, match="failed to write auth/userpass/users/reader"):
        apply_profile(client, "userpass")
    del server.failures[("POST", "auth/userpass/users/reader")]
    before = len(server.requests)

    assert apply_profile(client, "userpass") == []

    assert ("POST", "sys/auth/userpass") not in [(method, path) for method, path, _ in server.requests[before:]]
    assert server.logical["auth/userpass/users/reader"]["token_policies"] == ["reader"]


def test_kv_profile_uses_existing_kv_mount(ready: tuple[ServerClient, FakeServer]) -> None:
    """A secret/ mount that is already KV only gets the sample secret."""
    client, server = ready
    server.mounts["secret/"] = {"type": "kv", "options": {"version": "2"}}

    assert apply_profile(client, "kv") == []

    assert not any(path == "sys/mounts/secret" for _, path, _ in server.requests)
    assert server.logical["secret/data/sample"]["data"]["password"] == "devbao"


def test_profile_rejects_mount_of_another_type(ready: tuple[ServerClient, FakeServer]) -> None:
    """A profile path taken by a different engine is an error."""
    client, server = ready
    server.mounts["transit/"] = {"type": "kv"}

    with pytest.raises(ProfileError, match="transit is already in use by a kv secrets engine, not transit"):
        apply_profile(client, "transit")

    assert server.mounts["transit/"] == {"type": "kv"}
