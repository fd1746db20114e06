"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from devbao.templates import TemplateEngine, TemplateRenderError, hcl_bool, hcl_string, write_text_atomic


def _server_context(**overrides: object) -> dict[str, object]:
    context: dict[str, object] = {
        "node_name": "alpha",
        "listeners": [{"kind": "tcp", "address": "0.0.0.0:8200", "tls": None}],
        "disable_mlock": True,
        "storage": {"kind": "raft", "path": "/data/alpha/storage/raft", "node_id": "alpha"},
        "cluster_addr": "http://127.0.0.1:8201",
        "seals": [],
        "api_addr": "http://127.0.0.1:8200",
        "plugin_directory": "/data/alpha/plugins",
        "log_level": "trace",
        "ui": False,
    }
    context.update(overrides)
    return context


def test_render_server_config_uses_builtin_templates() -> None:
    """The packaged server template renders listener, storage and addresses."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("hcl/server.hcl.j2", _server_context())

    assert 'listener "tcp" {' in output
    assert 'address = "0.0.0.0:8200"' in output
    assert "tls_disable = true" in output
    assert 'storage "raft" {' in output
    assert 'node_id = "alpha"' in output
    assert "disable_mlock = true" in output
    assert 'cluster_addr = "http://127.0.0.1:8201"' in output
    assert 'api_addr = "http://127.0.0.1:8200"' in output
    assert 'log_level = "trace"' in output
    assert "ui = true" not in output


def test_render_server_config_with_seals_and_tls() -> None:
    """Seal blocks and TLS listener files are rendered when present."""
    engine = TemplateEngine.with_overrides(None)
    context = _server_context(
        listeners=[
            {
                "kind": "tcp",
                "address": "127.0.0.1:8200",
                "tls": {"cert_file": "/d/fullchain.pem", "key_file": "/d/leaf-key.pem"},
            },
            {"kind": "unix", "path": "/tmp/bao.sock"},
        ],
        storage={"kind": "inmem"},
        cluster_addr=None,
        disable_mlock=False,
        seals=[
            {
                "kind": "transit",
                "address": "http://127.0.0.1:8200",
                "token": "s.token",
                "mount_path": "transit",
                "key_name": "auto-unseal",
                "disabled": False,
            },
            {"kind": "static", "key_id": "devbao-abc", "current_key": "00" * 32},
        ],
        ui=True,
    )

    output = engine.render_to_string("hcl/server.hcl.j2", context)

    assert 'tls_cert_file = "/d/fullchain.pem"' in output
    assert 'listener "unix" {' in output
    assert 'storage "inmem" {}' in output
    assert "cluster_addr" not in output
    assert "disable_mlock" not in output
    assert 'seal "transit" {' in output
    assert "disabled = false" in output
    assert 'current_key_id = "devbao-abc"' in output
    assert "ui = true" in output


def test_missing_variable_raises_render_error() -> None:
    """Strict undefined variables surface as TemplateRenderError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError, match="hcl/server.hcl.j2"):
        engine.render_to_string("hcl/server.hcl.j2", {"node_name": "alpha"})


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the packaged ones."""
    override = tmp_path / "templates" / "hcl" / "storage"
    override.mkdir(parents=True)
    (override / "inmem.j2").write_text('storage "inmem" { custom = true }\n', encoding="utf-8")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")
    output = engine.render_to_string(
        "hcl/server.hcl.j2",
        _server_context(storage={"kind": "inmem"}, cluster_addr=None),
    )

    assert "custom = true" in output


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and reports unchanged rewrites."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "config.hcl"

    changed = engine.render_to_path("hcl/server.hcl.j2", destination, _server_context(), mode=0o600)
    unchanged = engine.render_to_path("hcl/server.hcl.j2", destination, _server_context(), mode=0o600)

    assert changed is True
    assert unchanged is False
    assert (destination.stat().st_mode & 0o777) == 0o600
    assert 'storage "raft"' in destination.read_text(encoding="utf-8")


def test_write_text_atomic_replaces_content(tmp_path: Path) -> None:
    """Atomic writes replace content and leave no temporary files behind."""
    destination = tmp_path / "nested" / "file.txt"

    assert write_text_atomic(destination, "one\n") is True
    assert write_text_atomic(destination, "two\n") is True

    assert destination.read_text(encoding="utf-8") == "two\n"
    assert sorted(path.name for path in destination.parent.iterdir()) == ["file.txt"]


def test_hcl_filters_quote_values() -> None:
    """Filters quote strings safely and render booleans."""
    assert hcl_string('say "hi"') == '"say \\"hi\\""'
    assert hcl_string(8200) == '"8200"'
    assert hcl_bool(1) == "true"
    assert hcl_bool("") == "false"
