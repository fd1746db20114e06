"""Configuration loader for devbao.

Values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``$XDG_CONFIG_HOME/devbao/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEVBAO_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEVBAO_BASE_DIR=/tmp/devbao
    export DEVBAO_READINESS__TIMEOUT=20

Environment values go through ``yaml.safe_load``, so ``true`` and ``20`` arrive
as a boolean and an integer. The merged tree is frozen into dataclasses.
The base directory for persisted node and cluster state is resolved here
and nowhere else; every manager receives it explicitly.

Per-product binary overrides (``OPENBAO_BINARY``, ``BAO_BINARY``,
``VAULT_BINARY``) are read at spawn time by :mod:`devbao.process` and are not
part of this configuration tree.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "DEVBAO_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ReadinessConfig:
    """Process readiness polling parameters."""

    timeout: float = 10.0
    interval: float = 0.2
    initial_delay: float = 0.1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "interval": self.interval,
            "initial_delay": self.initial_delay,
        }


@dataclass(frozen=True)
class StabilizeConfig:
    """Backoff parameters used while waiting on seal or leader state."""

    timeout: float = 30.0
    initial_delay: float = 0.25
    max_delay: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
        }


@dataclass(frozen=True)
class ClusterDefaults:
    """Defaults for ``cluster start``."""

    count: int = 3
    listen: str = "0.0.0.0"
    port: int = 8200
    port_step: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "count": self.count,
            "listen": self.listen,
            "port": self.port,
            "port_step": self.port_step,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for devbao."""

    config_file: Path
    base_dir: Path
    logs_dir: Path
    locks_dir: Path
    templates_dir: Path | None
    lock_timeout: float
    http_timeout: float
    readiness: ReadinessConfig
    stabilize: StabilizeConfig
    cluster: ClusterDefaults

    @property
    def nodes_dir(self) -> Path:
        """Directory holding one sub-directory per node."""
        return self.base_dir / "nodes"

    @property
    def clusters_dir(self) -> Path:
        """Directory holding one sub-directory per cluster."""
        return self.base_dir / "clusters"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "base_dir": str(self.base_dir),
            "logs_dir": str(self.logs_dir),
            "locks_dir": str(self.locks_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "lock_timeout": self.lock_timeout,
            "http_timeout": self.http_timeout,
            "readiness": self.readiness.to_dict(),
            "stabilize": self.stabilize.to_dict(),
            "cluster": self.cluster.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": None,  # derived from XDG_CONFIG_HOME when absent
    "base_dir": None,  # derived from XDG_DATA_HOME when absent
    "logs_dir": None,  # derived from base_dir when absent
    "locks_dir": None,  # derived from base_dir when absent
    "templates_dir": None,
    "lock_timeout": 30.0,
    "http_timeout": 30.0,
    "readiness": {
        "timeout": 10.0,
        "interval": 0.2,
        "initial_delay": 0.1,
    },
    "stabilize": {
        "timeout": 30.0,
        "initial_delay": 0.25,
        "max_delay": 2.0,
    },
    "cluster": {
        "count": 3,
        "listen": "0.0.0.0",
        "port": 8200,
        "port_step": 100,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    "readiness": {"timeout", "interval", "initial_delay"},
    "stabilize": {"timeout", "initial_delay", "max_delay"},
    "cluster": {"count", "listen", "port", "port_step"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged, resolved_env)


def default_base_dir(env: Mapping[str, str] | None = None) -> Path:
    """Return the platform data directory used when ``base_dir`` is unset."""
    resolved_env = os.environ if env is None else env
    data_home = resolved_env.get("XDG_DATA_HOME")
    if data_home:
        return Path(data_home).expanduser() / "devbao"
    return Path("~/.local/share/devbao").expanduser()


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    config_home = env.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home).expanduser() / "devbao" / "config.yml"
    return Path("~/.config/devbao/config.yml").expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    for key in ("lock_timeout", "http_timeout"):
        value = raw.get(key)
        if value is not None:
            _expect_positive_float(value, key, default=30.0)


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))

    base_value = raw.get("base_dir")
    base_dir = _to_path(base_value) if base_value else default_base_dir(env)
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else base_dir / "logs"
    locks_value = raw.get("locks_dir")
    locks_dir = _to_path(locks_value) if locks_value else base_dir / "locks"
    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None

    readiness_mapping = _as_dict(raw.get("readiness"), "readiness")
    readiness = ReadinessConfig(
        timeout=_expect_positive_float(
            readiness_mapping.get("timeout"), "readiness.timeout", default=10.0
        ),
        interval=_expect_positive_float(
            readiness_mapping.get("interval"), "readiness.interval", default=0.2
        ),
        initial_delay=_expect_non_negative_float(
            readiness_mapping.get("initial_delay"), "readiness.initial_delay", default=0.1
        ),
    )

    stabilize_mapping = _as_dict(raw.get("stabilize"), "stabilize")
    stabilize = StabilizeConfig(
        timeout=_expect_positive_float(
            stabilize_mapping.get("timeout"), "stabilize.timeout", default=30.0
        ),
        initial_delay=_expect_positive_float(
            stabilize_mapping.get("initial_delay"), "stabilize.initial_delay", default=0.25
        ),
        max_delay=_expect_positive_float(
            stabilize_mapping.get("max_delay"), "stabilize.max_delay", default=2.0
        ),
    )
    if stabilize.max_delay < stabilize.initial_delay:
        raise ConfigError("stabilize.max_delay must not be lower than stabilize.initial_delay.")

    cluster_mapping = _as_dict(raw.get("cluster"), "cluster")
    cluster = ClusterDefaults(
        count=_expect_int(cluster_mapping.get("count"), "cluster.count", default=3),
        listen=str(cluster_mapping.get("listen", "0.0.0.0")),
        port=_expect_int(cluster_mapping.get("port"), "cluster.port", default=8200),
        port_step=_expect_int(cluster_mapping.get("port_step"), "cluster.port_step", default=100),
    )
    if cluster.count < 1:
        raise ConfigError("cluster.count must be at least 1.")
    if not 1 <= cluster.port <= 65535:
        raise ConfigError(f"cluster.port must be a valid TCP port. Got {cluster.port}.")
    if cluster.port_step < 2:
        # Each node reserves its API port and the cluster port right above it.
        raise ConfigError("cluster.port_step must be at least 2.")

    return AppConfig(
        config_file=config_file,
        base_dir=base_dir,
        logs_dir=logs_dir,
        locks_dir=locks_dir,
        templates_dir=templates_dir,
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        http_timeout=_expect_positive_float(raw.get("http_timeout"), "http_timeout", default=30.0),
        readiness=readiness,
        stabilize=stabilize,
        cluster=cluster,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``DEVBAO_A__B=value`` variables into ``{"a": {"b": value}}``."""
    tree: dict[str, object] = {}
    for name in sorted(env):
        if name in RESERVED_ENV_KEYS or not name.startswith(ENV_PREFIX):
            continue
        keys = [part.lower() for part in name.removeprefix(ENV_PREFIX).split("__") if part]
        if keys:
            _set_path(tree, keys, _coerce_value(env[name]))
    return tree


def _set_path(tree: MutableMapping[str, object], keys: list[str], value: object) -> None:
    node = tree
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, MutableMapping):
            dotted = ".".join(keys)
            raise ConfigError(f"Environment override {dotted} collides with a scalar set by another variable.")
        node = cast(MutableMapping[str, object], child)
    node[keys[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(current, _as_dict(value, f"merge.{key}"))
        else:
            target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    return {
        key: _deep_copy(_as_dict(value, f"copy.{key}")) if isinstance(value, Mapping) else value
        for key, value in source.items()
    }


def _coerce_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:  # pragma: no cover - unparsable input stays a string
        return text


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ClusterDefaults",
    "ConfigError",
    "ReadinessConfig",
    "StabilizeConfig",
    "default_base_dir",
    "load_config",
]
