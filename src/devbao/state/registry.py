"""Helpers for the on-disk node and cluster registry.

Each entity owns one directory under the base directory and one JSON
document inside it::

    <base>/nodes/<name>/node.json
    <base>/clusters/<name>/cluster.json

Node directories double as the server's working directory (generated config,
logs, storage), so removing a node removes the whole tree. Documents are
written atomically so a crash never leaves a half-written record behind.
"""
from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ConsistencyError, NotFoundError, ValidationError

NODE_DOCUMENT = "node.json"
CLUSTER_DOCUMENT = "cluster.json"


class StateRegistryError(ConsistencyError):
    """Raised when a persisted record cannot be read or written."""


@dataclass(frozen=True)
class StateRegistry:
    """Filesystem-backed store of node and cluster documents."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    @property
    def nodes_dir(self) -> Path:
        """Directory containing one sub-directory per node."""
        return self.root / "nodes"

    @property
    def clusters_dir(self) -> Path:
        """Directory containing one sub-directory per cluster."""
        return self.root / "clusters"

    def ensure_root(self) -> None:
        """Create the registry directories if they do not yet exist."""
        self.nodes_dir.mkdir(parents=True, exist_ok=True)
        self.clusters_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def node_dir(self, name: str) -> Path:
        """Return the working directory of node *name*."""
        return self.nodes_dir / _checked_name(name, "node")

    def node_exists(self, name: str) -> bool:
        """Return ``True`` when node *name* has a persisted record."""
        return (self.node_dir(name) / NODE_DOCUMENT).exists()

    def list_nodes(self) -> list[str]:
        """Return the names of every persisted node, sorted."""
        return _list_documents(self.nodes_dir, NODE_DOCUMENT)

    def read_node(self, name: str) -> dict[str, Any]:
        """Return the raw node document for *name*."""
        return _read_document(self.node_dir(name) / NODE_DOCUMENT, f"node {name!r}")

    def write_node(self, name: str, payload: Mapping[str, object]) -> Path:
        """Atomically persist the node document for *name*."""
        return _write_document(self.node_dir(name) / NODE_DOCUMENT, payload)

    def remove_node(self, name: str) -> bool:
        """Delete the node directory tree; ``False`` when it was already gone."""
        return _remove_tree(self.node_dir(name))

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------
    def cluster_dir(self, name: str) -> Path:
        """Return the directory of cluster *name*."""
        return self.clusters_dir / _checked_name(name, "cluster")

    def cluster_exists(self, name: str) -> bool:
        """Return ``True`` when cluster *name* has a persisted record."""
        return (self.cluster_dir(name) / CLUSTER_DOCUMENT).exists()

    def list_clusters(self) -> list[str]:
        """Return the names of every persisted cluster, sorted."""
        return _list_documents(self.clusters_dir, CLUSTER_DOCUMENT)

    def read_cluster(self, name: str) -> dict[str, Any]:
        """Return the raw cluster document for *name*."""
        return _read_document(self.cluster_dir(name) / CLUSTER_DOCUMENT, f"cluster {name!r}")

    def write_cluster(self, name: str, payload: Mapping[str, object]) -> Path:
        """Atomically persist the cluster document for *name*."""
        return _write_document(self.cluster_dir(name) / CLUSTER_DOCUMENT, payload)

    def remove_cluster(self, name: str) -> bool:
        """Delete the cluster directory; ``False`` when it was already gone."""
        return _remove_tree(self.cluster_dir(name))


def _checked_name(name: str, kind: str) -> str:
    if not name or name in {".", ".."} or "/" in name or "\x00" in name:
        raise ValidationError(f"Invalid {kind} name: {name!r}.")
    return name


def _list_documents(directory: Path, document: str) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(
        entry.name for entry in directory.iterdir() if (entry / document).is_file()
    )


def _read_document(path: Path, label: str) -> dict[str, Any]:
    if not path.exists():
        raise NotFoundError(f"No persisted record for {label} (expected {path}).")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise StateRegistryError(f"Failed to read {label} from {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise StateRegistryError(f"Record for {label} at {path} must be a JSON object.")
    return data


def _write_document(path: Path, payload: Mapping[str, object]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=False)
            handle.write("\n")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    return path


def _remove_tree(directory: Path) -> bool:
    if not directory.exists():
        return False
    shutil.rmtree(directory)
    return True


__all__ = ["CLUSTER_DOCUMENT", "NODE_DOCUMENT", "StateRegistry", "StateRegistryError"]
