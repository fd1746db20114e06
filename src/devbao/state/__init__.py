"""Persisted node and cluster records."""
from __future__ import annotations

from .registry import CLUSTER_DOCUMENT, NODE_DOCUMENT, StateRegistry, StateRegistryError

__all__ = ["CLUSTER_DOCUMENT", "NODE_DOCUMENT", "StateRegistry", "StateRegistryError"]
