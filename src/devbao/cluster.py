"""HA Raft cluster records and the membership protocol.

A cluster is a named, ordered list of node names. Membership is recorded on
both sides: the cluster lists the node and the node carries the cluster name
as its tag. Loading a cluster re-checks that both sides agree.

Joining is guarded by a durable ``pending_join`` marker on the candidate. The
marker is written before the Raft join request and cleared only after the
cluster record lists the node, so an interrupted join can be retried: the
retry skips the Raft request when the leader's HA status already reports the
candidate.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    ConsistencyError,
    DevbaoError,
    NotFoundError,
    RemoteAPIError,
    StateConflictError,
    ValidationError,
)
from .instance_config import RaftStorage, Seal, TCPListener
from .node import Node, NodeManager
from .profiles import apply_profile
from .retry import Backoff, poll_until
from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

HA_CLUSTER_TYPE = "HA"
SEAL_MISMATCH_HINT = "cannot join existing cluster -- ensure seals are configured correctly and retry"


@dataclass(slots=True)
class Cluster:
    """Persisted description of an HA cluster."""

    name: str
    type: str = HA_CLUSTER_TYPE
    nodes: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Check the record's own fields (membership is checked on load)."""
        if not self.name:
            raise ValidationError("Missing cluster name.")
        if self.type != HA_CLUSTER_TYPE:
            raise ValidationError(f"Unknown cluster type: {self.type!r}.")
        if len(set(self.nodes)) != len(self.nodes):
            raise ValidationError(f"Cluster {self.name!r} lists a node more than once.")

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {"name": self.name, "type": self.type, "nodes": list(self.nodes)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Cluster:
        """Rebuild a cluster from :meth:`to_dict` output."""
        nodes = data.get("nodes") or []
        if not isinstance(nodes, list):
            raise ValidationError("Cluster field 'nodes' must be a list.")
        cluster = cls(
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            nodes=[str(name) for name in nodes],
        )
        cluster.validate()
        return cluster


@dataclass(frozen=True)
class ClusterStartResult:
    """Outcome of :meth:`ClusterManager.start`."""

    cluster: Cluster
    leader: str
    warnings: list[str] = field(default_factory=list)


class ClusterManager:
    """Membership operations over clusters persisted in a :class:`StateRegistry`."""

    def __init__(
        self,
        registry: StateRegistry,
        nodes: NodeManager,
        *,
        backoff: Backoff | None = None,
    ) -> None:
        self.registry = registry
        self.nodes = nodes
        self.backoff = backoff or nodes.backoff

    # ------------------------------------------------------------------
    # Registry access
    # ------------------------------------------------------------------
    def exists(self, name: str) -> bool:
        """Return ``True`` when *name* has a persisted record."""
        return self.registry.cluster_exists(name)

    def list_clusters(self) -> list[str]:
        """Names of every persisted cluster."""
        return self.registry.list_clusters()

    def load_unvalidated(self, name: str) -> Cluster:
        """Load *name* without checking its members."""
        cluster = Cluster.from_dict(self.registry.read_cluster(name))
        if cluster.name != name:
            raise ConsistencyError(f"Cluster record in directory {name!r} is named {cluster.name!r}.")
        return cluster

    def load(self, name: str) -> Cluster:
        """Load *name* and verify every member carries the cluster tag."""
        cluster = self.load_unvalidated(name)
        for index, member in enumerate(cluster.nodes):
            try:
                node = self.nodes.load(member)
            except DevbaoError as exc:
                raise ConsistencyError(
                    f"Invalid cluster ({name}) configuration: failed loading node ({index} / {member}): {exc}"
                ) from exc
            if node.cluster != name:
                raise ConsistencyError(
                    f"Invalid cluster ({name}) configuration: node ({index} / {member}) "
                    f"not listed in cluster; listed in {node.cluster!r}."
                )
        return cluster

    def save(self, cluster: Cluster) -> None:
        """Validate and persist *cluster*."""
        cluster.validate()
        self.registry.write_cluster(cluster.name, cluster.to_dict())

    def members(self, cluster: Cluster) -> list[Node]:
        """Load every member node, in cluster order."""
        return [self.nodes.load(name) for name in cluster.nodes]

    # ------------------------------------------------------------------
    # Formation
    # ------------------------------------------------------------------
    def form(self, cluster_name: str, founder: Node, *, force: bool = False) -> Cluster:
        """Create an HA cluster whose only member is *founder*."""
        if founder.is_dev:
            raise ValidationError(
                f"Node {founder.name!r} is a dev-mode node; ephemeral nodes cannot be added to clusters."
            )
        if founder.cluster:
            raise StateConflictError(
                f"Node {founder.name!r} already present in different cluster: {founder.cluster!r}."
            )
        if self.exists(cluster_name):
            if not force:
                raise StateConflictError(
                    f"Cluster {cluster_name!r} already exists; use force to replace it."
                )
            self._release_members(cluster_name)

        cluster = Cluster(name=cluster_name, nodes=[founder.name])
        cluster.validate()
        founder.cluster = cluster_name
        self.nodes.save(founder)
        self.save(cluster)
        LOGGER.info("Formed cluster %s with founder %s", cluster_name, founder.name)
        return cluster

    def _release_members(self, cluster_name: str) -> None:
        try:
            previous = self.load_unvalidated(cluster_name)
        except DevbaoError as exc:
            LOGGER.warning("Replacing unreadable cluster record %s: %s", cluster_name, exc)
            return
        for member in previous.nodes:
            try:
                node = self.nodes.load(member)
            except DevbaoError as exc:
                LOGGER.warning("Skipping member %s of replaced cluster %s: %s", member, cluster_name, exc)
                continue
            if node.cluster == cluster_name:
                node.cluster = ""
                node.pending_join = ""
                self.nodes.save(node)

    # ------------------------------------------------------------------
    # Leadership
    # ------------------------------------------------------------------
    def find_leader(self, cluster: Cluster) -> Node:
        """Return the first member that reports itself as HA leader."""
        errors: list[str] = []
        for index, name in enumerate(cluster.nodes):
            try:
                node = self.nodes.load(name)
            except DevbaoError as exc:
                errors.append(f"error loading node {index} / {name}: {exc}")
                continue
            try:
                with self.nodes.client(node) as client:
                    status = client.leader()
            except DevbaoError as exc:
                errors.append(f"error getting leadership status for node {index} / {name}: {exc}")
                continue
            if status.is_self:
                return node

        detail = "; ".join(errors) if errors else "no member reported itself as leader"
        raise RemoteAPIError(
            f"No leader found on cluster {cluster.name}; {len(cluster.nodes)} nodes; "
            f"got the following errors: {detail}",
            errors=errors,
        )

    def wait_for_leader(self, cluster: Cluster) -> Node:
        """Poll :meth:`find_leader` until a leader emerges or the deadline passes."""
        return poll_until(
            lambda: self.find_leader(cluster),
            backoff=self.backoff,
            description=f"a leader on cluster {cluster.name}",
            retry_on=(RemoteAPIError,),
        )

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------
    def join_node(self, cluster: Cluster, candidate: Node) -> None:
        """Add *candidate* to *cluster* through a Raft join."""
        if candidate.is_dev:
            raise ValidationError(
                f"Node {candidate.name!r} is a dev-mode node; ephemeral nodes cannot be added to clusters."
            )
        if candidate.name in cluster.nodes and candidate.pending_join == cluster.name:
            # Interrupted after the cluster record was saved; only the marker is left.
            candidate.pending_join = ""
            self.nodes.save(candidate)
            LOGGER.info("Finished interrupted join of node %s to cluster %s", candidate.name, cluster.name)
            return
        if candidate.name in cluster.nodes:
            raise StateConflictError(f"Node {candidate.name!r} is already a member of cluster {cluster.name!r}.")
        resuming = candidate.pending_join == cluster.name
        if candidate.pending_join and not resuming:
            raise StateConflictError(
                f"Node {candidate.name!r} has an unfinished join to cluster {candidate.pending_join!r}."
            )
        if candidate.cluster and not (resuming and candidate.cluster == cluster.name):
            raise StateConflictError(
                f"Node {candidate.name!r} already present in different cluster: {candidate.cluster!r}."
            )

        leader = self.wait_for_leader(cluster)
        self._check_seals(leader, candidate)

        candidate.pending_join = cluster.name
        self.nodes.save(candidate)

        leader_url = self.nodes.connect_url(leader)
        candidate_url = self.nodes.connect_url(candidate)
        if resuming and self._listed_in_ha_status(leader, candidate_url):
            LOGGER.info("Node %s already joined cluster %s; resuming bookkeeping", candidate.name, cluster.name)
            with self.nodes.client(candidate) as client:
                joined = not client.seal_status().sealed
        else:
            leader_ca = self._leader_ca(leader)
            try:
                with self.nodes.client(candidate) as client:
                    joined = client.raft_join(leader_url, retry=True, leader_ca_cert=leader_ca)
            except RemoteAPIError as exc:
                raise RemoteAPIError(
                    f"Failed joining node {candidate.name} to cluster {cluster.name} / "
                    f"leader {leader.name}: {exc}",
                    status=exc.status,
                    errors=exc.errors,
                ) from exc

        candidate.token = leader.token
        candidate.unseal_keys = list(leader.unseal_keys)
        candidate.cluster = cluster.name
        self.nodes.save(candidate)

        if not joined:
            self.nodes.wait_until_responsive(candidate)
            try:
                self.nodes.unseal(candidate)
            except DevbaoError as exc:
                raise RemoteAPIError(f"Failed unsealing follower node {candidate.name}: {exc}") from exc
            self.nodes.wait_until_unsealed(candidate)

        cluster.nodes.append(candidate.name)
        self.save(cluster)
        candidate.pending_join = ""
        self.nodes.save(candidate)
        LOGGER.info("Joined node %s to cluster %s", candidate.name, cluster.name)

    def _check_seals(self, leader: Node, candidate: Node) -> None:
        leader_seals: Sequence[Seal] = leader.config.seals
        candidate_seals: Sequence[Seal] = candidate.config.seals
        if len(leader_seals) != len(candidate_seals):
            raise ValidationError(
                f"Mismatched seal configuration counts between {leader.name} and "
                f"{candidate.name}; {SEAL_MISMATCH_HINT}"
            )
        for index, (ours, theirs) in enumerate(zip(leader_seals, candidate_seals)):
            if ours.fingerprint() != theirs.fingerprint():
                raise ValidationError(
                    f"Mismatched seal configuration at index {index} between {leader.name} and "
                    f"{candidate.name}; {SEAL_MISMATCH_HINT}"
                )

    def _leader_ca(self, leader: Node) -> str | None:
        info = self.nodes.connect_info(leader)
        if not info.tls or info.ca_path is None or not info.ca_path.exists():
            return None
        return info.ca_path.read_text(encoding="utf-8")

    def _listed_in_ha_status(self, leader: Node, api_address: str) -> bool:
        with self.nodes.client(leader) as client:
            entries = client.ha_status()
        return any(entry.get("api_address") == api_address for entry in entries)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def remove_node(self, cluster: Cluster, member: Node) -> bool:
        """Remove *member* from *cluster*; return whether a Raft peer was removed."""
        if member.name not in cluster.nodes:
            raise ValidationError(f"Node {member.name!r} is not a member of cluster {cluster.name!r}.")

        leader = self.find_leader(cluster)
        member_url = self.nodes.connect_url(member)

        with self.nodes.client(leader) as client:
            try:
                entries = client.ha_status()
            except RemoteAPIError as exc:
                raise RemoteAPIError(f"Error reading HA status from leader {leader.name}: {exc}") from exc
            cluster_address = ""
            for entry in entries:
                if entry.get("api_address") == member_url:
                    cluster_address = str(entry.get("cluster_address") or "")
                    break

            if not cluster_address:
                # Never joined or already removed out of band.
                LOGGER.info("Node %s not in HA status of %s; dropping from record only", member.name, cluster.name)
                self._forget_member(cluster, member)
                return False

            servers = client.raft_configuration()
            raft_id = ""
            for server in servers:
                address = str(server.get("address") or "")
                if address and address in cluster_address:
                    raft_id = str(server.get("node_id") or "")
                    break
            if not raft_id:
                raise ConsistencyError(
                    f"Could not find node {member.name}'s raft ID based on "
                    "sys/storage/raft/configuration response."
                )

            try:
                client.raft_remove_peer(raft_id)
            except RemoteAPIError as exc:
                raise RemoteAPIError(f"Failed removing node {member.name} from cluster: {exc}") from exc

        self._forget_member(cluster, member)
        LOGGER.info("Removed node %s (raft id %s) from cluster %s", member.name, raft_id, cluster.name)
        return True

    def _forget_member(self, cluster: Cluster, member: Node) -> None:
        member.cluster = ""
        member.pending_join = ""
        self.nodes.save(member)
        cluster.nodes = [name for name in cluster.nodes if name != member.name]
        self.save(cluster)

    # ------------------------------------------------------------------
    # Whole-cluster workflows
    # ------------------------------------------------------------------
    def start(
        self,
        cluster_name: str,
        *,
        count: int = 3,
        listen: str = "0.0.0.0",
        port: int = 8200,
        port_step: int = 100,
        product: str = "",
        seals: Sequence[Seal] = (),
        profiles: Sequence[str] = (),
        force: bool = False,
    ) -> ClusterStartResult:
        """Build, start and join ``count`` Raft nodes into a new cluster."""
        if count < 1:
            raise ValidationError(f"Cluster node count must be at least 1, got {count}.")
        if self.exists(cluster_name) and not force:
            raise StateConflictError(f"Cluster {cluster_name!r} already exists; use force to replace it.")
        warnings: list[str] = []
        if count % 2 == 0:
            warnings.append(
                f"Even number of nodes ({count}) gives no additional fault tolerance over {count - 1}."
            )
        if self.exists(cluster_name):
            warnings.extend(self.clean(cluster_name, force=True))

        members: list[Node] = []
        for index in range(count):
            node_port = port + index * port_step
            host = f"[{listen}]" if ":" in listen else listen
            options: list[object] = [TCPListener(address=f"{host}:{node_port}"), RaftStorage(), *seals]
            node = self.nodes.build(f"{cluster_name}-node-{index}", product, options, force=force)
            warnings.extend(self.nodes.start(node))
            members.append(node)

        founder = members[0]
        self.nodes.initialize(founder)
        self.nodes.unseal(founder)
        self.nodes.wait_until_unsealed(founder)
        cluster = self.form(cluster_name, founder, force=force)

        for node in members[1:]:
            self.join_node(cluster, node)

        leader = self.wait_for_leader(cluster)
        if profiles:
            with self.nodes.client(leader) as client:
                for profile in profiles:
                    warnings.extend(apply_profile(client, profile))
        return ClusterStartResult(cluster=cluster, leader=leader.name, warnings=warnings)

    def resume(self, cluster: Cluster) -> list[str]:
        """Restart every stopped member in order."""
        warnings: list[str] = []
        for index, member in enumerate(cluster.nodes):
            node = self.nodes.load(member)
            if self.nodes.is_running(node):
                warnings.append(f"Node {member} / pid {node.pid} is already running.")
                continue
            try:
                warnings.extend(self.nodes.resume(node))
            except DevbaoError as exc:
                raise type(exc)(f"Error resuming node [{index}/{member}]: {exc}") from exc
        return warnings

    def unseal(self, cluster: Cluster) -> list[str]:
        """Unseal every member; return the names this call unsealed."""
        unsealed: list[str] = []
        for index, member in enumerate(cluster.nodes):
            node = self.nodes.load(member)
            try:
                if self.nodes.unseal(node):
                    unsealed.append(member)
            except DevbaoError as exc:
                raise type(exc)(f"Error unsealing node [{index}/{member}]: {exc}") from exc
        return unsealed

    def clean(self, name: str, *, force: bool = False) -> list[str]:
        """Stop and remove every member and the cluster record.

        Succeeds when the cluster is already gone. With *force* an unreadable
        cluster or member record is reported as a warning instead of failing.
        """
        warnings: list[str] = []
        if not self.registry.cluster_dir(name).exists():
            return [f"Cluster {name} was already removed."]
        try:
            cluster = self.load_unvalidated(name)
        except NotFoundError:
            cluster = Cluster(name=name)
        except DevbaoError as exc:
            if not force:
                raise DevbaoError(f"Failed to load cluster {name} to determine state: {exc}") from exc
            LOGGER.warning("Ignoring unreadable record for cluster %s: %s", name, exc)
            warnings.append(f"Ignored unreadable record for cluster {name}: {exc}")
            cluster = Cluster(name=name)

        for member in cluster.nodes:
            warnings.extend(self.nodes.clean(member, force=force))
        self.registry.remove_cluster(name)
        return warnings


__all__ = ["Cluster", "ClusterManager", "ClusterStartResult", "HA_CLUSTER_TYPE"]
