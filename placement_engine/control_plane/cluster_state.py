"""
placement_engine/control_plane/cluster_state.py
────────────────────────────────────────────────
ClusterState: the engine's arena of nodes and pods, plus immutable snapshots.

What lives here
────────────────
  nodes       : Dict[node_id, Node]     — as supplied by the state provider
  pods        : Dict[pod_id, Pod]       — every pod the engine knows about
  taint_index : TaintIndex              — authoritative taints per node
  ledger      : ResourceLedger          — reservations + per-node locks
  budgets     : Dict[(namespace, name), DisruptionBudget] — externally supplied

Nothing here is a module-level global. A SchedulerService owns exactly one
ClusterState and passes snapshots down to the pipelines explicitly.

Snapshots
──────────
snapshot() freezes the state into a ClusterSnapshot of NodeInfo records.
Filter, score and preemption code only ever see snapshots, so a concurrent
bind on another task cannot change the data halfway through an evaluation.
Bind-time re-validation against the live ledger catches any staleness.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from placement_core.taint_index import TaintDiff, TaintIndex
from placement_engine.control_plane.ledger import ResourceLedger
from placement_engine.shared.errors import NodeNotFoundError
from placement_engine.shared.models import (
    DisruptionBudget,
    Node,
    Pod,
    PodPhase,
    ResourceVector,
    Taint,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeInfo:
    """
    Frozen view of one node at snapshot time.

    Fields:
        node      → Node record (copy).
        taints    → Taints from the TaintIndex, with time_added stamped.
        requested → Sum of requests of pods bound to the node.
        pods      → Bound pods (copies), sorted by pod_id.
    """
    node: Node
    taints: Tuple[Taint, ...]
    requested: ResourceVector
    pods: Tuple[Pod, ...]

    @property
    def node_id(self) -> str:
        return self.node.node_id

    @property
    def free(self) -> ResourceVector:
        return self.node.allocatable.subtract(self.requested)

    def insufficient(self, request: ResourceVector, extra_pods: int = 1) -> List[str]:
        """Resources (and "pods") that cannot cover `request` on this node."""
        missing = self.free.insufficient(request)
        if len(self.pods) + extra_pods > self.node.max_pods:
            missing.append("pods")
        return missing

    def without(self, removed: Iterable[Pod]) -> "NodeInfo":
        """A copy of this NodeInfo with some pods taken off (preemption what-if)."""
        removed_ids = {p.pod_id for p in removed}
        kept = tuple(p for p in self.pods if p.pod_id not in removed_ids)
        requested = ResourceVector()
        for pod in kept:
            requested = requested.add(pod.requests)
        return NodeInfo(node=self.node, taints=self.taints, requested=requested, pods=kept)


@dataclass(frozen=True)
class ClusterSnapshot:
    """Immutable mapping node_id → NodeInfo, plus the generation it was taken at."""
    nodes: Mapping[str, NodeInfo]
    generation: int

    def node_ids(self) -> List[str]:
        return sorted(self.nodes)

    def get(self, node_id: str) -> Optional[NodeInfo]:
        return self.nodes.get(node_id)

    def __len__(self) -> int:
        return len(self.nodes)


class ClusterState:
    """
    Mutable cluster arena. Owned by one event loop.

    Usage:
        state = ClusterState()
        state.upsert_node(node, now=0.0)
        state.add_pod(pod)
        snap = state.snapshot()
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, Node] = {}
        self.pods: Dict[str, Pod] = {}
        self.taint_index = TaintIndex()
        self.ledger = ResourceLedger()
        self.budgets: Dict[Tuple[str, str], DisruptionBudget] = {}
        self.generation: int = 0

    # ── Nodes ──────────────────────────────────────────────────────────────────

    def upsert_node(self, node: Node, now: Optional[float] = None) -> TaintDiff:
        """
        Add or replace a node record. Returns the taint diff, which the
        NoExecute taint manager uses to arm / cancel eviction timers.
        """
        self.ledger.register_node(node.node_id, node.allocatable, node.max_pods)
        diff = self.taint_index.set_node_taints(node.node_id, node.taints, now=now)
        self.nodes[node.node_id] = node.model_copy(
            update={"taints": self.taint_index.taints_for(node.node_id)}
        )
        self.generation += 1
        return diff

    def set_node_taints(
        self, node_id: str, taints: Iterable[Taint], now: Optional[float] = None
    ) -> TaintDiff:
        taints = list(taints)
        node = self.nodes[node_id]
        diff = self.taint_index.set_node_taints(node_id, taints, now=now)
        self.nodes[node_id] = node.model_copy(
            update={"taints": self.taint_index.taints_for(node_id)}
        )
        self.generation += 1
        return diff

    def remove_node(self, node_id: str) -> List[str]:
        """Drop a node. Returns the ids of pods that were bound to it."""
        self.nodes.pop(node_id, None)
        self.taint_index.remove_node(node_id)
        orphans = self.ledger.remove_node(node_id)
        self.generation += 1
        return orphans

    # ── Pods ───────────────────────────────────────────────────────────────────

    def add_pod(self, pod: Pod) -> None:
        """
        Register a pod. A Running / Terminating pod is reserved on its node
        first, so a bound pod is never stored without a reservation.

        Raises:
            NodeNotFoundError: the pod is bound to a node this state has
                               never seen; nothing is stored.
        """
        if pod.node_id and pod.phase in (PodPhase.RUNNING, PodPhase.TERMINATING):
            if pod.node_id not in self.nodes:
                raise NodeNotFoundError(pod.node_id, pod_id=pod.pod_id)
            self.ledger.reserve(pod.node_id, pod.pod_id, pod.requests, force=True)
        self.pods[pod.pod_id] = pod
        self.generation += 1

    def get_pod(self, pod_id: str) -> Optional[Pod]:
        return self.pods.get(pod_id)

    def bound_pods(self, node_id: str) -> List[Pod]:
        return [
            self.pods[pid] for pid in sorted(self.ledger.pods_on(node_id))
            if pid in self.pods
        ]

    def mark_bound(self, pod_id: str, node_id: str) -> Pod:
        pod = self.pods[pod_id]
        pod.node_id = node_id
        pod.phase = PodPhase.RUNNING
        pod.nominated_node_id = None
        self.generation += 1
        return pod

    def unbind(self, pod_id: str, phase: PodPhase = PodPhase.PENDING) -> Optional[str]:
        """Release a pod's reservation and move it to `phase`. Returns the old node."""
        pod = self.pods.get(pod_id)
        node_id = self.ledger.release(pod_id)
        if pod is not None:
            pod.node_id = None
            pod.phase = phase
        self.generation += 1
        return node_id

    def delete_pod(self, pod_id: str) -> Optional[Pod]:
        self.unbind(pod_id, phase=PodPhase.DELETED)
        pod = self.pods.pop(pod_id, None)
        return pod

    # ── Disruption budgets ─────────────────────────────────────────────────────

    def set_budget(self, budget: DisruptionBudget) -> None:
        self.budgets[budget.key] = budget

    # ── Snapshot ───────────────────────────────────────────────────────────────

    def node_info(self, node_id: str) -> NodeInfo:
        node = self.nodes[node_id]
        return NodeInfo(
            node=node.model_copy(deep=True),
            taints=tuple(self.taint_index.taints_for(node_id)),
            requested=self.ledger.requested(node_id),
            pods=tuple(p.model_copy(deep=True) for p in self.bound_pods(node_id)),
        )

    def snapshot(self) -> ClusterSnapshot:
        infos = {node_id: self.node_info(node_id) for node_id in sorted(self.nodes)}
        return ClusterSnapshot(nodes=MappingProxyType(infos), generation=self.generation)

    def __repr__(self) -> str:
        return (
            f"ClusterState(nodes={len(self.nodes)}, pods={len(self.pods)}, "
            f"generation={self.generation})"
        )
