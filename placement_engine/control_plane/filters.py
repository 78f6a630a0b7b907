"""
placement_engine/control_plane/filters.py
──────────────────────────────────────────
FilterPipeline: ordered predicates that prune ineligible nodes.

Pipeline order
───────────────
  0. ExplicitNodePin      — not a plugin. If pod.node_name is set, the pod
                            goes to that node and NOTHING else runs for it:
                            no resource fit, no taints, no affinity. It is
                            still subject to NoExecute eviction afterwards.
  1. NodeUnschedulable    — cordoned nodes, unless the pod tolerates the
                            unschedulable taint.
  2. NodeResourcesFit     — free capacity (and pod slots) cover the request.
  3. TaintToleration      — no un-tolerated NoSchedule / NoExecute taint.
  4. NodeAffinity         — node_selector AND required affinity hold.

Plugins 1–4 come from EngineConfig.filters, resolved once in __init__.

Diagnostics
────────────
Every enabled plugin is evaluated for every node, even after one has
failed. That costs a few comparisons per node but gives preemption the
information it needs: a node is a preemption candidate only when
NodeResourcesFit is its ONLY failure. A node that also fails a taint or
affinity check cannot be fixed by evicting anything.

The per-node failures are summarised by FitError in the familiar form:

    0/3 nodes are available: 2 Insufficient cpu, 1 node(s) had untolerated taint {key2: v2}.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from placement_core.affinity import NodeAffinityEvaluator
from placement_core.tolerations import tolerates, untolerated_taints
from placement_engine.control_plane.cluster_state import ClusterSnapshot, NodeInfo
from placement_engine.shared.config import (
    DEFAULT_FILTERS,
    FILTER_NODE_AFFINITY,
    FILTER_RESOURCE_FIT,
    FILTER_TAINT_TOLERATION,
    FILTER_UNSCHEDULABLE,
    EngineConfig,
)
from placement_engine.shared.models import (
    TAINT_UNSCHEDULABLE,
    Pod,
    Taint,
    TaintEffect,
)

logger = logging.getLogger(__name__)

_UNSCHEDULABLE_TAINT = Taint(key=TAINT_UNSCHEDULABLE, effect=TaintEffect.NO_SCHEDULE)


# ── Plugins ────────────────────────────────────────────────────────────────────

class FilterPlugin(Protocol):
    name: str

    def filter(self, pod: Pod, info: NodeInfo) -> Optional[str]:
        """Return None if the node passes, else a failure reason."""
        ...


class NodeUnschedulableFilter:
    name = FILTER_UNSCHEDULABLE

    def filter(self, pod: Pod, info: NodeInfo) -> Optional[str]:
        if info.node.unschedulable and not tolerates(pod.tolerations, _UNSCHEDULABLE_TAINT):
            return "node(s) were unschedulable"
        return None


class NodeResourcesFitFilter:
    name = FILTER_RESOURCE_FIT

    def filter(self, pod: Pod, info: NodeInfo) -> Optional[str]:
        missing = info.insufficient(pod.requests)
        if missing:
            return ", ".join(f"Insufficient {name}" for name in missing)
        return None


class TaintTolerationFilter:
    name = FILTER_TAINT_TOLERATION

    _BLOCKING = (TaintEffect.NO_SCHEDULE, TaintEffect.NO_EXECUTE)

    def filter(self, pod: Pod, info: NodeInfo) -> Optional[str]:
        blocking = untolerated_taints(info.taints, pod.tolerations, effects=self._BLOCKING)
        if blocking:
            first = blocking[0]
            return f"node(s) had untolerated taint {{{first.key}: {first.value or ''}}}"
        return None


class NodeAffinityFilter:
    name = FILTER_NODE_AFFINITY

    def __init__(self, evaluator: NodeAffinityEvaluator) -> None:
        self._evaluator = evaluator

    def filter(self, pod: Pod, info: NodeInfo) -> Optional[str]:
        if not self._evaluator.matches_required(pod.affinity, pod.node_selector, info.node.labels):
            return "node(s) didn't match Pod's node affinity/selector"
        return None


# ── Results ────────────────────────────────────────────────────────────────────

@dataclass
class NodeDiagnosis:
    """Which plugins rejected one node, and why (plugin → reason)."""
    node_id: str
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.failures

    @property
    def resource_only(self) -> bool:
        """True when NodeResourcesFit is the one and only failure."""
        return set(self.failures) == {FILTER_RESOURCE_FIT}


@dataclass
class FitError:
    """Why no node was eligible, aggregated across nodes."""
    pod_id: str
    num_nodes: int
    reasons: Dict[str, int] = field(default_factory=dict)

    def __str__(self) -> str:
        if not self.reasons:
            return f"0/{self.num_nodes} nodes are available."
        parts = ", ".join(
            f"{count} {reason}" for reason, count in sorted(self.reasons.items())
        )
        return f"0/{self.num_nodes} nodes are available: {parts}."


@dataclass
class FilterOutcome:
    """
    Output of FilterPipeline.run().

    Fields:
        eligible   → Node ids that passed every plugin, sorted.
        diagnoses  → Per-node diagnosis for every evaluated node.
        pinned     → True if the explicit node pin bypass fired.
    """
    pod_id: str
    eligible: List[str] = field(default_factory=list)
    diagnoses: Dict[str, NodeDiagnosis] = field(default_factory=dict)
    pinned: bool = False

    def resource_only_nodes(self) -> List[str]:
        return sorted(n for n, d in self.diagnoses.items() if d.resource_only)

    def fit_error(self) -> FitError:
        counts: Counter = Counter()
        for diagnosis in self.diagnoses.values():
            for reason in diagnosis.failures.values():
                counts[reason] += 1
        return FitError(pod_id=self.pod_id, num_nodes=len(self.diagnoses), reasons=dict(counts))


# ── Pipeline ───────────────────────────────────────────────────────────────────

class FilterPipeline:
    """
    Ordered filter plugins built once from EngineConfig.

    Usage:
        pipeline = FilterPipeline(config)
        outcome = pipeline.run(pod, snapshot)
        outcome.eligible          # ["node-a", "node-c"]
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        evaluator: Optional[NodeAffinityEvaluator] = None,
    ) -> None:
        config = config or EngineConfig()
        evaluator = evaluator or NodeAffinityEvaluator()
        registry: Dict[str, FilterPlugin] = {
            FILTER_UNSCHEDULABLE: NodeUnschedulableFilter(),
            FILTER_RESOURCE_FIT: NodeResourcesFitFilter(),
            FILTER_TAINT_TOLERATION: TaintTolerationFilter(),
            FILTER_NODE_AFFINITY: NodeAffinityFilter(evaluator),
        }
        names = config.filters.resolve(DEFAULT_FILTERS, known=list(registry))
        self.plugins: List[FilterPlugin] = [registry[name] for name in names]

    @property
    def plugin_names(self) -> List[str]:
        return [p.name for p in self.plugins]

    def evaluate_node(self, pod: Pod, info: NodeInfo) -> NodeDiagnosis:
        diagnosis = NodeDiagnosis(node_id=info.node_id)
        for plugin in self.plugins:
            reason = plugin.filter(pod, info)
            if reason is not None:
                diagnosis.failures[plugin.name] = reason
        return diagnosis

    def run(self, pod: Pod, snapshot: ClusterSnapshot) -> FilterOutcome:
        outcome = FilterOutcome(pod_id=pod.pod_id)

        if pod.node_name:
            outcome.pinned = True
            if snapshot.get(pod.node_name) is not None:
                outcome.eligible = [pod.node_name]
                outcome.diagnoses[pod.node_name] = NodeDiagnosis(node_id=pod.node_name)
            else:
                outcome.diagnoses[pod.node_name] = NodeDiagnosis(
                    node_id=pod.node_name,
                    failures={"ExplicitNodePin": "pinned node not found"},
                )
            logger.debug("pod %s pinned to %s: filters skipped", pod.pod_id, pod.node_name)
            return outcome

        for node_id in snapshot.node_ids():
            diagnosis = self.evaluate_node(pod, snapshot.nodes[node_id])
            outcome.diagnoses[node_id] = diagnosis
            if diagnosis.passed:
                outcome.eligible.append(node_id)
            else:
                logger.debug(
                    "pod %s rejected by %s: %s",
                    pod.pod_id, node_id, "; ".join(diagnosis.failures.values()),
                )
        return outcome
