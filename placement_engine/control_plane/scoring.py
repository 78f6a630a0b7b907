"""
placement_engine/control_plane/scoring.py
──────────────────────────────────────────
ScoringPipeline: weighted plugins ranking the nodes that survived filtering.

The composite score
────────────────────
    total(node) = Σ_i  weight_i × score_i(node)

Plugin scores are integers so that totals compare exactly; there is no
float drift that could make two equal nodes differ in the last bit.

  NodeResourcesBalancedAllocation  0..100
      1 − std(cpu_fraction, memory_fraction) after placing the pod.
      Rewards nodes whose CPU and memory stay in proportion.

  NodeResourcesLeastAllocated      0..100
      Mean free fraction of CPU and memory after placing the pod.
      Spreads load.

  ImageLocality                    0..100
      Share of the pod's images already present on the node.

  NodeAffinity                     0..100
      Σ weights of matching preferred terms, normalised so the best
      node scores 100. All-zero stays all-zero.

  TaintToleration                  ≤ 0
      −penalty × (number of un-tolerated PreferNoSchedule taints).

Host selection
───────────────
Highest total wins. Ties are broken by the lexicographically smallest
node id. Never random: the same snapshot always yields the same host.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np

from placement_core.affinity import NodeAffinityEvaluator
from placement_core.tolerations import untolerated_taints
from placement_engine.control_plane.cluster_state import ClusterSnapshot, NodeInfo
from placement_engine.shared.config import (
    DEFAULT_SCORES,
    SCORE_BALANCED_ALLOCATION,
    SCORE_IMAGE_LOCALITY,
    SCORE_LEAST_ALLOCATED,
    SCORE_NODE_AFFINITY,
    SCORE_TAINT_TOLERATION,
    EngineConfig,
)
from placement_engine.shared.models import NodeScores, Pod, TaintEffect

logger = logging.getLogger(__name__)

MAX_NODE_SCORE: int = 100


def _utilisation_fractions(pod: Pod, info: NodeInfo) -> np.ndarray:
    """[cpu_fraction, memory_fraction] after placing the pod, each capped to [0, 1]."""
    alloc = info.node.allocatable
    capacity = np.array([alloc.cpu_millis, alloc.memory_mb], dtype=np.float64)
    used = np.array(
        [
            info.requested.cpu_millis + pod.requests.cpu_millis,
            info.requested.memory_mb + pod.requests.memory_mb,
        ],
        dtype=np.float64,
    )
    fractions = np.divide(used, capacity, out=np.ones_like(used), where=capacity > 0)
    return np.clip(fractions, 0.0, 1.0)


# ── Plugins ────────────────────────────────────────────────────────────────────

class ScorePlugin(Protocol):
    name: str

    def score(self, pod: Pod, info: NodeInfo) -> int: ...

    def normalize(self, scores: Dict[str, int]) -> Dict[str, int]: ...


class _NoNormalize:
    def normalize(self, scores: Dict[str, int]) -> Dict[str, int]:
        return scores


class BalancedAllocationScore(_NoNormalize):
    name = SCORE_BALANCED_ALLOCATION

    def score(self, pod: Pod, info: NodeInfo) -> int:
        fractions = _utilisation_fractions(pod, info)
        return int((1.0 - float(np.std(fractions))) * MAX_NODE_SCORE)


class LeastAllocatedScore(_NoNormalize):
    name = SCORE_LEAST_ALLOCATED

    def score(self, pod: Pod, info: NodeInfo) -> int:
        fractions = _utilisation_fractions(pod, info)
        return int(float(np.mean(1.0 - fractions)) * MAX_NODE_SCORE)


class ImageLocalityScore(_NoNormalize):
    name = SCORE_IMAGE_LOCALITY

    def score(self, pod: Pod, info: NodeInfo) -> int:
        if not pod.images:
            return 0
        present = sum(1 for image in pod.images if image in info.node.images)
        return present * MAX_NODE_SCORE // len(pod.images)


class NodeAffinityScore:
    name = SCORE_NODE_AFFINITY

    def __init__(self, evaluator: NodeAffinityEvaluator) -> None:
        self._evaluator = evaluator

    def score(self, pod: Pod, info: NodeInfo) -> int:
        return self._evaluator.preferred_score(pod.affinity, info.node.labels)

    def normalize(self, scores: Dict[str, int]) -> Dict[str, int]:
        highest = max(scores.values(), default=0)
        if highest <= 0:
            return {node_id: 0 for node_id in scores}
        return {
            node_id: value * MAX_NODE_SCORE // highest
            for node_id, value in scores.items()
        }


class TaintTolerationScore(_NoNormalize):
    name = SCORE_TAINT_TOLERATION

    def __init__(self, penalty: int) -> None:
        self._penalty = penalty

    def score(self, pod: Pod, info: NodeInfo) -> int:
        soft = untolerated_taints(
            info.taints, pod.tolerations, effects=(TaintEffect.PREFER_NO_SCHEDULE,)
        )
        return -self._penalty * len(soft)


# ── Results ────────────────────────────────────────────────────────────────────

def select_host(totals: NodeScores) -> Optional[str]:
    """Highest total; ties → lexicographically smallest node id. None if empty."""
    if not totals:
        return None
    return min(totals, key=lambda node_id: (-totals[node_id], node_id))


@dataclass
class ScoreResult:
    """
    Output of ScoringPipeline.run().

    Fields:
        totals     → node_id → weighted total.
        per_plugin → plugin → node_id → normalised plugin score.
        best       → select_host(totals).
    """
    totals: NodeScores = field(default_factory=dict)
    per_plugin: Dict[str, Dict[str, int]] = field(default_factory=dict)
    best: Optional[str] = None

    def ranking(self) -> List[str]:
        return sorted(self.totals, key=lambda node_id: (-self.totals[node_id], node_id))


# ── Pipeline ───────────────────────────────────────────────────────────────────

class ScoringPipeline:
    """
    Weighted score plugins built once from EngineConfig.

    Usage:
        pipeline = ScoringPipeline(config)
        result = pipeline.run(pod, snapshot, eligible=["n1", "n2"])
        result.best
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        evaluator: Optional[NodeAffinityEvaluator] = None,
    ) -> None:
        config = config or EngineConfig()
        evaluator = evaluator or NodeAffinityEvaluator()
        registry: Dict[str, ScorePlugin] = {
            SCORE_BALANCED_ALLOCATION: BalancedAllocationScore(),
            SCORE_LEAST_ALLOCATED: LeastAllocatedScore(),
            SCORE_IMAGE_LOCALITY: ImageLocalityScore(),
            SCORE_NODE_AFFINITY: NodeAffinityScore(evaluator),
            SCORE_TAINT_TOLERATION: TaintTolerationScore(config.prefer_no_schedule_penalty),
        }
        names = config.scores.resolve(DEFAULT_SCORES, known=list(registry))
        self.plugins: List[ScorePlugin] = [registry[name] for name in names]
        self.weights = np.array([config.weight_for(name) for name in names], dtype=np.int64)

    @property
    def plugin_names(self) -> List[str]:
        return [p.name for p in self.plugins]

    def run(self, pod: Pod, snapshot: ClusterSnapshot, eligible: Sequence[str]) -> ScoreResult:
        node_ids = sorted(eligible)
        result = ScoreResult()
        if not node_ids:
            return result
        if len(node_ids) == 1 or not self.plugins:
            # Nothing to rank against.
            result.totals = {node_id: 0 for node_id in node_ids}
            result.best = select_host(result.totals)
            return result

        matrix = np.zeros((len(self.plugins), len(node_ids)), dtype=np.int64)
        for row, plugin in enumerate(self.plugins):
            raw = {node_id: plugin.score(pod, snapshot.nodes[node_id]) for node_id in node_ids}
            normalised = plugin.normalize(raw)
            result.per_plugin[plugin.name] = normalised
            matrix[row] = [normalised[node_id] for node_id in node_ids]

        totals = self.weights @ matrix
        result.totals = {node_id: int(totals[col]) for col, node_id in enumerate(node_ids)}
        result.best = select_host(result.totals)
        logger.debug("pod %s scores: %s → %s", pod.pod_id, result.totals, result.best)
        return result
