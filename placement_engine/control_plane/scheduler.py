"""
placement_engine/control_plane/scheduler.py
────────────────────────────────────────────
The placement decision: WHICH node a pending pod goes to.

    find_host(pod, snapshot, filters, scorer)
        1. FilterPipeline.run()   → eligible node ids (or the pin bypass)
        2. ScoringPipeline.run()  → weighted totals
        3. select_host()          → highest total, smallest node id on ties

This module is pure: it reads a snapshot and returns a decision. It never
touches the ledger. Binding (with per-node locking and re-validation) and
preemption live in the orchestration service and preemption module.

Error handling contract
────────────────────────
  SchedulingFailedError: raised when no node is eligible. Carries the
                         FitError summary and the FilterOutcome so the
                         caller can decide whether preemption could help
                         (FilterOutcome.resource_only_nodes()) without
                         filtering twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from placement_engine.control_plane.cluster_state import ClusterSnapshot
from placement_engine.control_plane.filters import FilterOutcome, FilterPipeline
from placement_engine.control_plane.scoring import ScoreResult, ScoringPipeline
from placement_engine.shared.errors import SchedulingFailedError
from placement_engine.shared.models import Pod

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    """
    A successful placement decision.

    Fields:
        pod_id   → The pod.
        node_id  → Chosen node.
        pinned   → True if chosen by the explicit node pin (bind must skip
                   the fit check).
        outcome  → FilterOutcome that produced the eligible set.
        scores   → ScoreResult, None for pinned pods.
    """
    pod_id: str
    node_id: str
    pinned: bool
    outcome: FilterOutcome
    scores: Optional[ScoreResult] = None


def find_host(
    pod: Pod,
    snapshot: ClusterSnapshot,
    filters: FilterPipeline,
    scorer: ScoringPipeline,
) -> ScheduleResult:
    """
    Choose a node for `pod` against a frozen snapshot.

    Returns:
        ScheduleResult for the winning node.

    Raises:
        SchedulingFailedError: if no node is eligible.
    """
    outcome = filters.run(pod, snapshot)

    if outcome.pinned:
        if not outcome.eligible:
            raise SchedulingFailedError(pod.pod_id, outcome.fit_error(), outcome)
        node_id = outcome.eligible[0]
        logger.info("find_host: pod %s pinned → node %s", pod.pod_id, node_id)
        return ScheduleResult(pod_id=pod.pod_id, node_id=node_id, pinned=True, outcome=outcome)

    if not outcome.eligible:
        fit_error = outcome.fit_error()
        logger.info("find_host: pod %s unschedulable: %s", pod.pod_id, fit_error)
        raise SchedulingFailedError(pod.pod_id, fit_error, outcome)

    scores = scorer.run(pod, snapshot, outcome.eligible)
    logger.info(
        "find_host: pod %s → node %s (%d eligible of %d)",
        pod.pod_id, scores.best, len(outcome.eligible), len(snapshot),
    )
    return ScheduleResult(
        pod_id=pod.pod_id,
        node_id=scores.best,
        pinned=False,
        outcome=outcome,
        scores=scores,
    )
