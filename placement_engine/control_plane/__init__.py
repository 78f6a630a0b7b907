"""
placement_engine/control_plane — the scheduling brain.

Public API:

    State:
        ClusterState, ClusterSnapshot, NodeInfo — arena of nodes and pods
        ResourceLedger          — per-node reservations and locks

    Placement:
        FilterPipeline          — ordered predicates, per-node diagnoses
        ScoringPipeline         — weighted integer scores, stable tie-break
        find_host()             — filter + score → ScheduleResult
        SchedulingQueue         — priority queue with backoff and parking

    Preemption:
        PreemptionController    — victim selection and termination waits
        select_victims()        — minimal victim set on one node
        PodTerminator           — termination callback protocol

    Boundary:
        AdmissionReviewer       — pod / node validation, default tolerations
        review_with_policy()    — failure policy around the caller's transport

    Service:
        SchedulerService        — wires everything above together
"""

from placement_engine.control_plane.admission_controller import (
    AdmissionOperation,
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReviewer,
    admit_node,
    admit_pod,
    review_with_policy,
)
from placement_engine.control_plane.cluster_state import (
    ClusterSnapshot,
    ClusterState,
    NodeInfo,
)
from placement_engine.control_plane.filters import FilterOutcome, FilterPipeline, FitError
from placement_engine.control_plane.ledger import ResourceLedger
from placement_engine.control_plane.orchestration_service import SchedulerService
from placement_engine.control_plane.preemption import (
    PodTerminator,
    PreemptionCandidate,
    PreemptionController,
    pick_candidate,
    select_victims,
)
from placement_engine.control_plane.queue import SchedulingQueue
from placement_engine.control_plane.scheduler import ScheduleResult, find_host
from placement_engine.control_plane.scoring import ScoreResult, ScoringPipeline, select_host

__all__ = [
    "AdmissionOperation",
    "AdmissionRequest",
    "AdmissionResponse",
    "AdmissionReviewer",
    "admit_node",
    "admit_pod",
    "review_with_policy",
    "ClusterSnapshot",
    "ClusterState",
    "NodeInfo",
    "FilterOutcome",
    "FilterPipeline",
    "FitError",
    "ResourceLedger",
    "SchedulerService",
    "PodTerminator",
    "PreemptionCandidate",
    "PreemptionController",
    "pick_candidate",
    "select_victims",
    "SchedulingQueue",
    "ScheduleResult",
    "find_host",
    "ScoreResult",
    "ScoringPipeline",
    "select_host",
]
