"""
placement_engine/control_plane/conditions.py
─────────────────────────────────────────────
Node conditions → well-known taints.

The node-health observer reports conditions; the engine turns them into
taints so that every downstream decision (filtering, eviction timers) only
ever has to look at taints.

    Ready=False               → not-ready:NoExecute
    Ready=Unknown             → unreachable:NoExecute
    MemoryPressure=True       → memory-pressure:NoSchedule
    DiskPressure=True         → disk-pressure:NoSchedule
    PIDPressure=True          → pid-pressure:NoSchedule
    NetworkUnavailable=True   → network-unavailable:NoSchedule
    unschedulable (cordon)    → unschedulable:NoSchedule

Taints whose key is one of these are owned by this module: reconcile()
replaces them wholesale. Every other taint on the node is left as it was.
A condition that persists keeps its taint's original time_added, because
TaintIndex keeps the stored taint for an unchanged identity.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Sequence, Tuple

from placement_engine.shared.models import (
    TAINT_DISK_PRESSURE,
    TAINT_MEMORY_PRESSURE,
    TAINT_NETWORK_UNAVAILABLE,
    TAINT_NOT_READY,
    TAINT_PID_PRESSURE,
    TAINT_UNREACHABLE,
    TAINT_UNSCHEDULABLE,
    ConditionStatus,
    NodeConditionType,
    Taint,
    TaintEffect,
)

CONDITION_TAINTS: Dict[Tuple[NodeConditionType, ConditionStatus], Tuple[str, TaintEffect]] = {
    (NodeConditionType.READY, ConditionStatus.FALSE): (TAINT_NOT_READY, TaintEffect.NO_EXECUTE),
    (NodeConditionType.READY, ConditionStatus.UNKNOWN): (TAINT_UNREACHABLE, TaintEffect.NO_EXECUTE),
    (NodeConditionType.MEMORY_PRESSURE, ConditionStatus.TRUE): (TAINT_MEMORY_PRESSURE, TaintEffect.NO_SCHEDULE),
    (NodeConditionType.DISK_PRESSURE, ConditionStatus.TRUE): (TAINT_DISK_PRESSURE, TaintEffect.NO_SCHEDULE),
    (NodeConditionType.PID_PRESSURE, ConditionStatus.TRUE): (TAINT_PID_PRESSURE, TaintEffect.NO_SCHEDULE),
    (NodeConditionType.NETWORK_UNAVAILABLE, ConditionStatus.TRUE): (
        TAINT_NETWORK_UNAVAILABLE, TaintEffect.NO_SCHEDULE,
    ),
}

MANAGED_TAINT_KEYS = frozenset(
    [key for key, _ in CONDITION_TAINTS.values()] + [TAINT_UNSCHEDULABLE]
)


def condition_taints(
    conditions: Mapping[NodeConditionType, ConditionStatus], unschedulable: bool = False
) -> List[Taint]:
    """Taints implied by the conditions alone, in NodeConditionType order."""
    taints = []
    for condition_type in NodeConditionType:
        status = conditions.get(condition_type)
        mapped = CONDITION_TAINTS.get((condition_type, status))
        if mapped is not None:
            key, effect = mapped
            taints.append(Taint(key=key, effect=effect))
    if unschedulable:
        taints.append(Taint(key=TAINT_UNSCHEDULABLE, effect=TaintEffect.NO_SCHEDULE))
    return taints


def reconcile(
    current: Sequence[Taint],
    conditions: Mapping[NodeConditionType, ConditionStatus],
    unschedulable: bool = False,
) -> List[Taint]:
    """
    Full taint list for a node: its non-managed taints followed by the
    condition taints. Feed the result to ClusterState.set_node_taints().
    """
    kept = [t for t in current if t.key not in MANAGED_TAINT_KEYS]
    return kept + condition_taints(conditions, unschedulable)
