"""
placement_engine/shared/models.py
─────────────────────────────────
The single source of truth for every data structure the placement engine
reads or writes.

Design philosophy
-----------------
Every model answers one question: "What does the engine *need to know*
about this thing in order to decide where a pod may run, where it should
run, and when it must leave?"

Ownership
---------
  Node  → owned by the cluster-state provider. The engine treats it as
          read-only; the only thing it mutates at bind time is the
          per-node resource ledger (control_plane/ledger.py), never the
          Node record itself.
  Pod   → created Pending; mutated only by the engine's bind / evict /
          preempt transitions.
  Taint, Toleration, affinity terms → immutable value objects.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class TaintEffect(str, Enum):
    """
    What a taint does to pods that do not tolerate it.

    NO_SCHEDULE        → new pods are not placed on the node.
    PREFER_NO_SCHEDULE → soft avoidance; the node is penalised in scoring.
    NO_EXECUTE         → new pods are not placed AND running pods are evicted
                         (after their tolerationSeconds, if any).
    """
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


class TolerationOperator(str, Enum):
    """
    How a toleration's value is compared with a taint's value.

    EQUAL  → string equality.
    EXISTS → any value; the toleration must not carry a value itself.
    GT     → toleration value (int64) strictly greater than the taint value.
    LT     → toleration value (int64) strictly less than the taint value.
    """
    EQUAL = "Equal"
    EXISTS = "Exists"
    GT = "Gt"
    LT = "Lt"


class SelectorOperator(str, Enum):
    """Operators usable in node-affinity match expressions."""
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"
    GT = "Gt"
    LT = "Lt"


class PreemptionPolicy(str, Enum):
    """Whether a pending pod may evict lower-priority pods to make room."""
    PREEMPT_LOWER_PRIORITY = "PreemptLowerPriority"
    NEVER = "Never"


class PodPhase(str, Enum):
    """
    Engine-visible lifecycle of a pod.

    PENDING     → waiting in the scheduling queue (fresh, or re-injected
                  after eviction / preemption).
    RUNNING     → bound to a node; resources reserved in the ledger.
    TERMINATING → a graceful termination request is in flight (preemption
                  victim). Resources stay reserved until it completes.
    DELETED     → removed by its owner; never scheduled again.
    """
    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATING = "Terminating"
    DELETED = "Deleted"


class NodeConditionType(str, Enum):
    """Health conditions reported by the node-health observer."""
    READY = "Ready"
    MEMORY_PRESSURE = "MemoryPressure"
    DISK_PRESSURE = "DiskPressure"
    PID_PRESSURE = "PIDPressure"
    NETWORK_UNAVAILABLE = "NetworkUnavailable"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: RESOURCE MODEL
# What a pod asks for and what a node provides.
# ─────────────────────────────────────────────────────────────────────────────

class ResourceVector(BaseModel):
    """
    A vector of schedulable resources.

    Integer units throughout, so that fit checks and ledger arithmetic are
    exact (no float drift between reserve and release).

    Fields:
        cpu_millis           → CPU in millicores (1000 = one core).
        memory_mb            → Memory in MiB.
        ephemeral_storage_mb → Local scratch storage in MiB.
        scalar               → Extended resources, e.g. {"nvidia.com/gpu": 2}.
    """
    cpu_millis: int = Field(0, ge=0)
    memory_mb: int = Field(0, ge=0)
    ephemeral_storage_mb: int = Field(0, ge=0)
    scalar: Dict[str, int] = Field(default_factory=dict)

    def as_dict(self) -> Dict[str, int]:
        """Flatten to {resource_name: amount}, omitting nothing."""
        flat = {
            "cpu": self.cpu_millis,
            "memory": self.memory_mb,
            "ephemeral-storage": self.ephemeral_storage_mb,
        }
        flat.update(self.scalar)
        return flat

    @classmethod
    def from_dict(cls, flat: Dict[str, int]) -> "ResourceVector":
        """Inverse of as_dict(). Negative results are clamped to zero."""
        scalar = {
            name: max(0, amount) for name, amount in flat.items()
            if name not in ("cpu", "memory", "ephemeral-storage") and amount
        }
        return cls(
            cpu_millis=max(0, flat.get("cpu", 0)),
            memory_mb=max(0, flat.get("memory", 0)),
            ephemeral_storage_mb=max(0, flat.get("ephemeral-storage", 0)),
            scalar=scalar,
        )

    def add(self, other: "ResourceVector") -> "ResourceVector":
        merged = self.as_dict()
        for name, amount in other.as_dict().items():
            merged[name] = merged.get(name, 0) + amount
        return ResourceVector.from_dict(merged)

    def subtract(self, other: "ResourceVector") -> "ResourceVector":
        """Component-wise difference, clamped at zero."""
        merged = self.as_dict()
        for name, amount in other.as_dict().items():
            merged[name] = merged.get(name, 0) - amount
        return ResourceVector.from_dict(merged)

    def insufficient(self, request: "ResourceVector") -> List[str]:
        """
        Names of resources for which this vector (treated as free capacity)
        cannot cover the request. Empty list means the request fits.

        Zero-valued requests always fit, even for resources the node does
        not advertise at all.
        """
        free = self.as_dict()
        return [
            name for name, amount in request.as_dict().items()
            if amount > 0 and free.get(name, 0) < amount
        ]

    def weight_against(self, capacity: "ResourceVector") -> float:
        """
        Σ amount / capacity over every dimension the capacity advertises.

        Used to compare vectors of mixed units: a victim freeing 500m of a
        1000m node weighs the same as one freeing 2Gi of a 4Gi node.
        """
        cap = capacity.as_dict()
        return sum(
            amount / cap[name]
            for name, amount in self.as_dict().items()
            if cap.get(name, 0) > 0
        )

    def fits_within(self, capacity: "ResourceVector") -> bool:
        return not capacity.insufficient(self)

    def is_zero(self) -> bool:
        return all(amount == 0 for amount in self.as_dict().values())


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: TAINTS AND TOLERATIONS
# ─────────────────────────────────────────────────────────────────────────────

TaintIdentity = Tuple[str, str, str]
"""(key, value, effect). The part of a taint that identifies an eviction timer."""


class Taint(BaseModel):
    """
    Node-side marker that repels pods which do not tolerate it.

    Fields:
        key        → Taint key, e.g. "node.kubernetes.io/unreachable".
        value      → Optional value. None and "" are equivalent.
        effect     → NoSchedule | PreferNoSchedule | NoExecute.
        time_added → Engine-clock seconds at which the taint became
                     effective. Anchors NoExecute eviction deadlines:
                     deadline = time_added + tolerationSeconds.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[str] = None
    effect: TaintEffect
    time_added: float = 0.0

    @property
    def identity(self) -> TaintIdentity:
        return (self.key, self.value or "", self.effect.value)

    def __str__(self) -> str:
        if self.value:
            return f"{self.key}={self.value}:{self.effect.value}"
        return f"{self.key}:{self.effect.value}"


class Toleration(BaseModel):
    """
    Pod-side declaration permitting a matching taint to be ignored.

    Fields:
        key                → Empty string is a wildcard (requires Exists).
        operator           → Equal | Exists | Gt | Lt.
        value              → Compared against the taint value per operator.
                             Must be absent for Exists.
        effect             → None matches every effect.
        toleration_seconds → Only meaningful for NoExecute: how long a
                             running pod may stay after the taint appears.
                             None = forever. Zero or negative = evict now.
    """
    model_config = ConfigDict(frozen=True)

    key: str = ""
    operator: TolerationOperator = TolerationOperator.EQUAL
    value: Optional[str] = None
    effect: Optional[TaintEffect] = None
    toleration_seconds: Optional[int] = None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: NODE AFFINITY
# ─────────────────────────────────────────────────────────────────────────────

class NodeSelectorRequirement(BaseModel):
    """A single label expression, e.g. zone In [a, b]."""
    model_config = ConfigDict(frozen=True)

    key: str
    operator: SelectorOperator
    values: Tuple[str, ...] = ()


class NodeSelectorTerm(BaseModel):
    """Conjunction (AND) of match expressions. An empty term matches nothing."""
    match_expressions: List[NodeSelectorRequirement] = Field(default_factory=list)


class PreferredSchedulingTerm(BaseModel):
    """A weighted soft preference; contributes `weight` to the score on match."""
    weight: int = Field(..., ge=1, le=100)
    preference: NodeSelectorTerm


class NodeAffinity(BaseModel):
    """
    Required terms are ORed; each term is an AND of expressions.

    required is None  → no hard constraint.
    required is []    → no term can be satisfied, so every node fails.
    """
    required: Optional[List[NodeSelectorTerm]] = None
    preferred: List[PreferredSchedulingTerm] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: NODE
# ─────────────────────────────────────────────────────────────────────────────

class Node(BaseModel):
    """
    A host in the cluster snapshot.

    Fields:
        node_id       → Unique id. Also the final scoring tie-breaker.
        labels        → Matched by node affinity and node_selector.
        taints        → Ordered taint list (see TaintIndex).
        allocatable   → Capacity available to pods.
        max_pods      → Pod-count capacity; ResourceFit checks it.
        conditions    → Latest health conditions.
        unschedulable → Cordon flag. Cordoned nodes accept no new pods but
                        keep their running ones.
        images        → Image name → size in MiB already present on the node.
    """
    node_id: str
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    allocatable: ResourceVector = Field(default_factory=ResourceVector)
    max_pods: int = Field(110, ge=0)
    conditions: Dict[NodeConditionType, ConditionStatus] = Field(default_factory=dict)
    unschedulable: bool = False
    images: Dict[str, int] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: POD
# ─────────────────────────────────────────────────────────────────────────────

class Pod(BaseModel):
    """
    A schedulable workload unit.

    Fields:
        pod_id                     → Unique id.
        namespace                  → Scopes disruption budgets.
        labels                     → Matched by disruption budgets.
        priority                   → Signed 32-bit; higher schedules first
                                     and may preempt lower.
        preemption_policy          → Never disables preemption for this pod
                                     as a preemptor (it can still be a victim).
        tolerations                → See Toleration.
        requests                   → Resource request vector.
        node_name                  → Explicit pin. Bypasses every filter.
        node_selector              → Label equality map, ANDed with affinity.
        affinity                   → Required / preferred node affinity.
        images                     → Container images (ImageLocality scoring).
        termination_grace_period_s → Hint passed to the termination callback.
        phase                      → See PodPhase.
        node_id                    → Current binding (None while Pending).
        nominated_node_id          → Node where victims were preempted for
                                     this pod; cleared on bind.
        scheduling_attempts        → Failed attempts plus evictions since the
                                     pod was created. Drives backoff and
                                     parking; never reset, so a pod that keeps
                                     being evicted ends up parked.
    """
    pod_id: str
    namespace: str = "default"
    labels: Dict[str, str] = Field(default_factory=dict)
    priority: int = Field(0, ge=-(2 ** 31), le=2 ** 31 - 1)
    preemption_policy: PreemptionPolicy = PreemptionPolicy.PREEMPT_LOWER_PRIORITY
    tolerations: List[Toleration] = Field(default_factory=list)
    requests: ResourceVector = Field(default_factory=ResourceVector)
    node_name: Optional[str] = None
    node_selector: Dict[str, str] = Field(default_factory=dict)
    affinity: Optional[NodeAffinity] = None
    images: List[str] = Field(default_factory=list)
    termination_grace_period_s: float = Field(30.0, ge=0.0)

    phase: PodPhase = PodPhase.PENDING
    node_id: Optional[str] = None
    nominated_node_id: Optional[str] = None
    scheduling_attempts: int = Field(0, ge=0)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: DISRUPTION BUDGET
# ─────────────────────────────────────────────────────────────────────────────

class DisruptionBudget(BaseModel):
    """
    Externally supplied limit on voluntary disruptions.

    A pod is covered when it lives in `namespace` and every match label
    equals the pod's label. An empty match_labels covers every pod in the
    namespace. Preemption never takes more than `disruptions_allowed`
    covered victims.
    """
    name: str
    namespace: str = "default"
    match_labels: Dict[str, str] = Field(default_factory=dict)
    disruptions_allowed: int = Field(0, ge=0)

    @property
    def key(self) -> Tuple[str, str]:
        """Budgets are unique per (namespace, name), never by name alone."""
        return (self.namespace, self.name)

    def covers(self, pod: Pod) -> bool:
        if pod.namespace != self.namespace:
            return False
        return all(pod.labels.get(k) == v for k, v in self.match_labels.items())


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 8: WELL-KNOWN TAINT KEYS
# Applied by the node-condition mapping (control_plane/conditions.py).
# ─────────────────────────────────────────────────────────────────────────────

TAINT_NOT_READY = "node.kubernetes.io/not-ready"
TAINT_UNREACHABLE = "node.kubernetes.io/unreachable"
TAINT_MEMORY_PRESSURE = "node.kubernetes.io/memory-pressure"
TAINT_DISK_PRESSURE = "node.kubernetes.io/disk-pressure"
TAINT_PID_PRESSURE = "node.kubernetes.io/pid-pressure"
TAINT_NETWORK_UNAVAILABLE = "node.kubernetes.io/network-unavailable"
TAINT_UNSCHEDULABLE = "node.kubernetes.io/unschedulable"

# Keys that get the implicit default tolerationSeconds when a running pod
# has no toleration of its own for them.
DEFAULT_TOLERATED_KEYS = (TAINT_NOT_READY, TAINT_UNREACHABLE)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 9: CONVENIENCE TYPE ALIASES
# ─────────────────────────────────────────────────────────────────────────────

# node_id → total score
NodeScores = Dict[str, int]

# (pod_id, node_id, taint identity): one eviction timer per key
TimerKey = Tuple[str, str, TaintIdentity]
