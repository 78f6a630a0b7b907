"""
placement_engine/shared/config.py
──────────────────────────────────
EngineConfig: every tunable of the placement engine in one validated model.

Plugin selection
─────────────────
Filter and score pipelines are built from a PluginSet resolved ONCE when
the pipeline is constructed:

    resolved = defaults − disabled + enabled      (order preserved)

A "*" in `disabled` drops every default first, so

    PluginSet(disabled=["*"], enabled=["NodeResourcesFit"])

runs exactly one filter. Unknown names are rejected at construction time,
never looked up at scheduling time.

The explicit node pin is not a plugin: it is a bypass that always runs
first and cannot be disabled.

Environment
────────────
EngineConfig.from_env() reads PLACEMENT_* variables for the scalar knobs;
plugin sets and weights are configured in code.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Dict, List, Sequence

from pydantic import BaseModel, Field

from placement_engine.shared.errors import ValidationError

# ── Plugin names ───────────────────────────────────────────────────────────────

FILTER_UNSCHEDULABLE = "NodeUnschedulable"
FILTER_RESOURCE_FIT = "NodeResourcesFit"
FILTER_TAINT_TOLERATION = "TaintToleration"
FILTER_NODE_AFFINITY = "NodeAffinity"

SCORE_BALANCED_ALLOCATION = "NodeResourcesBalancedAllocation"
SCORE_LEAST_ALLOCATED = "NodeResourcesLeastAllocated"
SCORE_IMAGE_LOCALITY = "ImageLocality"
SCORE_NODE_AFFINITY = "NodeAffinity"
SCORE_TAINT_TOLERATION = "TaintToleration"

DEFAULT_FILTERS: Sequence[str] = (
    FILTER_UNSCHEDULABLE,
    FILTER_RESOURCE_FIT,
    FILTER_TAINT_TOLERATION,
    FILTER_NODE_AFFINITY,
)
"""Filter order is part of the contract: cheapest and most common first."""

DEFAULT_SCORES: Sequence[str] = (
    SCORE_BALANCED_ALLOCATION,
    SCORE_LEAST_ALLOCATED,
    SCORE_IMAGE_LOCALITY,
    SCORE_NODE_AFFINITY,
    SCORE_TAINT_TOLERATION,
)

DEFAULT_SCORE_WEIGHTS: Dict[str, int] = {
    SCORE_BALANCED_ALLOCATION: 1,
    SCORE_LEAST_ALLOCATED: 1,
    SCORE_IMAGE_LOCALITY: 1,
    SCORE_NODE_AFFINITY: 2,
    SCORE_TAINT_TOLERATION: 1,
}

# ── Scalar defaults ────────────────────────────────────────────────────────────

DEFAULT_TOLERATION_SECONDS: int = 300
"""Implicit grace for not-ready / unreachable NoExecute taints."""

PREFER_NO_SCHEDULE_PENALTY: int = 10
"""Score subtracted per un-tolerated PreferNoSchedule taint (before weight)."""

INITIAL_BACKOFF_S: float = 1.0
MAX_BACKOFF_S: float = 10.0
MAX_SCHEDULING_ATTEMPTS: int = 5

PREEMPTION_WAIT_S: float = 30.0
"""Bounded wait for victims to terminate before forced removal."""


class FailurePolicy(str, Enum):
    """What the caller does when the admission reviewer is unreachable."""
    FAIL = "Fail"        # fail closed: deny
    IGNORE = "Ignore"    # fail open: allow unchanged


class PluginSet(BaseModel):
    """Enabled / disabled plugin names layered over a default list."""
    enabled: List[str] = Field(default_factory=list)
    disabled: List[str] = Field(default_factory=list)

    def resolve(self, defaults: Sequence[str], known: Sequence[str]) -> List[str]:
        """
        Produce the ordered plugin list.

        Raises:
            ValidationError: if a name is neither a known plugin nor "*".
        """
        for name in self.enabled + self.disabled:
            if name != "*" and name not in known:
                raise ValidationError("plugins", name, f"unknown plugin (known: {list(known)})")
        if "*" in self.enabled:
            raise ValidationError("plugins.enabled", "*", "wildcard is only valid in disabled")

        if "*" in self.disabled:
            resolved: List[str] = []
        else:
            resolved = [name for name in defaults if name not in self.disabled]
        for name in self.enabled:
            if name not in resolved:
                resolved.append(name)
        return resolved


class EngineConfig(BaseModel):
    """
    All engine settings. Defaults mirror the module-level constants above.

    Fields:
        filters                    → PluginSet over DEFAULT_FILTERS.
        scores                     → PluginSet over DEFAULT_SCORES.
        score_weights              → Per score plugin multiplier.
        prefer_no_schedule_penalty → See PREFER_NO_SCHEDULE_PENALTY.
        default_toleration_seconds → See DEFAULT_TOLERATION_SECONDS.
        initial_backoff_s          → First requeue delay after a failure.
        max_backoff_s              → Cap on the exponential backoff.
        max_scheduling_attempts    → Failures before a pod is parked until
                                     the next cluster event.
        preemption_wait_s          → Bounded wait for preemption victims.
        max_parallelism            → Concurrent scheduling attempts.
        failure_policy             → Admission transport failure policy.
    """
    filters: PluginSet = Field(default_factory=PluginSet)
    scores: PluginSet = Field(default_factory=PluginSet)
    score_weights: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_SCORE_WEIGHTS))
    prefer_no_schedule_penalty: int = Field(PREFER_NO_SCHEDULE_PENALTY, ge=0)
    default_toleration_seconds: int = Field(DEFAULT_TOLERATION_SECONDS, ge=0)
    initial_backoff_s: float = Field(INITIAL_BACKOFF_S, ge=0.0)
    max_backoff_s: float = Field(MAX_BACKOFF_S, ge=0.0)
    max_scheduling_attempts: int = Field(MAX_SCHEDULING_ATTEMPTS, ge=1)
    preemption_wait_s: float = Field(PREEMPTION_WAIT_S, ge=0.0)
    max_parallelism: int = Field(16, ge=1)
    failure_policy: FailurePolicy = FailurePolicy.FAIL

    def weight_for(self, plugin: str) -> int:
        return self.score_weights.get(plugin, 1)

    def backoff_for(self, attempts: int) -> float:
        """Exponential backoff: initial × 2^(attempts−1), capped."""
        if attempts <= 0:
            return 0.0
        return min(self.initial_backoff_s * (2 ** (attempts - 1)), self.max_backoff_s)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            prefer_no_schedule_penalty=int(
                os.getenv("PLACEMENT_PREFER_NO_SCHEDULE_PENALTY", str(PREFER_NO_SCHEDULE_PENALTY))
            ),
            default_toleration_seconds=int(
                os.getenv("PLACEMENT_DEFAULT_TOLERATION_SECONDS", str(DEFAULT_TOLERATION_SECONDS))
            ),
            initial_backoff_s=float(os.getenv("PLACEMENT_INITIAL_BACKOFF_S", str(INITIAL_BACKOFF_S))),
            max_backoff_s=float(os.getenv("PLACEMENT_MAX_BACKOFF_S", str(MAX_BACKOFF_S))),
            max_scheduling_attempts=int(
                os.getenv("PLACEMENT_MAX_SCHEDULING_ATTEMPTS", str(MAX_SCHEDULING_ATTEMPTS))
            ),
            preemption_wait_s=float(os.getenv("PLACEMENT_PREEMPTION_WAIT_S", str(PREEMPTION_WAIT_S))),
            max_parallelism=int(os.getenv("PLACEMENT_MAX_PARALLELISM", "16")),
            failure_policy=FailurePolicy(os.getenv("PLACEMENT_FAILURE_POLICY", FailurePolicy.FAIL.value)),
        )
