"""
placement_engine/shared/errors.py
──────────────────────────────────
Exception hierarchy for the placement engine.

Which errors are fatal?
────────────────────────
None of them crash the scheduling loop:

  ValidationError            → admission denies the object atomically.
  SchedulingFailedError      → pod stays Pending, requeued with backoff.
  PreemptionInfeasibleError  → pod stays Pending, an event is emitted.
  BindConflictError          → lost a ledger race; fit is re-validated and
                               the pod requeued.
  AdmissionRejectedError     → returned to the admission caller as a deny.
  TimerStateError            → only reachable by driving an EvictionTimer
                               directly; the timer manager cannot produce it.
  NodeNotFoundError          → a bound pod named an unregistered node; the
                               pod is not stored.
"""

from __future__ import annotations

from typing import Optional


class PlacementError(Exception):
    """Base exception for all placement engine errors."""

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class ValidationError(PlacementError, ValueError):
    """
    A taint, toleration or numeric value is malformed.

    Attributes:
        field:  Dotted name of the offending field (e.g. "tolerations[1].value").
        value:  The rejected value, as supplied.
        reason: Human-readable explanation.
    """

    def __init__(self, field: str, value: object, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"{field}={value!r}: {reason}")


class SchedulingFailedError(PlacementError):
    """
    No node is eligible for the pod.

    Attributes:
        pod_id:    The pod that could not be placed.
        fit_error: FitError summary (per-reason node counts), or None.
        outcome:   The FilterOutcome, so callers can look for preemption
                   candidates without filtering again.
    """

    def __init__(
        self,
        pod_id: str,
        fit_error: Optional[object] = None,
        outcome: Optional[object] = None,
    ) -> None:
        self.pod_id = pod_id
        self.fit_error = fit_error
        self.outcome = outcome
        super().__init__(
            f"pod {pod_id} could not be scheduled",
            str(fit_error) if fit_error is not None else None,
        )


class PreemptionInfeasibleError(PlacementError):
    """No node has a feasible victim set for the preemptor."""

    def __init__(self, pod_id: str, reason: str) -> None:
        self.pod_id = pod_id
        self.reason = reason
        super().__init__(f"preemption infeasible for pod {pod_id}", reason)


class BindConflictError(PlacementError):
    """The node's ledger changed between filtering and binding."""

    def __init__(self, pod_id: str, node_id: str, insufficient: list) -> None:
        self.pod_id = pod_id
        self.node_id = node_id
        self.insufficient = list(insufficient)
        super().__init__(
            f"bind conflict for pod {pod_id} on node {node_id}",
            f"insufficient: {', '.join(self.insufficient)}",
        )


class AdmissionRejectedError(PlacementError):
    """Raised by admission checks; carries the deny reason."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class TimerStateError(PlacementError):
    """An eviction timer was asked to leave a terminal state."""

    def __init__(self, key: object, current: str, requested: str) -> None:
        self.key = key
        self.current = current
        self.requested = requested
        super().__init__(
            f"timer {key} cannot transition {current} -> {requested}"
        )


class NodeNotFoundError(PlacementError, KeyError):
    """A pod refers to a node the engine has no record of."""

    def __init__(self, node_id: str, pod_id: Optional[str] = None) -> None:
        self.node_id = node_id
        self.pod_id = pod_id
        details = f"pod {pod_id}" if pod_id else None
        super().__init__(f"unknown node {node_id}", details)

    def __str__(self) -> str:
        return self.format_message()
