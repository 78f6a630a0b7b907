"""
placement_engine/control_plane/orchestration_service.py
────────────────────────────────────────────────────────
SchedulerService: the central control plane state machine.

It owns exactly one of everything and passes it down explicitly:

    ClusterState           nodes, pods, TaintIndex, ResourceLedger, budgets
    SchedulingQueue        active / backoff / unschedulable
    FilterPipeline         ┐
    ScoringPipeline        ┘ built once from EngineConfig
    PreemptionController   victim selection + termination orchestration
    NoExecuteTaintManager  eviction timers
    AdmissionReviewer      pod / node validation and defaulting
    EventEmitter           observability

Scheduling one pod
───────────────────
  1. snapshot = state.snapshot()
  2. find_host(pod, snapshot)                 → node, or SchedulingFailedError
  3. on failure, if the pod may preempt and is not pinned:
        PreemptionController.preempt()        → victims terminated / forced
        then back to 1, once
  4. ledger.try_reserve(node) under the node's lock
        BindConflictError → event + straight back to the active queue
  5. mark_bound, Scheduled event, reconcile NoExecute timers for the pod

A failure at 2 (after any preemption) increments scheduling_attempts and
sends the pod to backoff, or parks it once max_scheduling_attempts is
reached. Nothing is retried immediately.

Cluster events
───────────────
Node added / changed, taint removed, pod deleted, victim terminated and
pod evicted all free capacity or change eligibility, so each calls
queue.move_all_to_active(). A pod that was itself just evicted is routed
through backoff AFTER that flush, so a pod that keeps being evicted (e.g.
pinned to a node whose NoExecute taint it does not tolerate) is
eventually parked rather than looping.

Concurrency
────────────
Single event loop. Up to max_parallelism attempts run as tasks at once,
each against its own snapshot; the per-node ledger lock is the only thing
they contend on. delete_pod() cancels the pod's in-flight attempt, which
aborts a preemption wait without touching already-issued terminations.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from placement_core.taint_index import TaintDiff
from placement_core.tolerations import validate_tolerations
from placement_engine.control_plane import conditions
from placement_engine.control_plane.admission_controller import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReviewer,
    apply_patch,
)
from placement_engine.control_plane.cluster_state import ClusterState
from placement_engine.control_plane.filters import FilterPipeline
from placement_engine.control_plane.preemption import PodTerminator, PreemptionController
from placement_engine.control_plane.queue import SchedulingQueue
from placement_engine.control_plane.scheduler import find_host
from placement_engine.control_plane.scoring import ScoringPipeline
from placement_engine.eviction.taint_manager import NoExecuteTaintManager
from placement_engine.shared.config import EngineConfig
from placement_engine.shared.errors import (
    BindConflictError,
    PreemptionInfeasibleError,
    SchedulingFailedError,
)
from placement_engine.shared.events import (
    EventEmitter,
    EventRecorder,
    EventType,
    SchedulingEvent,
)
from placement_engine.shared.models import (
    ConditionStatus,
    DisruptionBudget,
    Node,
    NodeConditionType,
    Pod,
    PodPhase,
    PreemptionPolicy,
    Taint,
    Toleration,
)

logger = logging.getLogger(__name__)


class _NoopTerminator:
    """Used when no termination callback is wired: victims are only escalated."""

    async def terminate(self, pod_id: str, grace_period_s: float) -> None:
        logger.debug("no terminator configured; terminate(%s) ignored", pod_id)


class SchedulerService:
    """
    Central control plane: admission, queueing, placement, preemption,
    NoExecute eviction.

    Public API:
        submit(request)                    → Dict[str, str]   (admission + enqueue)
        add_pod(pod)                       → None
        delete_pod(pod_id)                 → None
        update_pod_tolerations(pod_id, ts) → None
        pod_terminated(pod_id, node_id)    → None   (termination callback done)
        upsert_node(node)                  → TaintDiff
        set_node_taints(node_id, taints)   → TaintDiff
        update_node_conditions(node_id, c) → TaintDiff
        remove_node(node_id)               → List[str]  (orphaned pods)
        set_disruption_budget(budget)      → None
        schedule_one(pod_id)               → Dict[str, str]
        run_once()                         → int
        run()                              → never returns; cancel to stop
        get_scheduling_metrics()           → Dict

    Attributes:
        state                : ClusterState
        queue                : SchedulingQueue
        events               : EventEmitter
        preemption           : PreemptionController
        taints               : NoExecuteTaintManager
        scheduling_latencies : deque(maxlen=1000) of attempt latencies (ms)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        terminator: Optional[PodTerminator] = None,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock

        # ── Core state ────────────────────────────────────────────────────────
        self.state = ClusterState()
        self.queue = SchedulingQueue(self.config, clock=clock)
        self.events: EventEmitter = events if events is not None else EventRecorder()
        self.scheduling_latencies: deque = deque(maxlen=1000)

        # ── Pipelines (resolved once) ─────────────────────────────────────────
        self.filters = FilterPipeline(self.config)
        self.scorer = ScoringPipeline(self.config)
        self.reviewer = AdmissionReviewer(self.config)

        # ── Preemption + eviction ─────────────────────────────────────────────
        self.preemption = PreemptionController(
            self.state, self.filters, terminator or _NoopTerminator(),
            self.events, self.config, clock=clock,
        )
        self.preemption.on_evicted = self._requeue_evicted
        self.taints = NoExecuteTaintManager(self.state, self.events, self.config, clock=clock)
        self.taints.on_evicted = self._requeue_evicted

        self._inflight: Dict[str, asyncio.Task] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._wakeup: Optional[asyncio.Event] = None

        logger.info(
            "SchedulerService initialised: filters=%s scores=%s",
            self.filters.plugin_names, self.scorer.plugin_names,
        )

    # ── Nodes ─────────────────────────────────────────────────────────────────

    async def upsert_node(self, node: Node) -> TaintDiff:
        """Add or replace a node; condition taints are derived from node.conditions."""
        taints = conditions.reconcile(node.taints, node.conditions, node.unschedulable)
        diff = self.state.upsert_node(node.model_copy(update={"taints": taints}), now=self._clock())
        await self.taints.reconcile_node(node.node_id)
        self._cluster_event(f"node {node.node_id} updated")
        return diff

    async def set_node_taints(self, node_id: str, taints: Iterable[Taint]) -> TaintDiff:
        """Replace a node's user taints. Condition-managed taints are kept."""
        node = self.state.nodes[node_id]
        desired = conditions.reconcile(list(taints), node.conditions, node.unschedulable)
        return await self._apply_taints(node_id, desired)

    async def update_node_conditions(
        self, node_id: str, node_conditions: Mapping[NodeConditionType, ConditionStatus]
    ) -> TaintDiff:
        node = self.state.nodes[node_id]
        self.state.nodes[node_id] = node.model_copy(update={"conditions": dict(node_conditions)})
        desired = conditions.reconcile(node.taints, node_conditions, node.unschedulable)
        return await self._apply_taints(node_id, desired)

    async def _apply_taints(self, node_id: str, taints: List[Taint]) -> TaintDiff:
        diff = self.state.set_node_taints(node_id, taints, now=self._clock())
        if diff.changed:
            logger.info(
                "node %s taints: +%s -%s",
                node_id, [str(t) for t in diff.added], [str(t) for t in diff.removed],
            )
            await self.taints.reconcile_node(node_id)
        if diff.removed:
            self._cluster_event(f"taints removed from {node_id}")
        return diff

    async def remove_node(self, node_id: str) -> List[str]:
        """Drop a node. Pods bound to it go back to Pending."""
        orphans = self.state.remove_node(node_id)
        for pod_id in orphans:
            pod = self.state.get_pod(pod_id)
            if pod is None:
                continue
            pod.node_id = None
            pod.phase = PodPhase.PENDING
            await self.taints.forget_pod(pod_id, reason="node removed")
            self.preemption.notify_terminated(pod_id)
            self.queue.add(pod)
        self._cluster_event(f"node {node_id} removed")
        return orphans

    def set_disruption_budget(self, budget: DisruptionBudget) -> None:
        self.state.set_budget(budget)

    # ── Pods ──────────────────────────────────────────────────────────────────

    async def submit(self, request: AdmissionRequest) -> Dict[str, str]:
        """
        Admission + enqueue for a pod CREATE request.

        Returns:
            {"status": "QUEUED"|"REJECTED", "pod_id", "message"}
        """
        response: AdmissionResponse = self.reviewer.review(request)
        pod_id = str(request.object.get("pod_id", ""))
        if not response.allowed:
            return {"status": "REJECTED", "pod_id": pod_id, "message": response.message}

        raw = apply_patch(request.object, response.patch)
        raw.setdefault("namespace", request.namespace)
        pod = Pod.model_validate(raw)
        await self.add_pod(pod)
        return {"status": "QUEUED", "pod_id": pod.pod_id, "message": "admitted"}

    async def add_pod(self, pod: Pod) -> None:
        """Register a pod. Running pods with a node_id are adopted as bound."""
        self.state.add_pod(pod)
        if pod.phase == PodPhase.PENDING:
            self.queue.add(pod)
            self._wake()
        elif pod.phase == PodPhase.RUNNING and pod.node_id:
            await self.taints.reconcile_pod(pod.pod_id)

    async def delete_pod(self, pod_id: str) -> None:
        task = self._inflight.pop(pod_id, None)
        if task is not None and not task.done():
            task.cancel()
        self.queue.remove(pod_id)
        await self.taints.forget_pod(pod_id, reason="pod deleted")
        was_bound = self.state.ledger.node_of(pod_id) is not None
        self.state.delete_pod(pod_id)
        self.preemption.notify_terminated(pod_id)
        if was_bound:
            self._cluster_event(f"pod {pod_id} deleted")

    async def update_pod_tolerations(self, pod_id: str, tolerations: List[Toleration]) -> None:
        """
        Replace a pod's tolerations and re-evaluate its eviction timers.

        Raises:
            ValidationError: if any toleration is malformed; nothing changes.
        """
        validate_tolerations(tolerations)
        pod = self.state.pods[pod_id]
        pod.tolerations = list(tolerations)
        await self.taints.reconcile_pod(pod_id)

    async def pod_terminated(self, pod_id: str, node_id: Optional[str] = None) -> None:
        """
        The termination callback finished for a pod; it re-enters Pending.

        Only a pod that is still Terminating is unbound, and only from the
        node the completion names (when it names one). After a forced
        removal the pod may already be Pending or Running elsewhere: a late
        completion for the old placement is ignored.
        """
        pod = self.state.get_pod(pod_id)
        if pod is None:
            return
        current = self.state.ledger.node_of(pod_id)
        if current is None or pod.phase != PodPhase.TERMINATING or (
            node_id is not None and node_id != current
        ):
            logger.debug(
                "ignoring stale termination of %s (reported node=%s, phase=%s, node=%s)",
                pod_id, node_id, pod.phase.value, current,
            )
            return
        self.preemption.notify_terminated(pod_id)
        self.state.unbind(pod_id, phase=PodPhase.PENDING)
        await self.taints.forget_pod(pod_id, reason="pod terminated")
        self._requeue_evicted(pod_id)

    def _requeue_evicted(self, pod_id: str) -> None:
        self._cluster_event(f"pod {pod_id} left its node")
        pod = self.state.get_pod(pod_id)
        if pod is None or pod.phase != PodPhase.PENDING:
            return
        pod.scheduling_attempts += 1
        self.queue.requeue_failed(pod)

    # ── Scheduling ────────────────────────────────────────────────────────────

    async def schedule_one(self, pod_id: str) -> Dict[str, str]:
        """
        One full scheduling attempt for a pending pod.

        Returns:
            {"status": "SCHEDULED"|"UNSCHEDULABLE"|"CONFLICT"|"SKIPPED",
             "pod_id", "node_id", "message"}
        """
        pod = self.state.get_pod(pod_id)
        if pod is None or pod.phase != PodPhase.PENDING:
            return {"status": "SKIPPED", "pod_id": pod_id, "node_id": None, "message": "not pending"}

        started = time.perf_counter()
        preempted = False
        while True:
            snapshot = self.state.snapshot()
            try:
                result = find_host(pod, snapshot, self.filters, self.scorer)
                break
            except SchedulingFailedError as exc:
                if not preempted and self._may_preempt(pod, exc):
                    try:
                        candidate = await self.preemption.preempt(pod, snapshot, exc.outcome)
                        preempted = True
                        for victim_id in candidate.victim_ids:
                            await self.taints.reconcile_pod(victim_id)
                        continue
                    except PreemptionInfeasibleError:
                        pass
                return self._fail(pod, str(exc.fit_error))

        if result.node_id not in self.state.ledger:
            return self._fail(pod, f"node {result.node_id} disappeared before bind")
        try:
            await self.state.ledger.try_reserve(
                result.node_id, pod.pod_id, pod.requests, force=result.pinned
            )
        except BindConflictError as exc:
            logger.warning("bind conflict: %s", exc)
            self._emit(EventType.BIND_CONFLICT, pod.pod_id, result.node_id, "BindConflict", exc.details or "")
            self.queue.add(pod)
            return {"status": "CONFLICT", "pod_id": pod.pod_id, "node_id": result.node_id, "message": str(exc)}

        self.state.mark_bound(pod.pod_id, result.node_id)
        latency_ms = (time.perf_counter() - started) * 1000.0
        self.scheduling_latencies.append(latency_ms)
        self._emit(
            EventType.SCHEDULED, pod.pod_id, result.node_id, "Scheduled",
            "pinned" if result.pinned else f"score={result.scores.totals[result.node_id]}",
        )
        logger.info("pod %s scheduled → node %s", pod.pod_id, result.node_id)
        await self.taints.reconcile_pod(pod.pod_id)
        return {
            "status": "SCHEDULED",
            "pod_id": pod.pod_id,
            "node_id": result.node_id,
            "message": f"pod placed on {result.node_id}",
        }

    def _may_preempt(self, pod: Pod, exc: SchedulingFailedError) -> bool:
        if pod.preemption_policy == PreemptionPolicy.NEVER:
            return False
        return exc.outcome is not None and not exc.outcome.pinned

    def _fail(self, pod: Pod, message: str) -> Dict[str, str]:
        pod.scheduling_attempts += 1
        where = self.queue.requeue_failed(pod)
        self._emit(EventType.FAILED_SCHEDULING, pod.pod_id, None, where, message)
        return {"status": "UNSCHEDULABLE", "pod_id": pod.pod_id, "node_id": None, "message": message}

    async def run_once(self) -> int:
        """
        Attempt every pod that is ready right now, at most max_parallelism at
        a time. Returns the number of attempts started.
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_parallelism)

        tasks = []
        while True:
            pod_id = self.queue.pop()
            if pod_id is None:
                break
            task = asyncio.get_running_loop().create_task(self._attempt(pod_id))
            self._inflight[pod_id] = task
            tasks.append(task)

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("scheduling attempt failed unexpectedly", exc_info=result)
        return len(tasks)

    async def _attempt(self, pod_id: str) -> Dict[str, str]:
        try:
            async with self._semaphore:
                return await self.schedule_one(pod_id)
        finally:
            if self._inflight.get(pod_id) is asyncio.current_task():
                del self._inflight[pod_id]

    async def run(self) -> None:
        """Scheduling loop plus the eviction timer ticker. Cancel to stop."""
        ticker = asyncio.get_running_loop().create_task(self.taints.timers.run())
        try:
            while True:
                await self.run_once()
                await self._idle()
        finally:
            ticker.cancel()
            await self.taints.timers.shutdown()

    async def _idle(self) -> None:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        if self.queue.has_active():
            return
        timeout = None
        ready_at = self.queue.next_ready_at()
        if ready_at is not None:
            timeout = max(0.0, ready_at - self._clock())
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _cluster_event(self, reason: str) -> None:
        if self.queue.move_all_to_active(reason):
            self._wake()

    # ── Metrics ───────────────────────────────────────────────────────────────

    def get_scheduling_metrics(self) -> dict:
        """
        Metrics:
            queue:                active / backoff / unschedulable counts.
            bound_pods:           Pods currently holding a reservation.
            scheduling_p99_ms:    P99 attempt latency across recent binds.
            avg_scheduling_ms:    Mean attempt latency.
            reservations, bind_conflicts, preemptions, preemption_escalations,
            taint_evictions, armed_timers: counters.
            node_utilisation:     Per-node CPU requested / allocatable %.
        """
        latencies = list(self.scheduling_latencies)
        if latencies:
            sorted_lat = sorted(latencies)
            p99_idx = max(0, int(0.99 * len(sorted_lat)) - 1)
            p99 = sorted_lat[p99_idx]
            avg = sum(latencies) / len(latencies)
        else:
            p99 = 0.0
            avg = 0.0

        utilisation = {}
        for node_id, node in self.state.nodes.items():
            capacity = node.allocatable.cpu_millis
            used = self.state.ledger.requested(node_id).cpu_millis
            utilisation[node_id] = round(100.0 * used / capacity, 1) if capacity else 0.0

        return {
            "queue": self.queue.counts(),
            "bound_pods": sum(len(self.state.ledger.pods_on(n)) for n in self.state.nodes),
            "scheduling_p99_ms": round(p99, 2),
            "avg_scheduling_ms": round(avg, 2),
            "reservations": self.state.ledger.reservations,
            "bind_conflicts": self.state.ledger.conflicts,
            "preemptions": self.preemption.preemptions,
            "preemption_escalations": self.preemption.escalations,
            "taint_evictions": self.taints.evictions,
            "armed_timers": len(self.taints.timers),
            "node_utilisation": utilisation,
        }

    def _emit(
        self, kind: EventType, pod_id: str, node_id: Optional[str], reason: str, message: str
    ) -> None:
        self.events.emit(
            SchedulingEvent(
                type=kind, pod_id=pod_id, node_id=node_id,
                reason=reason, message=message, timestamp=self._clock(),
            )
        )
