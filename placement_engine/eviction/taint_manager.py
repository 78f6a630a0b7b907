"""
placement_engine/eviction/taint_manager.py
───────────────────────────────────────────
NoExecuteTaintManager: turns taint and toleration changes into eviction
timer arm / cancel requests, and evictions into Pending pods.

Desired timers
───────────────
For every RUNNING pod on a node and every NoExecute taint on that node:

    grace = no_execute_grace(pod.tolerations, taint, default)
        default = EngineConfig.default_toleration_seconds for the
                  not-ready / unreachable keys, None otherwise

    grace is None   → tolerated forever, no timer
    otherwise       → timer with deadline = taint.time_added + grace

The deadline is anchored on when the taint became effective, not on when
the timer was armed. A timer re-armed after a toleration is withdrawn may
therefore already be overdue and fire at once.

Reconciliation
───────────────
reconcile_node() and reconcile_pod() compare the desired timers with the
active ones:

    desired, not active        → arm
    desired, deadline differs  → arm (reschedules in place)
    active, not desired        → cancel ("taint removed", "tolerated", or
                                 "pod left node")

The caller runs reconcile_node() after every taint change on a node and
reconcile_pod() after a pod binds or its tolerations change.

Eviction
─────────
When a timer fires, the pod (if it is still running on that node) is
unbound back to Pending and `on_evicted(pod_id)` lets the owner requeue it.
Its remaining timers are cancelled.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from placement_core.tolerations import no_execute_grace
from placement_engine.eviction.timers import EvictionTimer, EvictionTimerManager
from placement_engine.shared.config import EngineConfig
from placement_engine.shared.events import EventEmitter, EventType, SchedulingEvent
from placement_engine.shared.models import (
    DEFAULT_TOLERATED_KEYS,
    Pod,
    PodPhase,
    TimerKey,
)

if TYPE_CHECKING:
    from placement_engine.control_plane.cluster_state import ClusterState

logger = logging.getLogger(__name__)


class NoExecuteTaintManager:
    """
    Glue between ClusterState and EvictionTimerManager.

    Usage:
        manager = NoExecuteTaintManager(state, events, config, clock=clock)
        manager.on_evicted = queue_requeue
        await manager.reconcile_node("node-1")
        await manager.timers.tick()
    """

    def __init__(
        self,
        state: ClusterState,
        events: EventEmitter,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
        timers: Optional[EvictionTimerManager] = None,
    ) -> None:
        self._state = state
        self._events = events
        self._config = config or EngineConfig()
        self._clock = clock
        self.timers = timers or EvictionTimerManager(clock=clock)
        self.timers.on_fire = self._on_fire
        self.on_evicted: Optional[Callable[[str], None]] = None
        self.evictions: int = 0

    # ── Desired state ──────────────────────────────────────────────────────────

    def desired_for_pod(self, pod: Pod) -> Dict[TimerKey, float]:
        """Timer key → deadline for one pod on its current node."""
        if pod.phase != PodPhase.RUNNING or not pod.node_id:
            return {}
        desired: Dict[TimerKey, float] = {}
        for taint in self._state.taint_index.no_execute_taints(pod.node_id):
            default = (
                self._config.default_toleration_seconds
                if taint.key in DEFAULT_TOLERATED_KEYS else None
            )
            grace = no_execute_grace(pod.tolerations, taint, default_seconds=default)
            if grace is None:
                continue
            desired[(pod.pod_id, pod.node_id, taint.identity)] = taint.time_added + grace
        return desired

    # ── Reconciliation ─────────────────────────────────────────────────────────

    async def reconcile_node(self, node_id: str) -> None:
        pod_ids = {p.pod_id for p in self._state.bound_pods(node_id)}
        pod_ids.update(key[0] for key in self.timers.keys_for(node_id=node_id))
        for pod_id in sorted(pod_ids):
            await self._reconcile(pod_id, node_id)

    async def reconcile_pod(self, pod_id: str) -> None:
        pod = self._state.get_pod(pod_id)
        node_ids = {key[1] for key in self.timers.keys_for(pod_id=pod_id)}
        if pod is not None and pod.node_id:
            node_ids.add(pod.node_id)
        for node_id in sorted(node_ids):
            await self._reconcile(pod_id, node_id)

    async def forget_pod(self, pod_id: str, reason: str = "pod left node") -> None:
        """Cancel every timer of a pod (deleted, preempted, or evicted)."""
        for key in self.timers.keys_for(pod_id=pod_id):
            if await self.timers.cancel(key, reason):
                self._emit_cancelled(key, reason)

    async def _reconcile(self, pod_id: str, node_id: str) -> None:
        pod = self._state.get_pod(pod_id)
        desired: Dict[TimerKey, float] = {}
        if pod is not None and pod.node_id == node_id:
            desired = self.desired_for_pod(pod)

        for key in self.timers.keys_for(pod_id=pod_id, node_id=node_id):
            if key in desired:
                continue
            reason = self._cancel_reason(key, pod)
            if await self.timers.cancel(key, reason):
                self._emit_cancelled(key, reason)

        for key, deadline in sorted(desired.items()):
            # A previous key may have fired and evicted the pod.
            live = self._state.get_pod(pod_id)
            if live is None or live.phase != PodPhase.RUNNING or live.node_id != node_id:
                return
            existing = self.timers.get(key)
            if existing is not None and existing.deadline == deadline:
                continue
            if existing is None:
                self._events.emit(
                    SchedulingEvent(
                        type=EventType.TAINT_EVICTION_ARMED, pod_id=pod_id, node_id=node_id,
                        reason="NoExecuteTaint",
                        message=f"taint {_taint_str(key)} evicts at t={deadline:.1f}",
                        timestamp=self._clock(),
                    )
                )
            await self.timers.arm(key, deadline)

    def _cancel_reason(self, key: TimerKey, pod: Optional[Pod]) -> str:
        pod_id, node_id, identity = key
        if pod is None or pod.node_id != node_id or pod.phase != PodPhase.RUNNING:
            return "pod left node"
        if self._state.taint_index.get(node_id, identity) is None:
            return "taint removed"
        return "tolerated"

    # ── Eviction ───────────────────────────────────────────────────────────────

    async def _on_fire(self, timer: EvictionTimer) -> None:
        pod = self._state.get_pod(timer.pod_id)
        if pod is None or pod.phase != PodPhase.RUNNING or pod.node_id != timer.node_id:
            logger.debug("timer %s fired for a pod no longer on the node", timer.key)
            return

        self._state.unbind(pod.pod_id, phase=PodPhase.PENDING)
        self.evictions += 1
        logger.info(
            "evicted pod %s from %s (NoExecute %s)", pod.pod_id, timer.node_id, _taint_str(timer.key)
        )
        self._events.emit(
            SchedulingEvent(
                type=EventType.TAINT_EVICTED, pod_id=pod.pod_id, node_id=timer.node_id,
                reason="NoExecuteTaint",
                message=f"taint {_taint_str(timer.key)} not tolerated",
                timestamp=self._clock(),
            )
        )
        await self.forget_pod(pod.pod_id, reason="pod evicted")
        if self.on_evicted is not None:
            self.on_evicted(pod.pod_id)

    def _emit_cancelled(self, key: TimerKey, reason: str) -> None:
        self._events.emit(
            SchedulingEvent(
                type=EventType.TAINT_EVICTION_CANCELLED, pod_id=key[0], node_id=key[1],
                reason=reason, message=f"taint {_taint_str(key)}",
                timestamp=self._clock(),
            )
        )

    def pending_evictions(self, node_id: Optional[str] = None) -> List[EvictionTimer]:
        return [
            t for t in self.timers.active()
            if node_id is None or t.node_id == node_id
        ]


def _taint_str(key: TimerKey) -> str:
    taint_key, value, effect = key[2]
    if value:
        return f"{taint_key}={value}:{effect}"
    return f"{taint_key}:{effect}"
