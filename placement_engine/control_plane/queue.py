"""
placement_engine/control_plane/queue.py
────────────────────────────────────────
SchedulingQueue: which pending pod is attempted next, and when a failed
pod may be attempted again.

Three sub-queues
─────────────────
  active         heap of (−priority, sequence). Highest priority first;
                 FIFO among equals.
  backoff        heap of (ready_at, sequence). A pod that failed its n-th
                 attempt waits EngineConfig.backoff_for(n) seconds:
                     min(initial × 2^(n−1), max)
  unschedulable  pods that failed max_scheduling_attempts times. They stay
                 parked until a cluster event (node added / changed, pod
                 removed, resources freed) calls move_all_to_active().

A pod id lives in at most one sub-queue at a time. Heaps use lazy deletion:
remove() only drops the id from the index dict, and stale heap entries are
skipped when popped.

Failures never spin: every failed attempt lands in backoff or parking,
never straight back on the active heap.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from placement_engine.shared.config import EngineConfig
from placement_engine.shared.models import Pod

logger = logging.getLogger(__name__)

QUEUE_ACTIVE = "active"
QUEUE_BACKOFF = "backoff"
QUEUE_UNSCHEDULABLE = "unschedulable"


class SchedulingQueue:
    """
    Priority queue of pending pod ids with exponential backoff.

    Usage:
        queue = SchedulingQueue(config, clock=lambda: now)
        queue.add(pod)
        pod_id = queue.pop()
        queue.requeue_failed(pod)      # after a failed attempt
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or EngineConfig()
        self._clock = clock
        self._seq = itertools.count()
        self._active_heap: List[Tuple[int, int, str]] = []
        self._backoff_heap: List[Tuple[float, int, str]] = []
        self._active: Dict[str, int] = {}
        self._backoff: Dict[str, int] = {}
        self._unschedulable: Dict[str, int] = {}
        self._priority: Dict[str, int] = {}

    # ── Insertion ──────────────────────────────────────────────────────────────

    def add(self, pod: Pod) -> None:
        """Put a pod on the active heap (no-op if it is already queued anywhere)."""
        if pod.pod_id in self:
            return
        self._priority[pod.pod_id] = pod.priority
        self._push_active(pod.pod_id)

    def requeue_failed(self, pod: Pod) -> str:
        """
        Route a pod whose attempt just failed. pod.scheduling_attempts must
        already include this failure.

        Returns:
            QUEUE_BACKOFF or QUEUE_UNSCHEDULABLE.
        """
        self.remove(pod.pod_id)
        self._priority[pod.pod_id] = pod.priority
        if pod.scheduling_attempts >= self._config.max_scheduling_attempts:
            self._unschedulable[pod.pod_id] = next(self._seq)
            logger.info(
                "pod %s parked after %d attempts", pod.pod_id, pod.scheduling_attempts
            )
            return QUEUE_UNSCHEDULABLE

        delay = self._config.backoff_for(pod.scheduling_attempts)
        seq = next(self._seq)
        self._backoff[pod.pod_id] = seq
        heapq.heappush(self._backoff_heap, (self._clock() + delay, seq, pod.pod_id))
        logger.debug("pod %s backing off %.2fs (attempt %d)", pod.pod_id, delay, pod.scheduling_attempts)
        return QUEUE_BACKOFF

    def _push_active(self, pod_id: str) -> None:
        seq = next(self._seq)
        self._active[pod_id] = seq
        heapq.heappush(self._active_heap, (-self._priority[pod_id], seq, pod_id))

    # ── Removal ────────────────────────────────────────────────────────────────

    def pop(self) -> Optional[str]:
        """Highest-priority ready pod id, or None. Flushes due backoffs first."""
        self.flush_backoff()
        while self._active_heap:
            _, seq, pod_id = heapq.heappop(self._active_heap)
            if self._active.get(pod_id) == seq:
                del self._active[pod_id]
                return pod_id
        return None

    def remove(self, pod_id: str) -> bool:
        """Forget a pod in whichever sub-queue holds it. True if it was queued."""
        found = False
        for index in (self._active, self._backoff, self._unschedulable):
            if index.pop(pod_id, None) is not None:
                found = True
        if found:
            self._priority.pop(pod_id, None)
        return found

    # ── Movement ───────────────────────────────────────────────────────────────

    def flush_backoff(self) -> int:
        """Move every pod whose backoff expired to the active heap."""
        now = self._clock()
        moved = 0
        while self._backoff_heap and self._backoff_heap[0][0] <= now:
            _, seq, pod_id = heapq.heappop(self._backoff_heap)
            if self._backoff.get(pod_id) != seq:
                continue
            del self._backoff[pod_id]
            self._push_active(pod_id)
            moved += 1
        return moved

    def move_all_to_active(self, reason: str = "") -> int:
        """Cluster event: parked and backing-off pods become active now."""
        moved = 0
        for pod_id in sorted(self._unschedulable, key=self._unschedulable.get):
            del self._unschedulable[pod_id]
            self._push_active(pod_id)
            moved += 1
        for pod_id in sorted(self._backoff, key=self._backoff.get):
            del self._backoff[pod_id]
            self._push_active(pod_id)
            moved += 1
        if moved:
            logger.debug("%d pod(s) moved to active (%s)", moved, reason or "cluster event")
        return moved

    # ── Queries ────────────────────────────────────────────────────────────────

    def where(self, pod_id: str) -> Optional[str]:
        if pod_id in self._active:
            return QUEUE_ACTIVE
        if pod_id in self._backoff:
            return QUEUE_BACKOFF
        if pod_id in self._unschedulable:
            return QUEUE_UNSCHEDULABLE
        return None

    def next_ready_at(self) -> Optional[float]:
        """Earliest backoff expiry, or None if nothing is backing off."""
        while self._backoff_heap:
            ready_at, seq, pod_id = self._backoff_heap[0]
            if self._backoff.get(pod_id) == seq:
                return ready_at
            heapq.heappop(self._backoff_heap)
        return None

    def has_active(self) -> bool:
        return bool(self._active)

    def counts(self) -> Dict[str, int]:
        return {
            QUEUE_ACTIVE: len(self._active),
            QUEUE_BACKOFF: len(self._backoff),
            QUEUE_UNSCHEDULABLE: len(self._unschedulable),
        }

    def __contains__(self, pod_id: str) -> bool:
        return self.where(pod_id) is not None

    def __len__(self) -> int:
        return len(self._active) + len(self._backoff) + len(self._unschedulable)
