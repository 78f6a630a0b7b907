"""
placement_engine/shared/events.py
──────────────────────────────────
Structured scheduling / eviction / preemption events.

The engine never prints or returns free-form strings for observability: it
emits SchedulingEvent records through an EventEmitter. The default
EventRecorder keeps a bounded in-memory history (newest last) and mirrors
each event to the module logger; a real deployment plugs in an emitter
that forwards to its event sink.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Deque, List, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SCHEDULED = "Scheduled"
    FAILED_SCHEDULING = "FailedScheduling"
    BIND_CONFLICT = "BindConflict"
    PREEMPTED = "Preempted"
    PREEMPTION_INFEASIBLE = "PreemptionInfeasible"
    PREEMPTION_ESCALATED = "PreemptionEscalated"
    TAINT_EVICTION_ARMED = "TaintEvictionArmed"
    TAINT_EVICTION_CANCELLED = "TaintEvictionCancelled"
    TAINT_EVICTED = "TaintEvicted"


class SchedulingEvent(BaseModel):
    """
    One observable engine decision.

    Fields:
        type      → See EventType.
        pod_id    → The pod the event is about.
        node_id   → The node involved, if any.
        reason    → Short machine-friendly reason.
        message   → Human-readable detail.
        timestamp → Engine-clock seconds.
    """
    type: EventType
    pod_id: str
    node_id: Optional[str] = None
    reason: str = ""
    message: str = ""
    timestamp: float = Field(default_factory=time.time)


class EventEmitter(Protocol):
    def emit(self, event: SchedulingEvent) -> None: ...


class EventRecorder:
    """
    Bounded in-memory EventEmitter.

    Usage:
        recorder = EventRecorder()
        recorder.emit(SchedulingEvent(type=EventType.SCHEDULED, pod_id="p1"))
        recorder.of_type(EventType.SCHEDULED)
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._events: Deque[SchedulingEvent] = deque(maxlen=max_events)

    def emit(self, event: SchedulingEvent) -> None:
        self._events.append(event)
        logger.info(
            "event %s pod=%s node=%s reason=%s %s",
            event.type.value, event.pod_id, event.node_id, event.reason, event.message,
        )

    @property
    def events(self) -> List[SchedulingEvent]:
        return list(self._events)

    def of_type(self, event_type: EventType) -> List[SchedulingEvent]:
        return [e for e in self._events if e.type == event_type]

    def for_pod(self, pod_id: str) -> List[SchedulingEvent]:
        return [e for e in self._events if e.pod_id == pod_id]

    def __len__(self) -> int:
        return len(self._events)
