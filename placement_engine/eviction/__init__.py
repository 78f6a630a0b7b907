"""
placement_engine/eviction — delayed eviction of running pods from
NoExecute-tainted nodes.

Public API:
    EvictionTimer          — one (pod, node, taint) countdown
    EvictionTimerManager   — single-owner actor per timer key
    TimerState             — Armed | Cancelled | Fired
    NoExecuteTaintManager  — taint/toleration changes → arm / cancel / evict
"""

from placement_engine.eviction.timers import (
    EvictionTimer,
    EvictionTimerManager,
    TimerState,
)
from placement_engine.eviction.taint_manager import NoExecuteTaintManager

__all__ = [
    "EvictionTimer",
    "EvictionTimerManager",
    "TimerState",
    "NoExecuteTaintManager",
]
