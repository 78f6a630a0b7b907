"""
placement_engine/eviction/timers.py
────────────────────────────────────
EvictionTimerManager: countdowns for running pods on NoExecute-tainted nodes.

One timer per key
──────────────────
    key = (pod_id, node_id, (taint key, taint value, taint effect))

    NoTimer ──arm──▶ Armed(deadline) ──deadline passes──▶ Fired
                        │
                        └──cancel (taint gone / now tolerated)──▶ Cancelled

Fired and Cancelled are terminal. A later arm() for the same key starts a
fresh EvictionTimer; the finished one moves to history.

Single owner per key
─────────────────────
Every armed key has exactly one asyncio task (its actor) and one
asyncio.Queue (its inbox). arm(), cancel() and tick() never touch the
timer directly: they post a message and wait for the actor to process it.
Because one task handles one message at a time, "cancel" and "fire" for
the same key are strictly ordered; the loser sees a terminal timer and
does nothing. There is no lock to forget.

The actor is unregistered from the manager BEFORE the fire callback runs,
so a callback that cancels the pod's other timers never waits on its own
inbox.

Time
─────
The manager never sleeps towards a deadline. An injectable clock supplies
"now" and tick() asks every actor to compare it with its deadline. In
production, run() calls tick() every `resolution_s`; tests drive tick()
with a fake clock. arm() with a deadline already in the past fires during
the arm() call itself, which is what tolerationSeconds=0 needs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from placement_engine.shared.errors import TimerStateError
from placement_engine.shared.models import TimerKey

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION_S: float = 1.0
"""How often run() ticks when driven by the wall clock."""


class TimerState(str, Enum):
    ARMED = "Armed"
    CANCELLED = "Cancelled"
    FIRED = "Fired"


@dataclass
class EvictionTimer:
    """
    One countdown. Mutated only by its actor task.

    Fields:
        key         → (pod_id, node_id, taint identity).
        deadline    → Engine-clock seconds at which the pod is evicted.
        armed_at    → When the timer was created.
        state       → See TimerState.
        finished_at → When it was cancelled or fired.
        reason      → Why it was cancelled.
    """
    key: TimerKey
    deadline: float
    armed_at: float
    state: TimerState = TimerState.ARMED
    finished_at: Optional[float] = None
    reason: str = ""

    @property
    def pod_id(self) -> str:
        return self.key[0]

    @property
    def node_id(self) -> str:
        return self.key[1]

    @property
    def is_terminal(self) -> bool:
        return self.state != TimerState.ARMED

    def reschedule(self, deadline: float) -> None:
        self._require_armed("Armed")
        self.deadline = deadline

    def cancel(self, now: float, reason: str = "") -> None:
        self._require_armed(TimerState.CANCELLED.value)
        self.state = TimerState.CANCELLED
        self.finished_at = now
        self.reason = reason

    def fire(self, now: float) -> None:
        self._require_armed(TimerState.FIRED.value)
        self.state = TimerState.FIRED
        self.finished_at = now

    def _require_armed(self, requested: str) -> None:
        if self.state != TimerState.ARMED:
            raise TimerStateError(self.key, self.state.value, requested)


# ── Actor messages ─────────────────────────────────────────────────────────────

@dataclass
class _Tick:
    pass


@dataclass
class _Reschedule:
    deadline: float


@dataclass
class _Cancel:
    reason: str


@dataclass
class _Stop:
    pass


class _Actor:
    def __init__(self, timer: EvictionTimer) -> None:
        self.timer = timer
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None


FireCallback = Callable[[EvictionTimer], Awaitable[None]]


class EvictionTimerManager:
    """
    Owns every eviction timer and its actor task.

    Usage:
        manager = EvictionTimerManager(on_fire=evict, clock=lambda: now)
        await manager.arm(key, deadline=300.0)
        await manager.tick()             # fires anything past its deadline
        await manager.cancel(key, "taint removed")

    Must be used from inside a running event loop.
    """

    def __init__(
        self,
        on_fire: Optional[FireCallback] = None,
        clock: Callable[[], float] = time.time,
        history_size: int = 1000,
    ) -> None:
        self.on_fire = on_fire
        self._clock = clock
        self._actors: Dict[TimerKey, _Actor] = {}
        self._history: Deque[EvictionTimer] = deque(maxlen=history_size)
        self.fired: int = 0
        self.cancelled: int = 0

    # ── Public API ─────────────────────────────────────────────────────────────

    async def arm(self, key: TimerKey, deadline: float) -> EvictionTimer:
        """
        Ensure an Armed timer exists for `key` with this deadline.

        An existing Armed timer is rescheduled in place. Returns the timer;
        check its state, since a past deadline fires it before returning.
        """
        actor = self._actors.get(key)
        if actor is not None:
            if actor.timer.deadline != deadline:
                await self._post(actor, _Reschedule(deadline))
            return actor.timer

        timer = EvictionTimer(key=key, deadline=deadline, armed_at=self._clock())
        actor = _Actor(timer)
        self._actors[key] = actor
        actor.task = asyncio.get_running_loop().create_task(self._run_actor(actor))
        logger.debug("timer armed %s deadline=%.1f", key, deadline)
        await self._post(actor, _Tick())
        return timer

    async def cancel(self, key: TimerKey, reason: str = "") -> bool:
        """Cancel an Armed timer. False if there is none (never armed, or already finished)."""
        actor = self._actors.get(key)
        if actor is None:
            return False
        await self._post(actor, _Cancel(reason))
        return actor.timer.state == TimerState.CANCELLED

    async def tick(self) -> int:
        """Ask every actor to check its deadline. Returns how many fired."""
        before = self.fired
        actors = list(self._actors.values())
        for actor in actors:
            actor.inbox.put_nowait(_Tick())
        await asyncio.gather(*(actor.inbox.join() for actor in actors))
        return self.fired - before

    async def run(self, resolution_s: float = DEFAULT_RESOLUTION_S) -> None:
        """Tick forever. Cancel the task running this to stop."""
        while True:
            await self.tick()
            await asyncio.sleep(resolution_s)

    async def shutdown(self) -> None:
        """Stop every actor without firing or cancelling its timer."""
        actors = list(self._actors.values())
        self._actors.clear()
        for actor in actors:
            actor.inbox.put_nowait(_Stop())
        await asyncio.gather(*(a.task for a in actors if a.task is not None))

    # ── Queries ────────────────────────────────────────────────────────────────

    def get(self, key: TimerKey) -> Optional[EvictionTimer]:
        actor = self._actors.get(key)
        return actor.timer if actor else None

    def active(self) -> List[EvictionTimer]:
        return [a.timer for a in self._actors.values()]

    def keys_for(self, pod_id: Optional[str] = None, node_id: Optional[str] = None) -> List[TimerKey]:
        return sorted(
            key for key in self._actors
            if (pod_id is None or key[0] == pod_id) and (node_id is None or key[1] == node_id)
        )

    @property
    def history(self) -> List[EvictionTimer]:
        return list(self._history)

    def __len__(self) -> int:
        return len(self._actors)

    # ── Actor ──────────────────────────────────────────────────────────────────

    async def _post(self, actor: _Actor, message: object) -> None:
        actor.inbox.put_nowait(message)
        await actor.inbox.join()

    async def _run_actor(self, actor: _Actor) -> None:
        timer = actor.timer
        while True:
            message = await actor.inbox.get()
            try:
                if isinstance(message, _Stop):
                    return
                if isinstance(message, _Reschedule):
                    timer.reschedule(message.deadline)
                    logger.debug("timer rescheduled %s deadline=%.1f", timer.key, timer.deadline)
                if isinstance(message, _Cancel):
                    timer.cancel(self._clock(), message.reason)
                    self.cancelled += 1
                    self._retire(actor)
                    logger.debug("timer cancelled %s (%s)", timer.key, message.reason)
                    return
                now = self._clock()
                if now >= timer.deadline:
                    timer.fire(now)
                    self.fired += 1
                    self._retire(actor)
                    logger.info(
                        "timer fired %s deadline=%.1f now=%.1f", timer.key, timer.deadline, now
                    )
                    await self._notify(timer)
                    return
            finally:
                actor.inbox.task_done()

    def _retire(self, actor: _Actor) -> None:
        """Unregister the actor and release anyone waiting on messages it will never read."""
        if self._actors.get(actor.timer.key) is actor:
            del self._actors[actor.timer.key]
        self._history.append(actor.timer)
        while not actor.inbox.empty():
            actor.inbox.get_nowait()
            actor.inbox.task_done()

    async def _notify(self, timer: EvictionTimer) -> None:
        if self.on_fire is None:
            return
        try:
            await self.on_fire(timer)
        except Exception:
            logger.exception("eviction callback failed for %s", timer.key)
