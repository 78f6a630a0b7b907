"""
placement_engine/control_plane/preemption.py
─────────────────────────────────────────────
PreemptionController: make room for a pending pod by evicting lower-priority
pods, when resources are the ONLY thing standing in its way.

When does preemption run?
──────────────────────────
  1. find_host() raised SchedulingFailedError, and
  2. the pod's preemption_policy is not Never, and
  3. at least one node failed NodeResourcesFit and nothing else
     (FilterOutcome.resource_only_nodes()).

A node that also fails a taint or affinity check is never a candidate:
evicting pods cannot change its taints or labels.

Victim selection (per candidate node)
──────────────────────────────────────
  potential victims = running pods with priority STRICTLY below the
                      preemptor's. Equal priority is never preempted.

  order             = ascending priority, then ascending resources freed
                      (ResourceVector.weight_against(allocatable)), then
                      pod_id.

  greedy pass       : take victims in order until the preemptor fits. A
                      victim covered by a DisruptionBudget with no
                      disruptions left is skipped, not taken.

  reprieve pass     : walk the chosen victims from the most valuable
                      (highest priority) down and put each one back if the
                      preemptor still fits without evicting it. The result
                      is minimal: no single victim can be spared.

Pods already Terminating on the node count as freed; if that alone is
enough, the candidate has zero victims and the preemptor just waits.

Choosing between nodes
───────────────────────
    fewest victims  →  largest leftover capacity  →  smallest node_id

Leftover capacity is the node's free vector after evicting the victims and
placing the preemptor, weighted against allocatable. The node_id tie-break
keeps the choice deterministic when two nodes are otherwise identical.

Execution
──────────
  1. victims move to Terminating; covering budgets are charged
  2. one fire-and-forget PodTerminator.terminate() task per victim
  3. the preemptor gets nominated_node_id = chosen node
  4. bounded wait (EngineConfig.preemption_wait_s) for every victim's
     termination to be reported via notify_terminated()
  5. on timeout: forced removal of stragglers (grace 0, reservation
     released immediately), PreemptionEscalated event

Cancelling the preemptor's task during step 4 aborts the wait only.
Termination requests already issued keep running and still complete.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from placement_engine.control_plane.cluster_state import (
    ClusterSnapshot,
    ClusterState,
    NodeInfo,
)
from placement_engine.control_plane.filters import FilterOutcome, FilterPipeline
from placement_engine.shared.config import EngineConfig
from placement_engine.shared.errors import PreemptionInfeasibleError
from placement_engine.shared.events import EventEmitter, EventType, SchedulingEvent
from placement_engine.shared.models import (
    DisruptionBudget,
    Pod,
    PodPhase,
    PreemptionPolicy,
)

logger = logging.getLogger(__name__)


class PodTerminator(Protocol):
    """Termination callback. Must return promptly; completion is reported separately."""

    async def terminate(self, pod_id: str, grace_period_s: float) -> None: ...


@dataclass
class PreemptionCandidate:
    """
    A feasible plan on one node.

    Fields:
        node_id         → Node the preemptor will be nominated to.
        victims         → Pods to terminate, in eviction order.
        awaiting        → Pods already Terminating on the node whose
                          departure the plan relies on.
        leftover_weight → Free capacity left after placing the preemptor.
    """
    node_id: str
    victims: List[Pod] = field(default_factory=list)
    awaiting: List[str] = field(default_factory=list)
    leftover_weight: float = 0.0

    @property
    def victim_ids(self) -> List[str]:
        return [p.pod_id for p in self.victims]

    def sort_key(self) -> tuple:
        return (len(self.victims), -self.leftover_weight, self.node_id)


# ── Pure planning ──────────────────────────────────────────────────────────────

def _fits(preemptor: Pod, info: NodeInfo, filters: FilterPipeline) -> bool:
    return filters.evaluate_node(preemptor, info).passed


def _victim_key(pod: Pod, info: NodeInfo) -> tuple:
    return (pod.priority, pod.requests.weight_against(info.node.allocatable), pod.pod_id)


def select_victims(
    preemptor: Pod,
    info: NodeInfo,
    filters: FilterPipeline,
    budgets: Sequence[DisruptionBudget] = (),
) -> Optional[PreemptionCandidate]:
    """
    Minimal victim set for `preemptor` on one node, or None if infeasible.

    `budgets` are read, never mutated: allowances are tracked on a local copy.
    """
    terminating = [p for p in info.pods if p.phase == PodPhase.TERMINATING]
    base = info.without(terminating)
    awaiting = [p.pod_id for p in terminating]

    removable = sorted(
        (
            p for p in base.pods
            if p.phase == PodPhase.RUNNING and p.priority < preemptor.priority
        ),
        key=lambda p: _victim_key(p, info),
    )
    allowance: Dict[Tuple[str, str], int] = {b.key: b.disruptions_allowed for b in budgets}

    victims: List[Pod] = []
    current = base
    for pod in removable:
        if _fits(preemptor, current, filters):
            break
        covering = [b for b in budgets if b.covers(pod)]
        if any(allowance[b.key] <= 0 for b in covering):
            logger.debug(
                "select_victims: %s spared on %s (disruption budget exhausted)",
                pod.pod_id, info.node_id,
            )
            continue
        for budget in covering:
            allowance[budget.key] -= 1
        victims.append(pod)
        current = current.without([pod])

    if not _fits(preemptor, current, filters):
        return None

    for pod in sorted(victims, key=lambda p: _victim_key(p, info), reverse=True):
        rest = [v for v in victims if v.pod_id != pod.pod_id]
        if _fits(preemptor, base.without(rest), filters):
            victims = rest

    final = base.without(victims)
    leftover = final.free.subtract(preemptor.requests)
    return PreemptionCandidate(
        node_id=info.node_id,
        victims=victims,
        awaiting=awaiting,
        leftover_weight=leftover.weight_against(info.node.allocatable),
    )


def pick_candidate(candidates: Sequence[PreemptionCandidate]) -> Optional[PreemptionCandidate]:
    """Fewest victims, then most leftover capacity, then smallest node_id."""
    if not candidates:
        return None
    return min(candidates, key=PreemptionCandidate.sort_key)


# ── Controller ─────────────────────────────────────────────────────────────────

class PreemptionController:
    """
    Plans and executes preemption against a ClusterState.

    Usage:
        controller = PreemptionController(state, filters, terminator, events, config)
        candidate = await controller.preempt(pod, snapshot, outcome)
        ...
        controller.notify_terminated(victim_id)   # from the termination path

    Attributes:
        on_evicted: Called with a victim's pod_id when forced removal puts it
                    back to Pending, so the owner can requeue it.
    """

    def __init__(
        self,
        state: ClusterState,
        filters: FilterPipeline,
        terminator: PodTerminator,
        events: EventEmitter,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._state = state
        self._filters = filters
        self._terminator = terminator
        self._events = events
        self._config = config or EngineConfig()
        self._clock = clock
        self._terminated: Dict[str, asyncio.Event] = {}
        self._inflight: Set[asyncio.Task] = set()
        self.on_evicted: Optional[Callable[[str], None]] = None
        self.preemptions: int = 0
        self.escalations: int = 0

    def plan(
        self, pod: Pod, snapshot: ClusterSnapshot, outcome: FilterOutcome
    ) -> PreemptionCandidate:
        """
        Pick the node and victims for `pod`. Pure with respect to state.

        Raises:
            PreemptionInfeasibleError: policy is Never, no resource-only
                                       node, or no node has a feasible set.
        """
        if pod.preemption_policy == PreemptionPolicy.NEVER:
            raise PreemptionInfeasibleError(pod.pod_id, "preemption policy is Never")

        nodes = outcome.resource_only_nodes()
        if not nodes:
            raise PreemptionInfeasibleError(
                pod.pod_id, "no node fails on resources alone"
            )

        budgets = list(self._state.budgets.values())
        candidates = []
        for node_id in nodes:
            info = snapshot.get(node_id)
            if info is None:
                continue
            candidate = select_victims(pod, info, self._filters, budgets)
            if candidate is not None:
                candidates.append(candidate)

        chosen = pick_candidate(candidates)
        if chosen is None:
            raise PreemptionInfeasibleError(
                pod.pod_id, f"no feasible victim set on {len(nodes)} candidate node(s)"
            )
        logger.info(
            "preemption plan: pod %s (prio %d) → node %s, victims=%s",
            pod.pod_id, pod.priority, chosen.node_id, chosen.victim_ids,
        )
        return chosen

    async def preempt(
        self, pod: Pod, snapshot: ClusterSnapshot, outcome: FilterOutcome
    ) -> PreemptionCandidate:
        """
        plan() + issue terminations + bounded wait (+ escalation on timeout).

        Raises:
            PreemptionInfeasibleError: see plan().
            asyncio.CancelledError:    if the caller is cancelled mid-wait.
                                       Issued terminations are not undone.
        """
        try:
            candidate = self.plan(pod, snapshot, outcome)
        except PreemptionInfeasibleError as exc:
            logger.warning("preemption infeasible for %s: %s", pod.pod_id, exc.reason)
            self._emit(EventType.PREEMPTION_INFEASIBLE, pod.pod_id, None, "NoVictims", exc.reason)
            raise

        self._issue(pod, candidate)
        await self._await_victims(pod, candidate)
        return candidate

    def notify_terminated(self, pod_id: str) -> None:
        """A victim's termination completed (reported by the terminator's owner)."""
        event = self._terminated.pop(pod_id, None)
        if event is not None:
            event.set()

    # ── Internals ──────────────────────────────────────────────────────────────

    def _issue(self, pod: Pod, candidate: PreemptionCandidate) -> None:
        self.preemptions += 1
        for victim in candidate.victims:
            live = self._state.get_pod(victim.pod_id)
            if live is None:
                continue
            live.phase = PodPhase.TERMINATING
            for budget in self._state.budgets.values():
                if budget.covers(live) and budget.disruptions_allowed > 0:
                    budget.disruptions_allowed -= 1
            self._terminated.setdefault(victim.pod_id, asyncio.Event())
            self._spawn(victim.pod_id, live.termination_grace_period_s)
            self._emit(
                EventType.PREEMPTED, victim.pod_id, candidate.node_id,
                "Preempted", f"preempted by {pod.pod_id} (priority {pod.priority})",
            )
        for pod_id in candidate.awaiting:
            self._terminated.setdefault(pod_id, asyncio.Event())

        live_preemptor = self._state.get_pod(pod.pod_id)
        if live_preemptor is not None:
            live_preemptor.nominated_node_id = candidate.node_id

    def _spawn(self, pod_id: str, grace_period_s: float) -> None:
        task = asyncio.get_running_loop().create_task(self._terminate(pod_id, grace_period_s))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _terminate(self, pod_id: str, grace_period_s: float) -> None:
        try:
            await self._terminator.terminate(pod_id, grace_period_s)
        except Exception:
            # Escalation after preemption_wait_s covers a failed request.
            logger.exception("terminate(%s) failed", pod_id)

    async def _await_victims(self, pod: Pod, candidate: PreemptionCandidate) -> None:
        waiting = {
            pod_id: self._terminated[pod_id]
            for pod_id in candidate.victim_ids + candidate.awaiting
            if pod_id in self._terminated
        }
        if not waiting:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(event.wait() for event in waiting.values())),
                timeout=self._config.preemption_wait_s,
            )
        except asyncio.TimeoutError:
            stragglers = sorted(pod_id for pod_id, event in waiting.items() if not event.is_set())
            self._escalate(pod, candidate.node_id, stragglers)

    def _escalate(self, pod: Pod, node_id: str, stragglers: List[str]) -> None:
        self.escalations += 1
        for victim_id in stragglers:
            logger.warning(
                "preemption wait expired: forcing removal of %s from %s for %s",
                victim_id, node_id, pod.pod_id,
            )
            self._spawn(victim_id, 0.0)
            self._state.unbind(victim_id, phase=PodPhase.PENDING)
            self.notify_terminated(victim_id)
            self._emit(
                EventType.PREEMPTION_ESCALATED, victim_id, node_id,
                "ForcedRemoval", f"did not terminate within {self._config.preemption_wait_s}s",
            )
            if self.on_evicted is not None:
                self.on_evicted(victim_id)

    def _emit(
        self, kind: EventType, pod_id: str, node_id: Optional[str], reason: str, message: str
    ) -> None:
        self._events.emit(
            SchedulingEvent(
                type=kind, pod_id=pod_id, node_id=node_id,
                reason=reason, message=message, timestamp=self._clock(),
            )
        )
