"""
tests/test_preemption.py
─────────────────────────
Test suite for control_plane/preemption.py

What we are testing
────────────────────
  • victims always have priority STRICTLY below the preemptor
  • the victim set is minimal (reprieve pass) and respects budgets
  • between nodes: fewest victims, then most leftover, then node id
  • the bounded wait escalates to forced removal on timeout
  • cancelling the preemptor never undoes issued terminations

Async behaviour is driven with asyncio.run() inside ordinary sync tests.

Test groups
────────────
Group 1: select_victims / pick_candidate  — pure planning
Group 2: PreemptionController.plan        — node choice and refusals
Group 3: PreemptionController.preempt     — execution, wait and escalation
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from placement_engine.control_plane.cluster_state import ClusterState
from placement_engine.control_plane.filters import FilterPipeline
from placement_engine.control_plane.preemption import (
    PreemptionCandidate,
    PreemptionController,
    pick_candidate,
    select_victims,
)
from placement_engine.shared.config import EngineConfig
from placement_engine.shared.errors import PreemptionInfeasibleError
from placement_engine.shared.events import EventRecorder, EventType
from placement_engine.shared.models import (
    DisruptionBudget,
    Node,
    Pod,
    PodPhase,
    PreemptionPolicy,
    ResourceVector,
    Taint,
    TaintEffect,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_node(node_id: str, cpu: int = 1000, taints: Optional[List[Taint]] = None) -> Node:
    return Node(
        node_id=node_id,
        allocatable=ResourceVector(cpu_millis=cpu, memory_mb=4096),
        taints=taints or [],
    )


def _victim(
    pod_id: str,
    node_id: str,
    priority: int,
    cpu: int,
    labels: Optional[Dict[str, str]] = None,
    phase: PodPhase = PodPhase.RUNNING,
    namespace: str = "default",
) -> Pod:
    return Pod(
        pod_id=pod_id,
        namespace=namespace,
        priority=priority,
        requests=ResourceVector(cpu_millis=cpu),
        labels=labels or {},
        phase=phase,
        node_id=node_id,
        termination_grace_period_s=15.0,
    )


def _preemptor(
    cpu: int,
    priority: int = 100,
    policy: PreemptionPolicy = PreemptionPolicy.PREEMPT_LOWER_PRIORITY,
) -> Pod:
    return Pod(
        pod_id="preemptor",
        priority=priority,
        preemption_policy=policy,
        requests=ResourceVector(cpu_millis=cpu),
    )


def _make_state(nodes: List[Node], pods: List[Pod]) -> ClusterState:
    state = ClusterState()
    for node in nodes:
        state.upsert_node(node, now=0.0)
    for pod in pods:
        state.add_pod(pod)
    return state


class _RecordingTerminator:
    """PodTerminator that records requests and optionally completes them."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, float]] = []
        self.on_terminate: Optional[Callable[[str], None]] = None

    async def terminate(self, pod_id: str, grace_period_s: float) -> None:
        self.calls.append((pod_id, grace_period_s))
        if self.on_terminate is not None:
            self.on_terminate(pod_id)


def _make_controller(
    state: ClusterState, wait_s: float = 30.0
) -> Tuple[PreemptionController, _RecordingTerminator, EventRecorder]:
    terminator = _RecordingTerminator()
    events = EventRecorder()
    controller = PreemptionController(
        state, FilterPipeline(), terminator, events,
        config=EngineConfig(preemption_wait_s=wait_s),
        clock=lambda: 0.0,
    )
    return controller, terminator, events


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Pure planning
# ─────────────────────────────────────────────────────────────────────────────

class TestSelectVictims:

    def _info(self, state: ClusterState, node_id: str = "node-1"):
        return state.snapshot().get(node_id)

    def test_lowest_priority_taken_first(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("low", "node-1", 1, 500),
            _victim("mid", "node-1", 5, 500),
        ])
        candidate = select_victims(_preemptor(400), self._info(state), FilterPipeline())
        assert candidate is not None
        assert candidate.victim_ids == ["low"]

    def test_takes_as_many_as_needed(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("low", "node-1", 1, 500),
            _victim("mid", "node-1", 5, 500),
        ])
        candidate = select_victims(_preemptor(600), self._info(state), FilterPipeline())
        assert candidate.victim_ids == ["low", "mid"]

    def test_equal_priority_is_never_a_victim(self) -> None:
        state = _make_state([_make_node("node-1")], [_victim("peer", "node-1", 100, 900)])
        assert select_victims(_preemptor(400, priority=100), self._info(state), FilterPipeline()) is None

    def test_reprieve_spares_unneeded_victims(self) -> None:
        """Greedy takes small then big; only the big one is actually needed."""
        state = _make_state([_make_node("node-1")], [
            _victim("small", "node-1", 1, 100),
            _victim("big", "node-1", 2, 900),
        ])
        candidate = select_victims(_preemptor(800), self._info(state), FilterPipeline())
        assert candidate.victim_ids == ["big"]

    def test_same_priority_smaller_freed_first_then_reprieved(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("x", "node-1", 1, 200),
            _victim("y", "node-1", 1, 600),
        ])
        candidate = select_victims(_preemptor(500), self._info(state), FilterPipeline())
        assert candidate.victim_ids == ["y"]

    def test_exhausted_budget_skips_covered_pod(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("low", "node-1", 1, 500, labels={"app": "db"}),
            _victim("mid", "node-1", 5, 500),
        ])
        budget = DisruptionBudget(name="db", match_labels={"app": "db"}, disruptions_allowed=0)
        candidate = select_victims(_preemptor(400), self._info(state), FilterPipeline(), [budget])

        assert candidate.victim_ids == ["mid"]
        assert budget.disruptions_allowed == 0

    def test_budget_allows_limited_disruptions(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("a", "node-1", 1, 500, labels={"app": "web"}),
            _victim("b", "node-1", 1, 500, labels={"app": "web"}),
        ])
        budget = DisruptionBudget(name="web", match_labels={"app": "web"}, disruptions_allowed=1)
        assert select_victims(_preemptor(900), self._info(state), FilterPipeline(), [budget]) is None
        assert select_victims(_preemptor(400), self._info(state), FilterPipeline(), [budget]).victim_ids == ["a"]

    def test_same_named_budgets_in_different_namespaces_both_hold(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("guarded", "node-1", 1, 500, labels={"app": "db"}, namespace="team-a"),
            _victim("spare", "node-1", 2, 500, labels={"app": "db"}, namespace="team-b"),
        ])
        budgets = [
            DisruptionBudget(name="pdb", namespace="team-a", match_labels={"app": "db"}),
            DisruptionBudget(
                name="pdb", namespace="team-b", match_labels={"app": "db"}, disruptions_allowed=5,
            ),
        ]
        candidate = select_victims(_preemptor(400), self._info(state), FilterPipeline(), budgets)
        assert candidate.victim_ids == ["spare"]

    def test_terminating_pods_count_as_freed(self) -> None:
        state = _make_state([_make_node("node-1")], [
            _victim("leaving", "node-1", 1, 600, phase=PodPhase.TERMINATING),
            _victim("staying", "node-1", 1, 400),
        ])
        candidate = select_victims(_preemptor(500), self._info(state), FilterPipeline())
        assert candidate.victims == []
        assert candidate.awaiting == ["leaving"]

    def test_pick_candidate_order(self) -> None:
        one_a = PreemptionCandidate(node_id="n-a", victims=[_victim("v1", "n-a", 1, 1)], leftover_weight=0.1)
        one_b = PreemptionCandidate(node_id="n-b", victims=[_victim("v2", "n-b", 1, 1)], leftover_weight=0.5)
        one_c = PreemptionCandidate(node_id="n-c", victims=[_victim("v3", "n-c", 1, 1)], leftover_weight=0.5)
        two = PreemptionCandidate(
            node_id="n-0", victims=[_victim("v4", "n-0", 1, 1), _victim("v5", "n-0", 1, 1)],
            leftover_weight=5.0,
        )
        assert pick_candidate([two, one_a, one_c, one_b]).node_id == "n-b"
        assert pick_candidate([]) is None

    @settings(max_examples=60, deadline=None)
    @given(
        preemptor_priority=st.integers(min_value=-5, max_value=5),
        preemptor_cpu=st.integers(min_value=100, max_value=1500),
        pods=st.lists(
            st.tuples(st.integers(min_value=-5, max_value=5), st.integers(min_value=50, max_value=600)),
            max_size=6,
        ),
    )
    def test_victims_always_have_lower_priority(
        self, preemptor_priority: int, preemptor_cpu: int, pods: List[Tuple[int, int]]
    ) -> None:
        state = _make_state(
            [_make_node("node-1", cpu=2000)],
            [_victim(f"v{i}", "node-1", prio, cpu) for i, (prio, cpu) in enumerate(pods)],
        )
        preemptor = _preemptor(preemptor_cpu, priority=preemptor_priority)
        filters = FilterPipeline()
        info = self._info(state)

        candidate = select_victims(preemptor, info, filters)
        if candidate is None:
            return
        assert all(v.priority < preemptor_priority for v in candidate.victims)
        assert filters.evaluate_node(preemptor, info.without(candidate.victims)).passed


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: plan()
# ─────────────────────────────────────────────────────────────────────────────

class TestPlan:

    def test_prefers_node_with_fewest_victims(self) -> None:
        state = _make_state([_make_node("node-1"), _make_node("node-2")], [
            _victim("a1", "node-1", 1, 500),
            _victim("a2", "node-1", 1, 500),
            _victim("b1", "node-2", 1, 1000),
        ])
        controller, _, _ = _make_controller(state)
        pod = _preemptor(800)
        snapshot = state.snapshot()
        outcome = controller._filters.run(pod, snapshot)

        candidate = controller.plan(pod, snapshot, outcome)
        assert candidate.node_id == "node-2"
        assert candidate.victim_ids == ["b1"]

    def test_equal_victims_prefers_more_leftover(self) -> None:
        state = _make_state([_make_node("node-1"), _make_node("node-2", cpu=2000)], [
            _victim("a1", "node-1", 1, 1000),
            _victim("b1", "node-2", 1, 2000),
        ])
        controller, _, _ = _make_controller(state)
        pod = _preemptor(500)
        snapshot = state.snapshot()

        candidate = controller.plan(pod, snapshot, controller._filters.run(pod, snapshot))
        assert candidate.node_id == "node-2"

    def test_never_policy_refuses(self) -> None:
        state = _make_state([_make_node("node-1")], [_victim("a", "node-1", 1, 1000)])
        controller, _, _ = _make_controller(state)
        pod = _preemptor(500, policy=PreemptionPolicy.NEVER)
        snapshot = state.snapshot()

        with pytest.raises(PreemptionInfeasibleError, match="Never"):
            controller.plan(pod, snapshot, controller._filters.run(pod, snapshot))

    def test_taint_failure_is_not_fixable_by_preemption(self) -> None:
        state = _make_state(
            [_make_node("node-1", taints=[Taint(key="k", effect=TaintEffect.NO_SCHEDULE)])],
            [_victim("a", "node-1", 1, 1000)],
        )
        controller, _, _ = _make_controller(state)
        pod = _preemptor(500)
        snapshot = state.snapshot()

        with pytest.raises(PreemptionInfeasibleError) as info:
            controller.plan(pod, snapshot, controller._filters.run(pod, snapshot))
        assert "resources alone" in info.value.reason


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: preempt()
# ─────────────────────────────────────────────────────────────────────────────

class TestPreempt:

    def _setup(self, wait_s: float = 30.0):
        state = _make_state([_make_node("node-1")], [
            _victim("low", "node-1", 1, 800),
            _preemptor(500),
        ])
        controller, terminator, events = _make_controller(state, wait_s=wait_s)
        pod = state.get_pod("preemptor")
        snapshot = state.snapshot()
        outcome = controller._filters.run(pod, snapshot)
        return state, controller, terminator, events, pod, snapshot, outcome

    def test_victims_terminate_within_wait(self) -> None:
        state, controller, terminator, events, pod, snapshot, outcome = self._setup()

        def complete(pod_id: str) -> None:
            state.unbind(pod_id)
            controller.notify_terminated(pod_id)

        terminator.on_terminate = complete

        candidate = asyncio.run(controller.preempt(pod, snapshot, outcome))

        assert candidate.victim_ids == ["low"]
        assert terminator.calls == [("low", 15.0)]
        assert pod.nominated_node_id == "node-1"
        assert controller.escalations == 0
        assert [e.pod_id for e in events.of_type(EventType.PREEMPTED)] == ["low"]

    def test_timeout_escalates_to_forced_removal(self) -> None:
        state, controller, terminator, events, pod, snapshot, outcome = self._setup(wait_s=0.01)
        evicted: List[str] = []
        controller.on_evicted = evicted.append

        async def scenario() -> None:
            await controller.preempt(pod, snapshot, outcome)
            await asyncio.sleep(0)

        asyncio.run(scenario())

        victim = state.get_pod("low")
        assert victim.phase == PodPhase.PENDING
        assert victim.node_id is None
        assert state.ledger.node_of("low") is None
        assert terminator.calls == [("low", 15.0), ("low", 0.0)]
        assert controller.escalations == 1
        assert evicted == ["low"]
        assert len(events.of_type(EventType.PREEMPTION_ESCALATED)) == 1

    def test_cancellation_keeps_issued_terminations(self) -> None:
        state, controller, terminator, events, pod, snapshot, outcome = self._setup(wait_s=30.0)

        async def scenario() -> None:
            task = asyncio.create_task(controller.preempt(pod, snapshot, outcome))
            for _ in range(5):
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert terminator.calls == [("low", 15.0)]
        assert state.get_pod("low").phase == PodPhase.TERMINATING
        assert controller.escalations == 0

    def test_budget_charged_on_issue(self) -> None:
        state, controller, terminator, events, pod, snapshot, outcome = self._setup()
        state.get_pod("low").labels["app"] = "batch"
        state.set_budget(DisruptionBudget(
            name="batch", match_labels={"app": "batch"}, disruptions_allowed=2,
        ))
        terminator.on_terminate = controller.notify_terminated
        snapshot = state.snapshot()

        asyncio.run(controller.preempt(pod, snapshot, outcome))
        assert state.budgets[("default", "batch")].disruptions_allowed == 1

    def test_infeasible_emits_event(self) -> None:
        state = _make_state([_make_node("node-1")], [_victim("peer", "node-1", 100, 1000)])
        controller, _, events = _make_controller(state)
        pod = _preemptor(500)
        snapshot = state.snapshot()
        outcome = controller._filters.run(pod, snapshot)

        with pytest.raises(PreemptionInfeasibleError):
            asyncio.run(controller.preempt(pod, snapshot, outcome))
        assert len(events.of_type(EventType.PREEMPTION_INFEASIBLE)) == 1
