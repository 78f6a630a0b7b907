"""
tests/test_admission.py
────────────────────────
Test suite for control_plane/admission_controller.py

What we are testing
────────────────────
Admission is the first gate. Tests verify that:
  1. Malformed tolerations and taints are denied atomically, with the
     offending field named in the message.
  2. Schema errors (unknown effect, priority outside int32) are denies,
     never exceptions.
  3. Created pods get the default not-ready / unreachable tolerations,
     unless they already tolerate those taints.
  4. The failure policy only applies when the transport itself fails.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from placement_engine.control_plane.admission_controller import (
    AdmissionOperation,
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReviewer,
    apply_patch,
    review_with_policy,
)
from placement_engine.control_plane.orchestration_service import SchedulerService
from placement_engine.shared.config import EngineConfig, FailurePolicy
from placement_engine.shared.models import (
    TAINT_NOT_READY,
    TAINT_UNREACHABLE,
    PodPhase,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _pod_request(
    obj: Dict[str, Any],
    operation: AdmissionOperation = AdmissionOperation.CREATE,
) -> AdmissionRequest:
    return AdmissionRequest(uid="uid-1", kind="Pod", operation=operation, object=obj)


def _node_request(obj: Dict[str, Any]) -> AdmissionRequest:
    return AdmissionRequest(uid="uid-2", kind="Node", operation=AdmissionOperation.CREATE, object=obj)


def _pod(tolerations: List[Dict[str, Any]] = None, **extra: Any) -> Dict[str, Any]:
    obj: Dict[str, Any] = {"pod_id": "web-1", **extra}
    if tolerations is not None:
        obj["tolerations"] = tolerations
    return obj


@pytest.fixture
def reviewer() -> AdmissionReviewer:
    return AdmissionReviewer(EngineConfig(default_toleration_seconds=300))


# ─────────────────────────────────────────────────────────────────────────────
# Pods
# ─────────────────────────────────────────────────────────────────────────────

class TestPodAdmission:

    def test_valid_pod_gets_default_tolerations(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_pod_request(_pod()))

        assert response.allowed
        assert response.uid == "uid-1"
        assert len(response.patch) == 1
        op = response.patch[0]
        assert op["path"] == "/tolerations"
        assert [t["key"] for t in op["value"]] == [TAINT_NOT_READY, TAINT_UNREACHABLE]
        assert all(t["toleration_seconds"] == 300 for t in op["value"])

    def test_existing_list_is_appended_to(self, reviewer: AdmissionReviewer) -> None:
        tolerations = [{"key": TAINT_NOT_READY, "operator": "Exists", "effect": "NoExecute"}]
        response = reviewer.review(_pod_request(_pod(tolerations)))

        assert [op["path"] for op in response.patch] == ["/tolerations/-"]
        assert response.patch[0]["value"]["key"] == TAINT_UNREACHABLE

    def test_wildcard_toleration_needs_no_patch(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_pod_request(_pod([{"key": "", "operator": "Exists"}])))
        assert response.allowed
        assert response.patch == []

    def test_update_is_validated_but_not_defaulted(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_pod_request(_pod(), AdmissionOperation.UPDATE))
        assert response.allowed
        assert response.patch == []

    def test_leading_zero_numeric_value_denied(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_pod_request(_pod([
            {"key": "priority", "operator": "Gt", "value": "0550"},
        ])))
        assert not response.allowed
        assert response.patch == []
        assert "tolerations[0].value" in response.message
        assert "web-1" in response.message

    @pytest.mark.parametrize(
        "toleration",
        [
            {"key": "", "operator": "Equal", "value": "x"},
            {"key": "k", "operator": "Exists", "value": "v"},
            {"key": "k", "operator": "Lt", "value": "+3"},
            {"key": "k", "operator": "Equal", "value": "v", "effect": "NoSchedule",
             "toleration_seconds": 30},
        ],
    )
    def test_invalid_tolerations_denied(self, reviewer: AdmissionReviewer, toleration: Dict[str, Any]) -> None:
        response = reviewer.review(_pod_request(_pod([{"key": "ok", "operator": "Exists"}, toleration])))
        assert not response.allowed
        assert "tolerations[1]" in response.message

    def test_unknown_effect_is_a_schema_deny(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_pod_request(_pod([{"key": "k", "effect": "Evict"}])))
        assert not response.allowed
        assert response.message.startswith("invalid Pod: tolerations")

    def test_priority_outside_int32_denied(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_pod_request(_pod(priority=2 ** 31)))
        assert not response.allowed
        assert "priority" in response.message

    def test_delete_always_allowed(self, reviewer: AdmissionReviewer) -> None:
        request = _pod_request({"garbage": True}, AdmissionOperation.DELETE)
        assert reviewer.review(request).allowed

    def test_other_kinds_pass_through(self, reviewer: AdmissionReviewer) -> None:
        request = AdmissionRequest(uid="u", kind="ConfigMap", operation=AdmissionOperation.CREATE)
        assert reviewer.review(request).allowed


# ─────────────────────────────────────────────────────────────────────────────
# Nodes
# ─────────────────────────────────────────────────────────────────────────────

class TestNodeAdmission:

    def test_valid_node_allowed(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_node_request({
            "node_id": "node-1",
            "taints": [
                {"key": "gpu", "value": "a100", "effect": "NoSchedule"},
                {"key": "gpu", "effect": "NoExecute"},
            ],
        }))
        assert response.allowed

    def test_duplicate_key_effect_denied(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_node_request({
            "node_id": "node-1",
            "taints": [
                {"key": "gpu", "value": "a", "effect": "NoSchedule"},
                {"key": "gpu", "value": "b", "effect": "NoSchedule"},
            ],
        }))
        assert not response.allowed
        assert "taints[1]" in response.message

    def test_empty_taint_key_denied(self, reviewer: AdmissionReviewer) -> None:
        response = reviewer.review(_node_request({
            "node_id": "node-1", "taints": [{"key": "", "effect": "NoSchedule"}],
        }))
        assert not response.allowed


# ─────────────────────────────────────────────────────────────────────────────
# Patch application and failure policy
# ─────────────────────────────────────────────────────────────────────────────

class TestPatchAndPolicy:

    def test_apply_patch_creates_and_appends(self) -> None:
        obj = {"pod_id": "p"}
        patched = apply_patch(obj, [
            {"op": "add", "path": "/tolerations", "value": [{"key": "a"}]},
            {"op": "add", "path": "/tolerations/-", "value": {"key": "b"}},
        ])
        assert [t["key"] for t in patched["tolerations"]] == ["a", "b"]
        assert "tolerations" not in obj

    def test_apply_patch_rejects_other_ops(self) -> None:
        with pytest.raises(ValueError):
            apply_patch({}, [{"op": "remove", "path": "/tolerations"}])

    @pytest.mark.parametrize(
        "policy, allowed",
        [(FailurePolicy.FAIL, False), (FailurePolicy.IGNORE, True)],
    )
    def test_transport_failure_follows_policy(self, policy: FailurePolicy, allowed: bool) -> None:
        async def broken(request: AdmissionRequest) -> AdmissionResponse:
            raise ConnectionError("connection refused")

        response = asyncio.run(review_with_policy(broken, _pod_request(_pod()), policy))
        assert response.allowed is allowed
        assert "connection refused" in response.message

    def test_successful_transport_is_passed_through(self, reviewer: AdmissionReviewer) -> None:
        async def transport(request: AdmissionRequest) -> AdmissionResponse:
            return reviewer.review(request)

        request = _pod_request(_pod([{"key": "", "operator": "Equal", "value": "x"}]))
        response = asyncio.run(review_with_policy(transport, request, FailurePolicy.IGNORE))
        assert not response.allowed


# ─────────────────────────────────────────────────────────────────────────────
# Through the service
# ─────────────────────────────────────────────────────────────────────────────

class TestSubmit:

    def test_admitted_pod_is_queued_with_defaults(self) -> None:
        async def scenario():
            svc = SchedulerService()
            result = await svc.submit(_pod_request(_pod()))
            return svc, result

        svc, result = asyncio.run(scenario())
        assert result["status"] == "QUEUED"
        pod = svc.state.get_pod("web-1")
        assert pod.phase == PodPhase.PENDING
        assert {t.key for t in pod.tolerations} == {TAINT_NOT_READY, TAINT_UNREACHABLE}
        assert "web-1" in svc.queue

    def test_rejected_pod_is_never_stored(self) -> None:
        async def scenario():
            svc = SchedulerService()
            result = await svc.submit(_pod_request(_pod([{"key": "k", "operator": "Gt", "value": "-0"}])))
            return svc, result

        svc, result = asyncio.run(scenario())
        assert result["status"] == "REJECTED"
        assert svc.state.get_pod("web-1") is None
        assert len(svc.queue) == 0
