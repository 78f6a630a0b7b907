"""
placement_engine/control_plane/admission_controller.py
───────────────────────────────────────────────────────
Admission control: semantic validation and defaulting before scheduling.

The admission controller is the first gate. It runs on the structured
request handed over by the (external) webhook transport, and it either
admits the object unchanged, admits it with patch operations, or denies it.

    AdmissionRequest(uid, kind, operation, namespace, object)
        → AdmissionReviewer.review()
        → AdmissionResponse(uid, allowed, patch, message)

What it checks
───────────────
  Pods
    1. Schema: the object must parse as a Pod (pydantic). This covers
       unknown effects / operators and priority outside signed 32-bit.
    2. Tolerations:
         • an empty key requires operator Exists
         • Exists must not carry a value
         • Gt / Lt values must be canonical signed 64-bit integers
           ("0550", "+3", "-0" are all rejected)
         • tolerationSeconds only with effect NoExecute or no effect

  Nodes
    1. Schema: the object must parse as a Node.
    2. Taints: key non-empty, no duplicate (key, effect) pair.

Validation is atomic: the first failure denies the whole object and no
patch is returned, so nothing is ever partially applied.

What it mutates
────────────────
  DefaultTolerationSeconds: a created pod that does not already tolerate
  not-ready:NoExecute / unreachable:NoExecute gets an Exists toleration
  for each with tolerationSeconds = EngineConfig.default_toleration_seconds.

Failure policy
───────────────
The reviewer itself is pure and never "unreachable". Failure policy only
applies in review_with_policy(), around the caller's transport:

  Fail   → a transport exception becomes a deny.
  Ignore → a transport exception becomes an allow with no patch.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pydantic
from pydantic import BaseModel, Field

from placement_core.tolerations import tolerates, validate_tolerations
from placement_engine.shared.config import EngineConfig, FailurePolicy
from placement_engine.shared.errors import AdmissionRejectedError, ValidationError
from placement_engine.shared.models import (
    DEFAULT_TOLERATED_KEYS,
    Node,
    Pod,
    Taint,
    TaintEffect,
    Toleration,
    TolerationOperator,
)

logger = logging.getLogger(__name__)

PatchOperation = Dict[str, Any]
"""One JSON-Patch operation, e.g. {"op": "add", "path": "/tolerations/-", "value": {...}}."""


class AdmissionOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AdmissionRequest(BaseModel):
    """
    What the transport hands over.

    Fields:
        uid       → Echoed back in the response.
        kind      → "Pod" or "Node". Other kinds are admitted untouched.
        operation → CREATE | UPDATE | DELETE.
        namespace → Namespace of the object (pods only).
        object    → The raw object, as a dict.
    """
    uid: str
    kind: str
    operation: AdmissionOperation
    namespace: str = "default"
    object: Dict[str, Any] = Field(default_factory=dict)


class AdmissionResponse(BaseModel):
    uid: str
    allowed: bool
    patch: List[PatchOperation] = Field(default_factory=list)
    message: str = ""


# ── Object checks ──────────────────────────────────────────────────────────────

def admit_pod(pod: Pod) -> None:
    """
    Run all semantic checks on a Pod.

    Raises:
        AdmissionRejectedError: with a descriptive reason string.
    """
    _check_tolerations(pod)


def admit_node(node: Node) -> None:
    """
    Run all semantic checks on a Node.

    Raises:
        AdmissionRejectedError: with a descriptive reason string.
    """
    _check_node_taints(node)


def _check_tolerations(pod: Pod) -> None:
    try:
        validate_tolerations(pod.tolerations)
    except ValidationError as exc:
        raise AdmissionRejectedError(
            f"Pod {pod.pod_id!r} has an invalid toleration: {exc.field}: {exc.reason}"
        ) from exc


def _check_node_taints(node: Node) -> None:
    seen = set()
    for idx, taint in enumerate(node.taints):
        if not taint.key:
            raise AdmissionRejectedError(
                f"Node {node.node_id!r} taints[{idx}]: key must not be empty"
            )
        pair = (taint.key, taint.effect)
        if pair in seen:
            raise AdmissionRejectedError(
                f"Node {node.node_id!r} taints[{idx}]: duplicate taint "
                f"{taint.key}:{taint.effect.value}"
            )
        seen.add(pair)


# ── Mutation ───────────────────────────────────────────────────────────────────

def default_toleration_patch(pod: Pod, seconds: int, has_field: bool = True) -> List[PatchOperation]:
    """
    JSON-Patch operations adding the implicit not-ready / unreachable
    tolerations the pod lacks. Empty list if it already tolerates both.

    Args:
        has_field: False if the raw object has no "tolerations" key yet, in
                   which case the first op creates the list.
    """
    missing = [
        Toleration(
            key=key,
            operator=TolerationOperator.EXISTS,
            effect=TaintEffect.NO_EXECUTE,
            toleration_seconds=seconds,
        )
        for key in DEFAULT_TOLERATED_KEYS
        if not tolerates(pod.tolerations, Taint(key=key, effect=TaintEffect.NO_EXECUTE))
    ]
    if not missing:
        return []

    values = [t.model_dump(mode="json", exclude_none=True) for t in missing]
    if not has_field:
        return [{"op": "add", "path": "/tolerations", "value": values}]
    return [{"op": "add", "path": "/tolerations/-", "value": v} for v in values]


def apply_patch(obj: Dict[str, Any], patch: List[PatchOperation]) -> Dict[str, Any]:
    """
    Apply the "add" operations this module produces to a copy of `obj`.

    Only top-level paths and list appends ("/field/-") are supported.

    Raises:
        ValueError: on any other operation or path shape.
    """
    result = dict(obj)
    for op in patch:
        if op.get("op") != "add":
            raise ValueError(f"unsupported patch op: {op.get('op')!r}")
        parts = op["path"].lstrip("/").split("/")
        if len(parts) == 1:
            result[parts[0]] = op["value"]
        elif len(parts) == 2 and parts[1] == "-":
            result[parts[0]] = list(result.get(parts[0]) or []) + [op["value"]]
        else:
            raise ValueError(f"unsupported patch path: {op['path']!r}")
    return result


# ── Reviewer ───────────────────────────────────────────────────────────────────

class AdmissionReviewer:
    """
    Pure request → response function, bundled with its configuration.

    Usage:
        reviewer = AdmissionReviewer(config)
        response = reviewer.review(AdmissionRequest(uid="1", kind="Pod",
                                   operation="CREATE", object={...}))
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self._config = config or EngineConfig()

    def review(self, request: AdmissionRequest) -> AdmissionResponse:
        if request.operation == AdmissionOperation.DELETE:
            return AdmissionResponse(uid=request.uid, allowed=True)
        try:
            if request.kind == "Pod":
                patch = self._review_pod(request)
            elif request.kind == "Node":
                self._review_node(request)
                patch = []
            else:
                return AdmissionResponse(
                    uid=request.uid, allowed=True, message=f"kind {request.kind} not reviewed"
                )
        except AdmissionRejectedError as exc:
            logger.info("admission denied uid=%s: %s", request.uid, exc.reason)
            return AdmissionResponse(uid=request.uid, allowed=False, message=exc.reason)

        return AdmissionResponse(uid=request.uid, allowed=True, patch=patch)

    def _review_pod(self, request: AdmissionRequest) -> List[PatchOperation]:
        raw = dict(request.object)
        raw.setdefault("namespace", request.namespace)
        pod = _parse(Pod, raw)
        admit_pod(pod)
        if request.operation != AdmissionOperation.CREATE:
            return []
        return default_toleration_patch(
            pod, self._config.default_toleration_seconds, has_field="tolerations" in raw
        )

    def _review_node(self, request: AdmissionRequest) -> None:
        admit_node(_parse(Node, request.object))


def _parse(model: type, raw: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"])
        raise AdmissionRejectedError(
            f"invalid {model.__name__}: {where}: {first['msg']}"
        ) from exc


async def review_with_policy(
    transport: Callable[[AdmissionRequest], Awaitable[AdmissionResponse]],
    request: AdmissionRequest,
    policy: FailurePolicy = FailurePolicy.FAIL,
) -> AdmissionResponse:
    """
    Call the reviewer through the caller's transport, applying the failure
    policy if (and only if) the transport itself raises.
    """
    try:
        return await transport(request)
    except Exception as exc:
        logger.warning(
            "admission transport failed for uid=%s (%s): %s",
            request.uid, policy.value, exc,
        )
        if policy == FailurePolicy.IGNORE:
            return AdmissionResponse(
                uid=request.uid, allowed=True, message=f"reviewer unreachable, ignored: {exc}"
            )
        return AdmissionResponse(
            uid=request.uid, allowed=False, message=f"reviewer unreachable: {exc}"
        )
