"""
placement_core/tolerations.py
─────────────────────────────
TolerationMatcher: pure functions deciding whether a pod tolerates a taint.

Matching rule (a toleration matches a taint iff ALL hold)
──────────────────────────────────────────────────────────
  1. Key:      toleration key is empty (wildcard) or equals the taint key.
  2. Effect:   toleration effect is None (wildcard) or equals the taint effect.
  3. Operator:
       Equal  → toleration value == taint value (None and "" are equal).
       Exists → always, provided the toleration carries no value.
       Gt     → both values are canonical int64 and tol > taint.
       Lt     → both values are canonical int64 and tol < taint.
     A Gt/Lt pair where either side fails to parse never matches.

The "effective taint set" of a node for a pod is every taint that no
toleration matches. What the effective set means depends on effect:

  NoSchedule        → the node is filtered out.
  PreferNoSchedule  → the node is penalised in scoring.
  NoExecute         → filtered out for new pods; for running pods it arms
                      an eviction timer (see no_execute_grace()).

Everything here is side-effect free. Malformed numerals are surfaced as
ValidationError by check_numeric_pair() and validate_toleration(); the
matcher itself just answers False, because a scheduling decision must never
blow up on a value that admission should have rejected.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from placement_core.numeric import parse_int64
from placement_engine.shared.errors import ValidationError
from placement_engine.shared.models import (
    Taint,
    TaintEffect,
    Toleration,
    TolerationOperator,
)

logger = logging.getLogger(__name__)


# ── Single pair ────────────────────────────────────────────────────────────────

def check_numeric_pair(toleration: Toleration, taint: Taint) -> tuple:
    """
    Parse both sides of a Gt/Lt comparison.

    Returns:
        (toleration_value, taint_value) as ints.

    Raises:
        ValidationError: if either value is not a canonical int64
                         (e.g. taint value "0550").
    """
    tol_value = parse_int64(toleration.value or "", field="toleration.value")
    taint_value = parse_int64(taint.value or "", field=f"taint[{taint.key}].value")
    return tol_value, taint_value


def toleration_matches(toleration: Toleration, taint: Taint) -> bool:
    """True if this single toleration matches this single taint."""
    if toleration.key and toleration.key != taint.key:
        return False
    if toleration.effect is not None and toleration.effect != taint.effect:
        return False

    op = toleration.operator
    if op == TolerationOperator.EXISTS:
        return not toleration.value
    if op == TolerationOperator.EQUAL:
        return (toleration.value or "") == (taint.value or "")

    try:
        tol_value, taint_value = check_numeric_pair(toleration, taint)
    except ValidationError as exc:
        logger.debug("numeric toleration never matches: %s", exc)
        return False
    if op == TolerationOperator.GT:
        return tol_value > taint_value
    return tol_value < taint_value


# ── Sets of tolerations / taints ───────────────────────────────────────────────

def matching_tolerations(
    tolerations: Iterable[Toleration], taint: Taint
) -> List[Toleration]:
    """All tolerations that match the taint, in declaration order."""
    return [t for t in tolerations if toleration_matches(t, taint)]


def tolerates(tolerations: Iterable[Toleration], taint: Taint) -> bool:
    """True if at least one toleration matches the taint."""
    return any(toleration_matches(t, taint) for t in tolerations)


def untolerated_taints(
    taints: Sequence[Taint],
    tolerations: Sequence[Toleration],
    effects: Optional[Iterable[TaintEffect]] = None,
) -> List[Taint]:
    """
    The effective taint set: taints no toleration matches.

    Args:
        taints:      Node taints, in node order.
        tolerations: Pod tolerations.
        effects:     Restrict the result to these effects. None = all.

    Returns:
        Un-tolerated taints, preserving node order.
    """
    wanted = set(effects) if effects is not None else None
    return [
        taint for taint in taints
        if (wanted is None or taint.effect in wanted)
        and not tolerates(tolerations, taint)
    ]


def no_execute_grace(
    tolerations: Sequence[Toleration],
    taint: Taint,
    default_seconds: Optional[float] = None,
) -> Optional[float]:
    """
    How long a running pod may stay on a node carrying this NoExecute taint.

    Returns:
        None  → tolerated forever: a matching toleration has no
                tolerationSeconds. No timer is ever armed.
        0.0   → evict immediately: nothing matches (and no default applies),
                or the most generous matching toleration says <= 0.
        s > 0 → evict s seconds after the taint became effective. When
                several tolerations match, the longest one wins, since any
                one of them is enough to tolerate the taint.

    Args:
        tolerations:     The pod's tolerations.
        taint:           A NoExecute taint.
        default_seconds: Grace used when nothing matches at all (the implicit
                         not-ready / unreachable default). None = no default.
    """
    matches = matching_tolerations(tolerations, taint)
    if not matches:
        if default_seconds is None:
            return 0.0
        return max(0.0, float(default_seconds))

    if any(t.toleration_seconds is None for t in matches):
        return None
    longest = max(t.toleration_seconds for t in matches)
    return max(0.0, float(longest))


# ── Validation (admission time) ────────────────────────────────────────────────

def validate_toleration(toleration: Toleration, field: str = "toleration") -> None:
    """
    Reject malformed tolerations before they reach the scheduler.

    Raises:
        ValidationError: on the first rule violated.
    """
    op = toleration.operator
    if not toleration.key and op != TolerationOperator.EXISTS:
        raise ValidationError(
            f"{field}.operator", op.value,
            "an empty key requires operator Exists",
        )
    if op == TolerationOperator.EXISTS and toleration.value:
        raise ValidationError(
            f"{field}.value", toleration.value,
            "must be empty when operator is Exists",
        )
    if op in (TolerationOperator.GT, TolerationOperator.LT):
        parse_int64(toleration.value or "", field=f"{field}.value")
    if (
        toleration.toleration_seconds is not None
        and toleration.effect not in (None, TaintEffect.NO_EXECUTE)
    ):
        raise ValidationError(
            f"{field}.toleration_seconds", toleration.toleration_seconds,
            "only valid with effect NoExecute",
        )


def validate_tolerations(tolerations: Sequence[Toleration]) -> None:
    """Validate every toleration; the first failure aborts the whole list."""
    for idx, toleration in enumerate(tolerations):
        validate_toleration(toleration, field=f"tolerations[{idx}]")
