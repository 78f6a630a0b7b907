"""
placement_core — pure constraint-matching primitives.

Public API:
    parse_int64             — canonical signed 64-bit numeral parser
    toleration_matches      — does one toleration match one taint?
    tolerates               — does any toleration match a taint?
    untolerated_taints      — the effective taint set for a pod on a node
    no_execute_grace        — grace period before a NoExecute eviction
    validate_toleration(s)  — admission-time toleration checks
    TaintIndex, TaintDiff   — per-node taint sets and change reports
    NodeAffinityEvaluator   — required / preferred node affinity

Usage:
    from placement_core import TaintIndex, untolerated_taints

    index = TaintIndex()
    index.set_node_taints("node-a", node.taints)
    blocking = untolerated_taints(index.taints_for("node-a"), pod.tolerations)

Nothing in this package performs I/O or touches asyncio.
"""

from placement_core.numeric import is_int64, parse_int64
from placement_core.tolerations import (
    check_numeric_pair,
    matching_tolerations,
    no_execute_grace,
    toleration_matches,
    tolerates,
    untolerated_taints,
    validate_toleration,
    validate_tolerations,
)
from placement_core.taint_index import TaintDiff, TaintIndex
from placement_core.affinity import NodeAffinityEvaluator

__all__ = [
    "is_int64",
    "parse_int64",
    "check_numeric_pair",
    "matching_tolerations",
    "no_execute_grace",
    "toleration_matches",
    "tolerates",
    "untolerated_taints",
    "validate_toleration",
    "validate_tolerations",
    "TaintIndex",
    "TaintDiff",
    "NodeAffinityEvaluator",
]
