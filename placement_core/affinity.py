"""
placement_core/affinity.py
──────────────────────────
NodeAffinityEvaluator: required and preferred node-selector expressions.

Required affinity
──────────────────
    passes(node) = OR over terms ( AND over term.match_expressions )

  • An empty term (no expressions) matches nothing.
  • required=None is "no constraint"; required=[] matches no node.
  • pod.node_selector (plain label equality) is ANDed on top.

Preferred affinity
───────────────────
    raw_score(node) = Σ term.weight   for every term whose expressions match

Preferred terms never eliminate a node; they only feed ScoringPipeline.

Expression operators
─────────────────────
  In            → label present and its value is in values
  NotIn         → label absent, or its value is not in values
  Exists        → label present
  DoesNotExist  → label absent
  Gt / Lt       → exactly one value; label value and that value both parse
                  as canonical int64 and label > value (Gt) / label < value (Lt).
                  Anything unparseable → no match.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional

from placement_core.numeric import parse_int64
from placement_engine.shared.errors import ValidationError
from placement_engine.shared.models import (
    NodeAffinity,
    NodeSelectorRequirement,
    NodeSelectorTerm,
    SelectorOperator,
)


class NodeAffinityEvaluator:
    """
    Stateless evaluator. One instance can be shared by every plugin.

    Usage:
        evaluator = NodeAffinityEvaluator()
        evaluator.matches_required(pod.affinity, pod.node_selector, node.labels)
        evaluator.preferred_score(pod.affinity, node.labels)
    """

    def requirement_matches(
        self, requirement: NodeSelectorRequirement, labels: Mapping[str, str]
    ) -> bool:
        op = requirement.operator
        present = requirement.key in labels
        value = labels.get(requirement.key)

        if op == SelectorOperator.IN:
            return present and value in requirement.values
        if op == SelectorOperator.NOT_IN:
            return not present or value not in requirement.values
        if op == SelectorOperator.EXISTS:
            return present
        if op == SelectorOperator.DOES_NOT_EXIST:
            return not present

        # Gt / Lt
        if not present or len(requirement.values) != 1:
            return False
        try:
            label_num = parse_int64(value, field=f"labels[{requirement.key}]")
            bound = parse_int64(requirement.values[0], field="values[0]")
        except ValidationError:
            return False
        if op == SelectorOperator.GT:
            return label_num > bound
        return label_num < bound

    def term_matches(self, term: NodeSelectorTerm, labels: Mapping[str, str]) -> bool:
        if not term.match_expressions:
            return False
        return all(self.requirement_matches(r, labels) for r in term.match_expressions)

    def matches_required(
        self,
        affinity: Optional[NodeAffinity],
        node_selector: Optional[Dict[str, str]],
        labels: Mapping[str, str],
    ) -> bool:
        """True if the node labels satisfy node_selector AND required affinity."""
        if node_selector:
            for key, expected in node_selector.items():
                if labels.get(key) != expected:
                    return False
        if affinity is None or affinity.required is None:
            return True
        return any(self.term_matches(term, labels) for term in affinity.required)

    def preferred_score(
        self, affinity: Optional[NodeAffinity], labels: Mapping[str, str]
    ) -> int:
        """Sum of weights of the preferred terms this node satisfies."""
        if affinity is None:
            return 0
        return sum(
            term.weight for term in affinity.preferred
            if self.term_matches(term.preference, labels)
        )
