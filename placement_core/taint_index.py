"""
placement_core/taint_index.py
─────────────────────────────
TaintIndex: per-node ordered set of (key, value, effect) taints.

Why an index instead of reading node.taints directly
─────────────────────────────────────────────────────
Taint changes are the ONLY trigger for arming and cancelling NoExecute
eviction timers. The index therefore has to answer two questions cheaply:

  1. "What taints does node N carry right now?"          → taints_for()
  2. "What changed since the last update of node N?"     → TaintDiff

Replacing a node's taint list with set_node_taints() returns a TaintDiff
(added / removed) that the NoExecute taint manager feeds straight into the
timer manager.

Identity and time_added
────────────────────────
Taints are identified by (key, value, effect). If an update re-submits a
taint that is already present, the ORIGINAL time_added is kept: the taint
did not "become effective" again, so eviction deadlines must not move.
A taint whose value changes is a removal plus an addition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from placement_engine.shared.models import Taint, TaintEffect, TaintIdentity


@dataclass
class TaintDiff:
    """Result of replacing one node's taints."""

    node_id: str
    added: List[Taint] = field(default_factory=list)
    removed: List[Taint] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def no_execute_changed(self) -> bool:
        return any(
            t.effect == TaintEffect.NO_EXECUTE for t in self.added + self.removed
        )


class TaintIndex:
    """
    node_id → ordered {identity: Taint}.

    Not thread-safe; owned by the scheduler's event loop like the rest of
    the cluster state.
    """

    def __init__(self) -> None:
        self._by_node: Dict[str, Dict[TaintIdentity, Taint]] = {}

    # ── Updates ────────────────────────────────────────────────────────────────

    def set_node_taints(
        self, node_id: str, taints: Iterable[Taint], now: Optional[float] = None
    ) -> TaintDiff:
        """
        Replace the taint set of a node and report what changed.

        Args:
            node_id: The node being updated.
            taints:  The complete new taint list, in node order.
            now:     If given, newly added taints whose time_added is 0 are
                     stamped with this time.

        Returns:
            TaintDiff with the added and removed taints.
        """
        previous = self._by_node.get(node_id, {})
        current: Dict[TaintIdentity, Taint] = {}
        diff = TaintDiff(node_id=node_id)

        for taint in taints:
            ident = taint.identity
            if ident in current:
                continue
            if ident in previous:
                current[ident] = previous[ident]
                continue
            if now is not None and not taint.time_added:
                taint = taint.model_copy(update={"time_added": now})
            current[ident] = taint
            diff.added.append(taint)

        diff.removed = [t for ident, t in previous.items() if ident not in current]
        self._by_node[node_id] = current
        return diff

    def add_taint(self, node_id: str, taint: Taint, now: Optional[float] = None) -> TaintDiff:
        return self.set_node_taints(node_id, self.taints_for(node_id) + [taint], now=now)

    def remove_taint(self, node_id: str, identity: TaintIdentity) -> TaintDiff:
        remaining = [t for t in self.taints_for(node_id) if t.identity != identity]
        return self.set_node_taints(node_id, remaining)

    def remove_node(self, node_id: str) -> TaintDiff:
        removed = list(self._by_node.pop(node_id, {}).values())
        return TaintDiff(node_id=node_id, removed=removed)

    # ── Queries ────────────────────────────────────────────────────────────────

    def taints_for(self, node_id: str) -> List[Taint]:
        return list(self._by_node.get(node_id, {}).values())

    def no_execute_taints(self, node_id: str) -> List[Taint]:
        return [
            t for t in self._by_node.get(node_id, {}).values()
            if t.effect == TaintEffect.NO_EXECUTE
        ]

    def get(self, node_id: str, identity: TaintIdentity) -> Optional[Taint]:
        return self._by_node.get(node_id, {}).get(identity)

    def node_ids(self) -> List[str]:
        return sorted(self._by_node)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._by_node

    def __len__(self) -> int:
        return sum(len(t) for t in self._by_node.values())

    def __repr__(self) -> str:
        return f"TaintIndex(nodes={len(self._by_node)}, taints={len(self)})"
