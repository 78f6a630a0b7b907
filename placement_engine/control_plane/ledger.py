"""
placement_engine/control_plane/ledger.py
─────────────────────────────────────────
ResourceLedger: per-node record of what the engine has promised to pods.

This is the ONLY mutable resource state in the engine. Filtering and
scoring read an immutable snapshot; binding writes here.

Concurrency contract
─────────────────────
Scheduling attempts for different pods run concurrently, each against its
own snapshot. Two attempts may therefore pick the same node on stale data.
The ledger serialises the final step per node:

    async with ledger.lock(node_id):
        re-check fit against the live ledger
        reserve, or raise BindConflictError

A loser sees BindConflictError, re-validates against a fresh snapshot and
is requeued. There is no global lock: attempts on different nodes never
wait for each other.

Pod count
──────────
The pod-count limit (node.max_pods) is tracked as the pseudo-resource
"pods", so an over-full node reports "pods" among its insufficient
resources like any other dimension.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from placement_engine.shared.errors import BindConflictError
from placement_engine.shared.models import ResourceVector

logger = logging.getLogger(__name__)


@dataclass
class _LedgerEntry:
    allocatable: ResourceVector
    max_pods: int
    requested: ResourceVector = field(default_factory=ResourceVector)
    pods: Dict[str, ResourceVector] = field(default_factory=dict)


class ResourceLedger:
    """
    node_id → allocatable / requested / bound pods, plus one asyncio.Lock
    per node.

    Attributes:
        reservations: Total successful reserve() calls (for metrics).
        conflicts:    Total reserve attempts rejected on re-validation.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _LedgerEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pod_node: Dict[str, str] = {}
        self.reservations: int = 0
        self.conflicts: int = 0

    # ── Node registry ──────────────────────────────────────────────────────────

    def register_node(self, node_id: str, allocatable: ResourceVector, max_pods: int) -> None:
        """Add a node, or update its capacity while keeping reservations."""
        entry = self._entries.get(node_id)
        if entry is None:
            self._entries[node_id] = _LedgerEntry(allocatable=allocatable, max_pods=max_pods)
            self._locks[node_id] = asyncio.Lock()
        else:
            entry.allocatable = allocatable
            entry.max_pods = max_pods

    def remove_node(self, node_id: str) -> List[str]:
        """Forget a node. Returns the ids of pods that were bound to it."""
        entry = self._entries.pop(node_id, None)
        self._locks.pop(node_id, None)
        if entry is None:
            return []
        for pod_id in entry.pods:
            self._pod_node.pop(pod_id, None)
        return sorted(entry.pods)

    def lock(self, node_id: str) -> asyncio.Lock:
        return self._locks[node_id]

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._entries

    # ── Queries ────────────────────────────────────────────────────────────────

    def requested(self, node_id: str) -> ResourceVector:
        return self._entries[node_id].requested

    def free(self, node_id: str) -> ResourceVector:
        entry = self._entries[node_id]
        return entry.allocatable.subtract(entry.requested)

    def pods_on(self, node_id: str) -> Set[str]:
        entry = self._entries.get(node_id)
        return set(entry.pods) if entry else set()

    def node_of(self, pod_id: str) -> Optional[str]:
        return self._pod_node.get(pod_id)

    def insufficient(self, node_id: str, request: ResourceVector) -> List[str]:
        """Resources the node cannot currently cover, including "pods"."""
        entry = self._entries[node_id]
        missing = self.free(node_id).insufficient(request)
        if len(entry.pods) + 1 > entry.max_pods:
            missing.append("pods")
        return missing

    # ── Mutation ───────────────────────────────────────────────────────────────

    def reserve(
        self, node_id: str, pod_id: str, request: ResourceVector, force: bool = False
    ) -> None:
        """
        Record a reservation. Caller must hold lock(node_id) unless the call
        happens without any intervening await (e.g. during bootstrap).

        Args:
            force: Skip the fit check (explicit node pin binds unconditionally).

        Raises:
            BindConflictError: if the request no longer fits and force=False.
            KeyError:          if node_id is unknown.
        """
        entry = self._entries[node_id]
        if pod_id in entry.pods:
            return
        if not force:
            missing = self.insufficient(node_id, request)
            if missing:
                self.conflicts += 1
                raise BindConflictError(pod_id, node_id, missing)

        entry.pods[pod_id] = request
        entry.requested = entry.requested.add(request)
        self._pod_node[pod_id] = node_id
        self.reservations += 1
        logger.debug(
            "Reserved: pod=%s node=%s cpu=%dm mem=%dMi",
            pod_id, node_id, request.cpu_millis, request.memory_mb,
        )

    async def try_reserve(
        self, node_id: str, pod_id: str, request: ResourceVector, force: bool = False
    ) -> None:
        """reserve() under the node's lock."""
        async with self.lock(node_id):
            self.reserve(node_id, pod_id, request, force=force)

    def release(self, pod_id: str) -> Optional[str]:
        """Drop a pod's reservation. Returns the node it was on, or None."""
        node_id = self._pod_node.pop(pod_id, None)
        if node_id is None:
            return None
        entry = self._entries.get(node_id)
        if entry is None:
            return node_id
        request = entry.pods.pop(pod_id, None)
        if request is not None:
            entry.requested = entry.requested.subtract(request)
        logger.debug("Released: pod=%s node=%s", pod_id, node_id)
        return node_id

    def __repr__(self) -> str:
        return (
            f"ResourceLedger(nodes={len(self._entries)}, pods={len(self._pod_node)}, "
            f"reservations={self.reservations}, conflicts={self.conflicts})"
        )
