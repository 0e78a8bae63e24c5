"""
════════════════════════════════════════════════════════════════════════════════════════════════════
DECISION LOG - Append-only record of coordination decisions
════════════════════════════════════════════════════════════════════════════════════════════════════

Every component writes here: aggregations, insights, plans, proposals, audits,
approvals, rejections, implementations, rollbacks and exports.

Properties:
- Append-only; entries are immutable LogEntry records
- FIFO-bounded: once `capacity` is reached the oldest entry is evicted
- Thread-safe: one lock around every read and write
- Idempotent: adding an entry whose id is already recorded is a no-op, and
  so is re-adding one of the last `capacity` evicted ids

This is the domain audit trail, separate from process logging.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

import pandas as pd

from .models import LogCategory, LogContext, LogEntry

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10000

FRAME_COLUMNS = [
    "entry_id",
    "timestamp",
    "category",
    "message",
    "proposal_id",
    "plan_id",
    "audit_id",
    "affected_facilities",
    "user_id",
]


class DecisionLog:
    """
    Bounded, lock-protected decision log.

    Uso:
        log = DecisionLog(capacity=5000)
        log.record(LogCategory.AUDIT, "Audited gop-123: warn",
                   context=LogContext(proposal_id="gop-123"))
        entries = log.export(category=LogCategory.AUDIT)
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: Deque[LogEntry] = deque()
        self._ids: Set[str] = set()
        self._evicted_ids: Deque[str] = deque()
        self._evicted_id_set: Set[str] = set()
        self._evicted = 0
        self._lock = threading.Lock()

    # ═══════════════════════════════════════════════════════════════════════════
    # WRITE
    # ═══════════════════════════════════════════════════════════════════════════

    def add(self, entry: LogEntry) -> LogEntry:
        """Append an entry; an id already present or recently evicted is ignored."""
        with self._lock:
            if entry.entry_id in self._ids or entry.entry_id in self._evicted_id_set:
                return entry
            self._entries.append(entry)
            self._ids.add(entry.entry_id)
            while len(self._entries) > self.capacity:
                oldest = self._entries.popleft()
                self._ids.discard(oldest.entry_id)
                self._remember_evicted(oldest.entry_id)
                self._evicted += 1
        logger.debug(f"[{entry.category.value}] {entry.message}")
        return entry

    def record(
        self,
        category: LogCategory,
        message: str,
        context: Optional[LogContext] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        entry = LogEntry(
            category=LogCategory(category),
            message=message,
            context=context or LogContext(),
            details=dict(details or {}),
        )
        return self.add(entry)

    def extend(self, entries: Iterable[LogEntry]) -> None:
        for entry in entries:
            self.add(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._ids.clear()
            self._evicted_ids.clear()
            self._evicted_id_set.clear()
            self._evicted = 0

    def _remember_evicted(self, entry_id: str) -> None:
        # caller holds the lock; at most `capacity` evicted ids are kept
        self._evicted_ids.append(entry_id)
        self._evicted_id_set.add(entry_id)
        if len(self._evicted_ids) > self.capacity:
            self._evicted_id_set.discard(self._evicted_ids.popleft())

    # ═══════════════════════════════════════════════════════════════════════════
    # READ
    # ═══════════════════════════════════════════════════════════════════════════

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        with self._lock:
            return entry_id in self._ids

    def export(
        self,
        category: Optional[LogCategory] = None,
        proposal_id: Optional[str] = None,
        facility_id: Optional[str] = None,
    ) -> List[LogEntry]:
        """Entries in insertion order, optionally filtered (filters combine with AND)."""
        category = LogCategory(category) if category is not None else None
        with self._lock:
            entries = list(self._entries)

        result = []
        for entry in entries:
            if category is not None and entry.category != category:
                continue
            if proposal_id is not None and entry.context.proposal_id != proposal_id:
                continue
            if facility_id is not None and facility_id not in entry.context.affected_facilities:
                continue
            result.append(entry)
        return result

    def export_dicts(self, **filters) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.export(**filters)]

    def to_dataframe(self, **filters) -> pd.DataFrame:
        """Flat frame of the (filtered) log, one row per entry."""
        rows = []
        for entry in self.export(**filters):
            ctx = entry.context
            rows.append({
                "entry_id": entry.entry_id,
                "timestamp": entry.timestamp,
                "category": entry.category.value,
                "message": entry.message,
                "proposal_id": ctx.proposal_id,
                "plan_id": ctx.plan_id,
                "audit_id": ctx.audit_id,
                "affected_facilities": list(ctx.affected_facilities),
                "user_id": ctx.user_id,
            })
        return pd.DataFrame(rows, columns=FRAME_COLUMNS)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            counts = Counter(e.category.value for e in self._entries)
            total = len(self._entries)
            evicted = self._evicted
        return {
            "total_entries": total,
            "capacity": self.capacity,
            "evicted": evicted,
            "by_category": dict(counts),
        }
