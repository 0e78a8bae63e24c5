"""
Status transition tables for shared resource plans and global proposals.

Plans and proposals are never mutated in place: `transition()` validates the
move against the table of the record's kind and returns a new record with the
status, timestamps and actor fields filled in.

    Plan:     draft -> audited -> approved -> implemented
                  \\-> approved     \\-> rejected
                  \\-> rejected

    Proposal: draft -> audited -> approved -> implemented -> rolled-back
                  \\-> rejected     \\-> rejected
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional, TypeVar, Union

from .errors import InvalidTransitionError
from .models import (
    GlobalOptimizationProposal,
    LifecycleStatus,
    SharedResourcePlan,
    utcnow,
)

logger = logging.getLogger(__name__)

S = LifecycleStatus

PLAN_TRANSITIONS: Dict[LifecycleStatus, FrozenSet[LifecycleStatus]] = {
    S.DRAFT: frozenset({S.AUDITED, S.APPROVED, S.REJECTED}),
    S.AUDITED: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.IMPLEMENTED}),
    S.REJECTED: frozenset(),
    S.IMPLEMENTED: frozenset(),
}

PROPOSAL_TRANSITIONS: Dict[LifecycleStatus, FrozenSet[LifecycleStatus]] = {
    S.DRAFT: frozenset({S.AUDITED, S.REJECTED}),
    S.AUDITED: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.IMPLEMENTED}),
    S.REJECTED: frozenset(),
    S.IMPLEMENTED: frozenset({S.ROLLED_BACK}),
    S.ROLLED_BACK: frozenset(),
}

Record = TypeVar("Record", SharedResourcePlan, GlobalOptimizationProposal)


def record_kind(record: Union[SharedResourcePlan, GlobalOptimizationProposal]) -> str:
    return "plan" if isinstance(record, SharedResourcePlan) else "proposal"


def allowed_targets(record) -> FrozenSet[LifecycleStatus]:
    table = PLAN_TRANSITIONS if isinstance(record, SharedResourcePlan) else PROPOSAL_TRANSITIONS
    return table.get(record.status, frozenset())


def can_transition(record, target: LifecycleStatus) -> bool:
    return LifecycleStatus(target) in allowed_targets(record)


def transition(
    record: Record,
    target: LifecycleStatus,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Record:
    """
    Return a copy of `record` moved to `target`.

    Raises:
        InvalidTransitionError: if the table of the record's kind forbids the move
    """
    target = LifecycleStatus(target)
    if not can_transition(record, target):
        logger.warning(
            f"Rejected {record_kind(record)} transition {record.record_id}: "
            f"{record.status.value} -> {target.value}"
        )
        raise InvalidTransitionError(
            record_kind(record), record.record_id, record.status.value, target.value
        )

    now = at or utcnow()
    changes = {"status": target, "updated_at": now}

    if target == S.APPROVED:
        changes.update(approved_by=actor, approved_at=now)
    elif target == S.REJECTED:
        changes.update(rejected_by=actor, rejection_reason=reason)
    elif target == S.IMPLEMENTED:
        changes["implemented_at"] = now
    elif target == S.ROLLED_BACK:
        changes["rolled_back_at"] = now

    if isinstance(record, SharedResourcePlan):
        changes["version"] = record.version + 1

    logger.debug(
        f"{record_kind(record).capitalize()} {record.record_id}: "
        f"{record.status.value} -> {target.value}"
    )
    return replace(record, **changes)
