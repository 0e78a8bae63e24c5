"""
Errors raised by the multi-facility coordination core.

Only aggregation (referential integrity) and lifecycle operations raise;
detectors, generators and the safety auditor never do.
"""

from __future__ import annotations


class CoordinationError(Exception):
    """Base class for coordination errors."""


class UnknownFacilityError(CoordinationError, ValueError):
    """A snapshot references a facility id that has no profile."""

    def __init__(self, snapshot_type: str, facility_id: str):
        super().__init__(
            f"{snapshot_type.capitalize()} snapshot references unknown facility: {facility_id}"
        )
        self.snapshot_type = snapshot_type
        self.facility_id = facility_id


class InvalidTransitionError(CoordinationError):
    """A plan or proposal was asked to move to a status its table forbids."""

    def __init__(self, record_kind: str, record_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move {record_kind} {record_id} from '{current}' to '{target}'"
        )
        self.record_kind = record_kind
        self.record_id = record_id
        self.current = current
        self.target = target


class ProposalBlockedError(CoordinationError):
    """Approval requested for a proposal whose audit decided 'block'."""

    def __init__(self, proposal_id: str, global_risks=None):
        super().__init__(f"Proposal {proposal_id} was blocked by the safety audit")
        self.proposal_id = proposal_id
        self.global_risks = list(global_risks or [])


class RecordNotFoundError(CoordinationError, KeyError):
    """Lookup of an unknown plan, proposal or audit id."""

    def __init__(self, record_kind: str, record_id: str):
        super().__init__(f"{record_kind} not found: {record_id}")
        self.record_kind = record_kind
        self.record_id = record_id

    def __str__(self) -> str:
        return self.args[0]
