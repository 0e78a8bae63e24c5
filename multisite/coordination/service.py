"""
════════════════════════════════════════════════════════════════════════════════════════════════════
MULTI-FACILITY SERVICE - Orchestrates aggregation, detection, proposals and audits
════════════════════════════════════════════════════════════════════════════════════════════════════

One service instance owns one DecisionLog and one set of in-memory registries
(states, plans, proposals, audits). Components receive the log explicitly; the
core keeps no module-level engine instances.

Cycle:
    ingest(batch) → GlobalState
    analyze(state) → insights, plans, proposals
    audit every proposal → draft proposals become 'audited'

Approval of a proposal requires a non-blocking audit.

Registries are bounded by `registry_capacity` states. Evicting a state drops
the plans, proposals and audits derived from it, except records still in
flight (approved plans, approved or implemented proposals), which stay until
a lifecycle call settles them.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from multisite.config import CoordinationConfig, CoordinationSettings

from .contention_coordinator import ContentionCoordinator
from .cross_facility_optimizer import CrossFacilityOptimizer
from .decision_log import DecisionLog
from .errors import ProposalBlockedError, RecordNotFoundError
from .facility_aggregator import FacilityAggregator
from .insight_detector import InsightDetector
from .models import (
    AuditDecision,
    AuditResult,
    GlobalOptimizationProposal,
    GlobalState,
    IngestBatch,
    Insight,
    LifecycleStatus,
    LogCategory,
    LogContext,
    SharedResourcePlan,
)
from .safety_auditor import SafetyAuditor

logger = logging.getLogger(__name__)

# Records that still await a lifecycle call survive eviction of their state.
PLANS_IN_FLIGHT = frozenset({LifecycleStatus.APPROVED})
PROPOSALS_IN_FLIGHT = frozenset({LifecycleStatus.APPROVED, LifecycleStatus.IMPLEMENTED})


# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CoordinationCycle:
    """Everything produced by one run_cycle() call."""
    state: GlobalState
    insights: List[Insight] = field(default_factory=list)
    plans: List[SharedResourcePlan] = field(default_factory=list)
    proposals: List[GlobalOptimizationProposal] = field(default_factory=list)
    audits: List[AuditResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.to_dict(),
            "insights": [i.to_dict() for i in self.insights],
            "plans": [p.to_dict() for p in self.plans],
            "proposals": [p.to_dict() for p in self.proposals],
            "audits": [a.to_dict() for a in self.audits],
            "summary": {
                "global_load": self.state.global_load,
                "global_risk": self.state.global_risk.value,
                "insights": len(self.insights),
                "plans": len(self.plans),
                "proposals": len(self.proposals),
                "blocked": sum(1 for a in self.audits if a.decision == AuditDecision.BLOCK),
            },
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

class MultiFacilityService:
    """
    Coordination service for a fleet of facilities.

    Uso:
        service = MultiFacilityService()
        cycle = service.run_cycle(batch)
        for audit in cycle.audits:
            if audit.decision != AuditDecision.BLOCK:
                service.approve_proposal(audit.proposal_id, "site-director")
    """

    def __init__(
        self,
        config: Optional[CoordinationConfig] = None,
        log: Optional[DecisionLog] = None,
    ):
        self.config = config or CoordinationSettings.get_config()
        self.log = log if log is not None else DecisionLog(capacity=self.config.log_capacity)

        self.aggregator = FacilityAggregator(self.log)
        self.detector = InsightDetector(self.aggregator, self.log, self.config.insight)
        self.coordinator = ContentionCoordinator(
            self.aggregator,
            self.log,
            self.config.contention,
            partition_transfers=self.config.partition_transfers,
        )
        self.optimizer = CrossFacilityOptimizer(self.aggregator, self.log, self.config.optimizer)
        self.auditor = SafetyAuditor(self.aggregator, self.log, self.config.audit)

        self._lock = threading.RLock()
        self._states: Dict[str, GlobalState] = {}
        self._latest_state_id: Optional[str] = None
        self._plans: Dict[str, SharedResourcePlan] = {}
        self._proposals: Dict[str, GlobalOptimizationProposal] = {}
        self._plan_state: Dict[str, str] = {}
        self._proposal_state: Dict[str, str] = {}
        self._audits: Dict[str, AuditResult] = {}
        self._evicted_states = 0

        logger.info(f"MultiFacilityService initialized (log capacity {self.log.capacity})")

    # ═══════════════════════════════════════════════════════════════════════════
    # PIPELINE
    # ═══════════════════════════════════════════════════════════════════════════

    def ingest(self, batch: IngestBatch) -> GlobalState:
        state = self.aggregator.aggregate(batch)
        with self._lock:
            self._states[state.state_id] = state
            self._latest_state_id = state.state_id
            self._evict_old_states()
        return state

    def detect_insights(self, state: GlobalState) -> List[Insight]:
        return self.detector.detect(state)

    def detect_contention(self, state: GlobalState) -> List[SharedResourcePlan]:
        plans = self.coordinator.detect_contention(state)
        with self._lock:
            self._states.setdefault(state.state_id, state)
            for plan in plans:
                self._plans[plan.plan_id] = plan
                self._plan_state[plan.plan_id] = state.state_id
            self._evict_old_states()
        return plans

    def generate_proposals(self, state: GlobalState) -> List[GlobalOptimizationProposal]:
        proposals = self.optimizer.generate_proposals(state)
        with self._lock:
            self._states.setdefault(state.state_id, state)
            for proposal in proposals:
                self._proposals[proposal.proposal_id] = proposal
                self._proposal_state[proposal.proposal_id] = state.state_id
            self._evict_old_states()
        return proposals

    def analyze(self, state: GlobalState) -> CoordinationCycle:
        """Insights, contention plans and proposals for an aggregated state (no audits)."""
        return CoordinationCycle(
            state=state,
            insights=self.detect_insights(state),
            plans=self.detect_contention(state),
            proposals=self.generate_proposals(state),
        )

    def audit_all(self, proposals: List[GlobalOptimizationProposal]) -> List[AuditResult]:
        """Audit registered proposals in input order."""
        return [self.audit_proposal(p.proposal_id) for p in proposals]

    def run_cycle(self, batch: IngestBatch) -> CoordinationCycle:
        state = self.ingest(batch)
        cycle = self.analyze(state)

        cycle.audits = self.audit_all(cycle.proposals)
        with self._lock:
            cycle.proposals = [self._proposals.get(p.proposal_id, p) for p in cycle.proposals]

        logger.info(
            f"Cycle {state.state_id}: {len(cycle.insights)} insights, {len(cycle.plans)} plans, "
            f"{len(cycle.proposals)} proposals"
        )
        return cycle

    def audit_proposal(self, proposal_id: str, state: Optional[GlobalState] = None) -> AuditResult:
        """
        Audit a registered proposal against `state` (default: the state it came from).

        A draft proposal moves to 'audited'; re-audits keep the current status
        and replace the stored audit. The audit runs outside the lock, so the
        status change is decided on the record as it is when the audit ends:
        a proposal rejected meanwhile stays rejected.
        """
        proposal = self.get_proposal(proposal_id)
        state = state or self._state_for(proposal_id)
        result = self.auditor.audit(proposal, state)

        with self._lock:
            current = self._proposals.get(proposal_id)
            if current is None:
                logger.warning(f"Proposal {proposal_id} evicted while being audited")
                return result
            self._audits[proposal_id] = result
            if current.status == LifecycleStatus.DRAFT:
                self._proposals[proposal_id] = self.optimizer.mark_audited(current)
        return result

    # ═══════════════════════════════════════════════════════════════════════════
    # PLAN LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def approve_plan(self, plan_id: str, approver: str) -> SharedResourcePlan:
        with self._lock:
            plan = self.coordinator.approve_plan(self.get_plan(plan_id), approver)
            self._plans[plan_id] = plan
        return plan

    def reject_plan(self, plan_id: str, approver: str, reason: str) -> SharedResourcePlan:
        with self._lock:
            plan = self.coordinator.reject_plan(self.get_plan(plan_id), approver, reason)
            self._plans[plan_id] = plan
        return plan

    def implement_plan(self, plan_id: str, actor: str) -> SharedResourcePlan:
        with self._lock:
            plan = self.coordinator.mark_plan_implemented(self.get_plan(plan_id), actor)
            self._plans[plan_id] = plan
        return plan

    # ═══════════════════════════════════════════════════════════════════════════
    # PROPOSAL LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def approve_proposal(self, proposal_id: str, approver: str) -> GlobalOptimizationProposal:
        """
        Raises:
            ProposalBlockedError: the latest audit decided 'block'
            InvalidTransitionError: the proposal was never audited or is past approval
        """
        with self._lock:
            proposal = self.get_proposal(proposal_id)
            audit = self._audits.get(proposal_id)
            if audit is not None and audit.decision == AuditDecision.BLOCK:
                logger.warning(f"Approval of blocked proposal {proposal_id} refused ({approver})")
                raise ProposalBlockedError(proposal_id, audit.global_risks)
            proposal = self.optimizer.approve_proposal(proposal, approver)
            self._proposals[proposal_id] = proposal
        return proposal

    def reject_proposal(
        self, proposal_id: str, approver: str, reason: str
    ) -> GlobalOptimizationProposal:
        with self._lock:
            proposal = self.optimizer.reject_proposal(self.get_proposal(proposal_id), approver, reason)
            self._proposals[proposal_id] = proposal
        return proposal

    def implement_proposal(self, proposal_id: str, actor: str) -> GlobalOptimizationProposal:
        with self._lock:
            proposal = self.optimizer.mark_implemented(self.get_proposal(proposal_id), actor)
            self._proposals[proposal_id] = proposal
        return proposal

    def roll_back_proposal(
        self, proposal_id: str, actor: str, reason: Optional[str] = None
    ) -> GlobalOptimizationProposal:
        with self._lock:
            proposal = self.optimizer.roll_back(self.get_proposal(proposal_id), actor, reason)
            self._proposals[proposal_id] = proposal
        return proposal

    # ═══════════════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════════════

    def get_plan(self, plan_id: str) -> SharedResourcePlan:
        with self._lock:
            if plan_id not in self._plans:
                raise RecordNotFoundError("plan", plan_id)
            return self._plans[plan_id]

    def get_proposal(self, proposal_id: str) -> GlobalOptimizationProposal:
        with self._lock:
            if proposal_id not in self._proposals:
                raise RecordNotFoundError("proposal", proposal_id)
            return self._proposals[proposal_id]

    def get_audit(self, proposal_id: str) -> AuditResult:
        with self._lock:
            if proposal_id not in self._audits:
                raise RecordNotFoundError("audit", proposal_id)
            return self._audits[proposal_id]

    def get_latest_state(self) -> Optional[GlobalState]:
        with self._lock:
            if self._latest_state_id is None:
                return None
            return self._states[self._latest_state_id]

    def list_plans(self, status: Optional[LifecycleStatus] = None) -> List[SharedResourcePlan]:
        with self._lock:
            plans = list(self._plans.values())
        return [p for p in plans if status is None or p.status == LifecycleStatus(status)]

    def list_proposals(
        self, status: Optional[LifecycleStatus] = None
    ) -> List[GlobalOptimizationProposal]:
        with self._lock:
            proposals = list(self._proposals.values())
        return [p for p in proposals if status is None or p.status == LifecycleStatus(status)]

    def _state_for(self, proposal_id: str) -> GlobalState:
        with self._lock:
            state_id = self._proposal_state.get(proposal_id)
            if state_id is None or state_id not in self._states:
                raise RecordNotFoundError("state", state_id or f"of proposal {proposal_id}")
            return self._states[state_id]

    def _evict_old_states(self) -> None:
        """Drop the oldest states beyond capacity with their settled records (caller holds the lock)."""
        while len(self._states) > self.config.registry_capacity:
            state_id = next(iter(self._states))
            del self._states[state_id]
            self._evicted_states += 1

            for plan_id in [p for p, s in self._plan_state.items() if s == state_id]:
                del self._plan_state[plan_id]
                if self._plans[plan_id].status not in PLANS_IN_FLIGHT:
                    del self._plans[plan_id]

            for proposal_id in [p for p, s in self._proposal_state.items() if s == state_id]:
                del self._proposal_state[proposal_id]
                if self._proposals[proposal_id].status not in PROPOSALS_IN_FLIGHT:
                    del self._proposals[proposal_id]
                    self._audits.pop(proposal_id, None)

            logger.debug(f"Evicted state {state_id} from registries")

    # ═══════════════════════════════════════════════════════════════════════════
    # LOG & STATISTICS
    # ═══════════════════════════════════════════════════════════════════════════

    def export_log(
        self,
        category: Optional[LogCategory] = None,
        proposal_id: Optional[str] = None,
        facility_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Filtered log export; the export itself is recorded afterwards."""
        entries = self.log.export_dicts(
            category=category, proposal_id=proposal_id, facility_id=facility_id
        )
        self.log.record(
            LogCategory.EXPORT,
            f"Exported {len(entries)} log entries",
            context=LogContext(
                proposal_id=proposal_id,
                affected_facilities=(facility_id,) if facility_id else (),
                user_id=user_id,
            ),
            details={
                "category": LogCategory(category).value if category else None,
                "entries": len(entries),
            },
        )
        return entries

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            plans = list(self._plans.values())
            proposals = list(self._proposals.values())
            audits = list(self._audits.values())
            states = len(self._states)
            evicted = self._evicted_states
            latest = self._states.get(self._latest_state_id) if self._latest_state_id else None

        return {
            "states_aggregated": states,
            "states_evicted": evicted,
            "registry_capacity": self.config.registry_capacity,
            "latest_state_id": latest.state_id if latest else None,
            "global_load": latest.global_load if latest else None,
            "global_risk": latest.global_risk.value if latest else None,
            "plans_by_status": dict(Counter(p.status.value for p in plans)),
            "proposals_by_status": dict(Counter(p.status.value for p in proposals)),
            "audits_by_decision": dict(Counter(a.decision.value for a in audits)),
            "log": self.log.get_statistics(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_service_instance: Optional[MultiFacilityService] = None


def get_multi_facility_service() -> MultiFacilityService:
    """Get per-process service instance."""
    global _service_instance
    if _service_instance is None:
        _service_instance = MultiFacilityService()
    return _service_instance


def reset_multi_facility_service() -> None:
    """Reset singleton (for testing)."""
    global _service_instance
    _service_instance = None
