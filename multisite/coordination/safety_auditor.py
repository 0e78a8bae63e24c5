"""
════════════════════════════════════════════════════════════════════════════════════════════════════
SAFETY AUDITOR - Deterministic gate for global optimization proposals
════════════════════════════════════════════════════════════════════════════════════════════════════

Checks:
    all_facilities_within_budget     no energy reduction + affected facility >85% load → fail
    no_contamination_spread          sharing/relocating capability with confidence ≤75 → fail
    labor_availability_respected     implementation hours < 20% of Σ labor hours
    equipment_constraints_respected  requires-sterilization → every affected facility
                                     must have an available autoclave-class unit
    regression_detected              energy consolidation with no facility <40% load
    rollback_feasible                declared by the proposal

Per-facility risk (additive):
    +15 energy      declared reduction, >70% loaded, local share < 10% of budget
    +20 / +10       contamination (failed isolation / no declared reduction)
    +10 labor       local implementation hours > 40

Decision:
    BLOCK  ¬budget ∨ ¬equipment ∨ ¬rollback ∨ max risk > 35
    WARN   ¬contamination ∨ ¬labor ∨ regression ∨ confidence < 65 ∨ max risk > 20
    ALLOW  otherwise

The auditor never raises and never modifies the proposal.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from multisite.config import AuditThresholds, CoordinationSettings

from .decision_log import DecisionLog
from .facility_aggregator import FacilityAggregator
from .models import (
    AuditChecks,
    AuditDecision,
    AuditResult,
    Capability,
    EquipmentAvailability,
    FacilityRisk,
    GlobalOptimizationProposal,
    GlobalState,
    LogCategory,
    LogContext,
    OptimizationCategory,
    round_half_up,
)

logger = logging.getLogger(__name__)

SPREADING_CAPABILITIES = frozenset({Capability.SHARES_EQUIPMENT, Capability.RELOCATES_WORKLOAD})


class SafetyAuditor:
    """
    Runs the six safety checks and derives the audit decision.

    Uso:
        auditor = SafetyAuditor(aggregator, log)
        result = auditor.audit(proposal, state)
        if result.decision == AuditDecision.BLOCK:
            ...
    """

    def __init__(
        self,
        aggregator: Optional[FacilityAggregator] = None,
        log: Optional[DecisionLog] = None,
        thresholds: Optional[AuditThresholds] = None,
    ):
        self.log = log if log is not None else DecisionLog()
        self.aggregator = aggregator or FacilityAggregator(self.log)
        self.thresholds = thresholds or CoordinationSettings.get_config().audit

    # ═══════════════════════════════════════════════════════════════════════════
    # AUDIT
    # ═══════════════════════════════════════════════════════════════════════════

    def audit(self, proposal: GlobalOptimizationProposal, state: GlobalState) -> AuditResult:
        checks = AuditChecks(
            all_facilities_within_budget=self.check_energy_budgets(proposal, state),
            no_contamination_spread=self.check_contamination_spread(proposal),
            labor_availability_respected=self.check_labor_availability(proposal, state),
            equipment_constraints_respected=self.check_equipment_constraints(proposal, state),
            regression_detected=self.check_regression(proposal, state),
            rollback_feasible=proposal.rollback.feasible,
        )
        risks = tuple(self.facility_risks(proposal, state, checks))
        max_risk = max((r.risk_score for r in risks), default=0)

        result = AuditResult(
            proposal_id=proposal.proposal_id,
            decision=self.decide(checks, max_risk, proposal.confidence),
            checks=checks,
            per_facility_risks=risks,
            global_risks=tuple(self.global_risks(checks)),
            recommendations=tuple(self.recommendations(checks, max_risk, proposal.confidence)),
        )

        self.log.record(
            LogCategory.AUDIT,
            f"Audit decision [{result.decision.value.upper()}]: {proposal.title}",
            context=LogContext(
                proposal_id=proposal.proposal_id,
                audit_id=result.audit_id,
                affected_facilities=tuple(proposal.affected_facilities),
            ),
            details={
                "decision": result.decision.value,
                "max_facility_risk": max_risk,
                "global_risks": list(result.global_risks),
            },
        )

        if result.decision == AuditDecision.BLOCK:
            logger.warning(
                f"Proposal {proposal.proposal_id} blocked: "
                f"{', '.join(result.global_risks) or f'max facility risk {max_risk}'}"
            )
        else:
            logger.info(f"Proposal {proposal.proposal_id} audited: {result.decision.value}")
        return result

    def audit_batch(
        self, proposals: Sequence[GlobalOptimizationProposal], state: GlobalState
    ) -> List[AuditResult]:
        return [self.audit(p, state) for p in proposals]

    def decide(self, checks: AuditChecks, max_risk: int, confidence: float) -> AuditDecision:
        t = self.thresholds
        if (
            not checks.all_facilities_within_budget
            or not checks.equipment_constraints_respected
            or not checks.rollback_feasible
            or max_risk > t.block_risk
        ):
            return AuditDecision.BLOCK
        if (
            not checks.no_contamination_spread
            or not checks.labor_availability_respected
            or checks.regression_detected
            or confidence < t.min_confidence
            or max_risk > t.warn_risk
        ):
            return AuditDecision.WARN
        return AuditDecision.ALLOW

    # ═══════════════════════════════════════════════════════════════════════════
    # CHECKS
    # ═══════════════════════════════════════════════════════════════════════════

    def check_energy_budgets(self, proposal: GlobalOptimizationProposal, state: GlobalState) -> bool:
        if proposal.expected_benefit.global_energy_reduction:
            return True
        for facility_id in proposal.affected_facilities:
            load = self.aggregator.get_latest_load(state, facility_id)
            if load is not None and load.current_load_percent > self.thresholds.budget_overload_pct:
                return False
        return True

    def check_contamination_spread(self, proposal: GlobalOptimizationProposal) -> bool:
        if proposal.category == OptimizationCategory.CONTAMINATION_MITIGATION:
            return True
        if not proposal.capabilities & SPREADING_CAPABILITIES:
            return True
        return proposal.confidence > self.thresholds.spread_min_confidence

    def check_labor_availability(
        self, proposal: GlobalOptimizationProposal, state: GlobalState
    ) -> bool:
        total_labor = sum(f.labor_hours_available for f in state.facilities)
        hours = proposal.implementation.total_implementation_hours
        return hours < total_labor * self.thresholds.labor_capacity_fraction

    def check_equipment_constraints(
        self, proposal: GlobalOptimizationProposal, state: GlobalState
    ) -> bool:
        if not proposal.has(Capability.REQUIRES_STERILIZATION):
            return True
        for facility_id in proposal.affected_facilities:
            resources = self.aggregator.get_latest_resources(state, facility_id)
            if resources is None:
                return False
            if not any(
                eq.is_available and self._is_autoclave(eq)
                for eq in resources.equipment_availability
            ):
                return False
        return True

    def check_regression(self, proposal: GlobalOptimizationProposal, state: GlobalState) -> bool:
        if proposal.category != OptimizationCategory.ENERGY_CONSOLIDATION:
            return False
        loads = self.aggregator.latest_loads(state).values()
        return not any(load < self.thresholds.regression_target_load_pct for load in loads)

    def _is_autoclave(self, equipment: EquipmentAvailability) -> bool:
        classes = tuple(c.lower() for c in self.thresholds.autoclave_classes)
        if equipment.equipment_class and equipment.equipment_class.lower() in classes:
            return True
        equipment_id = equipment.equipment_id.lower()
        return any(c in equipment_id for c in classes)

    # ═══════════════════════════════════════════════════════════════════════════
    # RISK SCORING
    # ═══════════════════════════════════════════════════════════════════════════

    def facility_risks(
        self,
        proposal: GlobalOptimizationProposal,
        state: GlobalState,
        checks: AuditChecks,
    ) -> List[FacilityRisk]:
        t = self.thresholds
        benefit = proposal.expected_benefit
        is_mitigation = proposal.category == OptimizationCategory.CONTAMINATION_MITIGATION
        facility_count = len(state.facilities)

        risks = []
        for facility_id in proposal.affected_facilities:
            score = 0
            rationale = []

            facility = self.aggregator.get_facility(state, facility_id)
            if facility is not None and benefit.global_energy_reduction and facility_count:
                local_share = round_half_up(
                    benefit.global_energy_reduction / facility_count * t.energy_local_share_factor
                )
                load = self.aggregator.get_latest_load(state, facility_id)
                if (
                    load is not None
                    and load.current_load_percent > t.energy_risk_load_pct
                    and local_share < facility.energy_budget_kwh * t.energy_local_budget_fraction
                ):
                    score += t.energy_risk_weight
                    rationale.append("Energy budget risk: limited local reduction for overloaded facility")

            if is_mitigation and not checks.no_contamination_spread:
                score += t.contamination_failed_weight
                rationale.append("Contamination: isolation may be ineffective")
            elif not is_mitigation and benefit.contamination_risk_reduction is None:
                score += t.contamination_unaddressed_weight
                rationale.append("Contamination: no explicit risk reduction measure")

            hours = proposal.implementation.hours_for(facility_id)
            if hours is not None and hours > t.labor_risk_hours:
                score += t.labor_risk_weight
                rationale.append("Labor: significant implementation hours required")

            risks.append(FacilityRisk(facility_id=facility_id, risk_score=score, rationale=tuple(rationale)))
        return risks

    # ═══════════════════════════════════════════════════════════════════════════
    # NARRATIVE
    # ═══════════════════════════════════════════════════════════════════════════

    @staticmethod
    def global_risks(checks: AuditChecks) -> List[str]:
        risks = []
        if not checks.all_facilities_within_budget:
            risks.append("Some facilities may exceed energy budgets")
        if not checks.no_contamination_spread:
            risks.append("Cross-facility contamination spread possible")
        if not checks.labor_availability_respected:
            risks.append("Insufficient labor availability")
        if not checks.equipment_constraints_respected:
            risks.append("Equipment constraints violated")
        if checks.regression_detected:
            risks.append("Implementation may regress yield or operations")
        if not checks.rollback_feasible:
            risks.append("No feasible rollback path")
        return risks

    def recommendations(self, checks: AuditChecks, max_risk: int, confidence: float) -> List[str]:
        t = self.thresholds
        recs = []
        if not checks.all_facilities_within_budget:
            recs.append("Reduce expected energy savings or stagger implementation")
        if not checks.no_contamination_spread:
            recs.append("Strengthen contamination isolation measures or defer proposal")
        if not checks.labor_availability_respected:
            recs.append("Extend implementation timeline or allocate additional labor")
        if not checks.equipment_constraints_respected:
            recs.append("Restore sterilization equipment availability or exclude facilities without it")
        if not checks.rollback_feasible:
            recs.append("Define a feasible rollback plan before approval")
        if checks.regression_detected:
            recs.append("Confirm target facilities have spare capacity before relocating workloads")
        if confidence < t.recommend_confidence:
            recs.append("Increase confidence threshold before implementation")
        if max_risk > t.recommend_risk:
            recs.append(f"Mitigate risks in high-risk facilities (max risk score: {max_risk})")
        return recs
