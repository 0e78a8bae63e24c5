"""
════════════════════════════════════════════════════════════════════════════════════════════════════
CROSS-FACILITY OPTIMIZER - Global optimization proposals
════════════════════════════════════════════════════════════════════════════════════════════════════

Generators (each returns zero or one proposal, pure over GlobalState):

    EnergyConsolidationGenerator     load spread >30 with some >70 and some <40
    YieldBalancingGenerator          facilities with >3 and <2 active species
    ContaminationMitigationGenerator mean contamination >50, some >60, some <30
    ScheduleCoordinationGenerator    >=2 facilities above 75% load
    SpecializationGenerator          >1 facility with >4 active species

Every per-facility figure uses that facility's latest snapshot. Proposals
carry structured capability tags that the safety auditor reads.

Lifecycle:
    draft → audited → approved → implemented → rolled-back
          ↘ rejected  ↘ rejected
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Optional

from multisite.config import CoordinationSettings, OptimizerThresholds

from .decision_log import DecisionLog
from .facility_aggregator import FacilityAggregator
from .lifecycle import transition
from .models import (
    Capability,
    Complexity,
    ExpectedBenefit,
    FacilityImplementation,
    GlobalOptimizationProposal,
    GlobalState,
    ImplementationPlan,
    Level,
    LifecycleStatus,
    LogCategory,
    LogContext,
    OptimizationCategory,
    ProposalRisk,
    RollbackPlan,
    fmt_number,
    round_half_up,
)

logger = logging.getLogger(__name__)


def _total_energy_budget(state: GlobalState) -> float:
    return sum(f.energy_budget_kwh for f in state.facilities)


def _total_capacity(state: GlobalState) -> float:
    return sum(f.total_capacity_kg for f in state.facilities)


def _latest_species(state: GlobalState, aggregator: FacilityAggregator) -> Dict[str, List[str]]:
    """facility_id -> distinct active species of its latest load snapshot."""
    species = {}
    for facility in state.facilities:
        load = aggregator.get_latest_load(state, facility.facility_id)
        if load is not None:
            species[facility.facility_id] = list(dict.fromkeys(load.active_species))
    return species


# ═══════════════════════════════════════════════════════════════════════════════
# GENERATORS
# ═══════════════════════════════════════════════════════════════════════════════

class ProposalGenerator(ABC):
    """Base class for proposal generators."""

    category: OptimizationCategory
    log_message: str = "Proposal generated"
    capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self, thresholds: Optional[OptimizerThresholds] = None):
        self.thresholds = thresholds or OptimizerThresholds()

    @abstractmethod
    def generate(
        self, state: GlobalState, aggregator: FacilityAggregator
    ) -> Optional[GlobalOptimizationProposal]:
        """Return a draft proposal when triggered, else None."""

    def log_details(self, proposal: GlobalOptimizationProposal) -> Dict[str, Any]:
        return {}


class EnergyConsolidationGenerator(ProposalGenerator):
    category = OptimizationCategory.ENERGY_CONSOLIDATION
    log_message = "Energy consolidation proposal generated"
    capabilities = frozenset({Capability.REQUIRES_STERILIZATION, Capability.RELOCATES_WORKLOAD})

    def generate(self, state, aggregator):
        t = self.thresholds
        loads = aggregator.latest_loads(state)
        if not loads:
            return None

        spread = max(loads.values()) - min(loads.values())
        if spread <= t.energy_load_spread_pct:
            return None

        overloaded = [fid for fid, load in loads.items() if load > t.energy_overloaded_pct]
        underloaded = [fid for fid, load in loads.items() if load < t.energy_underloaded_pct]
        if not overloaded or not underloaded:
            return None

        reduction = _total_energy_budget(state) * t.energy_reduction_fraction
        return GlobalOptimizationProposal(
            category=self.category,
            title="Consolidate high-energy operations to underutilized facilities",
            description=(
                f"Shift sterilization and incubation workloads from {len(overloaded)} overloaded "
                f"to {len(underloaded)} underutilized facilities to reduce peak demand"
            ),
            affected_facilities=overloaded + underloaded,
            rationale=(
                f"Current load variance of {fmt_number(spread)}% indicates inefficient resource "
                f"distribution. Consolidating high-energy tasks reduces facility-level peaks "
                f"and improves grid efficiency."
            ),
            expected_benefit=ExpectedBenefit(
                global_energy_reduction=round_half_up(reduction),
                global_cost_saving=round_half_up(reduction * t.energy_cost_per_kwh),
            ),
            implementation=ImplementationPlan(
                steps=[
                    "Identify high-energy operations in overloaded facilities",
                    "Schedule sterilization/incubation in underutilized facility",
                    "Stagger HVAC and cooling schedules",
                    "Monitor peak load reduction",
                ],
                facility_steps=[
                    FacilityImplementation(
                        facility_id=fid,
                        local_steps=(
                            ["Defer non-critical sterilization"] if load > t.energy_overloaded_pct
                            else ["Increase sterilization schedule"]
                        ),
                        estimated_hours=12,
                    )
                    for fid, load in loads.items()
                ],
                total_implementation_hours=48,
                complexity=Complexity.MODERATE,
            ),
            risks=[
                ProposalRisk(
                    facility_id=fid,
                    risk="Reduced local sterilization capacity may delay batch processing",
                    mitigation_strategy=(
                        "Stagger batches across facilities; maintain critical sterilization locally"
                    ),
                )
                for fid in overloaded
            ],
            rollback=RollbackPlan(
                feasible=True,
                estimated_hours=8,
                steps=["Revert operations to original facilities", "Resume standard schedules"],
            ),
            risk_level=Level.LOW,
            confidence=78,
            capabilities=self.capabilities,
        )

    def log_details(self, proposal):
        return {"expected_savings": proposal.expected_benefit.global_cost_saving}


class YieldBalancingGenerator(ProposalGenerator):
    category = OptimizationCategory.YIELD_BALANCING
    log_message = "Yield balancing proposal generated"

    def generate(self, state, aggregator):
        t = self.thresholds
        species = _latest_species(state, aggregator)

        high = [fid for fid, sp in species.items() if len(sp) > t.yield_diverse_species]
        low = [fid for fid, sp in species.items() if len(sp) < t.yield_narrow_species]
        if not high or not low:
            return None

        return GlobalOptimizationProposal(
            category=self.category,
            title="Increase production in high-performing facilities",
            description=(
                "Shift production targets to facilities with proven capability to grow "
                "more species simultaneously"
            ),
            affected_facilities=high + low,
            rationale=(
                "High-performing facilities demonstrate ability to manage multiple species "
                "with lower contamination. Concentrating production in these facilities "
                "improves overall yield."
            ),
            expected_benefit=ExpectedBenefit(
                global_yield_increase=round_half_up(_total_capacity(state) * t.yield_increase_fraction),
            ),
            implementation=ImplementationPlan(
                steps=[
                    "Analyze species-specific success rates per facility",
                    "Increase batch sizes in high-performing facilities",
                    "Reduce batch complexity in low-performing facilities",
                    "Monitor yield improvement over 4 weeks",
                ],
                facility_steps=[
                    FacilityImplementation(
                        facility_id=fid,
                        local_steps=(
                            ["Increase batch sizes by 20%", "Add second cultivation cycle"]
                            if fid in high
                            else ["Focus on single-species batches", "Reduce concurrent species"]
                        ),
                        estimated_hours=20,
                    )
                    for fid in species
                ],
                total_implementation_hours=60,
                complexity=Complexity.MODERATE,
            ),
            risks=[
                ProposalRisk(
                    facility_id=fid,
                    risk="Reducing production may impact labor utilization",
                    mitigation_strategy=(
                        "Redeploy labor to maintenance and infrastructure improvements"
                    ),
                )
                for fid in low
            ],
            rollback=RollbackPlan(
                feasible=True,
                estimated_hours=4,
                steps=["Revert batch size targets", "Resume previous species diversity"],
            ),
            risk_level=Level.LOW,
            confidence=72,
            capabilities=self.capabilities,
        )

    def log_details(self, proposal):
        return {"expected_yield_increase": proposal.expected_benefit.global_yield_increase}


class ContaminationMitigationGenerator(ProposalGenerator):
    category = OptimizationCategory.CONTAMINATION_MITIGATION
    log_message = "Contamination isolation protocol proposed"
    capabilities = frozenset({Capability.DEDICATES_EQUIPMENT})

    def generate(self, state, aggregator):
        t = self.thresholds
        summary = aggregator.get_global_risk_summary(state)
        avg_risk = summary["avg_contamination_risk"]
        if avg_risk <= t.contamination_mean_risk:
            return None

        scores = {}
        for facility in state.facilities:
            risk = aggregator.get_latest_risk(state, facility.facility_id)
            if risk is not None:
                scores[facility.facility_id] = risk.contamination_risk_score

        high = [fid for fid, score in scores.items() if score > t.contamination_high_risk]
        low = [fid for fid, score in scores.items() if score < t.contamination_low_risk]
        if not high or not low:
            return None

        return GlobalOptimizationProposal(
            category=self.category,
            title="Implement cross-facility contamination isolation protocol",
            description=(
                "Establish strict separation between high-risk and low-risk facilities "
                "to prevent spread"
            ),
            affected_facilities=state.facility_ids,
            rationale=(
                f"Current contamination risk average of {avg_risk}% exceeds acceptable "
                f"threshold. Spatial isolation reduces cross-contamination likelihood."
            ),
            expected_benefit=ExpectedBenefit(
                contamination_risk_reduction=t.contamination_risk_reduction,
            ),
            implementation=ImplementationPlan(
                steps=[
                    "Identify high-risk contamination patterns",
                    "Implement dedicated equipment for high-risk facilities",
                    "Restrict staff movement between high and low-risk areas",
                    "Increase cleaning frequency in high-risk zones",
                    "Monitor contamination incidents weekly",
                ],
                facility_steps=[
                    FacilityImplementation(
                        facility_id=fid,
                        local_steps=(
                            [
                                "Dedicate sterilization equipment",
                                "Increase autoclave cycles",
                                "Daily contamination checks",
                            ]
                            if fid in high
                            else [
                                "Minimize cross-facility traffic",
                                "Enhanced PPE protocols",
                                "Weekly audits",
                            ]
                        ),
                        estimated_hours=40,
                    )
                    for fid in state.facility_ids
                ],
                total_implementation_hours=120,
                complexity=Complexity.COMPLEX,
            ),
            risks=[
                ProposalRisk(
                    facility_id="all",
                    risk="Operational friction from increased isolation",
                    mitigation_strategy="Dedicated staff per facility zone; clear protocols",
                ),
            ],
            rollback=RollbackPlan(
                feasible=True,
                estimated_hours=16,
                steps=[
                    "Restore normal staff movement",
                    "Standardize equipment sharing",
                    "Resume cross-facility coordination",
                ],
            ),
            risk_level=Level.MEDIUM,
            confidence=82,
            capabilities=self.capabilities,
        )

    def log_details(self, proposal):
        return {"risk_reduction": proposal.expected_benefit.contamination_risk_reduction}


class ScheduleCoordinationGenerator(ProposalGenerator):
    category = OptimizationCategory.SCHEDULE_COORDINATION
    log_message = "Schedule staggering proposal generated"
    capabilities = frozenset({Capability.REQUIRES_STERILIZATION})

    def generate(self, state, aggregator):
        t = self.thresholds
        loads = aggregator.latest_loads(state)
        high_load = [fid for fid, load in loads.items() if load > t.schedule_high_load_pct]
        if len(high_load) < t.schedule_min_facilities:
            return None

        return GlobalOptimizationProposal(
            category=self.category,
            title="Stagger sterilization and incubation cycles across facilities",
            description="Offset high-energy operations to reduce simultaneous peak demand",
            affected_facilities=state.facility_ids,
            rationale=(
                f"{len(high_load)} facilities currently at >{fmt_number(t.schedule_high_load_pct)}% "
                f"load simultaneously. Staggering operations reduces infrastructure strain."
            ),
            expected_benefit=ExpectedBenefit(
                global_energy_reduction=round_half_up(
                    _total_energy_budget(state) * t.schedule_energy_fraction
                ),
            ),
            implementation=ImplementationPlan(
                steps=[
                    "Map current sterilization/incubation schedules",
                    "Identify peak overlap windows",
                    "Offset schedules by 4-6 hours",
                    "Implement staggered start times",
                ],
                facility_steps=[
                    FacilityImplementation(
                        facility_id=fid,
                        local_steps=[
                            "Shift sterilization to off-peak hours" if fid in high_load
                            else "Maintain current schedule",
                            "Implement schedule synchronization",
                        ],
                        estimated_hours=8,
                    )
                    for fid in loads
                ],
                total_implementation_hours=32,
                complexity=Complexity.SIMPLE,
            ),
            risks=[
                ProposalRisk(
                    facility_id="all",
                    risk="Staggered schedules may delay batch processing",
                    mitigation_strategy="Design schedules to maintain 48-hour cycle time",
                ),
            ],
            rollback=RollbackPlan(
                feasible=True,
                estimated_hours=2,
                steps=["Revert to original schedules"],
            ),
            risk_level=Level.LOW,
            confidence=85,
            capabilities=self.capabilities,
        )


class SpecializationGenerator(ProposalGenerator):
    category = OptimizationCategory.FACILITY_SPECIALIZATION
    log_message = "Facility specialization proposal generated"

    def generate(self, state, aggregator):
        t = self.thresholds
        species = _latest_species(state, aggregator)
        diverse = [fid for fid, sp in species.items() if len(sp) > t.specialization_species]
        if len(diverse) <= t.specialization_min_facilities:
            return None

        return GlobalOptimizationProposal(
            category=self.category,
            title="Specialize facilities by mushroom type",
            description=(
                "Consolidate species cultivation to reduce cross-contamination and setup overhead"
            ),
            affected_facilities=diverse,
            rationale=(
                f"{len(diverse)} facilities currently grow >{t.specialization_species} species "
                f"each. Specialization reduces changeover time and equipment sterilization cycles."
            ),
            expected_benefit=ExpectedBenefit(
                global_yield_increase=round_half_up(
                    _total_capacity(state) * t.specialization_yield_fraction
                ),
                labor_reduction=t.specialization_labor_hours,
                contamination_risk_reduction=t.specialization_risk_reduction,
            ),
            implementation=ImplementationPlan(
                steps=[
                    "Analyze yield and contamination rates by species per facility",
                    "Assign 2-3 primary species per facility",
                    "Phase out non-primary species gradually",
                    "Optimize cultivation parameters for primary species",
                ],
                facility_steps=[
                    FacilityImplementation(
                        facility_id=fid,
                        local_steps=(
                            [
                                "Select 2-3 primary species",
                                "Phase out other species over 2 cycles",
                                "Optimize parameters for primary species",
                            ]
                            if fid in diverse
                            else ["Continue current diversity"]
                        ),
                        estimated_hours=30,
                    )
                    for fid in state.facility_ids
                ],
                total_implementation_hours=90,
                complexity=Complexity.MODERATE,
            ),
            risks=[
                ProposalRisk(
                    facility_id=fid,
                    risk="Reduced species diversity may limit revenue flexibility",
                    mitigation_strategy="Select species with complementary market demand",
                )
                for fid in diverse
            ],
            rollback=RollbackPlan(
                feasible=True,
                estimated_hours=20,
                steps=["Resume multi-species cultivation", "Restore previous optimization parameters"],
            ),
            risk_level=Level.LOW,
            confidence=70,
            capabilities=self.capabilities,
        )


DEFAULT_GENERATORS = (
    EnergyConsolidationGenerator,
    YieldBalancingGenerator,
    ContaminationMitigationGenerator,
    ScheduleCoordinationGenerator,
    SpecializationGenerator,
)


# ═══════════════════════════════════════════════════════════════════════════════
# OPTIMIZER
# ═══════════════════════════════════════════════════════════════════════════════

class CrossFacilityOptimizer:
    """
    Runs the proposal generators and owns the proposal lifecycle.

    Uso:
        optimizer = CrossFacilityOptimizer(aggregator, log)
        proposals = optimizer.generate_proposals(state)
        audited = optimizer.mark_audited(proposals[0])
        approved = optimizer.approve_proposal(audited, "site-director")
    """

    def __init__(
        self,
        aggregator: Optional[FacilityAggregator] = None,
        log: Optional[DecisionLog] = None,
        thresholds: Optional[OptimizerThresholds] = None,
        generators: Optional[List[ProposalGenerator]] = None,
    ):
        self.log = log if log is not None else DecisionLog()
        self.aggregator = aggregator or FacilityAggregator(self.log)
        self.thresholds = thresholds or CoordinationSettings.get_config().optimizer
        if generators is None:
            generators = [cls(self.thresholds) for cls in DEFAULT_GENERATORS]
        self.generators: List[ProposalGenerator] = list(generators)

    def register(self, generator: ProposalGenerator) -> None:
        self.generators.append(generator)

    def generate_proposals(self, state: GlobalState) -> List[GlobalOptimizationProposal]:
        proposals = []
        for generator in self.generators:
            proposal = generator.generate(state, self.aggregator)
            if proposal is None:
                continue
            self.log.record(
                LogCategory.GLOBAL_PROPOSAL,
                generator.log_message,
                context=LogContext(
                    proposal_id=proposal.proposal_id,
                    affected_facilities=tuple(proposal.affected_facilities),
                ),
                details=generator.log_details(proposal),
            )
            logger.debug(f"{type(generator).__name__} -> {proposal.proposal_id}")
            proposals.append(proposal)

        logger.info(f"Generated {len(proposals)} proposal(s) for {state.state_id}")
        return proposals

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def _context(self, proposal: GlobalOptimizationProposal, user_id: Optional[str]) -> LogContext:
        return LogContext(
            proposal_id=proposal.proposal_id,
            affected_facilities=tuple(proposal.affected_facilities),
            user_id=user_id,
        )

    def mark_audited(self, proposal: GlobalOptimizationProposal) -> GlobalOptimizationProposal:
        """Move a draft to audited; the audit entry itself is written by the auditor."""
        return transition(proposal, LifecycleStatus.AUDITED)

    def approve_proposal(
        self, proposal: GlobalOptimizationProposal, approver: str
    ) -> GlobalOptimizationProposal:
        approved = transition(proposal, LifecycleStatus.APPROVED, actor=approver)
        self.log.record(
            LogCategory.APPROVAL,
            f"Global proposal approved: {proposal.title}",
            context=self._context(proposal, approver),
        )
        logger.info(f"Proposal {proposal.proposal_id} approved by {approver}")
        return approved

    def reject_proposal(
        self, proposal: GlobalOptimizationProposal, approver: str, reason: str
    ) -> GlobalOptimizationProposal:
        rejected = transition(proposal, LifecycleStatus.REJECTED, actor=approver, reason=reason)
        self.log.record(
            LogCategory.REJECTION,
            f"Global proposal rejected: {reason}",
            context=self._context(proposal, approver),
        )
        logger.info(f"Proposal {proposal.proposal_id} rejected by {approver}: {reason}")
        return rejected

    def mark_implemented(
        self, proposal: GlobalOptimizationProposal, actor: str
    ) -> GlobalOptimizationProposal:
        implemented = transition(proposal, LifecycleStatus.IMPLEMENTED, actor=actor)
        self.log.record(
            LogCategory.IMPLEMENTATION,
            f"Global proposal implemented: {proposal.title}",
            context=self._context(proposal, actor),
            details={"total_implementation_hours": proposal.implementation.total_implementation_hours},
        )
        logger.info(f"Proposal {proposal.proposal_id} marked implemented by {actor}")
        return implemented

    def roll_back(
        self,
        proposal: GlobalOptimizationProposal,
        actor: str,
        reason: Optional[str] = None,
    ) -> GlobalOptimizationProposal:
        rolled_back = transition(proposal, LifecycleStatus.ROLLED_BACK, actor=actor, reason=reason)
        self.log.record(
            LogCategory.ROLLBACK,
            f"Global proposal rolled back: {proposal.title}",
            context=self._context(proposal, actor),
            details={
                "reason": reason,
                "rollback_hours": proposal.rollback.estimated_hours,
                "rollback_steps": list(proposal.rollback.steps),
            },
        )
        logger.warning(f"Proposal {proposal.proposal_id} rolled back by {actor}")
        return rolled_back
