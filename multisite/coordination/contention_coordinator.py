"""
════════════════════════════════════════════════════════════════════════════════════════════════════
CONTENTION COORDINATOR - Shared resource contention and rebalancing plans
════════════════════════════════════════════════════════════════════════════════════════════════════

Detectors (one plan per contended resource):

    Substrate   per material: >80% allocated = critical, <30% = excess
                transferable = 20% × (Σ available − Σ allocated), kg, 2h each
    Equipment   per equipment id: unavailable facilities need it, available
                facilities share 1 unit via scheduled access, 4h each
    Energy      used = budget × latest load %: >80% = critical, <50% = excess
                transfers only if excess headroom ≥ 0.5 × shortfall above 80%;
                shift = 50% of each critical facility's shortfall, kWh, 8h

Partitioning (`partition_transfers`, default on):
    substrate: the transferable amount is split over every (critical, excess) pair
    energy:    each critical facility's shift is split over the excess facilities
Off: every pair carries the full amount.

Plans are proposals only; nothing here executes a transfer. Approval,
rejection and implementation return new plan values through lifecycle.py.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from multisite.config import ContentionThresholds, CoordinationSettings

from .decision_log import DecisionLog
from .facility_aggregator import FacilityAggregator
from .lifecycle import transition
from .models import (
    AllocationPriority,
    FacilityAllocation,
    FacilityImpact,
    GlobalState,
    LifecycleStatus,
    LogCategory,
    LogContext,
    ResourceStatus,
    ResourceTransfer,
    ResourceType,
    SharedResourcePlan,
    round_half_up,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Contention:
    """A plan together with the decision-log text describing its detection."""
    plan: SharedResourcePlan
    message: str
    affected_facilities: List[str]
    details: Dict[str, Any] = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTORS
# ═══════════════════════════════════════════════════════════════════════════════

class ContentionDetector(ABC):
    """Base class for per-resource contention detectors."""

    resource_type: ResourceType

    def __init__(
        self,
        thresholds: Optional[ContentionThresholds] = None,
        partition_transfers: bool = True,
    ):
        self.thresholds = thresholds or ContentionThresholds()
        self.partition_transfers = partition_transfers

    @abstractmethod
    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Contention]:
        """Return one Contention per contended resource; never raises on missing data."""


class SubstrateContentionDetector(ContentionDetector):
    resource_type = ResourceType.SUBSTRATE

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Contention]:
        t = self.thresholds
        summaries: Dict[str, Dict[str, Any]] = {}
        allocated_by_facility: Dict[str, Dict[str, float]] = {}

        for facility in state.facilities:
            resources = aggregator.get_latest_resources(state, facility.facility_id)
            if resources is None:
                continue
            for stock in resources.substrate_materials:
                utilization = stock.utilization_percent
                if utilization is None:
                    continue
                summary = summaries.setdefault(
                    stock.material,
                    {"total": 0.0, "allocated": 0.0, "critical": [], "excess": []},
                )
                summary["total"] += stock.available_kg
                summary["allocated"] += stock.allocated_kg
                allocated_by_facility.setdefault(stock.material, {})[
                    facility.facility_id
                ] = stock.allocated_kg

                if utilization > t.substrate_critical_pct:
                    summary["critical"].append(facility.facility_id)
                elif utilization < t.substrate_excess_pct:
                    summary["excess"].append(facility.facility_id)

        found = []
        for material, summary in summaries.items():
            critical, excess = summary["critical"], summary["excess"]
            if not critical or not excess:
                continue

            allocations = allocated_by_facility[material]
            facilities = [
                FacilityAllocation(
                    facility_id=f.facility_id,
                    current_allocation=allocations.get(f.facility_id, 0.0),
                    requested_allocation=0.0,
                    priority=(
                        AllocationPriority.CRITICAL if f.facility_id in critical
                        else AllocationPriority.NORMAL
                    ),
                )
                for f in state.facilities
            ]

            spare = summary["total"] - summary["allocated"]
            transferable = max(0.0, spare * t.substrate_transfer_fraction)
            pairs = len(critical) * len(excess)
            per_pair = transferable / pairs if self.partition_transfers else transferable
            quantity = round_half_up(per_pair)

            transfers = []
            if quantity > 0:
                for critical_id in critical:
                    for excess_id in excess:
                        transfers.append(ResourceTransfer(
                            from_facility_id=excess_id,
                            to_facility_id=critical_id,
                            quantity=quantity,
                            unit="kg",
                            rationale=(
                                f"Transfer {material} from excess to critical facility "
                                f"to prevent shortage"
                            ),
                            implementation_hours=t.substrate_transfer_hours,
                        ))

            plan = SharedResourcePlan(
                resource_type=ResourceType.SUBSTRATE,
                resource_key=material,
                current_status=ResourceStatus.CONSTRAINED,
                facilities=facilities,
                proposed_rebalancing=transfers,
            )
            found.append(Contention(
                plan=plan,
                message=(
                    f'Substrate contention detected for "{material}": '
                    f"{len(critical)} critical, {len(excess)} excess"
                ),
                affected_facilities=critical + excess,
                details={
                    "total_available": summary["total"],
                    "total_allocated": summary["allocated"],
                    "critical_facilities": list(critical),
                    "excess_facilities": list(excess),
                },
            ))
        return found


class EquipmentContentionDetector(ContentionDetector):
    resource_type = ResourceType.EQUIPMENT

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Contention]:
        t = self.thresholds
        # equipment_id -> {"unavailable": [...], "available": [...]}
        summaries: Dict[str, Dict[str, List[str]]] = {}

        for facility in state.facilities:
            resources = aggregator.get_latest_resources(state, facility.facility_id)
            if resources is None:
                continue
            for eq in resources.equipment_availability:
                summary = summaries.setdefault(eq.equipment_id, {"unavailable": [], "available": []})
                key = "available" if eq.is_available else "unavailable"
                summary[key].append(facility.facility_id)

        found = []
        for equipment_id, summary in summaries.items():
            needy, available = summary["unavailable"], summary["available"]
            if not needy or not available:
                continue

            facilities = [
                FacilityAllocation(
                    facility_id=f.facility_id,
                    current_allocation=1 if f.facility_id in available else 0,
                    requested_allocation=1 if f.facility_id in needy else 0,
                    priority=(
                        AllocationPriority.HIGH if f.facility_id in needy
                        else AllocationPriority.NORMAL
                    ),
                )
                for f in state.facilities
            ]
            transfers = [
                ResourceTransfer(
                    from_facility_id=available_id,
                    to_facility_id=needy_id,
                    quantity=t.equipment_share_quantity,
                    unit="unit",
                    rationale=(
                        f"Share {equipment_id} from available to needy facility "
                        f"via scheduled access"
                    ),
                    implementation_hours=t.equipment_share_hours,
                )
                for needy_id in needy
                for available_id in available
            ]

            plan = SharedResourcePlan(
                resource_type=ResourceType.EQUIPMENT,
                resource_key=equipment_id,
                current_status=ResourceStatus.CONSTRAINED,
                facilities=facilities,
                proposed_rebalancing=transfers,
            )
            found.append(Contention(
                plan=plan,
                message=(
                    f'Equipment contention detected for "{equipment_id}": '
                    f"{len(needy)} facilities need, {len(available)} available"
                ),
                affected_facilities=needy + available,
            ))
        return found


class EnergyContentionDetector(ContentionDetector):
    resource_type = ResourceType.ENERGY

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Contention]:
        t = self.thresholds
        statuses = []
        total_budget = 0.0
        total_used = 0.0

        for facility in state.facilities:
            load = aggregator.get_latest_load(state, facility.facility_id)
            if load is None or facility.energy_budget_kwh <= 0:
                continue
            estimated = facility.energy_budget_kwh * load.current_load_percent / 100
            statuses.append({
                "facility_id": facility.facility_id,
                "budget": facility.energy_budget_kwh,
                "used": round_half_up(estimated),
                "utilization": round_half_up(estimated / facility.energy_budget_kwh * 100),
            })
            total_budget += facility.energy_budget_kwh
            total_used += estimated

        critical = [s for s in statuses if s["utilization"] > t.energy_critical_pct]
        excess = [s for s in statuses if s["utilization"] < t.energy_excess_pct]
        if not critical or not excess:
            return []

        critical_fraction = t.energy_critical_pct / 100
        excess_available = sum(s["budget"] - s["used"] for s in excess)
        total_needed = sum(s["used"] - s["budget"] * critical_fraction for s in critical)

        transfers = []
        impact = []
        if excess_available >= total_needed * t.energy_coverage_ratio:
            for crit in critical:
                shift = (crit["used"] - crit["budget"] * critical_fraction) * t.energy_shift_fraction
                per_pair = shift / len(excess) if self.partition_transfers else shift
                quantity = round_half_up(per_pair)
                if quantity <= 0:
                    continue
                for exc in excess:
                    transfers.append(ResourceTransfer(
                        from_facility_id=exc["facility_id"],
                        to_facility_id=crit["facility_id"],
                        quantity=quantity,
                        unit="kWh",
                        rationale="Shift energy-consuming tasks to underutilized facility to balance load",
                        implementation_hours=t.energy_transfer_hours,
                    ))
                impact.append(FacilityImpact(
                    facility_id=crit["facility_id"],
                    energy_saving=round_half_up(shift),
                ))
        else:
            logger.debug(
                f"Energy headroom {excess_available:.0f} kWh too small for shortfall "
                f"{total_needed:.0f} kWh; plan without transfers"
            )

        plan = SharedResourcePlan(
            resource_type=ResourceType.ENERGY,
            resource_key="energy",
            current_status=ResourceStatus.CONSTRAINED,
            facilities=[
                FacilityAllocation(
                    facility_id=s["facility_id"],
                    current_allocation=s["used"],
                    requested_allocation=s["budget"],
                    priority=(
                        AllocationPriority.CRITICAL if s["utilization"] > t.energy_critical_pct
                        else AllocationPriority.NORMAL
                    ),
                )
                for s in statuses
            ],
            proposed_rebalancing=transfers,
            estimated_impact=impact,
        )
        return [Contention(
            plan=plan,
            message=(
                f"Energy contention detected: {len(critical)} critical "
                f"(>{t.energy_critical_pct:g}%), {len(excess)} excess (<{t.energy_excess_pct:g}%)"
            ),
            affected_facilities=(
                [s["facility_id"] for s in critical] + [s["facility_id"] for s in excess]
            ),
            details={
                "total_budget": total_budget,
                "total_allocated": round_half_up(total_used),
            },
        )]


DEFAULT_DETECTORS = (
    SubstrateContentionDetector,
    EquipmentContentionDetector,
    EnergyContentionDetector,
)


# ═══════════════════════════════════════════════════════════════════════════════
# COORDINATOR
# ═══════════════════════════════════════════════════════════════════════════════

class ContentionCoordinator:
    """
    Runs the contention detectors and owns plan approval/rejection.

    Uso:
        coordinator = ContentionCoordinator(aggregator, log)
        plans = coordinator.detect_contention(state)
        approved = coordinator.approve_plan(plans[0], "ops-lead")
    """

    def __init__(
        self,
        aggregator: Optional[FacilityAggregator] = None,
        log: Optional[DecisionLog] = None,
        thresholds: Optional[ContentionThresholds] = None,
        partition_transfers: Optional[bool] = None,
        detectors: Optional[List[ContentionDetector]] = None,
    ):
        config = CoordinationSettings.get_config()
        self.log = log if log is not None else DecisionLog()
        self.aggregator = aggregator or FacilityAggregator(self.log)
        self.thresholds = thresholds or config.contention
        if partition_transfers is None:
            partition_transfers = config.partition_transfers
        if detectors is None:
            detectors = [cls(self.thresholds, partition_transfers) for cls in DEFAULT_DETECTORS]
        self.detectors: List[ContentionDetector] = list(detectors)

    def register(self, detector: ContentionDetector) -> None:
        self.detectors.append(detector)

    def detect_contention(self, state: GlobalState) -> List[SharedResourcePlan]:
        plans = []
        for detector in self.detectors:
            for contention in detector.detect(state, self.aggregator):
                self.log.record(
                    LogCategory.SHARED_RESOURCE_PLAN,
                    contention.message,
                    context=LogContext(
                        plan_id=contention.plan.plan_id,
                        affected_facilities=tuple(contention.affected_facilities),
                    ),
                    details=contention.details,
                )
                plans.append(contention.plan)

        logger.info(f"Detected {len(plans)} contended resource(s) for {state.state_id}")
        return plans

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def approve_plan(self, plan: SharedResourcePlan, approver: str) -> SharedResourcePlan:
        approved = transition(plan, LifecycleStatus.APPROVED, actor=approver)
        self.log.record(
            LogCategory.APPROVAL,
            f"Shared resource plan approved: {plan.resource_type.value}",
            context=LogContext(
                plan_id=plan.plan_id,
                affected_facilities=tuple(plan.affected_facilities),
                user_id=approver,
            ),
        )
        logger.info(f"Plan {plan.plan_id} approved by {approver}")
        return approved

    def reject_plan(self, plan: SharedResourcePlan, approver: str, reason: str) -> SharedResourcePlan:
        rejected = transition(plan, LifecycleStatus.REJECTED, actor=approver, reason=reason)
        self.log.record(
            LogCategory.REJECTION,
            f"Shared resource plan rejected: {reason}",
            context=LogContext(
                plan_id=plan.plan_id,
                affected_facilities=tuple(plan.affected_facilities),
                user_id=approver,
            ),
        )
        logger.info(f"Plan {plan.plan_id} rejected by {approver}: {reason}")
        return rejected

    def mark_plan_implemented(self, plan: SharedResourcePlan, actor: str) -> SharedResourcePlan:
        implemented = transition(plan, LifecycleStatus.IMPLEMENTED, actor=actor)
        self.log.record(
            LogCategory.IMPLEMENTATION,
            f"Shared resource plan implemented: {plan.resource_type.value}",
            context=LogContext(
                plan_id=plan.plan_id,
                affected_facilities=tuple(plan.affected_facilities),
                user_id=actor,
            ),
        )
        logger.info(f"Plan {plan.plan_id} marked implemented by {actor}")
        return implemented
