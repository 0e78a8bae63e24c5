"""
════════════════════════════════════════════════════════════════════════════════════════════════════
INSIGHT DETECTOR - Cross-facility findings from a GlobalState
════════════════════════════════════════════════════════════════════════════════════════════════════

Registry of independent rules, each `detect(state, aggregator) -> List[Insight]`:

    UnderutilizedRule              latest load < 40%                  info     85
    OverloadedRule                 latest load > 80%                  warning  90
    ResourceImbalanceRule          substrate critical vs excess       warning  80
    EquipmentBottleneckRule        >50% of reporters unavailable      warning  75
    ConsolidationOpportunityRule   species in >2 facilities           info     65

Rules run in registration order and their results are concatenated without
deduplication. Confidence values are fixed per rule, not statistics.
Facilities without data are skipped.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from multisite.config import CoordinationSettings, InsightThresholds

from .decision_log import DecisionLog
from .facility_aggregator import FacilityAggregator
from .models import (
    GlobalState,
    Insight,
    InsightType,
    LogCategory,
    LogContext,
    Severity,
    fmt_number,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# RULES
# ═══════════════════════════════════════════════════════════════════════════════

class InsightRule(ABC):
    """Base class for insight rules."""

    name: str = "rule"

    def __init__(self, thresholds: Optional[InsightThresholds] = None):
        self.thresholds = thresholds or InsightThresholds()

    @abstractmethod
    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Insight]:
        """Return zero or more insights; must not raise on missing data."""


class UnderutilizedRule(InsightRule):
    name = "underutilized"

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Insight]:
        insights = []
        for facility in state.facilities:
            load = aggregator.get_latest_load(state, facility.facility_id)
            if load is None or load.current_load_percent >= self.thresholds.underutilized_load_pct:
                continue
            insights.append(Insight(
                type=InsightType.UNDERUTILIZED,
                affected_facilities=[facility.facility_id],
                description=(
                    f'Facility "{facility.name}" is operating at '
                    f"{fmt_number(load.current_load_percent)}% capacity"
                ),
                rationale=(
                    "Available capacity could be redistributed to other facilities "
                    "or production could be increased"
                ),
                severity=Severity.INFO,
                confidence=self.thresholds.underutilized_confidence,
                recommended_action=(
                    f"Consider transferring production from other facilities to "
                    f"{facility.name} or increasing batch sizes"
                ),
            ))
        return insights


class OverloadedRule(InsightRule):
    name = "overloaded"

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Insight]:
        insights = []
        for facility in state.facilities:
            load = aggregator.get_latest_load(state, facility.facility_id)
            if load is None or load.current_load_percent <= self.thresholds.overloaded_load_pct:
                continue
            insights.append(Insight(
                type=InsightType.OVERLOADED,
                affected_facilities=[facility.facility_id],
                description=(
                    f'Facility "{facility.name}" is operating at '
                    f"{fmt_number(load.current_load_percent)}% capacity (near limits)"
                ),
                rationale=(
                    "High utilization increases contamination risk and "
                    "equipment failure likelihood"
                ),
                severity=Severity.WARNING,
                confidence=self.thresholds.overloaded_confidence,
                recommended_action=(
                    "Redistribute load to underutilized facilities or defer non-critical batches"
                ),
            ))
        return insights


class ResourceImbalanceRule(InsightRule):
    """One insight per material with both critical (>85%) and excess (<=50%) facilities."""

    name = "resource_imbalance"

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Insight]:
        # material -> {"critical": [...], "adequate": [...], "excess": [...]}
        by_material: Dict[str, Dict[str, List[str]]] = {}

        for facility in state.facilities:
            resources = aggregator.get_latest_resources(state, facility.facility_id)
            if resources is None:
                continue
            for stock in resources.substrate_materials:
                utilization = stock.utilization_percent
                if utilization is None:
                    continue
                buckets = by_material.setdefault(
                    stock.material, {"critical": [], "adequate": [], "excess": []}
                )
                if utilization > self.thresholds.imbalance_critical_pct:
                    buckets["critical"].append(facility.facility_id)
                elif utilization > self.thresholds.imbalance_adequate_pct:
                    buckets["adequate"].append(facility.facility_id)
                else:
                    buckets["excess"].append(facility.facility_id)

        insights = []
        for material, buckets in by_material.items():
            critical, excess = buckets["critical"], buckets["excess"]
            if not critical or not excess:
                continue
            insights.append(Insight(
                type=InsightType.IMBALANCE,
                affected_facilities=critical + excess,
                description=(
                    f"{material} imbalance: {len(critical)} facility(ies) critical, "
                    f"{len(excess)} have excess"
                ),
                rationale=(
                    f"Redistributing {material} from excess to critical facilities "
                    f"could prevent production delays"
                ),
                severity=Severity.WARNING,
                confidence=self.thresholds.imbalance_confidence,
                recommended_action="Propose substrate transfer from excess to critical facilities",
            ))
        return insights


class EquipmentBottleneckRule(InsightRule):
    name = "equipment_bottleneck"

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Insight]:
        # equipment_id -> (reporting facility ids, unavailable facility ids)
        reporters: Dict[str, List[str]] = {}
        unavailable: Dict[str, List[str]] = {}

        for facility in state.facilities:
            resources = aggregator.get_latest_resources(state, facility.facility_id)
            if resources is None:
                continue
            for eq in resources.equipment_availability:
                reporters.setdefault(eq.equipment_id, []).append(facility.facility_id)
                down = unavailable.setdefault(eq.equipment_id, [])
                if not eq.is_available:
                    down.append(facility.facility_id)

        insights = []
        for equipment_id, reporting in reporters.items():
            down = unavailable[equipment_id]
            unavailable_pct = len(down) / len(reporting) * 100
            if unavailable_pct <= self.thresholds.bottleneck_unavailable_pct:
                continue
            insights.append(Insight(
                type=InsightType.BOTTLENECK,
                affected_facilities=list(down),
                description=(
                    f'Equipment "{equipment_id}" is unavailable across '
                    f"{len(down)}/{len(reporting)} facilities"
                ),
                rationale="Widespread equipment unavailability could delay production cycles",
                severity=Severity.WARNING,
                confidence=self.thresholds.bottleneck_confidence,
                recommended_action=f"Prioritize repairs or acquisition of backup {equipment_id}",
            ))
        return insights


class ConsolidationOpportunityRule(InsightRule):
    name = "consolidation_opportunity"

    def detect(self, state: GlobalState, aggregator: FacilityAggregator) -> List[Insight]:
        facilities_by_species: Dict[str, List[str]] = {}
        for facility in state.facilities:
            load = aggregator.get_latest_load(state, facility.facility_id)
            if load is None:
                continue
            for species in dict.fromkeys(load.active_species):
                facilities_by_species.setdefault(species, []).append(facility.facility_id)

        insights = []
        for species, facility_ids in facilities_by_species.items():
            if len(facility_ids) <= self.thresholds.consolidation_min_facilities:
                continue
            insights.append(Insight(
                type=InsightType.OPPORTUNITY,
                affected_facilities=list(facility_ids),
                description=(
                    f'Species "{species}" is grown in {len(facility_ids)} facilities '
                    f"(opportunity for consolidation)"
                ),
                rationale=(
                    "Consolidating species reduces setup overhead and improves "
                    "resource specialization"
                ),
                severity=Severity.INFO,
                confidence=self.thresholds.consolidation_confidence,
                recommended_action=(
                    "Consider specializing facilities by species to reduce changeover time"
                ),
            ))
        return insights


DEFAULT_RULES = (
    UnderutilizedRule,
    OverloadedRule,
    ResourceImbalanceRule,
    EquipmentBottleneckRule,
    ConsolidationOpportunityRule,
)


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTOR
# ═══════════════════════════════════════════════════════════════════════════════

class InsightDetector:
    """
    Runs the registered insight rules over a GlobalState.

    Uso:
        detector = InsightDetector(aggregator, log)
        detector.register(MyRule())
        insights = detector.detect(state)
    """

    def __init__(
        self,
        aggregator: Optional[FacilityAggregator] = None,
        log: Optional[DecisionLog] = None,
        thresholds: Optional[InsightThresholds] = None,
        rules: Optional[List[InsightRule]] = None,
    ):
        self.log = log if log is not None else DecisionLog()
        self.aggregator = aggregator or FacilityAggregator(self.log)
        self.thresholds = thresholds or CoordinationSettings.get_config().insight
        if rules is None:
            rules = [rule_cls(self.thresholds) for rule_cls in DEFAULT_RULES]
        self.rules: List[InsightRule] = list(rules)

    def register(self, rule: InsightRule) -> None:
        self.rules.append(rule)

    def detect(self, state: GlobalState) -> List[Insight]:
        insights: List[Insight] = []
        for rule in self.rules:
            found = rule.detect(state, self.aggregator)
            logger.debug(f"Rule {rule.name}: {len(found)} insight(s)")
            insights.extend(found)

        for insight in insights:
            self.log.record(
                LogCategory.INSIGHT,
                f"[{insight.type.value}] {insight.description}",
                context=LogContext(affected_facilities=tuple(insight.affected_facilities)),
                details={
                    "insight_id": insight.insight_id,
                    "severity": insight.severity.value,
                    "confidence": insight.confidence,
                },
            )

        logger.info(f"Detected {len(insights)} insight(s) for {state.state_id}")
        return insights
