"""
════════════════════════════════════════════════════════════════════════════════════════════════════
FACILITY AGGREGATOR - Normalize per-facility snapshots into one GlobalState
════════════════════════════════════════════════════════════════════════════════════════════════════

Pipeline:
    IngestBatch → validate referential integrity → global aggregates → GlobalState

Global aggregates:
- global_load: round(mean of ALL load snapshot percentages)
- global_risk: categorical risk mapped low=25 / medium=50 / high=75, averaged,
  bucketed >70 high, >30 medium, else low
- overall_confidence: mean of min(100, completed_tasks × 10) per execution
  history and each optimization output's average confidence; 50 without signal

Validation is the only failure mode: a snapshot naming an unknown facility
aborts the call and no state is produced.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, TypeVar

import numpy as np
import pandas as pd

from .decision_log import DecisionLog
from .errors import UnknownFacilityError
from .models import (
    ExecutionHistory,
    FacilityProfile,
    GlobalState,
    IngestBatch,
    Level,
    LoadSnapshot,
    LogCategory,
    LogContext,
    OptimizationOutput,
    ResourceSnapshot,
    RiskSnapshot,
    new_id,
    round_half_up,
    utcnow,
)

logger = logging.getLogger(__name__)

RISK_LEVEL_SCORES: Dict[Level, int] = {
    Level.LOW: 25,
    Level.MEDIUM: 50,
    Level.HIGH: 75,
}

NEUTRAL_CONFIDENCE = 50

Snapshot = TypeVar("Snapshot", LoadSnapshot, RiskSnapshot, ResourceSnapshot)


def _latest(snapshots: Sequence[Snapshot], facility_id: str) -> Optional[Snapshot]:
    """Max-timestamp snapshot of a facility; ties keep the earliest supplied."""
    candidates = [s for s in snapshots if s.facility_id == facility_id]
    if not candidates:
        return None
    return max(candidates, key=lambda s: s.timestamp)


class FacilityAggregator:
    """
    Builds GlobalState values and answers latest-snapshot lookups on them.

    Stateless apart from the injected decision log.
    """

    def __init__(self, log: Optional[DecisionLog] = None):
        self.log = log if log is not None else DecisionLog()

    # ═══════════════════════════════════════════════════════════════════════════
    # AGGREGATION
    # ═══════════════════════════════════════════════════════════════════════════

    def aggregate(self, batch: IngestBatch) -> GlobalState:
        """
        Validate and aggregate one ingest batch.

        Raises:
            UnknownFacilityError: a snapshot references a facility without profile
        """
        facility_ids = [f.facility_id for f in batch.facilities]

        self.log.record(
            LogCategory.AGGREGATION,
            f"Aggregating data from {len(batch.facilities)} facilities",
            context=LogContext(affected_facilities=tuple(facility_ids)),
            details={
                "facilities_count": len(batch.facilities),
                "load_snapshots_count": len(batch.load_snapshots),
                "risk_snapshots_count": len(batch.risk_snapshots),
                "resource_snapshots_count": len(batch.resource_snapshots),
            },
        )

        self.validate(batch)

        state = GlobalState(
            state_id=new_id("mf-state"),
            created_at=utcnow(),
            facilities=list(batch.facilities),
            load_snapshots=list(batch.load_snapshots),
            risk_snapshots=list(batch.risk_snapshots),
            resource_snapshots=list(batch.resource_snapshots),
            execution_histories=list(batch.execution_histories),
            optimization_outputs=list(batch.optimization_outputs),
            telemetry_summaries=list(batch.telemetry_summaries),
            global_load=self.compute_global_load(batch.load_snapshots),
            global_risk=self.compute_global_risk(batch.risk_snapshots),
            overall_confidence=self.compute_overall_confidence(
                batch.execution_histories, batch.optimization_outputs
            ),
        )

        logger.info(
            f"Aggregated {state.state_id}: {len(facility_ids)} facilities, "
            f"load={state.global_load}%, risk={state.global_risk.value}, "
            f"confidence={state.overall_confidence}"
        )
        return state

    def validate(self, batch: IngestBatch) -> None:
        known = {f.facility_id for f in batch.facilities}
        groups = (
            ("load", batch.load_snapshots),
            ("risk", batch.risk_snapshots),
            ("resource", batch.resource_snapshots),
        )
        for snapshot_type, snapshots in groups:
            for snap in snapshots:
                if snap.facility_id not in known:
                    logger.warning(
                        f"Aggregation aborted: {snapshot_type} snapshot for unknown "
                        f"facility {snap.facility_id}"
                    )
                    raise UnknownFacilityError(snapshot_type, snap.facility_id)

    @staticmethod
    def compute_global_load(load_snapshots: Sequence[LoadSnapshot]) -> int:
        if not load_snapshots:
            return 0
        return round_half_up(float(np.mean([s.current_load_percent for s in load_snapshots])))

    @staticmethod
    def compute_global_risk(risk_snapshots: Sequence[RiskSnapshot]) -> Level:
        if not risk_snapshots:
            return Level.LOW
        avg_risk = float(np.mean([RISK_LEVEL_SCORES[s.overall_risk] for s in risk_snapshots]))
        if avg_risk > 70:
            return Level.HIGH
        if avg_risk > 30:
            return Level.MEDIUM
        return Level.LOW

    @staticmethod
    def compute_overall_confidence(
        execution_histories: Optional[Sequence[ExecutionHistory]] = None,
        optimization_outputs: Optional[Sequence[OptimizationOutput]] = None,
    ) -> int:
        scores: List[float] = []
        for hist in execution_histories or []:
            scores.append(min(100, hist.completed_tasks_count * 10))
        for output in optimization_outputs or []:
            scores.append(output.average_confidence)

        if not scores:
            return NEUTRAL_CONFIDENCE
        return round_half_up(float(np.mean(scores)))

    # ═══════════════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════════════

    def get_facility(self, state: GlobalState, facility_id: str) -> Optional[FacilityProfile]:
        for facility in state.facilities:
            if facility.facility_id == facility_id:
                return facility
        return None

    def get_latest_load(self, state: GlobalState, facility_id: str) -> Optional[LoadSnapshot]:
        return _latest(state.load_snapshots, facility_id)

    def get_latest_risk(self, state: GlobalState, facility_id: str) -> Optional[RiskSnapshot]:
        return _latest(state.risk_snapshots, facility_id)

    def get_latest_resources(
        self, state: GlobalState, facility_id: str
    ) -> Optional[ResourceSnapshot]:
        return _latest(state.resource_snapshots, facility_id)

    def latest_loads(self, state: GlobalState) -> Dict[str, float]:
        """facility_id -> latest load %, facilities without data omitted."""
        loads = {}
        for facility in state.facilities:
            snap = self.get_latest_load(state, facility.facility_id)
            if snap is not None:
                loads[facility.facility_id] = snap.current_load_percent
        return loads

    # ═══════════════════════════════════════════════════════════════════════════
    # SUMMARIES
    # ═══════════════════════════════════════════════════════════════════════════

    def get_global_load_summary(self, state: GlobalState) -> Dict[str, Any]:
        loads = self.latest_loads(state)
        values = list(loads.values())
        return {
            "global_load": state.global_load,
            "avg_latest_load": round_half_up(float(np.mean(values))) if values else 0,
            "min_load": min(values) if values else 0.0,
            "max_load": max(values) if values else 0.0,
            "facility_loads": loads,
        }

    def get_global_risk_summary(self, state: GlobalState) -> Dict[str, Any]:
        latest = [
            snap for snap in (
                self.get_latest_risk(state, f.facility_id) for f in state.facilities
            )
            if snap is not None
        ]

        def avg(attr: str) -> int:
            if not latest:
                return 0
            return round_half_up(float(np.mean([getattr(s, attr) for s in latest])))

        return {
            "global_risk": state.global_risk.value,
            "facilities_reporting": len(latest),
            "avg_contamination_risk": avg("contamination_risk_score"),
            "avg_equipment_failure_risk": avg("equipment_failure_risk"),
            "avg_labor_shortage_risk": avg("labor_shortage_risk"),
            "avg_energy_budget_risk": avg("energy_budget_risk"),
        }

    def facility_frame(self, state: GlobalState) -> pd.DataFrame:
        """One row per facility with its latest load, risk and resource figures."""
        rows = []
        for facility in state.facilities:
            fid = facility.facility_id
            load = self.get_latest_load(state, fid)
            risk = self.get_latest_risk(state, fid)
            resources = self.get_latest_resources(state, fid)
            rows.append({
                "facility_id": fid,
                "name": facility.name,
                "total_capacity_kg": facility.total_capacity_kg,
                "energy_budget_kwh": facility.energy_budget_kwh,
                "labor_hours_available": facility.labor_hours_available,
                "load_percent": load.current_load_percent if load else np.nan,
                "active_species": len(load.active_species) if load else 0,
                "contamination_risk": risk.contamination_risk_score if risk else np.nan,
                "overall_risk": risk.overall_risk.value if risk else None,
                "equipment_available": (
                    sum(1 for e in resources.equipment_availability if e.is_available)
                    if resources else 0
                ),
            })
        return pd.DataFrame(rows).set_index("facility_id") if rows else pd.DataFrame()
