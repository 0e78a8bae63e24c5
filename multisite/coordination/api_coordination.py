"""
════════════════════════════════════════════════════════════════════════════════════════════════════
MULTI-FACILITY API - REST Endpoints for Cross-Facility Coordination
════════════════════════════════════════════════════════════════════════════════════════════════════

Endpoints:
- GET  /multi-facility/status - Service status and statistics
- POST /multi-facility/aggregate - Aggregate facility snapshots into a global state
- POST /multi-facility/insights - Cross-facility insights
- POST /multi-facility/contention - Shared resource contention plans
- POST /multi-facility/proposals - Global proposals with safety audits
- POST /multi-facility/cycle - Full coordination cycle
- POST /multi-facility/plans/{plan_id}/approve|reject|implement
- POST /multi-facility/proposals/{proposal_id}/approve|reject|implement|rollback
- GET  /multi-facility/audits/{proposal_id} - Latest audit of a proposal
- GET  /multi-facility/log - Decision log export
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from .errors import (
    InvalidTransitionError,
    ProposalBlockedError,
    RecordNotFoundError,
    UnknownFacilityError,
)
from .models import (
    AuditDecision,
    IngestBatch,
    InsightType,
    LifecycleStatus,
    LogCategory,
    OptimizationCategory,
    ResourceType,
)
from .service import MultiFacilityService, get_multi_facility_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/multi-facility", tags=["Multi-Facility Coordination"])


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST/RESPONSE MODELS
# ═══════════════════════════════════════════════════════════════════════════════

class RoomInput(BaseModel):
    room_id: str
    volume_m3: float = Field(0, ge=0)
    capacity: float = Field(0, ge=0)
    species: Optional[str] = None


class FacilityInput(BaseModel):
    """Facility profile input."""
    facility_id: str
    name: str
    location: str = ""
    total_capacity_kg: float = Field(0, ge=0)
    energy_budget_kwh: float = Field(0, ge=0)
    labor_hours_available: float = Field(0, ge=0)
    rooms: List[RoomInput] = Field(default_factory=list)
    equipment_ids: List[str] = Field(default_factory=list)
    shared_resources_with_facilities: List[str] = Field(default_factory=list)


class RoomUtilizationInput(BaseModel):
    room_id: str
    utilization_percent: float = Field(0, ge=0)
    current_batch: Optional[str] = None


class LoadSnapshotInput(BaseModel):
    """Load snapshot input."""
    facility_id: str
    timestamp: datetime
    current_load_percent: float = Field(..., ge=0)
    peak_energy_kwh: float = Field(0, ge=0)
    active_species: List[str] = Field(default_factory=list)
    room_utilization: List[RoomUtilizationInput] = Field(default_factory=list)
    contention_level: str = "low"  # low, medium, high


class RiskSnapshotInput(BaseModel):
    """Risk snapshot input (scores 0-100)."""
    facility_id: str
    timestamp: datetime
    contamination_risk_score: float = Field(0, ge=0, le=100)
    equipment_failure_risk: float = Field(0, ge=0, le=100)
    labor_shortage_risk: float = Field(0, ge=0, le=100)
    energy_budget_risk: float = Field(0, ge=0, le=100)
    overall_risk: str = "low"  # low, medium, high


class SubstrateStockInput(BaseModel):
    material: str
    available_kg: float = Field(0, ge=0)
    allocated_kg: float = Field(0, ge=0)
    critical_threshold_kg: float = Field(0, ge=0)


class EquipmentAvailabilityInput(BaseModel):
    equipment_id: str
    is_available: bool = True
    hours_until_free: float = Field(0, ge=0)
    equipment_class: Optional[str] = None


class ResourceSnapshotInput(BaseModel):
    """Resource snapshot input."""
    facility_id: str
    timestamp: datetime
    substrate_materials: List[SubstrateStockInput] = Field(default_factory=list)
    available_capacity: float = 0
    equipment_availability: List[EquipmentAvailabilityInput] = Field(default_factory=list)


class ExecutionHistoryInput(BaseModel):
    facility_id: str
    completed_tasks_count: int = Field(0, ge=0)
    total_yield_kg: float = 0
    energy_used_kwh: float = 0


class OptimizationOutputInput(BaseModel):
    facility_id: str
    proposal_count: int = Field(0, ge=0)
    average_confidence: float = Field(0, ge=0, le=100)


class TelemetrySummaryInput(BaseModel):
    facility_id: str
    avg_temperature: float = 0
    avg_humidity: float = 0
    avg_energy_kwh: float = 0


class IngestInput(BaseModel):
    """Full multi-facility ingest payload."""
    facilities: List[FacilityInput]
    load_snapshots: List[LoadSnapshotInput] = Field(default_factory=list)
    risk_snapshots: List[RiskSnapshotInput] = Field(default_factory=list)
    resource_snapshots: List[ResourceSnapshotInput] = Field(default_factory=list)
    execution_histories: List[ExecutionHistoryInput] = Field(default_factory=list)
    optimization_outputs: List[OptimizationOutputInput] = Field(default_factory=list)
    telemetry_summaries: List[TelemetrySummaryInput] = Field(default_factory=list)


class DecisionInput(BaseModel):
    """Approval / implementation input."""
    actor: str


class RejectionInput(BaseModel):
    """Rejection / rollback input."""
    actor: str
    reason: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def _to_batch(data: IngestInput) -> IngestBatch:
    try:
        return IngestBatch.from_dict(data.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _ingest(service: MultiFacilityService, data: IngestInput):
    try:
        return service.ingest(_to_batch(data))
    except UnknownFacilityError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _lifecycle_call(func, *args):
    try:
        return func(*args)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProposalBlockedError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "global_risks": e.global_risks},
        )
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ═══════════════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/status")
async def get_status():
    """Get coordination service status."""
    service = get_multi_facility_service()

    return {
        "service": "Multi-Facility Coordination",
        "version": "1.0.0",
        "status": "operational",
        "statistics": service.get_statistics(),
        "insight_types": [t.value for t in InsightType],
        "resource_types": [r.value for r in ResourceType],
        "proposal_categories": [c.value for c in OptimizationCategory],
        "audit_decisions": [d.value for d in AuditDecision],
        "statuses": [s.value for s in LifecycleStatus],
    }


@router.post("/aggregate")
async def aggregate(data: IngestInput):
    """Aggregate facility snapshots into a global state."""
    service = get_multi_facility_service()
    state = _ingest(service, data)

    return {
        "state": state.to_dict(),
        "load_summary": service.aggregator.get_global_load_summary(state),
        "risk_summary": service.aggregator.get_global_risk_summary(state),
    }


@router.post("/insights")
async def detect_insights(data: IngestInput):
    """Detect cross-facility insights."""
    service = get_multi_facility_service()
    state = _ingest(service, data)
    insights = service.detect_insights(state)

    return {
        "state_id": state.state_id,
        "total": len(insights),
        "insights": [i.to_dict() for i in insights],
    }


@router.post("/contention")
async def detect_contention(data: IngestInput):
    """Detect shared resource contention and propose rebalancing plans."""
    service = get_multi_facility_service()
    state = _ingest(service, data)
    plans = service.detect_contention(state)

    return {
        "state_id": state.state_id,
        "total": len(plans),
        "plans": [p.to_dict() for p in plans],
    }


@router.post("/proposals")
async def generate_proposals(data: IngestInput):
    """Generate global proposals and audit each one."""
    service = get_multi_facility_service()
    state = _ingest(service, data)
    proposals = service.generate_proposals(state)
    audits = service.audit_all(proposals)

    return {
        "state_id": state.state_id,
        "total": len(proposals),
        "proposals": [service.get_proposal(p.proposal_id).to_dict() for p in proposals],
        "audits": [a.to_dict() for a in audits],
    }


@router.post("/cycle")
async def run_cycle(data: IngestInput):
    """Run aggregation, detection, proposal generation and audits in one call."""
    service = get_multi_facility_service()
    batch = _to_batch(data)
    try:
        cycle = service.run_cycle(batch)
    except UnknownFacilityError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return cycle.to_dict()


# ═══════════════════════════════════════════════════════════════════════════════
# PLAN LIFECYCLE ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/plans/{plan_id}/approve")
async def approve_plan(plan_id: str, data: DecisionInput):
    """Approve a shared resource plan."""
    service = get_multi_facility_service()
    plan = _lifecycle_call(service.approve_plan, plan_id, data.actor)
    return {"success": True, "plan": plan.to_dict()}


@router.post("/plans/{plan_id}/reject")
async def reject_plan(plan_id: str, data: RejectionInput):
    """Reject a shared resource plan."""
    service = get_multi_facility_service()
    plan = _lifecycle_call(service.reject_plan, plan_id, data.actor, data.reason)
    return {"success": True, "plan": plan.to_dict()}


@router.post("/plans/{plan_id}/implement")
async def implement_plan(plan_id: str, data: DecisionInput):
    """Mark an approved plan as implemented."""
    service = get_multi_facility_service()
    plan = _lifecycle_call(service.implement_plan, plan_id, data.actor)
    return {"success": True, "plan": plan.to_dict()}


# ═══════════════════════════════════════════════════════════════════════════════
# PROPOSAL LIFECYCLE ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/proposals/{proposal_id}/approve")
async def approve_proposal(proposal_id: str, data: DecisionInput):
    """Approve an audited, non-blocked proposal."""
    service = get_multi_facility_service()
    proposal = _lifecycle_call(service.approve_proposal, proposal_id, data.actor)
    return {"success": True, "proposal": proposal.to_dict()}


@router.post("/proposals/{proposal_id}/reject")
async def reject_proposal(proposal_id: str, data: RejectionInput):
    """Reject a proposal."""
    service = get_multi_facility_service()
    proposal = _lifecycle_call(service.reject_proposal, proposal_id, data.actor, data.reason)
    return {"success": True, "proposal": proposal.to_dict()}


@router.post("/proposals/{proposal_id}/implement")
async def implement_proposal(proposal_id: str, data: DecisionInput):
    """Mark an approved proposal as implemented."""
    service = get_multi_facility_service()
    proposal = _lifecycle_call(service.implement_proposal, proposal_id, data.actor)
    return {"success": True, "proposal": proposal.to_dict()}


@router.post("/proposals/{proposal_id}/rollback")
async def roll_back_proposal(proposal_id: str, data: RejectionInput):
    """Roll back an implemented proposal."""
    service = get_multi_facility_service()
    proposal = _lifecycle_call(
        service.roll_back_proposal, proposal_id, data.actor, data.reason or None
    )
    return {"success": True, "proposal": proposal.to_dict()}


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT & LOG ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/audits/{proposal_id}")
async def get_audit(proposal_id: str):
    """Latest audit result of a proposal."""
    service = get_multi_facility_service()
    audit = _lifecycle_call(service.get_audit, proposal_id)
    return audit.to_dict()


@router.get("/log")
async def export_log(
    category: Optional[str] = Query(None, description="Log category"),
    proposal_id: Optional[str] = None,
    facility_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Export the decision log in insertion order."""
    service = get_multi_facility_service()

    log_category = None
    if category:
        try:
            log_category = LogCategory(category)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid category: {category}")

    entries = service.export_log(
        category=log_category,
        proposal_id=proposal_id,
        facility_id=facility_id,
        user_id=user_id,
    )
    return {"total": len(entries), "entries": entries}
