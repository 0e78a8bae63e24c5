"""
════════════════════════════════════════════════════════════════════════════════════════════════════
MULTI-FACILITY MODELS - Profiles, Snapshots, Findings, Plans, Proposals, Audits
════════════════════════════════════════════════════════════════════════════════════════════════════

Data structures shared by the coordination pipeline:

    FacilityProfile / LoadSnapshot / RiskSnapshot / ResourceSnapshot  (inputs)
    GlobalState                                                        (aggregate root)
    Insight / SharedResourcePlan / GlobalOptimizationProposal          (derived)
    AuditResult / LogEntry                                             (immutable records)

All records serialize through `to_dict()` into JSON-friendly primitives:
enums become their `.value`, datetimes become ISO-8601 strings.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (0.5 -> 1, 61.5 -> 62)."""
    return int(math.floor(value + 0.5))


def fmt_number(value: float) -> str:
    """Human text for numbers: 35.0 -> '35', 93.754 -> '93.75'."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return str(round(value, 2))


def parse_timestamp(value: Any) -> datetime:
    """Accept datetimes or ISO-8601 strings; naive values are taken as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"Unsupported timestamp: {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class Level(str, Enum):
    """Low/medium/high scale (contention, overall risk, proposal risk)."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class InsightType(str, Enum):
    UNDERUTILIZED = "underutilized"
    OVERLOADED = "overloaded"
    IMBALANCE = "imbalance"
    BOTTLENECK = "bottleneck"
    OPPORTUNITY = "opportunity"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ResourceType(str, Enum):
    SUBSTRATE = "substrate"
    EQUIPMENT = "equipment"
    ENERGY = "energy"
    LABOR = "labor"
    COLD_STORAGE = "cold-storage"
    STERILIZATION_CAPACITY = "sterilization-capacity"


class ResourceStatus(str, Enum):
    AVAILABLE = "available"
    CONSTRAINED = "constrained"
    CRITICAL = "critical"


class AllocationPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class LifecycleStatus(str, Enum):
    """Status of plans and proposals. Transitions live in lifecycle.py."""
    DRAFT = "draft"
    AUDITED = "audited"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"
    ROLLED_BACK = "rolled-back"


class OptimizationCategory(str, Enum):
    ENERGY_CONSOLIDATION = "cross-facility-energy-optimization"
    YIELD_BALANCING = "yield-balancing"
    CONTAMINATION_MITIGATION = "contamination-risk-mitigation"
    SCHEDULE_COORDINATION = "schedule-coordination"
    SHARED_RESOURCE_OPTIMIZATION = "shared-resource-optimization"
    LABOR_REALLOCATION = "labor-reallocation"
    FACILITY_SPECIALIZATION = "facility-specialization"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class Capability(str, Enum):
    """
    Structured tags a generator sets on a proposal.

    The safety auditor reads these instead of scanning step text.
    """
    REQUIRES_STERILIZATION = "requires-sterilization"
    SHARES_EQUIPMENT = "shares-equipment"
    RELOCATES_WORKLOAD = "relocates-workload"
    DEDICATES_EQUIPMENT = "dedicates-equipment"


class AuditDecision(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class LogCategory(str, Enum):
    AGGREGATION = "aggregation"
    INSIGHT = "insight"
    SHARED_RESOURCE_PLAN = "shared-resource-plan"
    GLOBAL_PROPOSAL = "global-proposal"
    AUDIT = "audit"
    APPROVAL = "approval"
    REJECTION = "rejection"
    IMPLEMENTATION = "implementation"
    ROLLBACK = "rollback"
    EXPORT = "export"


# ═══════════════════════════════════════════════════════════════════════════════
# FACILITY PROFILE & SNAPSHOTS (INPUTS)
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Room:
    room_id: str
    volume_m3: float = 0.0
    capacity: float = 0.0
    species: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "volume_m3": self.volume_m3,
            "capacity": self.capacity,
            "species": self.species,
        }


@dataclass
class FacilityProfile:
    """
    Static capacity descriptors of one facility (reference data).

    Attributes:
        facility_id: Unique id referenced by every snapshot
        total_capacity_kg: Production capacity
        energy_budget_kwh: Energy budget for the planning period
        labor_hours_available: Labor hours for the planning period
        equipment_ids: Equipment installed on site
    """
    facility_id: str
    name: str
    location: str = ""
    total_capacity_kg: float = 0.0
    energy_budget_kwh: float = 0.0
    labor_hours_available: float = 0.0
    rooms: List[Room] = field(default_factory=list)
    equipment_ids: List[str] = field(default_factory=list)
    shared_resources_with_facilities: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FacilityProfile":
        data = dict(data)
        data["rooms"] = [r if isinstance(r, Room) else Room(**r) for r in data.get("rooms") or []]
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "name": self.name,
            "location": self.location,
            "total_capacity_kg": self.total_capacity_kg,
            "energy_budget_kwh": self.energy_budget_kwh,
            "labor_hours_available": self.labor_hours_available,
            "rooms": [r.to_dict() for r in self.rooms],
            "equipment_ids": list(self.equipment_ids),
            "shared_resources_with_facilities": list(self.shared_resources_with_facilities),
        }


@dataclass
class RoomUtilization:
    room_id: str
    utilization_percent: float
    current_batch: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "utilization_percent": self.utilization_percent,
            "current_batch": self.current_batch,
        }


@dataclass
class LoadSnapshot:
    """Timestamped load observation of one facility."""
    facility_id: str
    timestamp: datetime
    current_load_percent: float
    peak_energy_kwh: float = 0.0
    active_species: List[str] = field(default_factory=list)
    room_utilization: List[RoomUtilization] = field(default_factory=list)
    contention_level: Level = Level.LOW

    def __post_init__(self):
        self.timestamp = parse_timestamp(self.timestamp)
        self.contention_level = Level(self.contention_level)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadSnapshot":
        data = dict(data)
        data["room_utilization"] = [
            r if isinstance(r, RoomUtilization) else RoomUtilization(**r)
            for r in data.get("room_utilization") or []
        ]
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "timestamp": self.timestamp.isoformat(),
            "current_load_percent": self.current_load_percent,
            "peak_energy_kwh": self.peak_energy_kwh,
            "active_species": list(self.active_species),
            "room_utilization": [r.to_dict() for r in self.room_utilization],
            "contention_level": self.contention_level.value,
        }


@dataclass
class RiskSnapshot:
    """Timestamped risk observation; scores are 0-100."""
    facility_id: str
    timestamp: datetime
    contamination_risk_score: float = 0.0
    equipment_failure_risk: float = 0.0
    labor_shortage_risk: float = 0.0
    energy_budget_risk: float = 0.0
    overall_risk: Level = Level.LOW

    def __post_init__(self):
        self.timestamp = parse_timestamp(self.timestamp)
        self.overall_risk = Level(self.overall_risk)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskSnapshot":
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "timestamp": self.timestamp.isoformat(),
            "contamination_risk_score": self.contamination_risk_score,
            "equipment_failure_risk": self.equipment_failure_risk,
            "labor_shortage_risk": self.labor_shortage_risk,
            "energy_budget_risk": self.energy_budget_risk,
            "overall_risk": self.overall_risk.value,
        }


@dataclass
class SubstrateStock:
    material: str
    available_kg: float
    allocated_kg: float
    critical_threshold_kg: float = 0.0

    @property
    def utilization_percent(self) -> Optional[float]:
        """Allocated share of available stock; None when nothing is stocked."""
        if self.available_kg <= 0:
            return None
        return self.allocated_kg / self.available_kg * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "material": self.material,
            "available_kg": self.available_kg,
            "allocated_kg": self.allocated_kg,
            "critical_threshold_kg": self.critical_threshold_kg,
        }


@dataclass
class EquipmentAvailability:
    equipment_id: str
    is_available: bool
    hours_until_free: float = 0.0
    equipment_class: Optional[str] = None  # e.g. "autoclave"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "equipment_id": self.equipment_id,
            "is_available": self.is_available,
            "hours_until_free": self.hours_until_free,
            "equipment_class": self.equipment_class,
        }


@dataclass
class ResourceSnapshot:
    """Timestamped substrate and equipment availability of one facility."""
    facility_id: str
    timestamp: datetime
    substrate_materials: List[SubstrateStock] = field(default_factory=list)
    available_capacity: float = 0.0
    equipment_availability: List[EquipmentAvailability] = field(default_factory=list)

    def __post_init__(self):
        self.timestamp = parse_timestamp(self.timestamp)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceSnapshot":
        data = dict(data)
        data["substrate_materials"] = [
            m if isinstance(m, SubstrateStock) else SubstrateStock(**m)
            for m in data.get("substrate_materials") or []
        ]
        data["equipment_availability"] = [
            e if isinstance(e, EquipmentAvailability) else EquipmentAvailability(**e)
            for e in data.get("equipment_availability") or []
        ]
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "timestamp": self.timestamp.isoformat(),
            "substrate_materials": [m.to_dict() for m in self.substrate_materials],
            "available_capacity": self.available_capacity,
            "equipment_availability": [e.to_dict() for e in self.equipment_availability],
        }


@dataclass
class ExecutionHistory:
    """Coarse execution summary reported by the execution subsystem."""
    facility_id: str
    completed_tasks_count: int = 0
    total_yield_kg: float = 0.0
    energy_used_kwh: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "completed_tasks_count": self.completed_tasks_count,
            "total_yield_kg": self.total_yield_kg,
            "energy_used_kwh": self.energy_used_kwh,
        }


@dataclass
class OptimizationOutput:
    """Per-facility summary of local optimization proposals."""
    facility_id: str
    proposal_count: int = 0
    average_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "proposal_count": self.proposal_count,
            "average_confidence": self.average_confidence,
        }


@dataclass
class TelemetrySummary:
    facility_id: str
    avg_temperature: float = 0.0
    avg_humidity: float = 0.0
    avg_energy_kwh: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "avg_temperature": self.avg_temperature,
            "avg_humidity": self.avg_humidity,
            "avg_energy_kwh": self.avg_energy_kwh,
        }


@dataclass
class IngestBatch:
    """Everything one aggregation call receives from the telemetry/reporting side."""
    facilities: List[FacilityProfile]
    load_snapshots: List[LoadSnapshot] = field(default_factory=list)
    risk_snapshots: List[RiskSnapshot] = field(default_factory=list)
    resource_snapshots: List[ResourceSnapshot] = field(default_factory=list)
    execution_histories: List[ExecutionHistory] = field(default_factory=list)
    optimization_outputs: List[OptimizationOutput] = field(default_factory=list)
    telemetry_summaries: List[TelemetrySummary] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestBatch":
        return cls(
            facilities=[FacilityProfile.from_dict(f) for f in data.get("facilities") or []],
            load_snapshots=[LoadSnapshot.from_dict(s) for s in data.get("load_snapshots") or []],
            risk_snapshots=[RiskSnapshot.from_dict(s) for s in data.get("risk_snapshots") or []],
            resource_snapshots=[
                ResourceSnapshot.from_dict(s) for s in data.get("resource_snapshots") or []
            ],
            execution_histories=[
                ExecutionHistory(**h) for h in data.get("execution_histories") or []
            ],
            optimization_outputs=[
                OptimizationOutput(**o) for o in data.get("optimization_outputs") or []
            ],
            telemetry_summaries=[
                TelemetrySummary(**t) for t in data.get("telemetry_summaries") or []
            ],
        )


# ═══════════════════════════════════════════════════════════════════════════════
# GLOBAL STATE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class GlobalState:
    """
    Aggregate root built fresh by every aggregation call.

    Consumers treat it as read-only; nothing in the pipeline mutates it.
    """
    state_id: str
    created_at: datetime
    facilities: List[FacilityProfile]
    load_snapshots: List[LoadSnapshot]
    risk_snapshots: List[RiskSnapshot]
    resource_snapshots: List[ResourceSnapshot]
    global_load: int
    global_risk: Level
    overall_confidence: int
    execution_histories: List[ExecutionHistory] = field(default_factory=list)
    optimization_outputs: List[OptimizationOutput] = field(default_factory=list)
    telemetry_summaries: List[TelemetrySummary] = field(default_factory=list)

    @property
    def facility_ids(self) -> List[str]:
        return [f.facility_id for f in self.facilities]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state_id": self.state_id,
            "created_at": self.created_at.isoformat(),
            "facilities": [f.to_dict() for f in self.facilities],
            "load_snapshots": [s.to_dict() for s in self.load_snapshots],
            "risk_snapshots": [s.to_dict() for s in self.risk_snapshots],
            "resource_snapshots": [s.to_dict() for s in self.resource_snapshots],
            "execution_histories": [h.to_dict() for h in self.execution_histories],
            "optimization_outputs": [o.to_dict() for o in self.optimization_outputs],
            "telemetry_summaries": [t.to_dict() for t in self.telemetry_summaries],
            "global_load": self.global_load,
            "global_risk": self.global_risk.value,
            "overall_confidence": self.overall_confidence,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# INSIGHTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Insight:
    """Derived cross-facility finding; recomputed on every analysis pass."""
    type: InsightType
    affected_facilities: List[str]
    description: str
    rationale: str
    severity: Severity
    confidence: int
    recommended_action: Optional[str] = None
    insight_id: str = field(default_factory=lambda: new_id("insight"))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def signature(self) -> Tuple[str, Tuple[str, ...], str]:
        """Identity of the finding, ignoring generated id and timestamp."""
        return (self.type.value, tuple(self.affected_facilities), self.description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "insight_id": self.insight_id,
            "created_at": self.created_at.isoformat(),
            "type": self.type.value,
            "affected_facilities": list(self.affected_facilities),
            "description": self.description,
            "rationale": self.rationale,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "recommended_action": self.recommended_action,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SHARED RESOURCE PLANS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class FacilityAllocation:
    facility_id: str
    current_allocation: float
    requested_allocation: float
    priority: AllocationPriority = AllocationPriority.NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "current_allocation": self.current_allocation,
            "requested_allocation": self.requested_allocation,
            "priority": self.priority.value,
        }


@dataclass
class ResourceTransfer:
    """Proposed movement of a shared resource; never executed by this system."""
    from_facility_id: str
    to_facility_id: str
    quantity: float
    unit: str
    rationale: str
    implementation_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_facility_id": self.from_facility_id,
            "to_facility_id": self.to_facility_id,
            "quantity": self.quantity,
            "unit": self.unit,
            "rationale": self.rationale,
            "implementation_hours": self.implementation_hours,
        }


@dataclass
class FacilityImpact:
    facility_id: str
    yield_increase: Optional[float] = None
    cost_reduction: Optional[float] = None
    energy_saving: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "yield_increase": self.yield_increase,
            "cost_reduction": self.cost_reduction,
            "energy_saving": self.energy_saving,
        }


@dataclass
class SharedResourcePlan:
    """
    Contention of one resource type across facilities plus proposed transfers.

    Lifecycle: draft -> audited -> approved/rejected -> implemented.
    Status changes go through lifecycle.transition(); records are replaced,
    never mutated.
    """
    resource_type: ResourceType
    resource_key: str  # material name, equipment id or "energy"
    current_status: ResourceStatus
    facilities: List[FacilityAllocation]
    proposed_rebalancing: List[ResourceTransfer] = field(default_factory=list)
    estimated_impact: List[FacilityImpact] = field(default_factory=list)
    status: LifecycleStatus = LifecycleStatus.DRAFT
    plan_id: str = field(default_factory=lambda: new_id("rsp"))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    implemented_at: Optional[datetime] = None
    version: int = 1

    @property
    def record_id(self) -> str:
        return self.plan_id

    @property
    def affected_facilities(self) -> List[str]:
        seen: Dict[str, None] = {}
        for t in self.proposed_rebalancing:
            seen.setdefault(t.to_facility_id)
            seen.setdefault(t.from_facility_id)
        return list(seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "resource_type": self.resource_type.value,
            "resource_key": self.resource_key,
            "current_status": self.current_status.value,
            "facilities": [f.to_dict() for f in self.facilities],
            "proposed_rebalancing": [t.to_dict() for t in self.proposed_rebalancing],
            "estimated_impact": [i.to_dict() for i in self.estimated_impact],
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "implemented_at": _iso(self.implemented_at),
            "version": self.version,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# GLOBAL OPTIMIZATION PROPOSALS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ExpectedBenefit:
    global_energy_reduction: Optional[float] = None  # kWh
    global_yield_increase: Optional[float] = None  # kg
    global_cost_saving: Optional[float] = None  # dollars
    contamination_risk_reduction: Optional[float] = None  # 0-100 points
    labor_reduction: Optional[float] = None  # hours

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global_energy_reduction": self.global_energy_reduction,
            "global_yield_increase": self.global_yield_increase,
            "global_cost_saving": self.global_cost_saving,
            "contamination_risk_reduction": self.contamination_risk_reduction,
            "labor_reduction": self.labor_reduction,
        }


@dataclass
class FacilityImplementation:
    facility_id: str
    local_steps: List[str]
    estimated_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "local_steps": list(self.local_steps),
            "estimated_hours": self.estimated_hours,
        }


@dataclass
class ImplementationPlan:
    steps: List[str]
    facility_steps: List[FacilityImplementation]
    total_implementation_hours: float
    complexity: Complexity

    def hours_for(self, facility_id: str) -> Optional[float]:
        for entry in self.facility_steps:
            if entry.facility_id == facility_id:
                return entry.estimated_hours
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": list(self.steps),
            "affected_facilities": [f.to_dict() for f in self.facility_steps],
            "total_implementation_hours": self.total_implementation_hours,
            "complexity": self.complexity.value,
        }


@dataclass
class ProposalRisk:
    facility_id: str  # "all" for fleet-wide risks
    risk: str
    mitigation_strategy: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "risk": self.risk,
            "mitigation_strategy": self.mitigation_strategy,
        }


@dataclass
class RollbackPlan:
    feasible: bool
    estimated_hours: float
    steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feasible": self.feasible,
            "estimated_hours": self.estimated_hours,
            "steps": list(self.steps),
        }


@dataclass
class GlobalOptimizationProposal:
    """
    Cross-facility change proposal with benefits, plan, risks and rollback.

    Lifecycle: draft -> audited -> approved/rejected -> implemented -> rolled-back.
    """
    category: OptimizationCategory
    title: str
    description: str
    affected_facilities: List[str]
    rationale: str
    expected_benefit: ExpectedBenefit
    implementation: ImplementationPlan
    risks: List[ProposalRisk]
    rollback: RollbackPlan
    risk_level: Level
    confidence: int
    capabilities: FrozenSet[Capability] = frozenset()
    status: LifecycleStatus = LifecycleStatus.DRAFT
    proposal_id: str = field(default_factory=lambda: new_id("gop"))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    implemented_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    @property
    def record_id(self) -> str:
        return self.proposal_id

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def signature(self) -> Tuple[str, Tuple[str, ...], str]:
        return (self.category.value, tuple(self.affected_facilities), self.title)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "affected_facilities": list(self.affected_facilities),
            "rationale": self.rationale,
            "expected_benefit": self.expected_benefit.to_dict(),
            "implementation": self.implementation.to_dict(),
            "risks": [r.to_dict() for r in self.risks],
            "rollback_capability": self.rollback.to_dict(),
            "risk_level": self.risk_level.value,
            "confidence": self.confidence,
            "capabilities": sorted(c.value for c in self.capabilities),
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "implemented_at": _iso(self.implemented_at),
            "rolled_back_at": _iso(self.rolled_back_at),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuditChecks:
    all_facilities_within_budget: bool
    no_contamination_spread: bool
    labor_availability_respected: bool
    equipment_constraints_respected: bool
    regression_detected: bool
    rollback_feasible: bool

    def to_dict(self) -> Dict[str, bool]:
        return {
            "all_facilities_within_budget": self.all_facilities_within_budget,
            "no_contamination_spread": self.no_contamination_spread,
            "labor_availability_respected": self.labor_availability_respected,
            "equipment_constraints_respected": self.equipment_constraints_respected,
            "regression_detected": self.regression_detected,
            "rollback_feasible": self.rollback_feasible,
        }


@dataclass(frozen=True)
class FacilityRisk:
    facility_id: str
    risk_score: int
    rationale: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "risk_score": self.risk_score,
            "rationale": list(self.rationale),
        }


@dataclass(frozen=True)
class AuditResult:
    """Outcome of the safety gate for one proposal. Immutable once produced."""
    proposal_id: str
    decision: AuditDecision
    checks: AuditChecks
    per_facility_risks: Tuple[FacilityRisk, ...]
    global_risks: Tuple[str, ...]
    recommendations: Tuple[str, ...]
    audit_id: str = field(default_factory=lambda: new_id("mfa"))
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def max_facility_risk(self) -> int:
        return max((r.risk_score for r in self.per_facility_risks), default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "proposal_id": self.proposal_id,
            "timestamp": self.timestamp.isoformat(),
            "decision": self.decision.value,
            "checks": self.checks.to_dict(),
            "per_facility_risks": [r.to_dict() for r in self.per_facility_risks],
            "max_facility_risk": self.max_facility_risk,
            "global_risks": list(self.global_risks),
            "recommendations": list(self.recommendations),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# LOG ENTRIES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LogContext:
    proposal_id: Optional[str] = None
    plan_id: Optional[str] = None
    audit_id: Optional[str] = None
    affected_facilities: Tuple[str, ...] = ()
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "plan_id": self.plan_id,
            "audit_id": self.audit_id,
            "affected_facilities": list(self.affected_facilities),
            "user_id": self.user_id,
        }


@dataclass(frozen=True)
class LogEntry:
    category: LogCategory
    message: str
    context: LogContext = field(default_factory=LogContext)
    details: Dict[str, Any] = field(default_factory=dict)
    entry_id: str = field(default_factory=lambda: new_id("mf-log"))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "message": self.message,
            "context": self.context.to_dict(),
            "details": dict(self.details),
        }
