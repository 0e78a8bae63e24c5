"""
Coordination Module - Cross-Facility State, Contention & Safety Gate
====================================================================

Components:
- Facility Aggregator: Snapshot validation and global aggregates
- Insight Detector: Underutilization, overload, imbalance, bottleneck, consolidation
- Contention Coordinator: Substrate, equipment and energy rebalancing plans
- Cross-Facility Optimizer: Global optimization proposals
- Safety Auditor: Six-check gate with allow / warn / block decisions
- Decision Log: Bounded append-only record of every decision
"""

from .models import (
    AllocationPriority,
    AuditChecks,
    AuditDecision,
    AuditResult,
    Capability,
    Complexity,
    EquipmentAvailability,
    ExecutionHistory,
    ExpectedBenefit,
    FacilityAllocation,
    FacilityImpact,
    FacilityImplementation,
    FacilityProfile,
    FacilityRisk,
    GlobalOptimizationProposal,
    GlobalState,
    ImplementationPlan,
    IngestBatch,
    Insight,
    InsightType,
    Level,
    LifecycleStatus,
    LoadSnapshot,
    LogCategory,
    LogContext,
    LogEntry,
    OptimizationCategory,
    OptimizationOutput,
    ProposalRisk,
    ResourceSnapshot,
    ResourceStatus,
    ResourceTransfer,
    ResourceType,
    RiskSnapshot,
    RollbackPlan,
    Room,
    RoomUtilization,
    Severity,
    SharedResourcePlan,
    SubstrateStock,
    TelemetrySummary,
)
from .errors import (
    CoordinationError,
    InvalidTransitionError,
    ProposalBlockedError,
    RecordNotFoundError,
    UnknownFacilityError,
)
from .decision_log import DecisionLog
from .facility_aggregator import FacilityAggregator
from .insight_detector import InsightDetector, InsightRule
from .contention_coordinator import ContentionCoordinator, ContentionDetector
from .cross_facility_optimizer import CrossFacilityOptimizer, ProposalGenerator
from .safety_auditor import SafetyAuditor
from .service import (
    CoordinationCycle,
    MultiFacilityService,
    get_multi_facility_service,
    reset_multi_facility_service,
)

from .api_coordination import router as coordination_router

__all__ = [
    "AllocationPriority",
    "AuditChecks",
    "AuditDecision",
    "AuditResult",
    "Capability",
    "Complexity",
    "EquipmentAvailability",
    "ExecutionHistory",
    "ExpectedBenefit",
    "FacilityAllocation",
    "FacilityImpact",
    "FacilityImplementation",
    "FacilityProfile",
    "FacilityRisk",
    "GlobalOptimizationProposal",
    "GlobalState",
    "ImplementationPlan",
    "IngestBatch",
    "Insight",
    "InsightType",
    "Level",
    "LifecycleStatus",
    "LoadSnapshot",
    "LogCategory",
    "LogContext",
    "LogEntry",
    "OptimizationCategory",
    "OptimizationOutput",
    "ProposalRisk",
    "ResourceSnapshot",
    "ResourceStatus",
    "ResourceTransfer",
    "ResourceType",
    "RiskSnapshot",
    "RollbackPlan",
    "Room",
    "RoomUtilization",
    "Severity",
    "SharedResourcePlan",
    "SubstrateStock",
    "TelemetrySummary",
    "CoordinationError",
    "InvalidTransitionError",
    "ProposalBlockedError",
    "RecordNotFoundError",
    "UnknownFacilityError",
    "DecisionLog",
    "FacilityAggregator",
    "InsightDetector",
    "InsightRule",
    "ContentionCoordinator",
    "ContentionDetector",
    "CrossFacilityOptimizer",
    "ProposalGenerator",
    "SafetyAuditor",
    "CoordinationCycle",
    "MultiFacilityService",
    "get_multi_facility_service",
    "reset_multi_facility_service",
    "coordination_router",
]
