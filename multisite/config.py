"""
Multi-Site Coordination - Configuration
=======================================

Thresholds and weights used by the coordination pipeline.

Every hand-picked constant of the detectors, generators and the safety
auditor lives here so that sites can tune them without code changes.

Uso:
    from multisite.config import CoordinationSettings

    config = CoordinationSettings.get_config()
    if proposal.confidence < config.audit.min_confidence:
        ...

Configuração via variáveis de ambiente:
    MULTISITE_LOG_CAPACITY=5000
    MULTISITE_PARTITION_TRANSFERS=false
    MULTISITE_AUDIT_BLOCK_RISK=40
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# THRESHOLD GROUPS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class InsightThresholds:
    """Thresholds for the insight rules (percent values are 0-100)."""
    underutilized_load_pct: float = 40.0
    overloaded_load_pct: float = 80.0
    imbalance_critical_pct: float = 85.0
    imbalance_adequate_pct: float = 50.0
    bottleneck_unavailable_pct: float = 50.0
    consolidation_min_facilities: int = 2  # species in MORE than this many sites

    # Fixed confidence per rule (documented simplification, not a statistic)
    underutilized_confidence: int = 85
    overloaded_confidence: int = 90
    imbalance_confidence: int = 80
    bottleneck_confidence: int = 75
    consolidation_confidence: int = 65


@dataclass
class ContentionThresholds:
    """Thresholds for shared-resource contention detection."""
    substrate_critical_pct: float = 80.0
    substrate_excess_pct: float = 30.0
    substrate_transfer_fraction: float = 0.2
    substrate_transfer_hours: float = 2.0

    equipment_share_quantity: float = 1.0
    equipment_share_hours: float = 4.0

    energy_critical_pct: float = 80.0
    energy_excess_pct: float = 50.0
    energy_coverage_ratio: float = 0.5  # excess headroom must cover this share of the shortfall
    energy_shift_fraction: float = 0.5
    energy_transfer_hours: float = 8.0


@dataclass
class OptimizerThresholds:
    """Trigger thresholds and benefit factors of the proposal generators."""
    energy_load_spread_pct: float = 30.0
    energy_overloaded_pct: float = 70.0
    energy_underloaded_pct: float = 40.0
    energy_reduction_fraction: float = 0.08
    energy_cost_per_kwh: float = 0.12

    yield_diverse_species: int = 3  # more than
    yield_narrow_species: int = 2  # fewer than
    yield_increase_fraction: float = 0.12

    contamination_mean_risk: float = 50.0
    contamination_high_risk: float = 60.0
    contamination_low_risk: float = 30.0
    contamination_risk_reduction: float = 25.0

    schedule_high_load_pct: float = 75.0
    schedule_min_facilities: int = 2
    schedule_energy_fraction: float = 0.05

    specialization_species: int = 4  # more than
    specialization_min_facilities: int = 1  # more than
    specialization_yield_fraction: float = 0.08
    specialization_labor_hours: float = 80.0
    specialization_risk_reduction: float = 15.0


@dataclass
class AuditThresholds:
    """Safety auditor thresholds, risk weights and decision cut-offs."""
    budget_overload_pct: float = 85.0
    spread_min_confidence: int = 75  # shared workloads need MORE than this
    labor_capacity_fraction: float = 0.2
    regression_target_load_pct: float = 40.0

    # Per-facility risk weights (additive, uncapped)
    energy_risk_weight: int = 15
    energy_risk_load_pct: float = 70.0
    energy_local_share_factor: float = 0.6
    energy_local_budget_fraction: float = 0.1
    contamination_failed_weight: int = 20
    contamination_unaddressed_weight: int = 10
    labor_risk_weight: int = 10
    labor_risk_hours: float = 40.0

    # Decision cut-offs
    block_risk: int = 35
    warn_risk: int = 20
    min_confidence: int = 65

    # Recommendation cut-offs
    recommend_confidence: int = 70
    recommend_risk: int = 15

    autoclave_classes: Tuple[str, ...] = ("autoclave",)


@dataclass
class CoordinationConfig:
    """
    Full configuration of the coordination pipeline.

    Valores default reproduzem as regras de referência do sistema.
    """
    insight: InsightThresholds = field(default_factory=InsightThresholds)
    contention: ContentionThresholds = field(default_factory=ContentionThresholds)
    optimizer: OptimizerThresholds = field(default_factory=OptimizerThresholds)
    audit: AuditThresholds = field(default_factory=AuditThresholds)

    log_capacity: int = 10000

    # Aggregated states kept by the service; older states are evicted FIFO
    # together with the plans, proposals and audits derived from them.
    registry_capacity: int = 100

    # Split transferable amounts across excess facilities instead of
    # repeating the full amount on every (critical, excess) pair.
    partition_transfers: bool = True


# ═══════════════════════════════════════════════════════════════════════════════
# SETTINGS LOADER
# ═══════════════════════════════════════════════════════════════════════════════

class CoordinationSettings:
    """
    Per-process holder of the coordination configuration.

    Carrega configuração de variáveis de ambiente ou usa defaults.

    Uso:
        config = CoordinationSettings.get_config()
        CoordinationSettings.reset()  # tests
    """

    _instance: Optional[CoordinationConfig] = None

    # env var -> (section, attribute, type); section None = top level
    ENV_MAPPING: Dict[str, Tuple[Optional[str], str, type]] = {
        "MULTISITE_LOG_CAPACITY": (None, "log_capacity", int),
        "MULTISITE_REGISTRY_CAPACITY": (None, "registry_capacity", int),
        "MULTISITE_AUDIT_BLOCK_RISK": ("audit", "block_risk", int),
        "MULTISITE_AUDIT_WARN_RISK": ("audit", "warn_risk", int),
        "MULTISITE_AUDIT_MIN_CONFIDENCE": ("audit", "min_confidence", int),
        "MULTISITE_AUDIT_LABOR_FRACTION": ("audit", "labor_capacity_fraction", float),
        "MULTISITE_OVERLOADED_LOAD_PCT": ("insight", "overloaded_load_pct", float),
        "MULTISITE_UNDERUTILIZED_LOAD_PCT": ("insight", "underutilized_load_pct", float),
        "MULTISITE_ENERGY_COST_PER_KWH": ("optimizer", "energy_cost_per_kwh", float),
    }

    @classmethod
    def _load_from_env(cls) -> CoordinationConfig:
        """Carrega configuração de variáveis de ambiente."""
        config = CoordinationConfig()

        for env_var, (section, attr_name, cast) in cls.ENV_MAPPING.items():
            value = os.environ.get(env_var)
            if not value:
                continue
            target = getattr(config, section) if section else config
            try:
                setattr(target, attr_name, cast(value))
                logger.info(f"Coordination setting {attr_name} = {value}")
            except ValueError:
                logger.warning(f"Invalid value for {env_var}: {value}")

        value = os.environ.get("MULTISITE_PARTITION_TRANSFERS")
        if value:
            config.partition_transfers = value.lower() in ("true", "1", "yes")

        if config.log_capacity <= 0:
            logger.warning(f"Non-positive log capacity {config.log_capacity}, using 10000")
            config.log_capacity = 10000

        if config.registry_capacity <= 0:
            logger.warning(f"Non-positive registry capacity {config.registry_capacity}, using 100")
            config.registry_capacity = 100

        return config

    @classmethod
    def get_config(cls) -> CoordinationConfig:
        """Obtém configuração atual."""
        if cls._instance is None:
            cls._instance = cls._load_from_env()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset para recarregar config."""
        cls._instance = None
