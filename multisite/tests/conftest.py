"""
Fixtures comuns para os testes de coordenação multi-site.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence, Tuple

from fastapi.testclient import TestClient

from multisite.config import CoordinationConfig, CoordinationSettings
from multisite.coordination import (
    DecisionLog,
    EquipmentAvailability,
    FacilityAggregator,
    FacilityProfile,
    IngestBatch,
    LoadSnapshot,
    MultiFacilityService,
    ResourceSnapshot,
    RiskSnapshot,
    SubstrateStock,
    reset_multi_facility_service,
)

BASE_TIME = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _facility(
    facility_id: str,
    name: Optional[str] = None,
    capacity: float = 1000,
    energy: float = 10000,
    labor: float = 2000,
) -> FacilityProfile:
    return FacilityProfile(
        facility_id=facility_id,
        name=name or f"Site {facility_id}",
        location="PT",
        total_capacity_kg=capacity,
        energy_budget_kwh=energy,
        labor_hours_available=labor,
    )


def _load(
    facility_id: str,
    percent: float,
    species: Iterable[str] = (),
    minutes: int = 0,
) -> LoadSnapshot:
    return LoadSnapshot(
        facility_id=facility_id,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        current_load_percent=percent,
        active_species=list(species),
    )


def _risk(
    facility_id: str,
    overall: str = "low",
    contamination: float = 20,
    minutes: int = 0,
) -> RiskSnapshot:
    return RiskSnapshot(
        facility_id=facility_id,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        contamination_risk_score=contamination,
        overall_risk=overall,
    )


def _resources(
    facility_id: str,
    substrates: Sequence[Tuple[str, float, float]] = (),
    equipment: Sequence[Tuple[str, bool, Optional[str]]] = (),
    minutes: int = 0,
) -> ResourceSnapshot:
    return ResourceSnapshot(
        facility_id=facility_id,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        substrate_materials=[
            SubstrateStock(material=m, available_kg=avail, allocated_kg=alloc)
            for m, avail, alloc in substrates
        ],
        equipment_availability=[
            EquipmentAvailability(equipment_id=eid, is_available=ok, equipment_class=cls)
            for eid, ok, cls in equipment
        ],
    )


@pytest.fixture(autouse=True)
def reset_singletons():
    """Config e serviço limpos em cada teste."""
    CoordinationSettings.reset()
    reset_multi_facility_service()
    yield
    CoordinationSettings.reset()
    reset_multi_facility_service()


@pytest.fixture
def make_facility():
    return _facility


@pytest.fixture
def make_load():
    return _load


@pytest.fixture
def make_risk():
    return _risk


@pytest.fixture
def make_resources():
    return _resources


@pytest.fixture
def log():
    return DecisionLog()


@pytest.fixture
def aggregator(log):
    return FacilityAggregator(log)


@pytest.fixture
def three_site_batch():
    """Três sites com cargas [90, 35, 60], risco baixo, autoclaves disponíveis."""
    straw = ("straw", 500, 300)
    return IngestBatch(
        facilities=[
            _facility("F1", "North"),
            _facility("F2", "South"),
            _facility("F3", "Central"),
        ],
        load_snapshots=[
            _load("F1", 90, ["oyster", "shiitake"]),
            _load("F2", 35, ["oyster"]),
            _load("F3", 60, ["oyster", "lions-mane"]),
        ],
        risk_snapshots=[_risk("F1"), _risk("F2"), _risk("F3")],
        resource_snapshots=[
            _resources("F1", [straw], [("autoclave-1", True, "autoclave")]),
            _resources("F2", [straw], [("autoclave-1", True, "autoclave")]),
            _resources("F3", [straw], [("autoclave-1", True, "autoclave")]),
        ],
    )


@pytest.fixture
def three_site_state(aggregator, three_site_batch):
    return aggregator.aggregate(three_site_batch)


@pytest.fixture
def service():
    return MultiFacilityService(config=CoordinationConfig())


@pytest.fixture
def ingest_payload():
    """Payload JSON equivalente a three_site_batch."""
    ts = BASE_TIME.isoformat()
    straw = {"material": "straw", "available_kg": 500, "allocated_kg": 300}

    def resources(fid):
        return {
            "facility_id": fid,
            "timestamp": ts,
            "substrate_materials": [straw],
            "equipment_availability": [
                {"equipment_id": "autoclave-1", "is_available": True, "equipment_class": "autoclave"}
            ],
        }

    return {
        "facilities": [
            {"facility_id": fid, "name": name, "total_capacity_kg": 1000,
             "energy_budget_kwh": 10000, "labor_hours_available": 2000}
            for fid, name in (("F1", "North"), ("F2", "South"), ("F3", "Central"))
        ],
        "load_snapshots": [
            {"facility_id": "F1", "timestamp": ts, "current_load_percent": 90,
             "active_species": ["oyster", "shiitake"]},
            {"facility_id": "F2", "timestamp": ts, "current_load_percent": 35,
             "active_species": ["oyster"]},
            {"facility_id": "F3", "timestamp": ts, "current_load_percent": 60,
             "active_species": ["oyster", "lions-mane"]},
        ],
        "risk_snapshots": [
            {"facility_id": fid, "timestamp": ts, "contamination_risk_score": 20,
             "overall_risk": "low"}
            for fid in ("F1", "F2", "F3")
        ],
        "resource_snapshots": [resources(fid) for fid in ("F1", "F2", "F3")],
    }


@pytest.fixture(scope="function")
def test_client():
    """Cliente de teste FastAPI."""
    from multisite.api import app
    return TestClient(app)
