"""
Testes do agregador de estado multi-site (A1-A4).
"""
import pytest

from multisite.coordination import (
    ExecutionHistory,
    FacilityAggregator,
    IngestBatch,
    Level,
    LogCategory,
    OptimizationOutput,
    UnknownFacilityError,
)


class TestA1_Aggregation:
    """A1: Agregação e validação referencial."""

    def test_scenario_global_load(self, three_site_state):
        """A1.1: Cargas [90, 35, 60] dão global_load 62."""
        assert three_site_state.global_load == 62
        assert three_site_state.global_risk == Level.LOW
        assert three_site_state.overall_confidence == 50
        assert three_site_state.state_id.startswith("mf-state-")

    def test_deterministic_aggregates(self, aggregator, three_site_batch):
        """A1.2: Entradas idênticas produzem agregados idênticos."""
        first = aggregator.aggregate(three_site_batch)
        second = aggregator.aggregate(three_site_batch)

        assert first.state_id != second.state_id
        assert (first.global_load, first.global_risk, first.overall_confidence) == (
            second.global_load, second.global_risk, second.overall_confidence
        )

    def test_unknown_facility_fails_closed(self, aggregator, make_facility, make_load):
        """A1.3: Snapshot com facility desconhecida aborta a agregação."""
        batch = IngestBatch(
            facilities=[make_facility("F1")],
            load_snapshots=[make_load("F1", 50), make_load("GHOST", 70)],
        )

        with pytest.raises(UnknownFacilityError) as exc_info:
            aggregator.aggregate(batch)

        assert exc_info.value.snapshot_type == "load"
        assert exc_info.value.facility_id == "GHOST"
        assert "Load snapshot references unknown facility: GHOST" in str(exc_info.value)
        assert isinstance(exc_info.value, ValueError)

    def test_unknown_facility_in_risk_and_resources(
        self, aggregator, make_facility, make_risk, make_resources
    ):
        with pytest.raises(UnknownFacilityError, match="Risk snapshot"):
            aggregator.aggregate(IngestBatch(
                facilities=[make_facility("F1")], risk_snapshots=[make_risk("X")],
            ))
        with pytest.raises(UnknownFacilityError, match="Resource snapshot"):
            aggregator.aggregate(IngestBatch(
                facilities=[make_facility("F1")], resource_snapshots=[make_resources("X")],
            ))

    def test_logs_one_aggregation_entry(self, aggregator, log, three_site_batch):
        aggregator.aggregate(three_site_batch)

        entries = log.export(category=LogCategory.AGGREGATION)
        assert len(entries) == 1
        assert entries[0].message == "Aggregating data from 3 facilities"
        assert entries[0].context.affected_facilities == ("F1", "F2", "F3")
        assert entries[0].details["load_snapshots_count"] == 3


class TestA2_GlobalAggregates:
    """A2: global_load, global_risk, overall_confidence."""

    def test_global_load_rounds_half_up(self, make_load):
        loads = [make_load("F1", 61), make_load("F2", 62)]
        assert FacilityAggregator.compute_global_load(loads) == 62

    def test_global_load_uses_all_snapshots(self, make_load):
        """A2.1: Média sobre todos os snapshots, sem deduplicação."""
        loads = [make_load("F1", 100), make_load("F1", 100, minutes=5), make_load("F2", 40)]
        assert FacilityAggregator.compute_global_load(loads) == 80

    def test_global_load_empty(self):
        assert FacilityAggregator.compute_global_load([]) == 0

    @pytest.mark.parametrize("levels,expected", [
        ([], Level.LOW),
        (["low", "low", "low"], Level.LOW),
        (["high", "high", "high"], Level.HIGH),
        (["high", "high", "medium"], Level.MEDIUM),
        (["low", "medium"], Level.MEDIUM),
        (["medium", "medium"], Level.MEDIUM),
    ])
    def test_global_risk_buckets(self, make_risk, levels, expected):
        risks = [make_risk(f"F{i}", overall=level) for i, level in enumerate(levels)]
        assert FacilityAggregator.compute_global_risk(risks) == expected

    def test_overall_confidence_neutral_without_signal(self):
        assert FacilityAggregator.compute_overall_confidence([], []) == 50
        assert FacilityAggregator.compute_overall_confidence(None, None) == 50

    def test_overall_confidence_mixes_histories_and_outputs(self):
        histories = [
            ExecutionHistory(facility_id="F1", completed_tasks_count=3),
            ExecutionHistory(facility_id="F2", completed_tasks_count=20),
        ]
        outputs = [OptimizationOutput(facility_id="F1", average_confidence=80)]

        # mean(30, 100 capped, 80) = 70
        assert FacilityAggregator.compute_overall_confidence(histories, outputs) == 70


class TestA3_Lookups:
    """A3: Snapshot mais recente por facility."""

    def test_latest_load_by_timestamp(self, aggregator, make_facility, make_load):
        state = aggregator.aggregate(IngestBatch(
            facilities=[make_facility("F1")],
            load_snapshots=[
                make_load("F1", 70, minutes=30),
                make_load("F1", 20, minutes=60),
                make_load("F1", 95, minutes=0),
            ],
        ))

        assert aggregator.get_latest_load(state, "F1").current_load_percent == 20
        assert aggregator.get_latest_load(state, "F2") is None
        assert aggregator.get_latest_risk(state, "F1") is None
        assert aggregator.get_latest_resources(state, "F1") is None

    def test_get_facility(self, aggregator, three_site_state):
        assert aggregator.get_facility(three_site_state, "F2").name == "South"
        assert aggregator.get_facility(three_site_state, "nope") is None


class TestA4_Summaries:
    """A4: Resumos globais e DataFrame por facility."""

    def test_load_summary(self, aggregator, three_site_state):
        summary = aggregator.get_global_load_summary(three_site_state)

        assert summary["global_load"] == 62
        assert summary["min_load"] == 35
        assert summary["max_load"] == 90
        assert summary["facility_loads"] == {"F1": 90, "F2": 35, "F3": 60}

    def test_risk_summary(self, aggregator, make_facility, make_risk):
        state = aggregator.aggregate(IngestBatch(
            facilities=[make_facility("F1"), make_facility("F2")],
            risk_snapshots=[
                make_risk("F1", contamination=90, minutes=0),
                make_risk("F1", contamination=40, minutes=10),
                make_risk("F2", contamination=61),
            ],
        ))
        summary = aggregator.get_global_risk_summary(state)

        assert summary["facilities_reporting"] == 2
        # latest F1 (40) and F2 (61): 50.5 rounds to 51
        assert summary["avg_contamination_risk"] == 51

    def test_facility_frame(self, aggregator, three_site_state):
        frame = aggregator.facility_frame(three_site_state)

        assert list(frame.index) == ["F1", "F2", "F3"]
        assert frame.loc["F1", "load_percent"] == 90
        assert frame.loc["F3", "active_species"] == 2
        assert frame.loc["F2", "equipment_available"] == 1
