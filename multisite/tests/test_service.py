"""
Testes do serviço de coordenação multi-facility (H1-H6).
"""
import threading

import pytest

from multisite.config import CoordinationConfig
from multisite.coordination import (
    AuditDecision,
    IngestBatch,
    InvalidTransitionError,
    LifecycleStatus,
    LogCategory,
    MultiFacilityService,
    ProposalBlockedError,
    RecordNotFoundError,
    ResourceType,
    SafetyAuditor,
    UnknownFacilityError,
    get_multi_facility_service,
    reset_multi_facility_service,
)


@pytest.fixture
def blocked_batch(three_site_batch, make_resources):
    """Cenário de três sites com a autoclave de F2 indisponível."""
    three_site_batch.resource_snapshots[1] = make_resources(
        "F2", [("straw", 500, 300)], [("autoclave-1", False, "autoclave")]
    )
    return three_site_batch


class GatedAuditor(SafetyAuditor):
    """Auditor que só termina a auditoria quando `release` é sinalizado."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = threading.Event()
        self.release = threading.Event()

    def audit(self, proposal, state):
        self.started.set()
        self.release.wait(timeout=5)
        return super().audit(proposal, state)


class TestH1_Cycle:
    """H1: Ciclo completo."""

    def test_run_cycle_scenario(self, service, three_site_batch):
        cycle = service.run_cycle(three_site_batch)

        assert cycle.state.global_load == 62
        assert len(cycle.insights) == 3
        assert [p.resource_type for p in cycle.plans] == [ResourceType.ENERGY]
        assert len(cycle.proposals) == 1
        assert cycle.proposals[0].status == LifecycleStatus.AUDITED
        assert [a.decision for a in cycle.audits] == [AuditDecision.WARN]
        assert cycle.audits[0].proposal_id == cycle.proposals[0].proposal_id

        summary = cycle.to_dict()["summary"]
        assert summary == {
            "global_load": 62,
            "global_risk": "low",
            "insights": 3,
            "plans": 1,
            "proposals": 1,
            "blocked": 0,
        }

    def test_log_order_follows_pipeline(self, service, three_site_batch):
        service.run_cycle(three_site_batch)
        categories = [e.category for e in service.log.export()]

        assert categories[0] == LogCategory.AGGREGATION
        assert categories.index(LogCategory.INSIGHT) < categories.index(LogCategory.SHARED_RESOURCE_PLAN)
        assert categories.index(LogCategory.SHARED_RESOURCE_PLAN) < categories.index(
            LogCategory.GLOBAL_PROPOSAL
        )
        assert categories[-1] == LogCategory.AUDIT

    def test_unknown_facility_leaves_no_state(self, service, make_facility, make_load):
        batch = IngestBatch(facilities=[make_facility("F1")], load_snapshots=[make_load("F9", 50)])

        with pytest.raises(UnknownFacilityError):
            service.run_cycle(batch)

        assert service.get_latest_state() is None
        assert service.list_proposals() == []
        assert service.get_statistics()["states_aggregated"] == 0

    def test_latest_state_tracks_ingest(self, service, three_site_batch):
        first = service.ingest(three_site_batch)
        second = service.ingest(three_site_batch)

        assert service.get_latest_state() is second
        assert first.state_id != second.state_id


class TestH2_Approval:
    """H2: Aprovação condicionada à auditoria."""

    def test_approve_warned_proposal(self, service, three_site_batch):
        cycle = service.run_cycle(three_site_batch)
        proposal_id = cycle.proposals[0].proposal_id

        approved = service.approve_proposal(proposal_id, "director")

        assert approved.status == LifecycleStatus.APPROVED
        assert service.get_proposal(proposal_id).approved_by == "director"
        assert service.list_proposals(LifecycleStatus.APPROVED) == [approved]

    def test_blocked_proposal_cannot_be_approved(self, service, blocked_batch):
        cycle = service.run_cycle(blocked_batch)
        proposal_id = cycle.proposals[0].proposal_id

        assert cycle.audits[0].decision == AuditDecision.BLOCK
        assert cycle.to_dict()["summary"]["blocked"] == 1
        assert {p.resource_type for p in cycle.plans} == {ResourceType.EQUIPMENT, ResourceType.ENERGY}

        with pytest.raises(ProposalBlockedError) as exc_info:
            service.approve_proposal(proposal_id, "director")

        assert "Equipment constraints violated" in exc_info.value.global_risks
        assert service.get_proposal(proposal_id).status == LifecycleStatus.AUDITED
        assert service.log.export(category=LogCategory.APPROVAL) == []

    def test_draft_proposal_needs_audit(self, service, three_site_batch):
        state = service.ingest(three_site_batch)
        proposal = service.generate_proposals(state)[0]

        with pytest.raises(InvalidTransitionError):
            service.approve_proposal(proposal.proposal_id, "director")

        service.audit_proposal(proposal.proposal_id)
        assert service.approve_proposal(proposal.proposal_id, "director").status == LifecycleStatus.APPROVED

    def test_reaudit_against_new_state(self, service, three_site_batch, make_resources):
        state = service.ingest(three_site_batch)
        proposal = service.generate_proposals(state)[0]
        assert service.audit_proposal(proposal.proposal_id).decision == AuditDecision.WARN

        three_site_batch.resource_snapshots[1] = make_resources(
            "F2", [("straw", 500, 300)], [("autoclave-1", False, "autoclave")]
        )
        worse = service.ingest(three_site_batch)
        result = service.audit_proposal(proposal.proposal_id, worse)

        assert result.decision == AuditDecision.BLOCK
        assert service.get_audit(proposal.proposal_id) is result
        assert service.get_proposal(proposal.proposal_id).status == LifecycleStatus.AUDITED

    def test_implement_and_roll_back(self, service, three_site_batch):
        proposal_id = service.run_cycle(three_site_batch).proposals[0].proposal_id
        service.approve_proposal(proposal_id, "director")
        service.implement_proposal(proposal_id, "site-lead")

        rolled_back = service.roll_back_proposal(proposal_id, "site-lead", "Peak demand unchanged")

        assert rolled_back.status == LifecycleStatus.ROLLED_BACK
        assert len(service.log.export(category=LogCategory.ROLLBACK, proposal_id=proposal_id)) == 1

    def test_plan_lifecycle_through_service(self, service, three_site_batch):
        plan_id = service.run_cycle(three_site_batch).plans[0].plan_id

        service.approve_plan(plan_id, "ops")
        implemented = service.implement_plan(plan_id, "ops")

        assert implemented.status == LifecycleStatus.IMPLEMENTED
        assert service.list_plans(LifecycleStatus.IMPLEMENTED) == [implemented]
        with pytest.raises(InvalidTransitionError):
            service.reject_plan(plan_id, "ops", "too late")


class TestH3_Lookups:
    """H3: Registos e erros de lookup."""

    @pytest.mark.parametrize("method", ["get_plan", "get_proposal", "get_audit"])
    def test_unknown_ids(self, service, method):
        with pytest.raises(RecordNotFoundError) as exc_info:
            getattr(service, method)("missing-id")

        assert exc_info.value.record_id == "missing-id"
        assert isinstance(exc_info.value, KeyError)
        assert "missing-id" in str(exc_info.value)

    def test_statistics(self, service, three_site_batch):
        proposal_id = service.run_cycle(three_site_batch).proposals[0].proposal_id
        service.reject_proposal(proposal_id, "director", "Not this quarter")

        stats = service.get_statistics()
        assert stats["states_aggregated"] == 1
        assert stats["states_evicted"] == 0
        assert stats["registry_capacity"] == 100
        assert stats["global_load"] == 62
        assert stats["plans_by_status"] == {"draft": 1}
        assert stats["proposals_by_status"] == {"rejected": 1}
        assert stats["audits_by_decision"] == {"warn": 1}
        assert stats["log"]["by_category"]["rejection"] == 1


class TestH4_LogExport:
    """H4: Exportação do log e singleton."""

    def test_export_records_itself_last(self, service, three_site_batch):
        service.run_cycle(three_site_batch)
        before = len(service.log)

        exported = service.export_log(category=LogCategory.AUDIT, user_id="auditor")

        assert len(exported) == 1
        assert exported[0]["category"] == "audit"
        assert len(service.log) == before + 1

        last = service.log.export()[-1]
        assert last.category == LogCategory.EXPORT
        assert last.context.user_id == "auditor"
        assert last.details == {"category": "audit", "entries": 1}

    def test_export_by_facility(self, service, three_site_batch):
        service.run_cycle(three_site_batch)
        exported = service.export_log(facility_id="F3")

        assert exported
        assert all("F3" in e["context"]["affected_facilities"] for e in exported)

    def test_log_capacity_from_config(self):
        service = MultiFacilityService(config=CoordinationConfig(log_capacity=5))
        assert service.log.capacity == 5

    def test_singleton(self):
        first = get_multi_facility_service()
        assert get_multi_facility_service() is first

        reset_multi_facility_service()
        assert get_multi_facility_service() is not first


class TestH5_ConcurrentAudit:
    """H5: Auditoria concorrente com decisões de lifecycle."""

    @pytest.fixture
    def gated_service(self):
        service = MultiFacilityService(config=CoordinationConfig(registry_capacity=1))
        service.auditor = GatedAuditor(service.aggregator, service.log, service.config.audit)
        return service

    def _audit_in_background(self, service, proposal_id):
        results = []
        worker = threading.Thread(
            target=lambda: results.append(service.audit_proposal(proposal_id))
        )
        worker.start()
        assert service.auditor.started.wait(timeout=5)
        return worker, results

    def test_rejection_during_audit_is_kept(self, gated_service, three_site_batch):
        """H5.1: Uma rejeição feita durante a auditoria não volta a 'audited'."""
        state = gated_service.ingest(three_site_batch)
        proposal_id = gated_service.generate_proposals(state)[0].proposal_id

        worker, results = self._audit_in_background(gated_service, proposal_id)
        gated_service.reject_proposal(proposal_id, "ops", "Not now")
        gated_service.auditor.release.set()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert results[0].decision == AuditDecision.WARN
        proposal = gated_service.get_proposal(proposal_id)
        assert proposal.status == LifecycleStatus.REJECTED
        assert proposal.rejected_by == "ops"
        assert gated_service.get_audit(proposal_id).decision == AuditDecision.WARN
        with pytest.raises(InvalidTransitionError):
            gated_service.approve_proposal(proposal_id, "director")

    def test_eviction_during_audit(self, gated_service, three_site_batch):
        """H5.2: Proposta removida durante a auditoria: o resultado é devolvido sem registo."""
        state = gated_service.ingest(three_site_batch)
        proposal_id = gated_service.generate_proposals(state)[0].proposal_id

        worker, results = self._audit_in_background(gated_service, proposal_id)
        gated_service.ingest(three_site_batch)
        gated_service.auditor.release.set()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert results[0].proposal_id == proposal_id
        with pytest.raises(RecordNotFoundError):
            gated_service.get_proposal(proposal_id)
        with pytest.raises(RecordNotFoundError):
            gated_service.get_audit(proposal_id)


class TestH6_RegistryBounds:
    """H6: Registos limitados por registry_capacity (FIFO)."""

    @pytest.fixture
    def small_service(self):
        return MultiFacilityService(config=CoordinationConfig(registry_capacity=3))

    def test_oldest_states_evicted(self, small_service, three_site_batch):
        """H6.1: Dez ciclos deixam apenas os três últimos estados e derivados."""
        cycles = [small_service.run_cycle(three_site_batch) for _ in range(10)]

        stats = small_service.get_statistics()
        assert stats["states_aggregated"] == 3
        assert stats["states_evicted"] == 7
        assert stats["registry_capacity"] == 3
        assert len(small_service.list_plans()) == 3
        assert len(small_service.list_proposals()) == 3
        assert stats["audits_by_decision"] == {"warn": 3}
        assert small_service.get_latest_state() is cycles[-1].state
        assert [p.proposal_id for p in small_service.list_proposals()] == [
            c.proposals[0].proposal_id for c in cycles[-3:]
        ]

    def test_evicted_records_not_found(self, small_service, three_site_batch):
        first = small_service.run_cycle(three_site_batch)
        for _ in range(3):
            small_service.run_cycle(three_site_batch)

        proposal_id = first.proposals[0].proposal_id
        with pytest.raises(RecordNotFoundError):
            small_service.get_proposal(proposal_id)
        with pytest.raises(RecordNotFoundError):
            small_service.audit_proposal(proposal_id)
        with pytest.raises(RecordNotFoundError):
            small_service.get_plan(first.plans[0].plan_id)

    def test_in_flight_records_survive(self, small_service, three_site_batch):
        """H6.2: Planos e propostas aprovados ficam até serem concluídos."""
        first = small_service.run_cycle(three_site_batch)
        proposal_id = first.proposals[0].proposal_id
        plan_id = first.plans[0].plan_id
        small_service.approve_proposal(proposal_id, "director")
        small_service.approve_plan(plan_id, "director")

        for _ in range(5):
            small_service.run_cycle(three_site_batch)

        assert small_service.get_proposal(proposal_id).status == LifecycleStatus.APPROVED
        assert small_service.get_audit(proposal_id).decision == AuditDecision.WARN
        assert small_service.implement_plan(plan_id, "site-lead").status == LifecycleStatus.IMPLEMENTED
        implemented = small_service.implement_proposal(proposal_id, "site-lead")
        assert implemented.status == LifecycleStatus.IMPLEMENTED
        assert len(small_service.list_proposals()) == 4

        # the source state is gone, so there is nothing to re-audit against
        with pytest.raises(RecordNotFoundError):
            small_service.audit_proposal(proposal_id)
