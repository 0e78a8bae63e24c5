"""
Testes dos endpoints REST de coordenação multi-facility (I1-I3).
"""
import pytest


class TestI1_Basics:
    """I1: Health, status e config."""

    def test_health(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_status(self, test_client):
        response = test_client.get("/multi-facility/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "operational"
        assert "cross-facility-energy-optimization" in data["proposal_categories"]
        assert data["statistics"]["states_aggregated"] == 0

    def test_config(self, test_client):
        data = test_client.get("/config").json()

        assert data["log_capacity"] == 10000
        assert data["registry_capacity"] == 100
        assert data["partition_transfers"] is True
        assert data["audit"]["block_risk"] == 35
        assert data["audit"]["autoclave_classes"] == ["autoclave"]


class TestI2_Pipeline:
    """I2: Agregação, deteção e ciclo."""

    def test_aggregate(self, test_client, ingest_payload):
        response = test_client.post("/multi-facility/aggregate", json=ingest_payload)

        assert response.status_code == 200
        data = response.json()
        assert data["state"]["global_load"] == 62
        assert data["state"]["global_risk"] == "low"
        assert data["load_summary"]["facility_loads"] == {"F1": 90, "F2": 35, "F3": 60}
        assert data["risk_summary"]["facilities_reporting"] == 3

    def test_unknown_facility_is_400(self, test_client, ingest_payload):
        ingest_payload["load_snapshots"][0]["facility_id"] = "GHOST"
        response = test_client.post("/multi-facility/aggregate", json=ingest_payload)

        assert response.status_code == 400
        assert "unknown facility: GHOST" in response.json()["detail"]

    def test_invalid_payload_is_422(self, test_client, ingest_payload):
        ingest_payload["load_snapshots"][0]["current_load_percent"] = -5
        response = test_client.post("/multi-facility/aggregate", json=ingest_payload)
        assert response.status_code == 422

    def test_insights_and_contention(self, test_client, ingest_payload):
        insights = test_client.post("/multi-facility/insights", json=ingest_payload).json()
        contention = test_client.post("/multi-facility/contention", json=ingest_payload).json()

        assert insights["total"] == 3
        assert contention["total"] == 1
        assert contention["plans"][0]["resource_type"] == "energy"

    def test_proposals_are_audited(self, test_client, ingest_payload):
        data = test_client.post("/multi-facility/proposals", json=ingest_payload).json()

        assert data["total"] == 1
        assert data["proposals"][0]["status"] == "audited"
        assert data["audits"][0]["decision"] == "warn"

    def test_cycle(self, test_client, ingest_payload):
        response = test_client.post("/multi-facility/cycle", json=ingest_payload)

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["global_load"] == 62
        assert summary["proposals"] == 1
        assert summary["blocked"] == 0


class TestI3_Lifecycle:
    """I3: Aprovação, rejeição, auditorias e log."""

    @pytest.fixture
    def cycle(self, test_client, ingest_payload):
        return test_client.post("/multi-facility/cycle", json=ingest_payload).json()

    def test_approve_proposal(self, test_client, cycle):
        proposal_id = cycle["proposals"][0]["proposal_id"]
        response = test_client.post(
            f"/multi-facility/proposals/{proposal_id}/approve", json={"actor": "director"}
        )

        assert response.status_code == 200
        assert response.json()["proposal"]["status"] == "approved"
        assert response.json()["proposal"]["approved_by"] == "director"

    def test_unknown_proposal_is_404(self, test_client):
        response = test_client.post(
            "/multi-facility/proposals/gop-missing/approve", json={"actor": "director"}
        )
        assert response.status_code == 404

    def test_reject_then_approve_is_409(self, test_client, cycle):
        proposal_id = cycle["proposals"][0]["proposal_id"]
        test_client.post(
            f"/multi-facility/proposals/{proposal_id}/reject",
            json={"actor": "director", "reason": "Peak season"},
        )
        response = test_client.post(
            f"/multi-facility/proposals/{proposal_id}/approve", json={"actor": "director"}
        )
        assert response.status_code == 409

    def test_blocked_proposal_is_409(self, test_client, ingest_payload):
        ingest_payload["resource_snapshots"][1]["equipment_availability"][0]["is_available"] = False
        cycle = test_client.post("/multi-facility/cycle", json=ingest_payload).json()
        proposal_id = cycle["proposals"][0]["proposal_id"]

        response = test_client.post(
            f"/multi-facility/proposals/{proposal_id}/approve", json={"actor": "director"}
        )

        assert response.status_code == 409
        assert "Equipment constraints violated" in response.json()["detail"]["global_risks"]

    def test_plan_approval(self, test_client, cycle):
        plan_id = cycle["plans"][0]["plan_id"]
        response = test_client.post(
            f"/multi-facility/plans/{plan_id}/approve", json={"actor": "ops"}
        )

        assert response.status_code == 200
        assert response.json()["plan"]["status"] == "approved"
        assert response.json()["plan"]["version"] == 2

    def test_get_audit(self, test_client, cycle):
        proposal_id = cycle["proposals"][0]["proposal_id"]
        response = test_client.get(f"/multi-facility/audits/{proposal_id}")

        assert response.status_code == 200
        assert response.json()["decision"] == "warn"
        assert test_client.get("/multi-facility/audits/gop-missing").status_code == 404

    def test_log_export(self, test_client, cycle):
        response = test_client.get("/multi-facility/log", params={"category": "audit"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["entries"][0]["category"] == "audit"

    def test_log_invalid_category(self, test_client):
        response = test_client.get("/multi-facility/log", params={"category": "gossip"})
        assert response.status_code == 400
