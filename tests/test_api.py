import json

import pytest
from fastapi.testclient import TestClient

from integration_engine.api.main import app
from integration_engine.config import reset_settings
from integration_engine.engine import get_engine
from integration_engine.models.enums import EnforcementMode
from integration_engine.security.hmac import sign_payload


@pytest.fixture()
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestWebhooks:
    def test_event_processed(self, client, make_connector):
        c = make_connector()
        resp = client.post(f"/webhooks/{c.id}", json={"event_type": "user.created", "payload": {"email": "a@corp.test"},
                                                      "correlation_id": "emp-9"})
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "COMPLETED"
        assert body["correlation_id"] == "emp-9"
        assert body["sync_job_id"] is None

    def test_event_metadata_marks_ingress(self, client, engine, make_connector):
        c = make_connector()
        event_id = client.post(f"/webhooks/{c.id}", json={"event_type": "x"}).json()["event_id"]
        ev = engine.pipeline.get(event_id)
        assert ev.event_metadata["ingress"] == "webhook"
        assert ev.source == c.name

    def test_trigger_sync(self, client, engine, make_connector):
        c = make_connector()
        body = client.post(f"/webhooks/{c.id}", json={"event_type": "x", "trigger_sync": True}).json()
        job = engine.orchestrator.get(body["sync_job_id"])
        assert job.trigger_type.value == "WEBHOOK"

    def test_unknown_connector(self, client):
        assert client.post("/webhooks/missing", json={"event_type": "x"}).status_code == 404

    def test_invalid_body(self, client, make_connector):
        c = make_connector()
        assert client.post(f"/webhooks/{c.id}", json={"payload": {}}).status_code == 422

    def test_oversized_correlation_id_rejected(self, client, engine, make_connector):
        c = make_connector()
        resp = client.post(f"/webhooks/{c.id}", json={"event_type": "x", "correlation_id": "x" * 80})
        assert resp.status_code == 422
        assert engine.pipeline.stats()["PENDING"] == 0

    def test_signature_required_when_secret_set(self, client, make_connector, monkeypatch):
        monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")
        reset_settings()
        c = make_connector()
        body = json.dumps({"event_type": "x"}).encode()
        assert client.post(f"/webhooks/{c.id}", content=body).status_code == 401
        bad = client.post(f"/webhooks/{c.id}", content=body, headers={"X-Signature": sign_payload(body, "wrong")})
        assert bad.status_code == 401
        ok = client.post(f"/webhooks/{c.id}", content=body, headers={"X-Signature": sign_payload(body, "s3cret")})
        assert ok.status_code == 202


class TestJobs:
    def test_trigger_get_and_cancel(self, client, make_connector):
        c = make_connector()
        job = client.post(f"/connectors/{c.id}/sync", json={"job_type": "FULL", "triggered_by": "ops"})
        assert job.status_code == 202
        job_id = job.json()["id"]
        assert client.get(f"/jobs/{job_id}").json()["status"] == "PENDING"
        cancelled = client.post(f"/jobs/{job_id}/cancel", json={"actor": "ops"})
        assert cancelled.json()["status"] == "CANCELLED"
        assert client.post(f"/jobs/{job_id}/cancel", json={}).status_code == 409

    def test_missing_job(self, client):
        assert client.get("/jobs/999").status_code == 404

    def test_deprecated_connector_rejected(self, client, engine, make_connector):
        c = make_connector()
        engine.registry.deprecate(c.id, "retired")
        assert client.post(f"/connectors/{c.id}/sync", json={}).status_code == 422

    def test_health_check(self, client, make_connector):
        c = make_connector()
        body = client.post(f"/connectors/{c.id}/health-check").json()
        assert body["health"] == "HEALTHY"
        assert body["job"]["status"] == "COMPLETED"


class TestEvents:
    def test_quarantine_then_replay(self, client, engine, make_connector):
        policy = engine.policy.add_policy({"name": "hold", "enforcement_mode": EnforcementMode.QUARANTINE})
        c = make_connector()
        event_id = client.post(f"/webhooks/{c.id}", json={"event_type": "x"}).json()["event_id"]
        assert client.get(f"/events/{event_id}").json()["status"] == "QUARANTINED"
        engine.policy.set_enabled(policy.id, False)
        assert client.post(f"/events/{event_id}/replay", json={"actor": "ops"}).json()["status"] == "PENDING"
        assert client.get("/events/stats").json()["PENDING"] == 1

    def test_replay_completed_conflicts(self, client, make_connector):
        c = make_connector()
        event_id = client.post(f"/webhooks/{c.id}", json={"event_type": "x"}).json()["event_id"]
        assert client.post(f"/events/{event_id}/replay", json={}).status_code == 409

    def test_dead_letter(self, client, engine):
        ev = engine.pipeline.ingest({"event_type": "x", "source": "hr"})
        body = client.post(f"/events/{ev.id}/dead-letter", json={"reason": "poison"}).json()
        assert body["status"] == "DEAD_LETTER"
        assert body["dead_letter_queue"] is True


class TestOps:
    def test_health_and_metrics(self, client):
        assert client.get("/health").json() == {"db": True, "status": "ok"}
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["X-Correlation-ID"]
