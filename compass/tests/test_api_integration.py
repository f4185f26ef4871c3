"""HTTP-level tests for the FastAPI app.

Uses TestClient against an in-memory database shared through StaticPool.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from compass.llm import LLMInsightProvider
from compass.models import Base

ALICE = {"X-Tenant-Id": "acme", "X-User-Id": "alice"}
BOB = {"X-Tenant-Id": "acme", "X-User-Id": "bob"}
OTHER_TENANT = {"X-Tenant-Id": "globex", "X-User-Id": "alice"}


@pytest.fixture()
def test_db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database and a disabled provider."""
    monkeypatch.setenv("COMPASS_DB_PATH", str(tmp_path / "lifespan.db"))
    monkeypatch.delenv("DEFAULT_TENANT_ID", raising=False)
    _, TestSession = test_db
    from compass.app import app, authz_mode, db_session, insight_provider

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[insight_provider] = lambda: LLMInsightProvider(enabled=False)
    app.dependency_overrides[authz_mode] = lambda: "tenant_open"
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def objective_id(client) -> str:
    resp = client.post("/api/objectives", headers=ALICE, json={
        "statement": "Grow the community", "start_date": "2026-01-01", "end_date": "2026-03-31",
    })
    assert resp.status_code == 201
    return resp.json()["id"]


def _create_kr(client, objective_id, **body):
    payload = {"title": "Reach 100 sign-ups", "target_value": 100}
    payload.update(body)
    return client.post(f"/api/objectives/{objective_id}/key-results", headers=ALICE, json=payload)


class TestObjectiveEndpoints:
    def test_create_returns_initial_insight(self, client):
        resp = client.post("/api/objectives", headers=ALICE, json={
            "statement": "Grow the community", "start_date": "2026-01-01", "end_date": "2026-03-31",
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "draft"
        assert data["insight"]["explanation_short"] == "no KRs"
        assert data["key_results"] == []

    def test_user_header_required(self, client):
        assert client.get("/api/objectives").status_code == 422
        assert client.get("/api/objectives", headers={"X-Tenant-Id": "acme"}).status_code == 422

    def test_missing_tenant_header_uses_default_tenant(self, client):
        user_only = {"X-User-Id": "alice"}
        resp = client.post("/api/objectives", headers=user_only, json={
            "statement": "Default tenant goal", "start_date": "2026-01-01", "end_date": "2026-03-31",
        })
        assert resp.status_code == 201
        listed = client.get("/api/objectives", headers=user_only).json()
        assert [o["id"] for o in listed] == [resp.json()["id"]]
        assert client.get("/api/objectives", headers=ALICE).json() == []

    def test_invalid_dates(self, client):
        resp = client.post("/api/objectives", headers=ALICE, json={
            "statement": "Grow the community", "start_date": "2026-05-01", "end_date": "2026-03-31",
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "objective_validation_failed"
        assert resp.json()["issues"][0]["code"] == "dates_invalid"

    def test_list_and_get(self, client, objective_id):
        resp = client.get("/api/objectives", headers=ALICE)
        assert resp.status_code == 200
        assert [o["id"] for o in resp.json()] == [objective_id]
        detail = client.get(f"/api/objectives/{objective_id}", headers=ALICE).json()
        assert detail["statement"] == "Grow the community"

    def test_list_carries_board_summary(self, client, objective_id):
        kr_id = _create_kr(client, objective_id).json()["key_result"]["id"]
        client.post(f"/api/key-results/{kr_id}/checkins", headers=ALICE, json={"value": 50})
        summary = client.get("/api/objectives", headers=ALICE).json()[0]["summary"]
        assert summary["kr_count"] == 1
        assert summary["avg_progress_pct"] == 50.0
        assert summary["overall_health"] == "at_risk"
        assert summary["health_counts"]["at_risk"] == 1

    def test_tenant_isolation(self, client, objective_id):
        assert client.get("/api/objectives", headers=OTHER_TENANT).json() == []
        resp = client.get(f"/api/objectives/{objective_id}", headers=OTHER_TENANT)
        assert resp.status_code == 404
        assert resp.json() == {"error": "objective_not_found"}

    def test_status_update(self, client, objective_id):
        resp = client.put(f"/api/objectives/{objective_id}/status", headers=ALICE,
                          json={"status": "active"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"
        bad = client.put(f"/api/objectives/{objective_id}/status", headers=ALICE,
                         json={"status": "archived"})
        assert bad.status_code == 422

    def test_non_owner_cannot_delete(self, client, objective_id):
        resp = client.delete(f"/api/objectives/{objective_id}", headers=BOB)
        assert resp.status_code == 403
        assert resp.json() == {"error": "forbidden"}
        assert client.delete(f"/api/objectives/{objective_id}", headers=ALICE).json()["ok"] is True
        assert client.get(f"/api/objectives/{objective_id}", headers=ALICE).status_code == 404


class TestKeyResultEndpoints:
    def test_scenario_through_http(self, client, objective_id):
        resp = _create_kr(client, objective_id)
        assert resp.status_code == 201
        kr = resp.json()["key_result"]
        assert kr["health"] == "no_checkins"
        assert kr["insight"]["explanation_short"] == "no check-ins recorded"
        insight = client.get(f"/api/objectives/{objective_id}/insight", headers=ALICE).json()
        assert insight["explanation_short"] == "at risk due to critical KRs"

        resp = client.post(f"/api/key-results/{kr['id']}/checkins", headers=ALICE, json={"value": 80})
        assert resp.status_code == 201
        kr_insight = client.get(f"/api/key-results/{kr['id']}/insight", headers=ALICE).json()
        assert (kr_insight["explanation_short"], kr_insight["risk"]) == ("on track", "low")
        insight = client.get(f"/api/objectives/{objective_id}/insight", headers=ALICE).json()
        assert insight["explanation_short"] == "on track"
        assert insight["source"] == "rules"

    def test_validation_failure(self, client, objective_id):
        resp = _create_kr(client, objective_id, title="KR", target_value=None)
        assert resp.status_code == 400
        assert resp.json()["error"] == "kr_validation_failed"
        codes = {i["code"] for i in resp.json()["issues"]}
        assert codes == {"kr_title_short", "kr_target_missing"}

    def test_allow_high(self, client, objective_id):
        resp = _create_kr(client, objective_id, target_value=None, allow_high=True)
        assert resp.status_code == 201
        assert resp.json()["issues"][0]["code"] == "kr_target_missing"
        assert resp.json()["key_result"]["health"] == "no_target"

    def test_completed_kr_conflict(self, client, objective_id):
        kr_id = _create_kr(client, objective_id).json()["key_result"]["id"]
        client.post(f"/api/key-results/{kr_id}/checkins", headers=ALICE, json={"value": 150})
        resp = client.post(f"/api/key-results/{kr_id}/checkins", headers=ALICE, json={"value": 10})
        assert resp.status_code == 409
        assert resp.json()["error"] == "kr_already_completed"

    def test_delete_info_and_delete(self, client, objective_id):
        kr_id = _create_kr(client, objective_id).json()["key_result"]["id"]
        client.post(f"/api/key-results/{kr_id}/checkins", headers=ALICE, json={"value": 10})
        info = client.get(f"/api/key-results/{kr_id}/delete-info", headers=ALICE).json()
        assert info == {"key_result_id": kr_id, "checkins_count": 1}
        resp = client.delete(f"/api/key-results/{kr_id}", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["checkins_count"] == 1
        insight = client.get(f"/api/objectives/{objective_id}/insight", headers=ALICE).json()
        assert insight["explanation_short"] == "no KRs"
        assert client.get(f"/api/key-results/{kr_id}/checkins", headers=ALICE).status_code == 404

    def test_delete_info_hidden_from_non_members(self, client, objective_id):
        from compass.app import app, authz_mode

        kr_id = _create_kr(client, objective_id).json()["key_result"]["id"]
        app.dependency_overrides[authz_mode] = lambda: "members_only"
        resp = client.get(f"/api/key-results/{kr_id}/delete-info", headers=BOB)
        assert resp.status_code == 403
        assert resp.json() == {"error": "forbidden"}
        assert client.get(f"/api/key-results/{kr_id}/delete-info", headers=ALICE).status_code == 200

    def test_unknown_kr(self, client):
        resp = client.post("/api/key-results/missing/checkins", headers=ALICE, json={"value": 1})
        assert resp.status_code == 404
        assert resp.json() == {"error": "kr_not_found"}


class TestAlignmentEndpoints:
    def test_link_and_cycle(self, client, objective_id):
        child = client.post("/api/objectives", headers=ALICE, json={
            "statement": "Run two meetups", "start_date": "2026-01-01", "end_date": "2026-02-28",
        }).json()["id"]
        resp = client.post(f"/api/objectives/{child}/alignment", headers=ALICE,
                           json={"parent_objective_id": objective_id})
        assert resp.status_code == 201
        assert [o["id"] for o in resp.json()["aligned_to"]] == [objective_id]

        resp = client.post(f"/api/objectives/{objective_id}/alignment", headers=ALICE,
                           json={"parent_objective_id": child})
        assert resp.status_code == 400
        assert resp.json() == {"error": "cycle_detected"}

        resp = client.delete(f"/api/objectives/{child}/alignment/{objective_id}", headers=ALICE)
        assert resp.status_code == 200
        assert client.get(f"/api/objectives/{child}/alignment", headers=ALICE).json()["aligned_to"] == []

    def test_self_link(self, client, objective_id):
        resp = client.post(f"/api/objectives/{objective_id}/alignment", headers=ALICE,
                           json={"parent_objective_id": objective_id})
        assert resp.status_code == 400
        assert resp.json() == {"error": "self_link"}


class TestMemberEndpoints:
    def test_member_flow(self, client, objective_id):
        resp = client.post(f"/api/objectives/{objective_id}/members", headers=ALICE,
                           json={"user_id": "bob", "role": "editor"})
        assert resp.json() == {"status": "created"}
        members = client.get(f"/api/objectives/{objective_id}/members", headers=ALICE).json()
        assert {(m["user_id"], m["role"]) for m in members} == {("alice", "owner"), ("bob", "editor")}

        resp = client.post(f"/api/objectives/{objective_id}/members", headers=BOB,
                           json={"user_id": "carol", "role": "viewer"})
        assert resp.status_code == 403

    def test_invalid_role(self, client, objective_id):
        resp = client.post(f"/api/objectives/{objective_id}/members", headers=ALICE,
                           json={"user_id": "bob", "role": "admin"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "invalid_role"}

    def test_last_owner(self, client, objective_id):
        resp = client.put(f"/api/objectives/{objective_id}/members/alice", headers=ALICE,
                          json={"role": "viewer"})
        assert resp.status_code == 403
        assert resp.json() == {"error": "last_owner"}
        resp = client.delete(f"/api/objectives/{objective_id}/members/alice", headers=ALICE)
        assert resp.status_code == 403


class TestValidationEndpoints:
    def test_ai_status_when_disabled(self, client):
        data = client.get("/api/ai/status").json()
        assert (data["enabled"], data["ok"]) == (False, False)
        assert data["checked_at"]

    def test_okr_validate_uses_rules_without_provider(self, client):
        resp = client.post("/api/objectives/validate", headers=ALICE, json={
            "statement": "Grow the community", "start_date": "2026-01-01", "end_date": "2026-03-31",
            "key_results": [{"title": "Reach 100 sign-ups"}],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["source"] == "rules"
        assert [i["code"] for i in data["issues"]] == ["kr_target_missing"]
        assert len(data["fingerprint"]) == 64

    def test_kr_validate_uses_rules_without_provider(self, client):
        resp = client.post("/api/key-results/validate", headers=ALICE, json={"title": "KR", "target_value": 5})
        assert resp.status_code == 200
        assert resp.json()["source"] == "rules"
        assert [i["code"] for i in resp.json()["issues"]] == ["kr_title_short"]

    def test_validate_requires_user(self, client):
        assert client.post("/api/key-results/validate", json={"title": "Reach 100"}).status_code == 422
