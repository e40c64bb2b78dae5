"""Tests for the HTTP API (FastAPI TestClient, fake LLM + fake content store)."""

import time
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app import Services, app
from config.settings import Settings
from pipeline.call_sync import call_id_for_file
from pipeline.orchestrator import AnalysisOrchestrator
from services.store.analyses import AnalysisStore
from services.store.calls import CallStore
from fakes import SAMPLE_FILENAME, SAMPLE_TRANSCRIPT, VALID_ANALYSIS_JSON, FakeAnalyzer, FakeContentStore

JANE = {"X-User-Id": "u1", "X-User-Email": "jane@example.com"}
STRANGER = {"X-User-Id": "u9", "X-User-Email": "stranger@x.com"}
CALL_ID = call_id_for_file(SAMPLE_FILENAME)
RANGE = {"from": "2025-01-01", "to": "2025-01-07"}


@pytest.fixture
def services():
    settings = Settings(data_dir="", analysis_call_timeout_ms=2_000, background_analysis_timeout_ms=5_000)
    calls, analyses = CallStore(), AnalysisStore()
    content = FakeContentStore({SAMPLE_FILENAME: SAMPLE_TRANSCRIPT})
    orchestrator = AnalysisOrchestrator(analyses, calls, content, FakeAnalyzer(VALID_ANALYSIS_JSON), settings)
    svc = Services(settings, content, calls, analyses, orchestrator)
    app.state.services = svc
    yield svc
    app.state.services = None


@pytest.fixture
def client(services):
    with patch("app.validate_at_startup"), TestClient(app) as c:
        yield c


def wait_for_terminal(client, analysis_id, headers=JANE, timeout_s=5.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        body = client.get(f"/api/analyses/{analysis_id}/status", headers=headers).json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"{analysis_id} did not finish")


# ── Health & identity ──

class TestBasics:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["model"] == "fake-model"

    def test_missing_identity_is_401(self, client):
        resp = client.get("/api/calls")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Missing user identity", "code": "UNAUTHORIZED"}

    def test_unexpected_error_is_500(self, services):
        services.orchestrator.get_status = AsyncMock(side_effect=RuntimeError("kaboom"))
        c = TestClient(app, raise_server_exceptions=False)
        resp = c.get(f"/api/calls/{CALL_ID}/analysis/status", headers=JANE)
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


# ── Calls ──

class TestCalls:
    def test_list_calls_syncs_and_filters(self, client):
        resp = client.get("/api/calls", params=RANGE, headers=JANE)
        assert resp.status_code == 200
        body = resp.json()
        assert [c["id"] for c in body] == [CALL_ID]
        assert body[0]["has_analysis"] is False

    def test_list_calls_other_user_sees_nothing(self, client):
        resp = client.get("/api/calls", params=RANGE, headers=STRANGER)
        assert resp.json() == []

    def test_list_calls_bad_date(self, client):
        resp = client.get("/api/calls", params={"from": "yesterday"}, headers=JANE)
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    def test_get_call(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)
        resp = client.get(f"/api/calls/{CALL_ID}", headers=JANE)
        assert resp.status_code == 200
        assert resp.json()["title"] == "Acme - Onboarding Planning"

    def test_get_call_forbidden_and_missing(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)
        assert client.get(f"/api/calls/{CALL_ID}", headers=STRANGER).status_code == 403
        resp = client.get("/api/calls/unknown", headers=JANE)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"


# ── Analysis ──

class TestAnalysis:
    def test_status_none_before_trigger(self, client):
        resp = client.get(f"/api/calls/{CALL_ID}/analysis/status", headers=JANE)
        assert resp.json() == {"status": "none", "error": None}

    def test_trigger_poll_and_read(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)

        resp = client.post(f"/api/calls/{CALL_ID}/analyze", headers=JANE)
        assert resp.status_code == 202
        analysis_id = resp.json()["analysis_id"]
        assert analysis_id == f"{CALL_ID}_u1_v1"

        assert wait_for_terminal(client, analysis_id)["status"] == "completed"

        resp = client.get(f"/api/calls/{CALL_ID}/analysis", headers=JANE)
        assert resp.status_code == 200
        body = resp.json()
        assert body["version"] == 1
        assert body["status"] == "completed"
        assert body["result"]["call_type"] == "Onboarding"

        listed = client.get("/api/calls", params=RANGE, headers=JANE).json()
        assert listed[0]["has_analysis"] is True
        assert listed[0]["deal_stage"] == "Existing customer"

    def test_reanalysis_bumps_version(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)
        first = client.post(f"/api/calls/{CALL_ID}/analyze", headers=JANE).json()["analysis_id"]
        wait_for_terminal(client, first)
        second = client.post(f"/api/calls/{CALL_ID}/analyze", headers=JANE).json()["analysis_id"]
        wait_for_terminal(client, second)

        assert second.endswith("_v2")
        assert client.get(f"/api/calls/{CALL_ID}/analysis", headers=JANE).json()["version"] == 2

    def test_trigger_forbidden_for_non_participant(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)
        resp = client.post(f"/api/calls/{CALL_ID}/analyze", headers=STRANGER)
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"

    def test_analysis_missing(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)
        resp = client.get(f"/api/calls/{CALL_ID}/analysis", headers=JANE)
        assert resp.status_code == 404

    def test_job_status_of_other_user_is_404(self, client):
        client.get("/api/calls", params=RANGE, headers=JANE)
        analysis_id = client.post(f"/api/calls/{CALL_ID}/analyze", headers=JANE).json()["analysis_id"]
        wait_for_terminal(client, analysis_id)

        resp = client.get(f"/api/analyses/{analysis_id}/status", headers=STRANGER)
        assert resp.status_code == 404
