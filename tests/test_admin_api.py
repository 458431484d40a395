import copy
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from cronwatch.admin import app
from cronwatch.config import DEFAULT_CONFIG
from cronwatch.issue_store import get_issue, insert_issue, mark_resolved, record_fix_failure
from cronwatch.models import DetectedIssue, IssueStatus, IssueType, MonitorRunResult
from cronwatch.storage import init_db

NOW = datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)
HEADERS = {"X-Admin-Token": "secret"}


def _seed_issue(issue_type=IssueType.MISSING_BRIEF, **scope):
    conn = init_db()
    detected = DetectedIssue(
        issue_type=issue_type,
        description="No daily brief for Tribeca",
        auto_fixable=True,
        **(scope or {"neighborhood_id": "tribeca"}),
    )
    issue = insert_issue(conn, detected, max_retries=3, now=NOW)
    return conn, issue


def test_health_is_public(monkeypatch):
    monkeypatch.setenv("CW_ADMIN_TOKEN", "secret")
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_admin_endpoints_require_token(monkeypatch):
    monkeypatch.setenv("CW_ADMIN_TOKEN", "secret")
    client = TestClient(app)
    assert client.get("/issues").status_code == 401
    assert client.get("/issues", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/issues", headers=HEADERS).status_code == 200


def test_issue_listing_and_detail(monkeypatch):
    monkeypatch.setenv("CW_ADMIN_TOKEN", "secret")
    _, issue = _seed_issue()
    client = TestClient(app)

    response = client.get("/issues", params={"status": "open"}, headers=HEADERS)
    assert response.status_code == 200
    payload = response.json()
    assert [item["id"] for item in payload["issues"]] == [issue.id]
    assert payload["issues"][0]["dedup_key"] == "missing_brief:tribeca"
    assert payload["counts"]["open"] == 1

    response = client.get("/issues", params={"status": "bogus"}, headers=HEADERS)
    assert response.status_code == 400

    response = client.get(f"/issues/{issue.id}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "open"
    assert response.json()["diagnosis"] is None

    assert client.get("/issues/missing", headers=HEADERS).status_code == 404


def test_issue_actions(monkeypatch):
    monkeypatch.setenv("CW_ADMIN_TOKEN", "secret")
    conn, issue = _seed_issue()
    record_fix_failure(conn, issue.id, "still failing", IssueStatus.NEEDS_MANUAL, 3, None, NOW)
    assert get_issue(conn, issue.id).status == IssueStatus.NEEDS_MANUAL
    client = TestClient(app)

    response = client.post(f"/issues/{issue.id}/retry", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "open"
    assert response.json()["retry_count"] == 2

    response = client.post(f"/issues/{issue.id}/reopen", headers=HEADERS)
    assert response.json()["retry_count"] == 0

    response = client.post(
        f"/issues/{issue.id}/resolve", json={"resolution": "Brief written by hand"}, headers=HEADERS
    )
    assert response.status_code == 200
    assert response.json()["status"] == "resolved"
    assert response.json()["fix_result"] == "Brief written by hand"

    assert client.post("/issues/missing/resolve", headers=HEADERS).status_code == 404


def test_reactivating_a_duplicate_is_a_conflict(monkeypatch):
    monkeypatch.setenv("CW_ADMIN_TOKEN", "secret")
    conn, old = _seed_issue()
    mark_resolved(conn, old.id, NOW)
    _, current = _seed_issue()
    client = TestClient(app)

    for action in ("retry", "reopen"):
        response = client.post(f"/issues/{old.id}/{action}", headers=HEADERS)
        assert response.status_code == 409
        assert "missing_brief:tribeca" in response.json()["detail"]
    assert get_issue(conn, old.id).status == IssueStatus.RESOLVED
    assert get_issue(conn, current.id).status == IssueStatus.OPEN


def test_runtime_config_get_put(monkeypatch):
    monkeypatch.setenv("CW_ADMIN_TOKEN", "secret")
    client = TestClient(app)

    response = client.get("/admin/config/runtime", headers=HEADERS)
    assert response.status_code == 200
    config = response.json()["config"]
    assert config["app"]["name"] == DEFAULT_CONFIG["app"]["name"]

    updated = copy.deepcopy(config)
    updated["app"]["admin_email"] = "ops@example.com"
    response = client.put("/admin/config/runtime", json={"config": updated}, headers=HEADERS)
    assert response.status_code == 200

    response = client.get("/admin/config/runtime", headers=HEADERS)
    assert response.json()["config"]["app"]["admin_email"] == "ops@example.com"

    response = client.put(
        "/admin/config/runtime", json={"config": {"app": {"name": "Bad"}}}, headers=HEADERS
    )
    assert response.status_code == 400


def test_cron_endpoints_require_secret(monkeypatch):
    client = TestClient(app)
    assert client.post("/cron/monitor-and-fix").status_code == 503

    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    assert client.post("/cron/monitor-and-fix").status_code == 401
    assert (
        client.post("/cron/monitor-and-fix", headers={"Authorization": "Bearer nope"}).status_code
        == 401
    )


def test_cron_monitor_and_fix_summary(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    calls = []

    def fake_run(conn, config, triggered_by="cron"):
        calls.append(triggered_by)
        return MonitorRunResult(
            started_at="2026-10-19T14:00:00+00:00",
            completed_at="2026-10-19T14:00:05+00:00",
            issues_detected=2,
            issues_fixed=1,
        )

    monkeypatch.setattr("cronwatch.admin.run_monitor_and_fix", fake_run)
    client = TestClient(app)
    response = client.post("/cron/monitor-and-fix", headers={"Authorization": "Bearer cron-secret"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["lease_acquired"] is True
    assert payload["issues_detected"] == 2
    assert payload["issues_fixed"] == 1
    assert calls == ["api"]


def test_cron_failure_returns_500(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "cron-secret")

    def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr("cronwatch.admin.run_daily_health_check", broken)
    client = TestClient(app)
    response = client.post("/cron/check-daily-health", headers={"Authorization": "Bearer cron-secret"})
    assert response.status_code == 500
    assert "database went away" in response.json()["detail"]
