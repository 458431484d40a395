from __future__ import annotations

import dataclasses
import hmac
import logging
import os
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .db import get_state_db_path
from .issue_store import (
    IssueConflictError,
    count_issues_by_status,
    force_retry,
    get_diagnosis,
    get_issue,
    list_issues,
    mark_resolved,
    reopen_issue,
)
from .models import Issue, IssueStatus, IssueType
from .runner import run_daily_health_check, run_monitor_and_fix
from .services.remediation import RemediationClient
from .storage import init_db
from .utils import configure_logging, log_event

app = FastAPI(title="Cronwatch Admin API")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("CW_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token") or ""
    if not hmac.compare_digest(header, token):
        raise HTTPException(status_code=401, detail="unauthorized")


def _require_cron_secret(request: Request) -> None:
    secret = os.environ.get("CRON_SECRET")
    if not secret:
        raise HTTPException(status_code=503, detail="cron_secret_not_configured")
    header = request.headers.get("Authorization") or ""
    if not hmac.compare_digest(header, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class ResolveRequest(BaseModel):
    resolution: str | None = None


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("cronwatch")
    except Exception:  # noqa: BLE001
        return "unknown"


def _issue_payload(issue: Issue) -> dict[str, object]:
    payload = dataclasses.asdict(issue)
    payload["issue_type"] = issue.issue_type.value
    payload["status"] = issue.status.value
    payload["dedup_key"] = issue.dedup_key
    return payload


def _load_issue_or_404(conn, issue_id: str) -> Issue:
    issue = get_issue(conn, issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail="issue_not_found")
    return issue


@app.on_event("startup")
def _startup() -> None:
    configure_logging("cronwatch.admin")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "Cronwatch Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/issues", dependencies=[Depends(_require_admin_token)])
def issues_list(
    status: str | None = None,
    issue_type: str | None = None,
    limit: int = 100,
) -> dict[str, object]:
    try:
        status_filter = IssueStatus(status) if status else None
        type_filter = IssueType(issue_type) if issue_type else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    conn = _get_conn()
    issues = list_issues(conn, status=status_filter, issue_type=type_filter, limit=limit)
    return {
        "issues": [_issue_payload(issue) for issue in issues],
        "counts": count_issues_by_status(conn),
    }


@app.get("/issues/{issue_id}", dependencies=[Depends(_require_admin_token)])
def issues_get(issue_id: str) -> dict[str, object]:
    conn = _get_conn()
    issue = _load_issue_or_404(conn, issue_id)
    payload = _issue_payload(issue)
    diagnosis = get_diagnosis(conn, issue.id)
    payload["diagnosis"] = dataclasses.asdict(diagnosis) if diagnosis else None
    return payload


@app.post("/issues/{issue_id}/resolve", dependencies=[Depends(_require_admin_token)])
def issues_resolve(issue_id: str, payload: ResolveRequest | None = None) -> dict[str, object]:
    conn = _get_conn()
    _load_issue_or_404(conn, issue_id)
    resolution = (payload.resolution if payload else None) or "Manually resolved"
    mark_resolved(conn, issue_id, datetime.now(tz=timezone.utc), resolution=resolution)
    log_event(logging.getLogger("cronwatch.admin"), logging.INFO, "issue_resolved", issue_id=issue_id)
    return _issue_payload(_load_issue_or_404(conn, issue_id))


@app.post("/issues/{issue_id}/retry", dependencies=[Depends(_require_admin_token)])
def issues_retry(issue_id: str) -> dict[str, object]:
    conn = _get_conn()
    _load_issue_or_404(conn, issue_id)
    try:
        force_retry(conn, issue_id, datetime.now(tz=timezone.utc))
    except IssueConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    log_event(logging.getLogger("cronwatch.admin"), logging.INFO, "issue_retry_forced", issue_id=issue_id)
    return _issue_payload(_load_issue_or_404(conn, issue_id))


@app.post("/issues/{issue_id}/reopen", dependencies=[Depends(_require_admin_token)])
def issues_reopen(issue_id: str) -> dict[str, object]:
    conn = _get_conn()
    _load_issue_or_404(conn, issue_id)
    try:
        reopen_issue(conn, issue_id, datetime.now(tz=timezone.utc))
    except IssueConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    log_event(logging.getLogger("cronwatch.admin"), logging.INFO, "issue_reopened", issue_id=issue_id)
    return _issue_payload(_load_issue_or_404(conn, issue_id))


@app.post("/cron/check-daily-health", dependencies=[Depends(_require_cron_secret)])
def cron_check_daily_health() -> dict[str, object]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        run = run_daily_health_check(
            conn, config, client=RemediationClient.from_config(config), triggered_by="api"
        )
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=500, detail=f"health_check_failed: {exc}") from exc
    return {
        "success": True,
        "checks": [
            {
                "name": result.name,
                "status": result.status.value,
                "passing": result.passing,
                "failing": result.failing,
                "total": result.total,
            }
            for result in run.results
        ],
        "issues_created": len(run.new_issues),
        "email_sent": run.email_sent,
    }


@app.post("/cron/monitor-and-fix", dependencies=[Depends(_require_cron_secret)])
def cron_monitor_and_fix() -> dict[str, object]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        result = run_monitor_and_fix(conn, config, triggered_by="api")
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=500, detail=f"monitor_failed: {exc}") from exc
    return {
        "lease_acquired": result.lease_acquired,
        "started_at": result.started_at,
        "completed_at": result.completed_at,
        "issues_detected": result.issues_detected,
        "issues_fixed": result.issues_fixed,
        "issues_failed": result.issues_failed,
        "issues_skipped": result.issues_skipped,
        "fix_attempts": [
            {
                "issue_id": attempt.issue_id,
                "issue_type": attempt.issue_type.value,
                "success": attempt.success,
                "message": attempt.message,
                "status": attempt.status.value,
            }
            for attempt in result.fix_attempts
        ],
        "background": result.background,
    }
