from __future__ import annotations

import logging
import os
import socket
import uuid
from typing import Any

from .clock import Clock, SystemClock, TimePolicy
from .config import Config
from .models import HealthRunResult, MonitorRunResult
from .monitor.auto_fixer import FixContext, run_fix_pass
from .monitor.health_checks import run_all_health_checks
from .monitor.issue_detector import create_issues, run_detectors
from .monitor.report import build_health_report_html, build_health_report_subject
from .monitor.retry import RetryPolicy
from .services.background import BackgroundTasks
from .services.remediation import RemediationClient, RemediationError
from .services.story_generator import StoryGenerator
from .storage import record_cron_execution, release_lease, try_acquire_lease
from .utils import isoformat_utc, log_event

JOB_DAILY_HEALTH = "check-daily-health"
JOB_MONITOR = "monitor-and-fix"


def _lease_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _check_summary(run: HealthRunResult) -> list[dict[str, Any]]:
    return [
        {
            "name": result.name,
            "status": result.status.value,
            "total": result.total,
            "passing": result.passing,
            "failing": result.failing,
        }
        for result in run.results
    ]


def run_daily_health_check(
    conn: Any,
    config: Config,
    clock: Clock | None = None,
    client: RemediationClient | None = None,
    triggered_by: str = "cron",
    logger: logging.Logger | None = None,
) -> HealthRunResult:
    """Run every health check, file issues, and mail the report to the admin address."""
    clock = clock or SystemClock()
    logger = logger or logging.getLogger("cronwatch.runner")
    policy = TimePolicy.from_config(config, clock)
    started = clock.now()
    run = HealthRunResult(started_at=isoformat_utc(started))
    log_event(logger, logging.INFO, "health_run_start", triggered_by=triggered_by)

    try:
        run.results = run_all_health_checks(conn, config, policy, logger=logger)
        detected = [issue for result in run.results for issue in result.issues]
        run.new_issues = create_issues(
            conn, detected, config.retry.max_retries, clock.now(), logger=logger
        )

        duration = (clock.now() - started).total_seconds()
        report_date = policy.local_today(config.app.timezone)
        run.subject = build_health_report_subject(run.results, report_date, config.app.name)
        run.html = build_health_report_html(
            run.results,
            report_date,
            duration,
            config.app.dashboard_url,
            config.app.name,
            issues_created=len(run.new_issues),
        )
        if config.app.admin_email and client is not None:
            try:
                response = client.send_email(config.app.admin_email, run.subject, run.html)
                run.email_sent = bool(response.get("success"))
            except RemediationError as exc:
                log_event(logger, logging.WARNING, "health_report_send_failed", error=str(exc))
                run.errors.append(f"report email: {exc}")
    except Exception as exc:  # noqa: BLE001
        run.completed_at = isoformat_utc(clock.now())
        record_cron_execution(
            conn,
            JOB_DAILY_HEALTH,
            started_at=run.started_at,
            completed_at=run.completed_at,
            success=False,
            errors=[str(exc) or exc.__class__.__name__],
            metadata={"checks": _check_summary(run), "issues_created": len(run.new_issues)},
            triggered_by=triggered_by,
        )
        log_event(logger, logging.ERROR, "health_run_failed", error=str(exc))
        raise

    run.completed_at = isoformat_utc(clock.now())
    record_cron_execution(
        conn,
        JOB_DAILY_HEALTH,
        started_at=run.started_at,
        completed_at=run.completed_at,
        success=True,
        items_processed=len(run.new_issues),
        errors=run.errors,
        metadata={
            "checks": _check_summary(run),
            "issues_created": len(run.new_issues),
            "email_sent": run.email_sent,
        },
        triggered_by=triggered_by,
    )
    log_event(
        logger,
        logging.INFO,
        "health_run_complete",
        issues_created=len(run.new_issues),
        email_sent=run.email_sent,
    )
    return run


def run_monitor_and_fix(
    conn: Any,
    config: Config,
    clock: Clock | None = None,
    client: RemediationClient | None = None,
    background: BackgroundTasks | None = None,
    triggered_by: str = "cron",
    logger: logging.Logger | None = None,
) -> MonitorRunResult:
    """Detect new issues, then attempt fixes for issues that predate this run.

    Only one run holds the ``monitor-and-fix`` lease at a time; a run that
    cannot take it returns immediately with ``lease_acquired=False``.
    """
    clock = clock or SystemClock()
    logger = logger or logging.getLogger("cronwatch.runner")
    client = client or RemediationClient.from_config(config)
    policy = TimePolicy.from_config(config, clock)
    started = clock.now()
    result = MonitorRunResult(started_at=isoformat_utc(started))

    holder = _lease_holder()
    if not try_acquire_lease(conn, JOB_MONITOR, holder, config.fixes.lease_ttl_seconds, now=started):
        log_event(logger, logging.INFO, "monitor_lease_busy", holder=holder)
        result.lease_acquired = False
        result.completed_at = isoformat_utc(clock.now())
        return result

    owns_background = background is None
    background = background or BackgroundTasks(logger=logger)
    try:
        detected, detector_errors = run_detectors(conn, config, policy, logger=logger)
        result.new_issues = create_issues(
            conn, detected, config.retry.max_retries, clock.now(), logger=logger
        )
        result.issues_detected = len(result.new_issues)

        ctx = FixContext(
            conn=conn,
            config=config,
            policy=policy,
            retry=RetryPolicy.from_config(config),
            client=client,
            stories=StoryGenerator(client),
            background=background,
            logger=logger,
        )
        fix_pass = run_fix_pass(ctx, run_started_at=started)
        result.fix_attempts = fix_pass.attempts
        result.issues_fixed = fix_pass.fixed
        result.issues_failed = fix_pass.failed
        result.issues_skipped = fix_pass.skipped
        result.background = background.drain(config.fixes.background_timeout_seconds)
        result.completed_at = isoformat_utc(clock.now())
        record_cron_execution(
            conn,
            JOB_MONITOR,
            started_at=result.started_at,
            completed_at=result.completed_at,
            success=True,
            items_processed=result.issues_fixed,
            errors=detector_errors,
            metadata={
                "issues_detected": result.issues_detected,
                "issues_fixed": result.issues_fixed,
                "issues_failed": result.issues_failed,
                "issues_skipped": result.issues_skipped,
                "claims_released": fix_pass.released_claims,
                "background": result.background,
            },
            triggered_by=triggered_by,
        )
    except Exception as exc:  # noqa: BLE001
        result.completed_at = isoformat_utc(clock.now())
        record_cron_execution(
            conn,
            JOB_MONITOR,
            started_at=result.started_at,
            completed_at=result.completed_at,
            success=False,
            errors=[str(exc) or exc.__class__.__name__],
            metadata={
                "issues_detected": result.issues_detected,
                "issues_fixed": result.issues_fixed,
                "issues_failed": result.issues_failed,
            },
            triggered_by=triggered_by,
        )
        log_event(logger, logging.ERROR, "monitor_run_failed", error=str(exc))
        raise
    finally:
        if owns_background:
            background.shutdown()
        release_lease(conn, JOB_MONITOR, holder)

    log_event(
        logger,
        logging.INFO,
        "monitor_run_complete",
        detected=result.issues_detected,
        fixed=result.issues_fixed,
        failed=result.issues_failed,
        skipped=result.issues_skipped,
    )
    return result
