from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from datetime import timezone

from .clock import Clock, FixedClock, SystemClock
from .config import (
    ConfigError,
    dump_config_yaml,
    get_runtime_config,
    import_config_file,
    load_runtime_config,
)
from .db import get_state_db_path
from .issue_store import (
    IssueConflictError,
    force_retry,
    get_diagnosis,
    get_issue,
    list_issues,
    mark_resolved,
    reopen_issue,
)
from .models import IssueStatus, IssueType
from .runner import run_daily_health_check, run_monitor_and_fix
from .services.remediation import RemediationClient
from .storage import init_db
from .utils import configure_logging, log_event, parse_iso


def _clock(args: argparse.Namespace) -> Clock:
    if not args.now:
        return SystemClock()
    instant = parse_iso(args.now)
    if instant is None:
        raise ConfigError(f"--now is not an ISO-8601 timestamp: {args.now}")
    return FixedClock(instant.astimezone(timezone.utc))


def _open(args: argparse.Namespace):
    return init_db(args.db or get_state_db_path())


def _cmd_check_health(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        config = load_runtime_config(conn)
        clock = _clock(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    client = None if args.no_email else RemediationClient.from_config(config)
    run = run_daily_health_check(conn, config, clock=clock, client=client, triggered_by="cli", logger=logger)
    if args.report_out:
        try:
            with open(args.report_out, "w", encoding="utf-8") as handle:
                handle.write(run.html)
        except OSError as exc:
            log_event(logger, logging.ERROR, "report_write_error", error=str(exc))
            return 1
        log_event(logger, logging.INFO, "report_written", path=args.report_out)
    for result in run.results:
        log_event(
            logger,
            logging.INFO,
            "check",
            name=json.dumps(result.name),
            status=result.status.value,
            passing=result.passing,
            total=result.total,
        )
    log_event(logger, logging.INFO, "health_summary", subject=json.dumps(run.subject))
    return 0


def _cmd_monitor(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        config = load_runtime_config(conn)
        clock = _clock(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    result = run_monitor_and_fix(conn, config, clock=clock, triggered_by="cli", logger=logger)
    if not result.lease_acquired:
        log_event(logger, logging.WARNING, "monitor_skipped", reason="lease_held")
        return 2
    for attempt in result.fix_attempts:
        log_event(
            logger,
            logging.INFO,
            "fix",
            issue_id=attempt.issue_id,
            issue_type=attempt.issue_type.value,
            success=attempt.success,
            status=attempt.status.value,
        )
    return 0


def _cmd_issues_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    issues = list_issues(
        conn,
        status=IssueStatus(args.status) if args.status else None,
        issue_type=IssueType(args.type) if args.type else None,
        limit=args.limit,
    )
    if not issues:
        log_event(logger, logging.INFO, "no_issues")
        return 0
    for issue in issues:
        log_event(
            logger,
            logging.INFO,
            "issue",
            issue_id=issue.id,
            issue_type=issue.issue_type.value,
            status=issue.status.value,
            retries=f"{issue.retry_count}/{issue.max_retries}",
            key=issue.dedup_key,
        )
    log_event(logger, logging.INFO, "issues_listed", count=len(issues))
    return 0


def _cmd_issues_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    issue = get_issue(conn, args.issue_id)
    if issue is None:
        log_event(logger, logging.ERROR, "issue_not_found", issue_id=args.issue_id)
        return 1
    payload = dataclasses.asdict(issue)
    diagnosis = get_diagnosis(conn, issue.id)
    if diagnosis is not None:
        payload["diagnosis"] = dataclasses.asdict(diagnosis)
    logger.info(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _issue_action(action, event: str):
    def _cmd(args: argparse.Namespace, logger: logging.Logger) -> int:
        conn = _open(args)
        try:
            clock = _clock(args)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 1
        try:
            found = action(conn, args.issue_id, clock.now())
        except IssueConflictError as exc:
            log_event(logger, logging.ERROR, "issue_conflict", issue_id=args.issue_id, error=str(exc))
            return 1
        if not found:
            log_event(logger, logging.ERROR, "issue_not_found", issue_id=args.issue_id)
            return 1
        log_event(logger, logging.INFO, event, issue_id=args.issue_id)
        return 0

    return _cmd


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    logger.info(dump_config_yaml(cfg))
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        import_config_file(conn, args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = args.db or get_state_db_path()
    init_db(path)
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_api_start", host=args.host, port=args.port)
    uvicorn.run("cronwatch.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cronwatch", description="Cronwatch CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the SQLite state database (defaults to $CW_DATA_DIR/state.sqlite3)",
    )
    parser.add_argument(
        "--now",
        dest="now",
        default=None,
        help="Evaluate against a fixed ISO-8601 instant instead of the wall clock",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    health_parser = subparsers.add_parser("check-health", help="Run the daily health checks")
    health_parser.add_argument("--no-email", action="store_true", help="Do not send the report email")
    health_parser.add_argument("--report-out", default=None, help="Write the report HTML to this path")
    health_parser.set_defaults(func=_cmd_check_health)

    monitor_parser = subparsers.add_parser("monitor", help="Detect issues and attempt auto-fixes")
    monitor_parser.set_defaults(func=_cmd_monitor)

    issues_parser = subparsers.add_parser("issues", help="Inspect and manage tracked issues")
    issues_subparsers = issues_parser.add_subparsers(dest="issues_command", required=True)

    issues_list = issues_subparsers.add_parser("list", help="List issues, newest first")
    issues_list.add_argument("--status", choices=[status.value for status in IssueStatus])
    issues_list.add_argument("--type", choices=[issue_type.value for issue_type in IssueType])
    issues_list.add_argument("--limit", type=int, default=50)
    issues_list.set_defaults(func=_cmd_issues_list)

    issues_show = issues_subparsers.add_parser("show", help="Show one issue")
    issues_show.add_argument("issue_id")
    issues_show.set_defaults(func=_cmd_issues_show)

    for name, action, event, help_text in (
        ("resolve", mark_resolved, "issue_resolved", "Mark an issue resolved"),
        ("retry", force_retry, "issue_retry_forced", "Make an issue eligible on the next run"),
        ("reopen", reopen_issue, "issue_reopened", "Reopen an issue with a fresh retry budget"),
    ):
        action_parser = issues_subparsers.add_parser(name, help=help_text)
        action_parser.add_argument("issue_id")
        action_parser.set_defaults(func=_issue_action(action, event))

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print the runtime config as YAML")
    config_show.set_defaults(func=_cmd_config_show)
    config_import = config_subparsers.add_parser("import", help="Import runtime config from YAML")
    config_import.add_argument("path")
    config_import.set_defaults(func=_cmd_config_import)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8001)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("cronwatch")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
