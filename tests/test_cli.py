from datetime import datetime, timezone

import yaml

from cronwatch.cli import main
from cronwatch.config import load_runtime_config
from cronwatch.issue_store import get_issue, insert_issue, mark_resolved
from cronwatch.models import DetectedIssue, IssueStatus, IssueType
from cronwatch.storage import init_db, insert_neighborhood


def test_db_migrate_and_missing_issue(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    assert main(["--db", db_path, "db", "migrate"]) == 0
    assert main(["--db", db_path, "issues", "show", "nope"]) == 1
    assert main(["--db", db_path, "issues", "resolve", "nope"]) == 1


def test_invalid_now_is_a_config_error(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    assert main(["--db", db_path, "--now", "yesterday", "monitor"]) == 1


def test_issue_resolve_uses_fixed_clock(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    conn = init_db(db_path)
    detected = DetectedIssue(
        issue_type=IssueType.MISSING_SOURCES,
        description="Article has no sources",
        auto_fixable=True,
        article_id="article-1",
    )
    issue = insert_issue(conn, detected, max_retries=3, now=datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc))

    code = main(["--db", db_path, "--now", "2026-10-19T14:00:00Z", "issues", "resolve", issue.id])
    assert code == 0
    stored = get_issue(conn, issue.id)
    assert stored.status == IssueStatus.RESOLVED
    assert stored.resolved_at == "2026-10-19T14:00:00+00:00"


def test_issue_reopen_refuses_duplicate_active_key(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    conn = init_db(db_path)
    detected = DetectedIssue(
        issue_type=IssueType.MISSING_SOURCES,
        description="Article has no sources",
        auto_fixable=True,
        article_id="article-1",
    )
    now = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
    old = insert_issue(conn, detected, max_retries=3, now=now)
    mark_resolved(conn, old.id, now)
    insert_issue(conn, detected, max_retries=3, now=now)

    assert main(["--db", db_path, "issues", "reopen", old.id]) == 1
    assert main(["--db", db_path, "issues", "retry", old.id]) == 1
    assert get_issue(conn, old.id).status == IssueStatus.RESOLVED


def test_config_import_and_health_report(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    config_path = tmp_path / "cronwatch.yml"
    config_path.write_text(yaml.safe_dump({"app": {"name": "Dispatch"}}), encoding="utf-8")
    assert main(["--db", db_path, "config", "import", str(config_path)]) == 0

    conn = init_db(db_path)
    assert load_runtime_config(conn).app.name == "Dispatch"
    insert_neighborhood(conn, "Tribeca", "America/New_York", neighborhood_id="tribeca")

    report = tmp_path / "report.html"
    code = main(
        [
            "--db",
            db_path,
            "--now",
            "2026-10-19T14:00:00+00:00",
            "check-health",
            "--no-email",
            "--report-out",
            str(report),
        ]
    )
    assert code == 0
    html = report.read_text(encoding="utf-8")
    assert "DISPATCH" in html
    assert "Tribeca: no brief for 2026-10-19" in html

    rows = conn.execute("SELECT issue_type, neighborhood_id FROM cron_issues").fetchall()
    assert [tuple(row) for row in rows] == [("missing_brief", "tribeca")]

