from __future__ import annotations

from datetime import date
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..models import CheckStatus, HealthCheckResult

BASE_DIR = Path(__file__).resolve().parent.parent
TEMPLATES = Environment(
    loader=FileSystemLoader(str(BASE_DIR / "templates")),
    autoescape=select_autoescape(["html"]),
)

STATUS_COLORS = {
    CheckStatus.PASS: "#10b981",
    CheckStatus.WARN: "#f59e0b",
    CheckStatus.FAIL: "#ef4444",
}
STATUS_LABELS = {
    CheckStatus.PASS: "PASS",
    CheckStatus.WARN: "WARN",
    CheckStatus.FAIL: "FAIL",
}


def worst_status(results: list[HealthCheckResult]) -> CheckStatus:
    status = CheckStatus.PASS
    for result in results:
        if result.status.rank > status.rank:
            status = result.status
    return status


def _badge(status: CheckStatus) -> dict[str, str]:
    return {"color": STATUS_COLORS[status], "label": STATUS_LABELS[status]}


def _format_long_date(value: date) -> str:
    return f"{value.strftime('%A, %B')} {value.day}, {value.year}"


def _format_short_date(value: date) -> str:
    return f"{value.strftime('%b')} {value.day}"


def build_health_report_html(
    results: list[HealthCheckResult],
    report_date: date,
    duration_seconds: float,
    dashboard_url: str,
    app_name: str,
    issues_created: int | None = None,
) -> str:
    """Render the daily report email body.

    Check names and detail lines are escaped by the template environment.
    ``issues_created`` defaults to the number of issues the checks produced.
    """
    counts = {status.value: 0 for status in CheckStatus}
    for result in results:
        counts[result.status.value] += 1
    if issues_created is None:
        issues_created = sum(len(result.issues) for result in results)
    checks = [
        {
            **_badge(result.status),
            "name": result.name,
            "total": result.total,
            "passing": result.passing,
            "details": result.details,
        }
        for result in results
    ]
    template = TEMPLATES.get_template("health_report.html")
    return template.render(
        app_name=app_name,
        report_date=_format_long_date(report_date),
        overall=_badge(worst_status(results)),
        counts=counts,
        total_issues=issues_created,
        checks=checks,
        dashboard_url=dashboard_url,
        duration_seconds=duration_seconds,
    )


def build_health_report_subject(results: list[HealthCheckResult], report_date: date, app_name: str) -> str:
    label = STATUS_LABELS[worst_status(results)]
    return f"[{app_name}] Health Report: {_format_short_date(report_date)} - {label}"
