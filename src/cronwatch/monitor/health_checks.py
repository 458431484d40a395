from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable

from ..clock import TimePolicy
from ..config import Config
from ..models import (
    DEFAULT_AUTO_FIXABLE,
    CheckStatus,
    DetectedIssue,
    HealthCheckResult,
    IssueType,
    Neighborhood,
    RecipientSource,
)
from ..storage import (
    count_weekly_sends,
    list_briefs_since,
    list_daily_send_keys,
    list_neighborhoods,
    list_published_articles_since,
    list_recipients,
    list_translated_ids,
    list_weekly_brief_neighborhoods,
)
from ..utils import isoformat_utc, log_event, parse_iso
from .text_fixes import count_paragraphs, find_markup_artifacts, has_markdown_link

CHECK_BRIEF_COVERAGE = "Brief Coverage"
CHECK_CONTENT_QUALITY = "Content Quality"
CHECK_HYPERLINKS = "Hyperlinks"
CHECK_HTML_ARTIFACTS = "HTML Artifacts"
CHECK_TRANSLATION = "Translation Coverage"
CHECK_DELIVERY = "Email Delivery"
CHECK_IMAGES = "Image Coverage"

HealthCheck = Callable[[Any, Config, TimePolicy], HealthCheckResult]


def _issue(issue_type: IssueType, description: str, **scope: str) -> DetectedIssue:
    return DetectedIssue(
        issue_type=issue_type,
        description=description,
        auto_fixable=DEFAULT_AUTO_FIXABLE[issue_type],
        **scope,
    )


def _cap_details(details: list[str], limit: int) -> list[str]:
    if len(details) <= limit:
        return details
    return details[:limit] + [f"...and {len(details) - limit} more"]


def _status_at_least(failing: int, total: int, fail_ratio: float) -> CheckStatus:
    if failing == 0:
        return CheckStatus.PASS
    if total and failing / total >= fail_ratio:
        return CheckStatus.FAIL
    return CheckStatus.WARN


def _status_above(failing: int, total: int, fail_ratio: float) -> CheckStatus:
    if failing == 0:
        return CheckStatus.PASS
    if total and failing / total > fail_ratio:
        return CheckStatus.FAIL
    return CheckStatus.WARN


def _lookback_start(config: Config, policy: TimePolicy) -> str:
    return isoformat_utc(policy.now() - timedelta(hours=config.health.brief_lookback_hours))


def _neighborhood_map(conn: Any) -> dict[str, Neighborhood]:
    return {item.id: item for item in list_neighborhoods(conn, active_only=False)}


def _todays_briefs(conn: Any, config: Config, policy: TimePolicy, neighborhoods: dict[str, Neighborhood]):
    todays = []
    for brief in list_briefs_since(conn, _lookback_start(config, policy)):
        neighborhood = neighborhoods.get(brief.neighborhood_id)
        if neighborhood is None or not neighborhood.is_active:
            continue
        if policy.is_local_today(brief.created_at, neighborhood.timezone):
            todays.append((brief, neighborhood))
    return todays


def _todays_articles(conn: Any, config: Config, policy: TimePolicy, neighborhoods: dict[str, Neighborhood]):
    todays = []
    for article in list_published_articles_since(conn, _lookback_start(config, policy)):
        neighborhood = neighborhoods.get(article.neighborhood_id)
        tz_name = neighborhood.timezone if neighborhood else None
        if policy.is_local_today(article.published_at, tz_name):
            todays.append((article, neighborhood))
    return todays


def check_brief_coverage(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_BRIEF_COVERAGE)
    neighborhoods = list_neighborhoods(conn, active_only=True)
    by_id = {item.id: item for item in neighborhoods}
    covered = {brief.neighborhood_id for brief, _ in _todays_briefs(conn, config, policy, by_id)}
    details: list[str] = []
    pending = 0

    result.total = len(neighborhoods)
    for neighborhood in neighborhoods:
        if neighborhood.id in covered:
            result.passing += 1
            continue
        if not policy.morning_window_passed(neighborhood.timezone):
            # still inside the local generation window
            result.passing += 1
            pending += 1
            continue
        result.failing += 1
        details.append(f"{neighborhood.name}: no brief for {policy.local_today(neighborhood.timezone)}")
        result.issues.append(
            _issue(
                IssueType.MISSING_BRIEF,
                f"No daily brief for {neighborhood.name} on {policy.local_today(neighborhood.timezone)}",
                neighborhood_id=neighborhood.id,
            )
        )

    if policy.is_sunday():
        week_date = policy.utc_today().isoformat()
        weekly = list_weekly_brief_neighborhoods(conn, week_date)
        result.total += len(neighborhoods)
        for neighborhood in neighborhoods:
            if neighborhood.id in weekly:
                result.passing += 1
                continue
            result.failing += 1
            details.append(f"{neighborhood.name}: no Sunday edition for {week_date}")
            result.issues.append(
                _issue(
                    IssueType.MISSING_SUNDAY_EDITION,
                    f"No Sunday edition for {neighborhood.name} (week of {week_date})",
                    neighborhood_id=neighborhood.id,
                )
            )

    result.status = _status_at_least(result.failing, result.total, config.health.brief_fail_ratio)
    if pending:
        details.append(f"{pending} neighborhood(s) still inside their morning window")
    result.details = _cap_details(details, config.health.max_detail_lines)
    return result


def check_content_quality(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_CONTENT_QUALITY)
    neighborhoods = _neighborhood_map(conn)
    todays = _todays_briefs(conn, config, policy, neighborhoods)
    grace = timedelta(minutes=config.health.enrichment_grace_minutes)
    now = policy.now()
    details: list[str] = []
    unenriched = 0

    result.total = len(todays)
    if not todays:
        result.details = ["No briefs generated today yet"]
        return result

    for brief, neighborhood in todays:
        if not brief.enriched_content:
            created = parse_iso(brief.created_at)
            if created is not None and now - created < grace:
                result.passing += 1
                continue
            unenriched += 1
            result.failing += 1
            details.append(f"{neighborhood.name}: brief not enriched")
            result.issues.append(
                _issue(
                    IssueType.UNENRICHED_BRIEF,
                    f"Brief {brief.id} for {neighborhood.name} was never enriched",
                    neighborhood_id=neighborhood.id,
                )
            )
            continue
        paragraphs = count_paragraphs(brief.enriched_content)
        if paragraphs < config.health.min_paragraphs:
            result.failing += 1
            details.append(f"{neighborhood.name}: enriched brief has {paragraphs} paragraph(s)")
            result.issues.append(
                _issue(
                    IssueType.THIN_BRIEF,
                    f"Brief {brief.id} for {neighborhood.name} has only {paragraphs} paragraph(s)",
                    neighborhood_id=neighborhood.id,
                )
            )
            continue
        result.passing += 1

    if unenriched / result.total > config.health.unenriched_fail_ratio:
        result.status = CheckStatus.FAIL
    elif result.failing:
        result.status = CheckStatus.WARN
    result.details = _cap_details(details, config.health.max_detail_lines)
    return result


def check_hyperlinks(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_HYPERLINKS)
    neighborhoods = _neighborhood_map(conn)
    enriched = [
        (brief, neighborhood)
        for brief, neighborhood in _todays_briefs(conn, config, policy, neighborhoods)
        if brief.enriched_content
    ]
    details: list[str] = []

    result.total = len(enriched)
    for brief, neighborhood in enriched:
        if has_markdown_link(brief.enriched_content):
            result.passing += 1
            continue
        result.failing += 1
        details.append(f"{neighborhood.name}: enriched brief has no links")
        result.issues.append(
            _issue(
                IssueType.MISSING_HYPERLINKS,
                f"Enriched brief {brief.id} for {neighborhood.name} contains no hyperlinks",
                neighborhood_id=neighborhood.id,
            )
        )

    result.status = _status_above(result.failing, result.total, config.health.hyperlink_fail_ratio)
    result.details = _cap_details(details, config.health.max_detail_lines)
    return result


def check_html_artifacts(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_HTML_ARTIFACTS)
    neighborhoods = _neighborhood_map(conn)
    details: list[str] = []

    for article, _ in _todays_articles(conn, config, policy, neighborhoods):
        result.total += 1
        found = find_markup_artifacts(article.body_text) + find_markup_artifacts(article.preview_text)
        if not found:
            result.passing += 1
            continue
        result.failing += 1
        kinds = ", ".join(sorted(set(found)))
        details.append(f"{article.headline}: {kinds}")
        result.issues.append(
            _issue(
                IssueType.HTML_ARTIFACT,
                f"Article '{article.headline}' contains raw markup ({kinds})",
                article_id=article.id,
            )
        )

    result.status = CheckStatus.FAIL if result.failing else CheckStatus.PASS
    result.details = _cap_details(details, config.health.max_detail_lines)
    return result


def check_translation_coverage(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_TRANSLATION)
    neighborhoods = _neighborhood_map(conn)
    article_ids = [article.id for article, _ in _todays_articles(conn, config, policy, neighborhoods)]
    brief_ids = [brief.id for brief, _ in _todays_briefs(conn, config, policy, neighborhoods)]

    result.total = len(article_ids) + len(brief_ids)
    if not result.total:
        result.details = ["No content published today yet"]
        return result

    translated_articles = list_translated_ids(conn, "article", article_ids)
    translated_briefs = list_translated_ids(conn, "brief", brief_ids)
    result.passing = len(translated_articles) + len(translated_briefs)
    result.failing = result.total - result.passing
    ratio = result.passing / result.total
    if ratio > config.health.translation_pass_ratio:
        result.status = CheckStatus.PASS
    elif ratio >= config.health.translation_warn_ratio:
        result.status = CheckStatus.WARN
    else:
        result.status = CheckStatus.FAIL
    result.details = [
        f"Articles translated: {len(translated_articles)}/{len(article_ids)}",
        f"Briefs translated: {len(translated_briefs)}/{len(brief_ids)}",
    ]
    return result


def check_delivery_coverage(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_DELIVERY)
    eligible = [
        recipient
        for recipient in list_recipients(conn)
        if recipient.daily_email_enabled
        and (recipient.source == RecipientSource.PROFILE or recipient.email_verified)
    ]
    if not eligible:
        result.details = ["No eligible recipients"]
        return result

    expected = {
        (recipient.source.value, recipient.id): policy.local_today(recipient.timezone).isoformat()
        for recipient in eligible
    }
    sent = list_daily_send_keys(conn, min(expected.values()))
    missing: list[str] = []
    result.total = len(eligible)
    for recipient in eligible:
        key = (recipient.source.value, recipient.id)
        if (*key, expected[key]) in sent:
            result.passing += 1
        else:
            result.failing += 1
            missing.append(recipient.email)

    ratio = result.passing / result.total
    if ratio >= config.health.delivery_pass_ratio:
        result.status = CheckStatus.PASS
    elif ratio >= config.health.delivery_warn_ratio:
        result.status = CheckStatus.WARN
    else:
        result.status = CheckStatus.FAIL

    details = [f"Delivered {result.passing}/{result.total} ({ratio:.0%})"]
    if policy.is_sunday():
        week_date = policy.utc_today().isoformat()
        details.append(f"Sunday edition sent to {count_weekly_sends(conn, week_date)} recipient(s)")
    details.extend(f"Not yet delivered: {email}" for email in missing)
    result.details = _cap_details(details, config.health.max_detail_lines)
    return result


def check_image_coverage(conn: Any, config: Config, policy: TimePolicy) -> HealthCheckResult:
    result = HealthCheckResult(name=CHECK_IMAGES)
    neighborhoods = _neighborhood_map(conn)
    details: list[str] = []

    for article, _ in _todays_articles(conn, config, policy, neighborhoods):
        result.total += 1
        if article.image_url:
            result.passing += 1
            continue
        result.failing += 1
        details.append(f"{article.headline}: no image")
        result.issues.append(
            _issue(
                IssueType.MISSING_IMAGE,
                f"Article '{article.headline}' has no image",
                article_id=article.id,
            )
        )

    result.status = _status_at_least(result.failing, result.total, config.health.image_fail_ratio)
    result.details = _cap_details(details, config.health.max_detail_lines)
    return result


HEALTH_CHECKS: list[tuple[str, HealthCheck]] = [
    (CHECK_BRIEF_COVERAGE, check_brief_coverage),
    (CHECK_CONTENT_QUALITY, check_content_quality),
    (CHECK_HYPERLINKS, check_hyperlinks),
    (CHECK_HTML_ARTIFACTS, check_html_artifacts),
    (CHECK_TRANSLATION, check_translation_coverage),
    (CHECK_DELIVERY, check_delivery_coverage),
    (CHECK_IMAGES, check_image_coverage),
]


def run_all_health_checks(
    conn: Any,
    config: Config,
    policy: TimePolicy,
    checks: list[tuple[str, HealthCheck]] | None = None,
    logger: logging.Logger | None = None,
) -> list[HealthCheckResult]:
    """Run every check; a check that raises is reported as failed, the rest still run."""
    logger = logger or logging.getLogger("cronwatch.health")
    results: list[HealthCheckResult] = []
    for name, check in checks or HEALTH_CHECKS:
        try:
            result = check(conn, config, policy)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "health_check_error", check=name, error=str(exc))
            result = HealthCheckResult(
                name=name,
                status=CheckStatus.FAIL,
                details=[f"Check failed: {exc}"],
            )
        log_event(
            logger,
            logging.INFO,
            "health_check_complete",
            check=name,
            status=result.status.value,
            passing=result.passing,
            total=result.total,
            issues=len(result.issues),
        )
        results.append(result)
    return results
