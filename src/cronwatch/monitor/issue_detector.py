from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable

from ..clock import TimePolicy
from ..config import Config
from ..issue_store import insert_issue, list_active_dedup_keys
from ..models import DEFAULT_AUTO_FIXABLE, DetectedIssue, Issue, IssueType
from ..storage import (
    count_published_articles_by_neighborhood,
    list_article_ids_with_sources,
    list_executions,
    list_neighborhoods,
    list_published_articles_since,
)
from ..utils import isoformat_utc, log_event
from .email_diagnosis import detect_missed_emails
from .text_fixes import has_url_encoded_text

Detector = Callable[[Any, Config, TimePolicy], list[DetectedIssue]]

_RATE_LIMIT_RE = re.compile(r"\b429\b|rate.?limit|too many requests|quota", re.IGNORECASE)
_SERVICE_DOWN_RE = re.compile(
    r"\b50[234]\b|timed? ?out|timeout|unavailable|econnrefused|connection (?:refused|reset)|network_error",
    re.IGNORECASE,
)


def _window_start(config: Config, policy: TimePolicy) -> str:
    return isoformat_utc(policy.now() - timedelta(hours=config.detection.window_hours))


def _issue(issue_type: IssueType, description: str, **scope: str) -> DetectedIssue:
    return DetectedIssue(
        issue_type=issue_type,
        description=description,
        auto_fixable=DEFAULT_AUTO_FIXABLE[issue_type],
        **scope,
    )


def detect_image_issues(conn: Any, config: Config, policy: TimePolicy) -> list[DetectedIssue]:
    patterns = [re.compile(pattern, re.IGNORECASE) for pattern in config.detection.placeholder_patterns]
    issues: list[DetectedIssue] = []
    for article in list_published_articles_since(conn, _window_start(config, policy)):
        if not article.image_url:
            issues.append(
                _issue(
                    IssueType.MISSING_IMAGE,
                    f"Article '{article.headline}' has no image",
                    article_id=article.id,
                )
            )
        elif any(pattern.search(article.image_url) for pattern in patterns):
            issues.append(
                _issue(
                    IssueType.PLACEHOLDER_IMAGE,
                    f"Article '{article.headline}' uses a placeholder image",
                    article_id=article.id,
                )
            )
    return issues


def classify_job_error(errors: list[str]) -> IssueType:
    text = " ".join(errors)
    if _RATE_LIMIT_RE.search(text):
        return IssueType.API_RATE_LIMIT
    if _SERVICE_DOWN_RE.search(text):
        return IssueType.EXTERNAL_SERVICE_DOWN
    return IssueType.JOB_FAILURE


def detect_failed_jobs(conn: Any, config: Config, policy: TimePolicy) -> list[DetectedIssue]:
    issues: list[DetectedIssue] = []
    seen: set[str] = set()
    for execution in list_executions(conn, since=_window_start(config, policy), failed_only=True):
        # newest first, one issue per job
        if execution.job_name in seen:
            continue
        seen.add(execution.job_name)
        issue_type = classify_job_error(execution.errors)
        summary = "; ".join(execution.errors[:3]) or "no error recorded"
        issues.append(
            _issue(
                issue_type,
                f"Job {execution.job_name} failed at {execution.started_at}: {summary}",
                job_name=execution.job_name,
            )
        )
    return issues


def detect_thin_content(conn: Any, config: Config, policy: TimePolicy) -> list[DetectedIssue]:
    since = isoformat_utc(policy.now() - timedelta(hours=24))
    counts = count_published_articles_by_neighborhood(conn, since)
    threshold = config.detection.thin_content_threshold
    issues: list[DetectedIssue] = []
    for neighborhood in list_neighborhoods(conn, active_only=True):
        if not policy.morning_window_passed(neighborhood.timezone):
            continue
        count = counts.get(neighborhood.id, 0)
        if count >= threshold:
            continue
        issues.append(
            _issue(
                IssueType.THIN_CONTENT,
                f"{neighborhood.name} has {count} published article(s) in the last 24 hours",
                neighborhood_id=neighborhood.id,
            )
        )
    return issues


def detect_text_artifacts(conn: Any, config: Config, policy: TimePolicy) -> list[DetectedIssue]:
    articles = list_published_articles_since(conn, _window_start(config, policy))
    with_sources = list_article_ids_with_sources(
        conn, [article.id for article in articles if article.brief_id]
    )
    issues: list[DetectedIssue] = []
    for article in articles:
        if has_url_encoded_text(article.body_text) or has_url_encoded_text(article.preview_text):
            issues.append(
                _issue(
                    IssueType.URL_ENCODED_TEXT,
                    f"Article '{article.headline}' contains percent-encoded text",
                    article_id=article.id,
                )
            )
        if article.brief_id and article.id not in with_sources:
            issues.append(
                _issue(
                    IssueType.MISSING_SOURCES,
                    f"Article '{article.headline}' has no source attribution",
                    article_id=article.id,
                )
            )
    return issues


DETECTORS: list[tuple[str, Detector]] = [
    ("images", detect_image_issues),
    ("failed_jobs", detect_failed_jobs),
    ("thin_content", detect_thin_content),
    ("text_artifacts", detect_text_artifacts),
    ("missed_emails", detect_missed_emails),
]


def run_detectors(
    conn: Any,
    config: Config,
    policy: TimePolicy,
    detectors: list[tuple[str, Detector]] | None = None,
    logger: logging.Logger | None = None,
) -> tuple[list[DetectedIssue], list[str]]:
    logger = logger or logging.getLogger("cronwatch.detector")
    detected: list[DetectedIssue] = []
    errors: list[str] = []
    for name, detector in detectors or DETECTORS:
        try:
            found = detector(conn, config, policy)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "detector_error", detector=name, error=str(exc))
            errors.append(f"{name}: {exc}")
            continue
        log_event(logger, logging.INFO, "detector_complete", detector=name, found=len(found))
        detected.extend(found)
    return detected, errors


def create_issues(
    conn: Any,
    detected: list[DetectedIssue],
    max_retries: int,
    now: datetime,
    logger: logging.Logger | None = None,
) -> list[Issue]:
    """Persist candidates whose dedup key has no open or retrying issue."""
    logger = logger or logging.getLogger("cronwatch.detector")
    active = list_active_dedup_keys(conn)
    created: list[Issue] = []
    for candidate in detected:
        key = candidate.dedup_key
        if key in active:
            continue
        active.add(key)
        issue = insert_issue(conn, candidate, max_retries=max_retries, now=now)
        log_event(
            logger,
            logging.INFO,
            "issue_created",
            issue_id=issue.id,
            issue_type=issue.issue_type.value,
            key=key,
        )
        created.append(issue)
    return created
