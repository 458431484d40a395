from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from ..clock import Clock, TimePolicy
from ..config import Config
from ..issue_store import (
    claim_issue,
    get_diagnosis,
    list_retryable_issues,
    record_fix_failure,
    record_fix_success,
    release_stale_claims,
)
from ..models import (
    EmailDiagnosis,
    EmailFailureCause,
    FixAttempt,
    FixResult,
    Issue,
    IssueStatus,
    IssueType,
    Neighborhood,
    RecipientSource,
)
from ..services.background import BackgroundTasks
from ..services.remediation import RemediationClient, RemediationError
from ..services.story_generator import StoryGenerator
from ..storage import (
    count_article_sources,
    get_article,
    get_article_by_slug,
    get_brief,
    get_neighborhood,
    insert_article,
    insert_article_sources,
    update_article_text,
)
from ..utils import isoformat_utc, log_event, slugify
from .email_diagnosis import fix_email_root_cause
from .retry import RetryPolicy
from .text_fixes import decode_url_encoded_text, extract_sources_from_categories


@dataclass
class FixContext:
    conn: Any
    config: Config
    policy: TimePolicy
    retry: RetryPolicy
    client: RemediationClient
    stories: StoryGenerator
    background: BackgroundTasks
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("cronwatch.fixer"))

    @property
    def clock(self) -> Clock:
        return self.policy.clock


@dataclass
class FixPassResult:
    attempts: list[FixAttempt] = field(default_factory=list)
    skipped: int = 0
    released_claims: int = 0

    @property
    def fixed(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.success)

    @property
    def failed(self) -> int:
        return sum(1 for attempt in self.attempts if not attempt.success)


Fixer = Callable[[FixContext, Issue], FixResult]

# Issue types that call an external service share that service's per-run cap and pacing.
SERVICE_BY_TYPE: dict[IssueType, str] = {
    IssueType.MISSING_IMAGE: "image",
    IssueType.PLACEHOLDER_IMAGE: "image",
    IssueType.MISSING_BRIEF: "brief",
    IssueType.MISSED_EMAIL: "email",
    IssueType.THIN_CONTENT: "thin_content",
    IssueType.UNENRICHED_BRIEF: "enrichment",
    IssueType.MISSING_HYPERLINKS: "enrichment",
}


def _service_cap(config: Config, service: str) -> int:
    caps = config.fixes.caps
    return {
        "image": caps.images,
        "brief": caps.briefs,
        "email": caps.emails,
        "thin_content": caps.thin_content,
        "enrichment": caps.enrichments,
    }[service]


def _service_delay(config: Config, service: str) -> float:
    return getattr(config.fixes.delays_seconds, service)


def _count(response: dict[str, Any], key: str) -> int:
    try:
        return int(response.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def _errors(response: dict[str, Any]) -> str:
    errors = response.get("errors") or response.get("error") or []
    if isinstance(errors, list):
        return "; ".join(str(item) for item in errors[:3])
    return str(errors)


def _is_placeholder(config: Config, url: str) -> bool:
    return any(re.search(pattern, url, re.IGNORECASE) for pattern in config.detection.placeholder_patterns)


def _fix_image(ctx: FixContext, issue: Issue) -> FixResult:
    if not issue.article_id:
        return FixResult(False, "Issue has no article", retryable=False)
    response = ctx.client.generate_image(issue.article_id)
    results = response.get("results") or []
    first = results[0] if results and isinstance(results[0], dict) else {}
    image_url = first.get("imageUrl")
    if first.get("success") and image_url and not _is_placeholder(ctx.config, image_url):
        return FixResult(True, f"Generated image {image_url}", image_url=image_url)
    return FixResult(False, first.get("error") or "Image generation returned no usable image")


def _fix_brief(ctx: FixContext, issue: Issue) -> FixResult:
    if not issue.neighborhood_id:
        return FixResult(False, "Issue has no neighborhood", retryable=False)
    response = ctx.client.generate_brief(issue.neighborhood_id)
    generated = _count(response, "briefs_generated")
    if generated > 0:
        return FixResult(True, f"Generated {generated} brief(s)")
    return FixResult(False, f"No brief generated: {_errors(response) or 'unknown reason'}")


def _fix_enrichment(ctx: FixContext, issue: Issue) -> FixResult:
    if not issue.neighborhood_id:
        return FixResult(False, "Issue has no neighborhood", retryable=False)
    response = ctx.client.enrich_brief(issue.neighborhood_id)
    enriched = _count(response, "briefs_enriched")
    if enriched > 0:
        return FixResult(True, f"Re-enriched {enriched} brief(s)")
    return FixResult(False, f"No brief enriched: {_errors(response) or 'unknown reason'}")


def _fix_missed_email(ctx: FixContext, issue: Issue) -> FixResult:
    diagnosis = get_diagnosis(ctx.conn, issue.id)
    if diagnosis is None:
        if not issue.job_name:
            return FixResult(False, "Issue has no recipient", retryable=False)
        diagnosis = EmailDiagnosis(
            recipient_id="",
            email=issue.job_name,
            source=RecipientSource.PROFILE,
            cause=EmailFailureCause.UNKNOWN,
            details="No stored diagnosis",
            auto_fixable=True,
        )
    root_fix = fix_email_root_cause(ctx.conn, diagnosis)
    if not root_fix.success:
        return root_fix
    response = ctx.client.resend_email(diagnosis.email)
    sent = _count(response, "emails_sent")
    if sent > 0:
        return FixResult(True, f"Resent daily brief to {diagnosis.email} ({root_fix.message})")
    return FixResult(False, f"Resend sent nothing: {_errors(response) or 'unknown reason'}")


def thin_content_slug(neighborhood: Neighborhood, headline: str) -> str:
    digest = hashlib.sha256(f"{neighborhood.id}|{headline}".encode("utf-8")).hexdigest()[:12]
    return f"{slugify(neighborhood.name, max_length=60)}-{digest}"


def _fix_thin_content(ctx: FixContext, issue: Issue) -> FixResult:
    neighborhood = get_neighborhood(ctx.conn, issue.neighborhood_id) if issue.neighborhood_id else None
    if neighborhood is None:
        return FixResult(False, "Neighborhood not found", retryable=False)
    generation_error = None
    try:
        stories = ctx.stories.generate(neighborhood, ctx.config.fixes.stories_per_thin_fix)
    except RemediationError as exc:
        log_event(ctx.logger, logging.WARNING, "thin_content_generation_failed", neighborhood=neighborhood.id, error=str(exc))
        generation_error = str(exc)
        stories = []
    created: list[str] = []
    existing = 0
    for story in stories:
        slug = thin_content_slug(neighborhood, story.headline)
        if get_article_by_slug(ctx.conn, slug) is not None:
            existing += 1
            continue
        if created:
            ctx.clock.sleep(ctx.config.fixes.delays_seconds.image)
        article_id = insert_article(
            ctx.conn,
            neighborhood_id=neighborhood.id,
            headline=story.headline,
            slug=slug,
            body_text=story.body,
            preview_text=story.preview_text,
            status="published",
            published_at=isoformat_utc(ctx.policy.now()),
            author_type="ai",
        )
        created.append(article_id)
        ctx.background.submit(f"generate_image:{article_id}", ctx.client.generate_image, article_id)

    try:
        ctx.client.generate_brief(neighborhood.id)
    except RemediationError as exc:
        log_event(ctx.logger, logging.WARNING, "thin_content_brief_failed", neighborhood=neighborhood.id, error=str(exc))

    if created or existing:
        return FixResult(True, f"Added {len(created)} article(s) for {neighborhood.name}, {existing} already present")
    if generation_error:
        return FixResult(False, f"Story generation failed: {generation_error}")
    return FixResult(False, "Story generator returned no stories")


def _fix_missing_sources(ctx: FixContext, issue: Issue) -> FixResult:
    article = get_article(ctx.conn, issue.article_id) if issue.article_id else None
    if article is None:
        return FixResult(False, "Article not found", retryable=False)
    if count_article_sources(ctx.conn, article.id) > 0:
        return FixResult(True, "Article already has sources")
    brief = get_brief(ctx.conn, article.brief_id) if article.brief_id else None
    sources = extract_sources_from_categories(brief.enriched_categories if brief else None)
    inserted = insert_article_sources(ctx.conn, article.id, sources)
    return FixResult(True, f"Attached {inserted} source(s)")


def _fix_url_encoding(ctx: FixContext, issue: Issue) -> FixResult:
    article = get_article(ctx.conn, issue.article_id) if issue.article_id else None
    if article is None:
        return FixResult(False, "Article not found", retryable=False)
    body = decode_url_encoded_text(article.body_text)
    preview = decode_url_encoded_text(article.preview_text)
    if body == article.body_text and preview == article.preview_text:
        return FixResult(True, "Text already clean")
    update_article_text(ctx.conn, article.id, body, preview)
    return FixResult(True, "Decoded percent-encoded text")


def _manual_only(ctx: FixContext, issue: Issue) -> FixResult:
    return FixResult(False, f"{issue.issue_type.value} requires manual review", retryable=False)


FIXERS: dict[IssueType, Fixer] = {
    IssueType.MISSING_IMAGE: _fix_image,
    IssueType.PLACEHOLDER_IMAGE: _fix_image,
    IssueType.MISSING_BRIEF: _fix_brief,
    IssueType.MISSED_EMAIL: _fix_missed_email,
    IssueType.THIN_CONTENT: _fix_thin_content,
    IssueType.JOB_FAILURE: _manual_only,
    IssueType.API_RATE_LIMIT: _manual_only,
    IssueType.EXTERNAL_SERVICE_DOWN: _manual_only,
    IssueType.UNENRICHED_BRIEF: _fix_enrichment,
    IssueType.MISSING_HYPERLINKS: _fix_enrichment,
    IssueType.HTML_ARTIFACT: _manual_only,
    IssueType.MISSING_SOURCES: _fix_missing_sources,
    IssueType.URL_ENCODED_TEXT: _fix_url_encoding,
    IssueType.MISSING_SUNDAY_EDITION: _manual_only,
    IssueType.THIN_BRIEF: _manual_only,
}

_unhandled = set(IssueType) - set(FIXERS)
if _unhandled:
    raise RuntimeError(f"no fixer registered for: {sorted(t.value for t in _unhandled)}")


def apply_fix_result(
    conn: Any,
    issue: Issue,
    result: FixResult,
    retry: RetryPolicy,
    now: datetime,
) -> IssueStatus:
    if result.success:
        record_fix_success(conn, issue.id, result.message, now)
        return IssueStatus.RESOLVED
    retry_count = min(issue.retry_count + 1, issue.max_retries)
    if not result.retryable or retry_count >= issue.max_retries:
        record_fix_failure(conn, issue.id, result.message, IssueStatus.NEEDS_MANUAL, retry_count, None, now)
        return IssueStatus.NEEDS_MANUAL
    next_at = retry.next_retry_at(retry_count, now)
    record_fix_failure(conn, issue.id, result.message, IssueStatus.OPEN, retry_count, next_at, now)
    return IssueStatus.OPEN


def _claim(ctx: FixContext, issue: Issue) -> bool:
    if claim_issue(ctx.conn, issue.id, ctx.policy.now()):
        return True
    log_event(ctx.logger, logging.INFO, "fix_claim_lost", issue_id=issue.id)
    return False


def _run_claimed(ctx: FixContext, issue: Issue) -> FixAttempt:
    try:
        result = FIXERS[issue.issue_type](ctx, issue)
    except Exception as exc:  # noqa: BLE001
        log_event(
            ctx.logger,
            logging.WARNING,
            "fix_error",
            issue_id=issue.id,
            issue_type=issue.issue_type.value,
            error=str(exc),
        )
        result = FixResult(False, str(exc) or exc.__class__.__name__)
    status = apply_fix_result(ctx.conn, issue, result, ctx.retry, ctx.policy.now())
    log_event(
        ctx.logger,
        logging.INFO,
        "fix_attempted",
        issue_id=issue.id,
        issue_type=issue.issue_type.value,
        success=result.success,
        status=status.value,
    )
    return FixAttempt(
        issue_id=issue.id,
        issue_type=issue.issue_type,
        success=result.success,
        message=result.message,
        status=status,
    )


def attempt_fix(ctx: FixContext, issue: Issue) -> FixAttempt | None:
    """Claim ``issue``, run its fixer and record the outcome; None if the claim was lost."""
    if not _claim(ctx, issue):
        return None
    return _run_claimed(ctx, issue)


def run_fix_pass(ctx: FixContext, run_started_at: datetime) -> FixPassResult:
    """Attempt retry-eligible issues created before this run.

    Every eligible issue is considered, oldest first. Issues whose service is
    at its cap are skipped without using up the per-run budget, which counts
    attempts only. A service slot is taken once the claim is won.
    """
    outcome = FixPassResult()
    now = ctx.policy.now()
    stale_before = now - timedelta(seconds=ctx.config.retry.claim_timeout_seconds)
    outcome.released_claims = release_stale_claims(ctx.conn, stale_before, now)
    if outcome.released_claims:
        log_event(ctx.logger, logging.WARNING, "stale_claims_released", count=outcome.released_claims)

    candidates = list_retryable_issues(ctx.conn, now=now, created_before=run_started_at)
    budget = ctx.config.fixes.caps.issues_per_run
    used: Counter[str] = Counter()
    for issue in candidates:
        if len(outcome.attempts) >= budget:
            break
        if not ctx.retry.can_retry(issue, ctx.policy.now()):
            outcome.skipped += 1
            continue
        service = SERVICE_BY_TYPE.get(issue.issue_type)
        if service is not None and used[service] >= _service_cap(ctx.config, service):
            outcome.skipped += 1
            continue
        if not _claim(ctx, issue):
            outcome.skipped += 1
            continue
        if service is not None:
            if used[service]:
                ctx.clock.sleep(_service_delay(ctx.config, service))
            used[service] += 1
        outcome.attempts.append(_run_claimed(ctx, issue))
    return outcome
