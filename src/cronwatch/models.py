from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class IssueType(str, Enum):
    MISSING_IMAGE = "missing_image"
    PLACEHOLDER_IMAGE = "placeholder_image"
    MISSING_BRIEF = "missing_brief"
    MISSED_EMAIL = "missed_email"
    THIN_CONTENT = "thin_content"
    JOB_FAILURE = "job_failure"
    API_RATE_LIMIT = "api_rate_limit"
    EXTERNAL_SERVICE_DOWN = "external_service_down"
    UNENRICHED_BRIEF = "unenriched_brief"
    MISSING_HYPERLINKS = "missing_hyperlinks"
    HTML_ARTIFACT = "html_artifact"
    MISSING_SOURCES = "missing_sources"
    URL_ENCODED_TEXT = "url_encoded_text"
    MISSING_SUNDAY_EDITION = "missing_sunday_edition"
    THIN_BRIEF = "thin_brief"


class IssueStatus(str, Enum):
    OPEN = "open"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    NEEDS_MANUAL = "needs_manual"


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"

    @property
    def rank(self) -> int:
        return _CHECK_STATUS_RANK[self]


_CHECK_STATUS_RANK = {CheckStatus.PASS: 0, CheckStatus.WARN: 1, CheckStatus.FAIL: 2}


class EmailFailureCause(str, Enum):
    DISABLED_BY_USER = "disabled_by_user"
    MISSING_TIMEZONE = "missing_timezone"
    NO_NEIGHBORHOODS = "no_neighborhoods"
    CRON_NOT_RUN = "cron_not_run"
    SEND_FAILED = "send_failed"
    RATE_LIMIT_OVERFLOW = "rate_limit_overflow"
    UNKNOWN = "unknown"


class RecipientSource(str, Enum):
    PROFILE = "profile"
    NEWSLETTER = "newsletter"


# Whether an issue type can be remediated without a human. missed_email is
# decided per diagnosis; this is the value used when no diagnosis is attached.
DEFAULT_AUTO_FIXABLE: dict[IssueType, bool] = {
    IssueType.MISSING_IMAGE: True,
    IssueType.PLACEHOLDER_IMAGE: True,
    IssueType.MISSING_BRIEF: True,
    IssueType.MISSED_EMAIL: True,
    IssueType.THIN_CONTENT: True,
    IssueType.JOB_FAILURE: False,
    IssueType.API_RATE_LIMIT: False,
    IssueType.EXTERNAL_SERVICE_DOWN: False,
    IssueType.UNENRICHED_BRIEF: True,
    IssueType.MISSING_HYPERLINKS: True,
    IssueType.HTML_ARTIFACT: False,
    IssueType.MISSING_SOURCES: True,
    IssueType.URL_ENCODED_TEXT: True,
    IssueType.MISSING_SUNDAY_EDITION: False,
    IssueType.THIN_BRIEF: False,
}

_missing = set(IssueType) - set(DEFAULT_AUTO_FIXABLE)
if _missing:
    raise RuntimeError(f"auto-fixable default missing for: {sorted(t.value for t in _missing)}")


@dataclass(frozen=True)
class Neighborhood:
    id: str
    name: str
    city: str | None
    country: str | None
    timezone: str | None
    is_active: bool


@dataclass(frozen=True)
class Brief:
    id: str
    neighborhood_id: str
    headline: str | None
    content: str | None
    enriched_content: str | None
    enriched_categories: list[dict[str, object]] | None
    created_at: str
    enriched_at: str | None


@dataclass(frozen=True)
class Article:
    id: str
    neighborhood_id: str
    brief_id: str | None
    headline: str
    slug: str
    preview_text: str | None
    body_text: str | None
    image_url: str | None
    status: str
    author_type: str | None
    published_at: str | None
    created_at: str


@dataclass(frozen=True)
class Recipient:
    id: str
    email: str
    source: RecipientSource
    timezone: str | None
    daily_email_enabled: bool
    email_verified: bool
    neighborhood_ids: list[str]


@dataclass(frozen=True)
class CronExecution:
    id: str
    job_name: str
    started_at: str
    completed_at: str | None
    success: bool | None
    items_processed: int
    errors: list[str]
    metadata: dict[str, object]
    triggered_by: str | None


@dataclass(frozen=True)
class EmailDiagnosis:
    recipient_id: str
    email: str
    source: RecipientSource
    cause: EmailFailureCause
    details: str
    auto_fixable: bool
    fix_action: str | None = None


@dataclass(frozen=True)
class DetectedIssue:
    """A candidate issue produced by a check or detector, not yet persisted.

    Exactly one of ``article_id``, ``neighborhood_id`` or ``job_name`` scopes
    the issue; together with ``issue_type`` it forms the dedup key.
    """

    issue_type: IssueType
    description: str
    auto_fixable: bool
    article_id: str | None = None
    neighborhood_id: str | None = None
    job_name: str | None = None
    diagnosis: EmailDiagnosis | None = None

    def __post_init__(self) -> None:
        scopes = [s for s in (self.article_id, self.neighborhood_id, self.job_name) if s]
        if len(scopes) != 1:
            raise ValueError(
                f"{self.issue_type.value} issue needs exactly one scope, got {len(scopes)}"
            )

    @property
    def dedup_key(self) -> str:
        return issue_dedup_key(self.issue_type, self.article_id, self.neighborhood_id, self.job_name)


def issue_dedup_key(
    issue_type: IssueType | str,
    article_id: str | None,
    neighborhood_id: str | None,
    job_name: str | None,
) -> str:
    type_value = issue_type.value if isinstance(issue_type, IssueType) else str(issue_type)
    return f"{type_value}:{article_id or neighborhood_id or job_name or ''}"


@dataclass(frozen=True)
class Issue:
    id: str
    issue_type: IssueType
    article_id: str | None
    neighborhood_id: str | None
    job_name: str | None
    description: str
    status: IssueStatus
    retry_count: int
    max_retries: int
    next_retry_at: str | None
    auto_fixable: bool
    fix_attempted_at: str | None
    fix_result: str | None
    created_at: str
    resolved_at: str | None
    updated_at: str

    @property
    def dedup_key(self) -> str:
        return issue_dedup_key(self.issue_type, self.article_id, self.neighborhood_id, self.job_name)


@dataclass
class HealthCheckResult:
    name: str
    status: CheckStatus = CheckStatus.PASS
    total: int = 0
    passing: int = 0
    failing: int = 0
    details: list[str] = field(default_factory=list)
    issues: list[DetectedIssue] = field(default_factory=list)


@dataclass(frozen=True)
class FixResult:
    success: bool
    message: str
    retryable: bool = True
    image_url: str | None = None


@dataclass(frozen=True)
class FixAttempt:
    issue_id: str
    issue_type: IssueType
    success: bool
    message: str
    status: IssueStatus


@dataclass
class MonitorRunResult:
    started_at: str
    completed_at: str | None = None
    issues_detected: int = 0
    issues_fixed: int = 0
    issues_failed: int = 0
    issues_skipped: int = 0
    new_issues: list[Issue] = field(default_factory=list)
    fix_attempts: list[FixAttempt] = field(default_factory=list)
    background: dict[str, int] = field(default_factory=dict)
    lease_acquired: bool = True


@dataclass
class HealthRunResult:
    started_at: str
    completed_at: str | None = None
    results: list[HealthCheckResult] = field(default_factory=list)
    new_issues: list[Issue] = field(default_factory=list)
    subject: str = ""
    html: str = ""
    email_sent: bool = False
    errors: list[str] = field(default_factory=list)
