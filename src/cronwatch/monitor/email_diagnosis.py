from __future__ import annotations

import logging
from typing import Any, Callable

from ..clock import TimePolicy
from ..config import Config
from ..models import (
    CronExecution,
    DetectedIssue,
    EmailDiagnosis,
    EmailFailureCause,
    FixResult,
    IssueType,
    Recipient,
    RecipientSource,
)
from ..storage import (
    get_neighborhood,
    get_recipient,
    list_daily_send_keys,
    list_executions,
    list_recipients,
    set_recipient_timezone,
)
from ..utils import isoformat_utc, log_event

FIX_DERIVE_TIMEZONE = "derive_timezone_then_resend"
FIX_RESEND = "resend"


def _metadata_int(execution: CronExecution, key: str) -> int:
    value = execution.metadata.get(key)
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def diagnose_email_failure(
    recipient: Recipient,
    send_executions: list[CronExecution],
) -> EmailDiagnosis:
    """Explain why ``recipient`` did not get today's brief.

    ``send_executions`` are the send-job runs that started in the UTC hour
    holding the recipient's local send time. Causes are tried in a fixed order
    and the first match wins.
    """

    def diagnosis(cause: EmailFailureCause, details: str, auto_fixable: bool, fix_action: str | None):
        return EmailDiagnosis(
            recipient_id=recipient.id,
            email=recipient.email,
            source=recipient.source,
            cause=cause,
            details=details,
            auto_fixable=auto_fixable,
            fix_action=fix_action,
        )

    if not recipient.daily_email_enabled:
        return diagnosis(
            EmailFailureCause.DISABLED_BY_USER,
            "Recipient has turned off the daily brief",
            False,
            None,
        )
    if not recipient.timezone:
        return diagnosis(
            EmailFailureCause.MISSING_TIMEZONE,
            "Recipient has no timezone, so no send hour could be scheduled",
            True,
            FIX_DERIVE_TIMEZONE,
        )
    if not recipient.neighborhood_ids:
        return diagnosis(
            EmailFailureCause.NO_NEIGHBORHOODS,
            "Recipient is not subscribed to any neighborhood",
            False,
            None,
        )
    if not send_executions:
        return diagnosis(
            EmailFailureCause.CRON_NOT_RUN,
            "No send job ran during the recipient's delivery hour",
            True,
            FIX_RESEND,
        )
    failed = [
        execution
        for execution in send_executions
        if _metadata_int(execution, "items_failed") > 0 or execution.errors
    ]
    if failed:
        return diagnosis(
            EmailFailureCause.SEND_FAILED,
            f"Send job ran but reported failures ({'; '.join(failed[0].errors[:3]) or 'items_failed'})",
            True,
            FIX_RESEND,
        )
    skipped = sum(_metadata_int(execution, "emails_skipped") for execution in send_executions)
    if skipped:
        return diagnosis(
            EmailFailureCause.RATE_LIMIT_OVERFLOW,
            f"Send job skipped {skipped} email(s) after hitting its send limit",
            True,
            FIX_RESEND,
        )
    return diagnosis(
        EmailFailureCause.UNKNOWN,
        "Send job ran without errors but no delivery was recorded",
        True,
        FIX_RESEND,
    )


def scan_recipients(conn: Any, config: Config, policy: TimePolicy) -> list[EmailDiagnosis]:
    """Diagnose every recipient past its delivery window without a send for its local today."""
    recipients = [
        recipient
        for recipient in list_recipients(conn)
        if recipient.source == RecipientSource.PROFILE or recipient.email_verified
    ]
    if not recipients:
        return []
    local_days = {
        (recipient.source.value, recipient.id): policy.local_today(recipient.timezone).isoformat()
        for recipient in recipients
    }
    sent = list_daily_send_keys(conn, min(local_days.values()))
    diagnoses: list[EmailDiagnosis] = []
    for recipient in recipients:
        if not policy.delivery_window_passed(recipient.timezone):
            continue
        key = (recipient.source.value, recipient.id)
        if (*key, local_days[key]) in sent:
            continue
        window_start, window_end = policy.expected_send_window(recipient.timezone)
        executions = list_executions(
            conn,
            since=isoformat_utc(window_start),
            until=isoformat_utc(window_end),
            job_name=config.email.send_job_name,
        )
        diagnoses.append(diagnose_email_failure(recipient, executions))
    return diagnoses


def detect_missed_emails(
    conn: Any,
    config: Config,
    policy: TimePolicy,
    logger: logging.Logger | None = None,
) -> list[DetectedIssue]:
    logger = logger or logging.getLogger("cronwatch.email")
    issues: list[DetectedIssue] = []
    for diagnosis in scan_recipients(conn, config, policy):
        if diagnosis.cause == EmailFailureCause.DISABLED_BY_USER:
            continue
        log_event(
            logger,
            logging.INFO,
            "missed_email_diagnosed",
            email=diagnosis.email,
            cause=diagnosis.cause.value,
        )
        issues.append(
            DetectedIssue(
                issue_type=IssueType.MISSED_EMAIL,
                description=f"Daily brief not delivered to {diagnosis.email}: {diagnosis.details}",
                auto_fixable=diagnosis.auto_fixable,
                job_name=diagnosis.email,
                diagnosis=diagnosis,
            )
        )
    return issues


def _fix_missing_timezone(conn: Any, diagnosis: EmailDiagnosis) -> FixResult:
    recipient = get_recipient(conn, diagnosis.recipient_id, diagnosis.source)
    if recipient is None:
        return FixResult(False, f"Recipient {diagnosis.recipient_id} no longer exists", retryable=False)
    if recipient.timezone:
        return FixResult(True, f"Timezone already set to {recipient.timezone}")
    for neighborhood_id in recipient.neighborhood_ids:
        neighborhood = get_neighborhood(conn, neighborhood_id)
        if neighborhood and neighborhood.timezone:
            set_recipient_timezone(conn, recipient.id, recipient.source, neighborhood.timezone)
            return FixResult(True, f"Timezone set to {neighborhood.timezone} from {neighborhood.name}")
    return FixResult(False, "No subscribed neighborhood has a timezone", retryable=False)


def _fix_not_possible(conn: Any, diagnosis: EmailDiagnosis) -> FixResult:
    return FixResult(False, f"Cannot fix automatically: {diagnosis.cause.value}", retryable=False)


def _no_data_fix(conn: Any, diagnosis: EmailDiagnosis) -> FixResult:
    return FixResult(True, "No data change needed before resend")


_ROOT_CAUSE_FIXES: dict[EmailFailureCause, Callable[[Any, EmailDiagnosis], FixResult]] = {
    EmailFailureCause.DISABLED_BY_USER: _fix_not_possible,
    EmailFailureCause.MISSING_TIMEZONE: _fix_missing_timezone,
    EmailFailureCause.NO_NEIGHBORHOODS: _fix_not_possible,
    EmailFailureCause.CRON_NOT_RUN: _no_data_fix,
    EmailFailureCause.SEND_FAILED: _no_data_fix,
    EmailFailureCause.RATE_LIMIT_OVERFLOW: _no_data_fix,
    EmailFailureCause.UNKNOWN: _no_data_fix,
}

_unhandled = set(EmailFailureCause) - set(_ROOT_CAUSE_FIXES)
if _unhandled:
    raise RuntimeError(f"no root-cause fix for: {sorted(c.value for c in _unhandled)}")


def fix_email_root_cause(conn: Any, diagnosis: EmailDiagnosis) -> FixResult:
    return _ROOT_CAUSE_FIXES[diagnosis.cause](conn, diagnosis)
