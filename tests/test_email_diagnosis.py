from datetime import datetime, timezone

from cronwatch.clock import FixedClock, TimePolicy
from cronwatch.models import (
    CronExecution,
    EmailFailureCause,
    IssueType,
    Recipient,
    RecipientSource,
)
from cronwatch.monitor.email_diagnosis import (
    FIX_DERIVE_TIMEZONE,
    detect_missed_emails,
    diagnose_email_failure,
    fix_email_root_cause,
    scan_recipients,
)
from cronwatch.storage import (
    get_recipient,
    insert_neighborhood,
    insert_profile,
    insert_subscriber,
    list_daily_send_keys,
    record_cron_execution,
    record_daily_send,
)


def _recipient(**overrides) -> Recipient:
    values = {
        "id": "user-1",
        "email": "reader@example.com",
        "source": RecipientSource.PROFILE,
        "timezone": "America/New_York",
        "daily_email_enabled": True,
        "email_verified": True,
        "neighborhood_ids": ["tribeca"],
    }
    values.update(overrides)
    return Recipient(**values)


def _execution(errors=None, metadata=None) -> CronExecution:
    return CronExecution(
        id="exec-1",
        job_name="send-daily-brief",
        started_at="2026-10-19T11:00:05+00:00",
        completed_at="2026-10-19T11:02:00+00:00",
        success=not errors,
        items_processed=10,
        errors=errors or [],
        metadata=metadata or {},
        triggered_by="cron",
    )


def _policy_at(config, hour: int) -> TimePolicy:
    return TimePolicy.from_config(config, FixedClock(datetime(2026, 10, 19, hour, 0, tzinfo=timezone.utc)))


def test_disabled_wins_over_later_causes():
    recipient = _recipient(daily_email_enabled=False, timezone=None, neighborhood_ids=[])
    diagnosis = diagnose_email_failure(recipient, [])
    assert diagnosis.cause == EmailFailureCause.DISABLED_BY_USER
    assert diagnosis.auto_fixable is False


def test_diagnosis_chain_order():
    assert diagnose_email_failure(_recipient(timezone=None), []).cause == EmailFailureCause.MISSING_TIMEZONE
    assert diagnose_email_failure(_recipient(neighborhood_ids=[]), []).cause == EmailFailureCause.NO_NEIGHBORHOODS
    assert diagnose_email_failure(_recipient(), []).cause == EmailFailureCause.CRON_NOT_RUN
    failed = diagnose_email_failure(_recipient(), [_execution(errors=["smtp 421"])])
    assert failed.cause == EmailFailureCause.SEND_FAILED
    assert "smtp 421" in failed.details
    skipped = diagnose_email_failure(_recipient(), [_execution(metadata={"emails_skipped": 4})])
    assert skipped.cause == EmailFailureCause.RATE_LIMIT_OVERFLOW
    assert diagnose_email_failure(_recipient(), [_execution()]).cause == EmailFailureCause.UNKNOWN


def test_missing_timezone_is_fixed_by_derivation():
    diagnosis = diagnose_email_failure(_recipient(timezone=None), [])
    assert diagnosis.auto_fixable is True
    assert diagnosis.fix_action == FIX_DERIVE_TIMEZONE


def test_disabled_recipient_at_utc_1300_creates_no_issue(conn, config):
    insert_profile(conn, "quiet@example.com", None, neighborhood_ids=["tribeca"], daily_email_enabled=False)
    policy = _policy_at(config, 13)

    diagnoses = scan_recipients(conn, config, policy)
    assert [d.cause for d in diagnoses] == [EmailFailureCause.DISABLED_BY_USER]
    assert detect_missed_emails(conn, config, policy) == []


def test_scan_skips_delivered_and_not_yet_due(conn, config):
    insert_neighborhood(conn, "Tribeca", "America/New_York", neighborhood_id="tribeca")
    delivered = insert_profile(conn, "got-it@example.com", "America/New_York", neighborhood_ids=["tribeca"])
    insert_profile(conn, "tokyo@example.com", "Asia/Tokyo", neighborhood_ids=["tribeca"])
    insert_profile(conn, "pending@example.com", "America/Los_Angeles", neighborhood_ids=["tribeca"])
    insert_subscriber(conn, "unverified@example.com", "America/New_York", ["tribeca"], email_verified=False)
    record_daily_send(conn, delivered, RecipientSource.PROFILE, "2026-10-19")

    # 13:00 UTC: 09:00 New York, 22:00 Tokyo, 06:00 Los Angeles
    diagnoses = scan_recipients(conn, config, _policy_at(config, 13))
    assert [d.email for d in diagnoses] == ["tokyo@example.com"]


def test_send_for_profile_does_not_cover_subscriber_with_same_id(conn, config):
    insert_neighborhood(conn, "Tribeca", "America/New_York", neighborhood_id="tribeca")
    insert_profile(conn, "member@example.com", "America/New_York", ["tribeca"], profile_id="shared")
    insert_subscriber(conn, "letter@example.com", "America/New_York", ["tribeca"], subscriber_id="shared")
    record_daily_send(conn, "shared", RecipientSource.PROFILE, "2026-10-19")

    assert list_daily_send_keys(conn, "2026-10-19") == {("profile", "shared", "2026-10-19")}
    diagnoses = scan_recipients(conn, config, _policy_at(config, 13))
    assert [(d.email, d.source) for d in diagnoses] == [("letter@example.com", RecipientSource.NEWSLETTER)]


def test_detect_missed_emails_uses_send_job_window(conn, config):
    insert_profile(conn, "reader@example.com", "America/New_York", neighborhood_ids=["tribeca"])
    record_cron_execution(
        conn,
        "send-daily-brief",
        started_at="2026-10-19T11:00:10+00:00",
        completed_at="2026-10-19T11:03:00+00:00",
        success=False,
        errors=["provider returned 500"],
    )

    issues = detect_missed_emails(conn, config, _policy_at(config, 13))
    assert len(issues) == 1
    issue = issues[0]
    assert issue.issue_type == IssueType.MISSED_EMAIL
    assert issue.job_name == "reader@example.com"
    assert issue.diagnosis.cause == EmailFailureCause.SEND_FAILED
    assert issue.auto_fixable is True


def test_fix_missing_timezone_copies_neighborhood_zone(conn):
    insert_neighborhood(conn, "Tribeca", "America/New_York", neighborhood_id="tribeca")
    profile_id = insert_profile(conn, "nozone@example.com", None, neighborhood_ids=["tribeca"])
    recipient = get_recipient(conn, profile_id, RecipientSource.PROFILE)
    diagnosis = diagnose_email_failure(recipient, [])

    result = fix_email_root_cause(conn, diagnosis)
    assert result.success is True
    assert get_recipient(conn, profile_id, RecipientSource.PROFILE).timezone == "America/New_York"


def test_fix_not_possible_for_no_neighborhoods(conn):
    diagnosis = diagnose_email_failure(_recipient(neighborhood_ids=[]), [])
    result = fix_email_root_cause(conn, diagnosis)
    assert result.success is False
    assert result.retryable is False
