from datetime import timedelta

from cronwatch.issue_store import (
    IssueConflictError,
    claim_issue,
    count_issues_by_status,
    force_retry,
    get_issue,
    insert_issue,
    list_active_dedup_keys,
    list_issues,
    list_retryable_issues,
    mark_resolved,
    release_stale_claims,
    reopen_issue,
)
from cronwatch.models import DetectedIssue, IssueStatus, IssueType


def _detected(issue_type=IssueType.MISSING_IMAGE, auto_fixable=True, **scope):
    return DetectedIssue(
        issue_type=issue_type,
        description=f"{issue_type.value} test issue",
        auto_fixable=auto_fixable,
        **(scope or {"article_id": "article-1"}),
    )


def test_insert_defaults(conn, clock):
    issue = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    assert issue.status == IssueStatus.OPEN
    assert issue.retry_count == 0
    assert issue.created_at == "2026-10-19T14:00:00+00:00"
    assert issue.dedup_key == "missing_image:article-1"
    assert list_active_dedup_keys(conn) == {"missing_image:article-1"}


def test_claim_is_exclusive(conn, clock):
    issue = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    assert claim_issue(conn, issue.id, clock.now()) is True
    assert claim_issue(conn, issue.id, clock.now()) is False
    assert get_issue(conn, issue.id).status == IssueStatus.RETRYING


def test_retryable_excludes_manual_and_new(conn, clock):
    fixable = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    insert_issue(
        conn,
        _detected(IssueType.JOB_FAILURE, auto_fixable=False, job_name="sync-news"),
        max_retries=3,
        now=clock.now(),
    )
    later = clock.now() + timedelta(minutes=1)
    assert list_retryable_issues(conn, later, created_before=clock.now(), limit=10) == []
    ids = [issue.id for issue in list_retryable_issues(conn, later, created_before=later, limit=10)]
    assert ids == [fixable.id]


def test_stale_claims_are_released(conn, clock):
    issue = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    claim_issue(conn, issue.id, clock.now())
    assert release_stale_claims(conn, clock.now(), clock.now()) == 0
    later = clock.now() + timedelta(minutes=11)
    assert release_stale_claims(conn, later - timedelta(minutes=10), later) == 1
    assert get_issue(conn, issue.id).status == IssueStatus.OPEN


def test_manual_actions(conn, clock):
    issue = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    assert mark_resolved(conn, issue.id, clock.now(), resolution="Fixed upstream") is True
    resolved = get_issue(conn, issue.id)
    assert resolved.status == IssueStatus.RESOLVED
    assert resolved.fix_result == "Fixed upstream"
    assert list_active_dedup_keys(conn) == set()

    assert force_retry(conn, issue.id, clock.now()) is True
    retried = get_issue(conn, issue.id)
    assert retried.status == IssueStatus.OPEN
    assert retried.resolved_at is None

    assert reopen_issue(conn, issue.id, clock.now()) is True
    assert get_issue(conn, issue.id).retry_count == 0
    assert force_retry(conn, "missing", clock.now()) is False


def test_reactivation_refuses_duplicate_active_key(conn, clock):
    old = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    mark_resolved(conn, old.id, clock.now())
    current = insert_issue(conn, _detected(), max_retries=3, now=clock.now() + timedelta(minutes=1))

    for action in (force_retry, reopen_issue):
        try:
            action(conn, old.id, clock.now())
        except IssueConflictError as exc:
            assert "missing_image:article-1" in str(exc)
        else:
            raise AssertionError("Expected IssueConflictError")
    assert get_issue(conn, old.id).status == IssueStatus.RESOLVED

    other = insert_issue(conn, _detected(article_id="article-2"), max_retries=3, now=clock.now())
    mark_resolved(conn, other.id, clock.now())
    assert reopen_issue(conn, other.id, clock.now()) is True
    assert force_retry(conn, current.id, clock.now()) is True
    assert list_active_dedup_keys(conn) == {"missing_image:article-1", "missing_image:article-2"}


def test_listing_and_counts(conn, clock):
    first = insert_issue(conn, _detected(), max_retries=3, now=clock.now())
    second = insert_issue(
        conn,
        _detected(IssueType.THIN_CONTENT, neighborhood_id="tribeca"),
        max_retries=3,
        now=clock.now() + timedelta(minutes=1),
    )
    mark_resolved(conn, first.id, clock.now())

    assert [issue.id for issue in list_issues(conn)] == [second.id, first.id]
    assert [issue.id for issue in list_issues(conn, status=IssueStatus.OPEN)] == [second.id]
    assert [issue.id for issue in list_issues(conn, issue_type=IssueType.MISSING_IMAGE)] == [first.id]
    counts = count_issues_by_status(conn)
    assert counts == {"open": 1, "retrying": 0, "resolved": 1, "needs_manual": 0}
