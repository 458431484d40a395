from datetime import datetime, timedelta, timezone

from cronwatch.models import Issue, IssueStatus, IssueType
from cronwatch.monitor.retry import RetryPolicy
from cronwatch.utils import isoformat_utc

NOW = datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)


def _issue(retry_count=0, max_retries=3, next_retry_at=None, auto_fixable=True) -> Issue:
    return Issue(
        id="issue-1",
        issue_type=IssueType.MISSING_IMAGE,
        article_id="article-1",
        neighborhood_id=None,
        job_name=None,
        description="Article has no image",
        status=IssueStatus.OPEN,
        retry_count=retry_count,
        max_retries=max_retries,
        next_retry_at=next_retry_at,
        auto_fixable=auto_fixable,
        fix_attempted_at=None,
        fix_result=None,
        created_at=isoformat_utc(NOW),
        resolved_at=None,
        updated_at=isoformat_utc(NOW),
    )


def test_delay_clamps_to_last_entry():
    policy = RetryPolicy()
    assert policy.delay_for(0) == timedelta(0)
    assert policy.delay_for(1) == timedelta(minutes=15)
    assert policy.delay_for(2) == timedelta(minutes=60)
    assert policy.delay_for(7) == timedelta(minutes=60)


def test_backoff_is_monotonic():
    policy = RetryPolicy(backoff_minutes=[0, 5, 15, 60])
    delays = [policy.delay_for(count) for count in range(6)]
    assert delays == sorted(delays)


def test_next_retry_at_adds_delay():
    policy = RetryPolicy()
    assert policy.next_retry_at(1, NOW) == NOW + timedelta(minutes=15)


def test_can_retry_respects_next_retry_at():
    policy = RetryPolicy()
    later = isoformat_utc(NOW + timedelta(minutes=1))
    earlier = isoformat_utc(NOW - timedelta(minutes=1))
    assert policy.can_retry(_issue(next_retry_at=later), NOW) is False
    assert policy.can_retry(_issue(next_retry_at=earlier), NOW) is True
    assert policy.can_retry(_issue(next_retry_at=isoformat_utc(NOW)), NOW) is True
    assert policy.can_retry(_issue(), NOW) is True


def test_can_retry_requires_budget_and_auto_fix():
    policy = RetryPolicy()
    assert policy.can_retry(_issue(retry_count=3), NOW) is False
    assert policy.can_retry(_issue(auto_fixable=False), NOW) is False
