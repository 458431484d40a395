from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..models import Issue
from ..utils import parse_iso


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_minutes: list[int] = field(default_factory=lambda: [0, 15, 60])

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.retry.max_retries,
            backoff_minutes=list(config.retry.backoff_minutes),
        )

    def delay_for(self, retry_count: int) -> timedelta:
        if not self.backoff_minutes:
            return timedelta(0)
        index = min(max(retry_count, 0), len(self.backoff_minutes) - 1)
        return timedelta(minutes=self.backoff_minutes[index])

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        return now + self.delay_for(retry_count)

    def can_retry(self, issue: Issue, now: datetime) -> bool:
        if issue.retry_count >= issue.max_retries:
            return False
        if not issue.auto_fixable:
            return False
        if not issue.next_retry_at:
            return True
        next_at = parse_iso(issue.next_retry_at)
        if next_at is None:
            return True
        return now >= next_at
