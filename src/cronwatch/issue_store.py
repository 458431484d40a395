from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from .models import (
    DetectedIssue,
    EmailDiagnosis,
    EmailFailureCause,
    Issue,
    IssueStatus,
    IssueType,
    RecipientSource,
)
from .utils import isoformat_utc

_ISSUE_COLUMNS = """
    id, issue_type, article_id, neighborhood_id, job_name, description, status,
    retry_count, max_retries, next_retry_at, auto_fixable, fix_attempted_at,
    fix_result, created_at, resolved_at, updated_at
"""

ACTIVE_STATUSES = (IssueStatus.OPEN.value, IssueStatus.RETRYING.value)

# No other active issue may share the row's dedup key.
_NO_ACTIVE_TWIN = """
    NOT EXISTS (
        SELECT 1 FROM cron_issues AS other
        WHERE other.id <> cron_issues.id
          AND other.issue_type = cron_issues.issue_type
          AND COALESCE(other.article_id, other.neighborhood_id, other.job_name, '')
              = COALESCE(cron_issues.article_id, cron_issues.neighborhood_id, cron_issues.job_name, '')
          AND other.status IN (?, ?)
    )
"""


class IssueConflictError(ValueError):
    """Raised when reactivating an issue would duplicate an active dedup key."""


def insert_issue(
    conn: Any,
    detected: DetectedIssue,
    max_retries: int,
    now: datetime,
) -> Issue:
    issue_id = str(uuid.uuid4())
    now_iso = isoformat_utc(now)
    conn.execute(
        """
        INSERT INTO cron_issues
            (id, issue_type, article_id, neighborhood_id, job_name, description, status,
             retry_count, max_retries, next_retry_at, auto_fixable, fix_attempted_at,
             fix_result, created_at, resolved_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, NULL, NULL, ?, NULL, ?)
        """,
        (
            issue_id,
            detected.issue_type.value,
            detected.article_id,
            detected.neighborhood_id,
            detected.job_name,
            detected.description,
            IssueStatus.OPEN.value,
            max_retries,
            now_iso,
            1 if detected.auto_fixable else 0,
            now_iso,
            now_iso,
        ),
    )
    if detected.diagnosis is not None:
        _insert_diagnosis(conn, issue_id, detected.diagnosis, now_iso)
    conn.commit()
    issue = get_issue(conn, issue_id)
    if issue is None:
        raise RuntimeError(f"issue {issue_id} missing after insert")
    return issue


def get_issue(conn: Any, issue_id: str) -> Issue | None:
    cursor = conn.execute(
        f"SELECT {_ISSUE_COLUMNS} FROM cron_issues WHERE id = ?",
        (issue_id,),
    )
    row = cursor.fetchone()
    return _issue_from_row(row) if row else None


def list_issues(
    conn: Any,
    status: IssueStatus | None = None,
    issue_type: IssueType | None = None,
    limit: int = 100,
) -> list[Issue]:
    clauses: list[str] = []
    params: list[object] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    if issue_type is not None:
        clauses.append("issue_type = ?")
        params.append(issue_type.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    cursor = conn.execute(
        f"""
        SELECT {_ISSUE_COLUMNS}
        FROM cron_issues
        {where}
        ORDER BY created_at DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_issue_from_row(row) for row in cursor.fetchall()]


def list_active_issues(conn: Any) -> list[Issue]:
    cursor = conn.execute(
        f"""
        SELECT {_ISSUE_COLUMNS}
        FROM cron_issues
        WHERE status IN (?, ?)
        """,
        ACTIVE_STATUSES,
    )
    return [_issue_from_row(row) for row in cursor.fetchall()]


def list_active_dedup_keys(conn: Any) -> set[str]:
    return {issue.dedup_key for issue in list_active_issues(conn)}


def list_retryable_issues(
    conn: Any,
    now: datetime,
    created_before: datetime,
    limit: int | None = None,
) -> list[Issue]:
    """Open auto-fixable issues due at ``now``, oldest first."""
    now_iso = isoformat_utc(now)
    limit_clause = f" LIMIT {int(limit)}" if limit else ""
    cursor = conn.execute(
        f"""
        SELECT {_ISSUE_COLUMNS}
        FROM cron_issues
        WHERE status = ?
          AND auto_fixable = 1
          AND retry_count < max_retries
          AND (next_retry_at IS NULL OR next_retry_at <= ?)
          AND created_at < ?
        ORDER BY created_at ASC{limit_clause}
        """,
        (IssueStatus.OPEN.value, now_iso, isoformat_utc(created_before)),
    )
    return [_issue_from_row(row) for row in cursor.fetchall()]


def claim_issue(conn: Any, issue_id: str, now: datetime) -> bool:
    """Move an open issue to retrying; False when another worker got it first."""
    now_iso = isoformat_utc(now)
    cursor = conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, fix_attempted_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (IssueStatus.RETRYING.value, now_iso, now_iso, issue_id, IssueStatus.OPEN.value),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_stale_claims(conn: Any, claimed_before: datetime, now: datetime) -> int:
    cursor = conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, updated_at = ?
        WHERE status = ? AND fix_attempted_at IS NOT NULL AND fix_attempted_at < ?
        """,
        (
            IssueStatus.OPEN.value,
            isoformat_utc(now),
            IssueStatus.RETRYING.value,
            isoformat_utc(claimed_before),
        ),
    )
    conn.commit()
    return cursor.rowcount or 0


def record_fix_success(conn: Any, issue_id: str, message: str, now: datetime) -> None:
    now_iso = isoformat_utc(now)
    conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, fix_result = ?, resolved_at = ?, next_retry_at = NULL, updated_at = ?
        WHERE id = ?
        """,
        (IssueStatus.RESOLVED.value, message, now_iso, now_iso, issue_id),
    )
    conn.commit()


def record_fix_failure(
    conn: Any,
    issue_id: str,
    message: str,
    status: IssueStatus,
    retry_count: int,
    next_retry_at: datetime | None,
    now: datetime,
) -> None:
    conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, retry_count = ?, next_retry_at = ?, fix_result = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            status.value,
            retry_count,
            isoformat_utc(next_retry_at) if next_retry_at else None,
            message,
            isoformat_utc(now),
            issue_id,
        ),
    )
    conn.commit()


def mark_resolved(
    conn: Any, issue_id: str, now: datetime, resolution: str = "Manually resolved"
) -> bool:
    now_iso = isoformat_utc(now)
    cursor = conn.execute(
        """
        UPDATE cron_issues
        SET status = ?, fix_result = ?, resolved_at = ?, next_retry_at = NULL, updated_at = ?
        WHERE id = ?
        """,
        (IssueStatus.RESOLVED.value, resolution, now_iso, now_iso, issue_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def force_retry(conn: Any, issue_id: str, now: datetime) -> bool:
    """Make an issue eligible for the next fix pass, keeping at least one attempt."""
    now_iso = isoformat_utc(now)
    cursor = conn.execute(
        f"""
        UPDATE cron_issues
        SET status = ?,
            next_retry_at = ?,
            retry_count = CASE WHEN retry_count >= max_retries THEN max_retries - 1 ELSE retry_count END,
            resolved_at = NULL,
            updated_at = ?
        WHERE id = ? AND {_NO_ACTIVE_TWIN}
        """,
        (IssueStatus.OPEN.value, now_iso, now_iso, issue_id, *ACTIVE_STATUSES),
    )
    conn.commit()
    return _reactivated(conn, cursor, issue_id)


def reopen_issue(conn: Any, issue_id: str, now: datetime) -> bool:
    now_iso = isoformat_utc(now)
    cursor = conn.execute(
        f"""
        UPDATE cron_issues
        SET status = ?, retry_count = 0, next_retry_at = NULL, resolved_at = NULL, updated_at = ?
        WHERE id = ? AND {_NO_ACTIVE_TWIN}
        """,
        (IssueStatus.OPEN.value, now_iso, issue_id, *ACTIVE_STATUSES),
    )
    conn.commit()
    return _reactivated(conn, cursor, issue_id)


def _reactivated(conn: Any, cursor: Any, issue_id: str) -> bool:
    if cursor.rowcount == 1:
        return True
    issue = get_issue(conn, issue_id)
    if issue is None:
        return False
    raise IssueConflictError(f"another active issue already covers {issue.dedup_key}")


def count_issues_by_status(conn: Any) -> dict[str, int]:
    cursor = conn.execute("SELECT status, COUNT(*) FROM cron_issues GROUP BY status")
    counts = {status.value: 0 for status in IssueStatus}
    for status, count in cursor.fetchall():
        counts[status] = int(count)
    return counts


def get_diagnosis(conn: Any, issue_id: str) -> EmailDiagnosis | None:
    cursor = conn.execute(
        """
        SELECT recipient_id, email, source, cause, details, auto_fixable, fix_action
        FROM email_diagnoses
        WHERE issue_id = ?
        """,
        (issue_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return EmailDiagnosis(
        recipient_id=row[0],
        email=row[1],
        source=RecipientSource(row[2]),
        cause=EmailFailureCause(row[3]),
        details=row[4],
        auto_fixable=bool(row[5]),
        fix_action=row[6],
    )


def _insert_diagnosis(conn: Any, issue_id: str, diagnosis: EmailDiagnosis, now_iso: str) -> None:
    conn.execute(
        """
        INSERT INTO email_diagnoses
            (issue_id, recipient_id, email, source, cause, details, auto_fixable, fix_action, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            issue_id,
            diagnosis.recipient_id,
            diagnosis.email,
            diagnosis.source.value,
            diagnosis.cause.value,
            diagnosis.details,
            1 if diagnosis.auto_fixable else 0,
            diagnosis.fix_action,
            now_iso,
        ),
    )


def _issue_from_row(row) -> Issue:
    return Issue(
        id=row[0],
        issue_type=IssueType(row[1]),
        article_id=row[2],
        neighborhood_id=row[3],
        job_name=row[4],
        description=row[5],
        status=IssueStatus(row[6]),
        retry_count=int(row[7]),
        max_retries=int(row[8]),
        next_retry_at=row[9],
        auto_fixable=bool(row[10]),
        fix_attempted_at=row[11],
        fix_result=row[12],
        created_at=row[13],
        resolved_at=row[14],
        updated_at=row[15],
    )
