from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from .db import connect_db
from .models import (
    Article,
    Brief,
    CronExecution,
    Neighborhood,
    Recipient,
    RecipientSource,
)
from .utils import isoformat_utc, json_dumps, json_loads, utc_now_iso

_ARTICLE_COLUMNS = """
    id, neighborhood_id, brief_id, headline, slug, preview_text, body_text,
    image_url, status, author_type, published_at, created_at
"""

_BRIEF_COLUMNS = """
    id, neighborhood_id, headline, content, enriched_content,
    enriched_categories_json, created_at, enriched_at
"""

_EXECUTION_COLUMNS = """
    id, job_name, started_at, completed_at, success, items_processed,
    errors_json, metadata_json, triggered_by
"""


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Tenants


def insert_neighborhood(
    conn: Any,
    name: str,
    timezone: str | None,
    neighborhood_id: str | None = None,
    city: str | None = None,
    country: str | None = None,
    is_active: bool = True,
) -> str:
    neighborhood_id = neighborhood_id or str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO neighborhoods (id, name, city, country, timezone, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (neighborhood_id, name, city, country, timezone, 1 if is_active else 0, utc_now_iso()),
    )
    conn.commit()
    return neighborhood_id


def list_neighborhoods(conn: Any, active_only: bool = True) -> list[Neighborhood]:
    where = "WHERE is_active = 1" if active_only else ""
    cursor = conn.execute(
        f"""
        SELECT id, name, city, country, timezone, is_active
        FROM neighborhoods
        {where}
        ORDER BY name
        """
    )
    return [_neighborhood_from_row(row) for row in cursor.fetchall()]


def get_neighborhood(conn: Any, neighborhood_id: str) -> Neighborhood | None:
    cursor = conn.execute(
        """
        SELECT id, name, city, country, timezone, is_active
        FROM neighborhoods
        WHERE id = ?
        """,
        (neighborhood_id,),
    )
    row = cursor.fetchone()
    return _neighborhood_from_row(row) if row else None


def _neighborhood_from_row(row) -> Neighborhood:
    return Neighborhood(
        id=row[0],
        name=row[1],
        city=row[2],
        country=row[3],
        timezone=row[4],
        is_active=bool(row[5]),
    )


# Briefs


def insert_brief(
    conn: Any,
    neighborhood_id: str,
    created_at: str,
    headline: str | None = None,
    content: str | None = None,
    enriched_content: str | None = None,
    enriched_categories: list[dict[str, object]] | None = None,
    brief_id: str | None = None,
) -> str:
    brief_id = brief_id or str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO neighborhood_briefs
            (id, neighborhood_id, headline, content, enriched_content,
             enriched_categories_json, created_at, enriched_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            brief_id,
            neighborhood_id,
            headline,
            content,
            enriched_content,
            json_dumps(enriched_categories) if enriched_categories is not None else None,
            created_at,
            created_at if enriched_content else None,
        ),
    )
    conn.commit()
    return brief_id


def list_briefs_since(conn: Any, since: str) -> list[Brief]:
    cursor = conn.execute(
        f"""
        SELECT {_BRIEF_COLUMNS}
        FROM neighborhood_briefs
        WHERE created_at >= ?
        ORDER BY created_at DESC
        """,
        (since,),
    )
    return [_brief_from_row(row) for row in cursor.fetchall()]


def get_brief(conn: Any, brief_id: str) -> Brief | None:
    cursor = conn.execute(
        f"SELECT {_BRIEF_COLUMNS} FROM neighborhood_briefs WHERE id = ?",
        (brief_id,),
    )
    row = cursor.fetchone()
    return _brief_from_row(row) if row else None


def _brief_from_row(row) -> Brief:
    categories = json_loads(row[5], None)
    return Brief(
        id=row[0],
        neighborhood_id=row[1],
        headline=row[2],
        content=row[3],
        enriched_content=row[4],
        enriched_categories=categories if isinstance(categories, list) else None,
        created_at=row[6],
        enriched_at=row[7],
    )


def insert_weekly_brief(conn: Any, neighborhood_id: str, week_date: str) -> str:
    weekly_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO weekly_briefs (id, neighborhood_id, week_date, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (weekly_id, neighborhood_id, week_date, utc_now_iso()),
    )
    conn.commit()
    return weekly_id


def list_weekly_brief_neighborhoods(conn: Any, week_date: str) -> set[str]:
    cursor = conn.execute(
        "SELECT DISTINCT neighborhood_id FROM weekly_briefs WHERE week_date = ?",
        (week_date,),
    )
    return {row[0] for row in cursor.fetchall()}


# Articles


def insert_article(
    conn: Any,
    neighborhood_id: str,
    headline: str,
    slug: str,
    body_text: str | None = None,
    preview_text: str | None = None,
    image_url: str | None = None,
    status: str = "published",
    published_at: str | None = None,
    brief_id: str | None = None,
    author_type: str | None = None,
    article_id: str | None = None,
) -> str:
    article_id = article_id or str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO articles
            (id, neighborhood_id, brief_id, headline, slug, preview_text, body_text,
             image_url, status, author_type, published_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            article_id,
            neighborhood_id,
            brief_id,
            headline,
            slug,
            preview_text,
            body_text,
            image_url,
            status,
            author_type,
            published_at,
            published_at or now,
            now,
        ),
    )
    conn.commit()
    return article_id


def get_article(conn: Any, article_id: str) -> Article | None:
    cursor = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?",
        (article_id,),
    )
    row = cursor.fetchone()
    return _article_from_row(row) if row else None


def get_article_by_slug(conn: Any, slug: str) -> Article | None:
    cursor = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE slug = ?",
        (slug,),
    )
    row = cursor.fetchone()
    return _article_from_row(row) if row else None


def list_published_articles_since(
    conn: Any, since: str, neighborhood_id: str | None = None
) -> list[Article]:
    params: list[object] = [since]
    clause = ""
    if neighborhood_id:
        clause = " AND neighborhood_id = ?"
        params.append(neighborhood_id)
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS}
        FROM articles
        WHERE status = 'published' AND published_at >= ?{clause}
        ORDER BY published_at DESC
        """,
        tuple(params),
    )
    return [_article_from_row(row) for row in cursor.fetchall()]


def count_published_articles_by_neighborhood(conn: Any, since: str) -> dict[str, int]:
    cursor = conn.execute(
        """
        SELECT neighborhood_id, COUNT(*)
        FROM articles
        WHERE status = 'published' AND published_at >= ?
        GROUP BY neighborhood_id
        """,
        (since,),
    )
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


def update_article_text(
    conn: Any, article_id: str, body_text: str | None, preview_text: str | None
) -> None:
    conn.execute(
        """
        UPDATE articles
        SET body_text = ?, preview_text = ?, updated_at = ?
        WHERE id = ?
        """,
        (body_text, preview_text, utc_now_iso(), article_id),
    )
    conn.commit()


def _article_from_row(row) -> Article:
    return Article(
        id=row[0],
        neighborhood_id=row[1],
        brief_id=row[2],
        headline=row[3],
        slug=row[4],
        preview_text=row[5],
        body_text=row[6],
        image_url=row[7],
        status=row[8],
        author_type=row[9],
        published_at=row[10],
        created_at=row[11],
    )


def count_article_sources(conn: Any, article_id: str) -> int:
    cursor = conn.execute(
        "SELECT COUNT(*) FROM article_sources WHERE article_id = ?",
        (article_id,),
    )
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def list_article_ids_with_sources(conn: Any, article_ids: Iterable[str]) -> set[str]:
    ids = list(article_ids)
    if not ids:
        return set()
    placeholders = ",".join(["?"] * len(ids))
    cursor = conn.execute(
        f"SELECT DISTINCT article_id FROM article_sources WHERE article_id IN ({placeholders})",
        tuple(ids),
    )
    return {row[0] for row in cursor.fetchall()}


def insert_article_sources(
    conn: Any, article_id: str, sources: list[dict[str, object]]
) -> int:
    now = utc_now_iso()
    for source in sources:
        conn.execute(
            """
            INSERT INTO article_sources (article_id, source_name, source_type, source_url, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                article_id,
                source["source_name"],
                source["source_type"],
                source.get("source_url"),
                now,
            ),
        )
    conn.commit()
    return len(sources)


def insert_translation(conn: Any, kind: str, target_id: str, language: str) -> None:
    if kind == "article":
        sql = "INSERT OR IGNORE INTO article_translations (article_id, language, created_at) VALUES (?, ?, ?)"
    elif kind == "brief":
        sql = "INSERT OR IGNORE INTO brief_translations (brief_id, language, created_at) VALUES (?, ?, ?)"
    else:
        raise ValueError(f"unknown translation kind: {kind}")
    conn.execute(sql, (target_id, language, utc_now_iso()))
    conn.commit()


def list_translated_ids(conn: Any, kind: str, ids: Iterable[str]) -> set[str]:
    id_list = list(ids)
    if not id_list:
        return set()
    if kind == "article":
        table, column = "article_translations", "article_id"
    elif kind == "brief":
        table, column = "brief_translations", "brief_id"
    else:
        raise ValueError(f"unknown translation kind: {kind}")
    placeholders = ",".join(["?"] * len(id_list))
    cursor = conn.execute(
        f"SELECT DISTINCT {column} FROM {table} WHERE {column} IN ({placeholders})",
        tuple(id_list),
    )
    return {row[0] for row in cursor.fetchall()}


# Recipients


def insert_profile(
    conn: Any,
    email: str,
    timezone: str | None,
    neighborhood_ids: list[str] | None = None,
    daily_email_enabled: bool = True,
    profile_id: str | None = None,
) -> str:
    profile_id = profile_id or str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO profiles (id, email, primary_timezone, daily_email_enabled, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (profile_id, email, timezone, 1 if daily_email_enabled else 0, now),
    )
    for neighborhood_id in neighborhood_ids or []:
        conn.execute(
            """
            INSERT OR IGNORE INTO user_neighborhood_preferences (user_id, neighborhood_id, created_at)
            VALUES (?, ?, ?)
            """,
            (profile_id, neighborhood_id, now),
        )
    conn.commit()
    return profile_id


def insert_subscriber(
    conn: Any,
    email: str,
    timezone: str | None,
    neighborhood_ids: list[str] | None = None,
    daily_email_enabled: bool = True,
    email_verified: bool = True,
    subscriber_id: str | None = None,
) -> str:
    subscriber_id = subscriber_id or str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO newsletter_subscribers
            (id, email, timezone, daily_email_enabled, email_verified, neighborhood_ids_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            subscriber_id,
            email,
            timezone,
            1 if daily_email_enabled else 0,
            1 if email_verified else 0,
            json_dumps(list(neighborhood_ids or [])),
            utc_now_iso(),
        ),
    )
    conn.commit()
    return subscriber_id


def list_recipients(conn: Any) -> list[Recipient]:
    preferences: dict[str, list[str]] = {}
    cursor = conn.execute(
        """
        SELECT user_id, neighborhood_id
        FROM user_neighborhood_preferences
        ORDER BY created_at, neighborhood_id
        """
    )
    for user_id, neighborhood_id in cursor.fetchall():
        preferences.setdefault(user_id, []).append(neighborhood_id)

    recipients: list[Recipient] = []
    cursor = conn.execute(
        "SELECT id, email, primary_timezone, daily_email_enabled FROM profiles ORDER BY email"
    )
    for row in cursor.fetchall():
        recipients.append(
            Recipient(
                id=row[0],
                email=row[1],
                source=RecipientSource.PROFILE,
                timezone=row[2],
                daily_email_enabled=bool(row[3]),
                email_verified=True,
                neighborhood_ids=preferences.get(row[0], []),
            )
        )
    cursor = conn.execute(
        """
        SELECT id, email, timezone, daily_email_enabled, email_verified, neighborhood_ids_json
        FROM newsletter_subscribers
        ORDER BY email
        """
    )
    for row in cursor.fetchall():
        neighborhood_ids = json_loads(row[5], [])
        recipients.append(
            Recipient(
                id=row[0],
                email=row[1],
                source=RecipientSource.NEWSLETTER,
                timezone=row[2],
                daily_email_enabled=bool(row[3]),
                email_verified=bool(row[4]),
                neighborhood_ids=[str(item) for item in neighborhood_ids or []],
            )
        )
    return recipients


def get_recipient(conn: Any, recipient_id: str, source: RecipientSource) -> Recipient | None:
    for recipient in list_recipients(conn):
        if recipient.id == recipient_id and recipient.source == source:
            return recipient
    return None


def set_recipient_timezone(
    conn: Any, recipient_id: str, source: RecipientSource, timezone: str
) -> None:
    if source == RecipientSource.PROFILE:
        sql = "UPDATE profiles SET primary_timezone = ? WHERE id = ?"
    else:
        sql = "UPDATE newsletter_subscribers SET timezone = ? WHERE id = ?"
    conn.execute(sql, (timezone, recipient_id))
    conn.commit()


def record_daily_send(
    conn: Any,
    recipient_id: str,
    source: RecipientSource,
    send_date: str,
    sent_at: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO daily_brief_sends (recipient_id, recipient_source, send_date, sent_at)
        VALUES (?, ?, ?, ?)
        """,
        (recipient_id, source.value, send_date, sent_at or utc_now_iso()),
    )
    conn.commit()


def list_daily_send_keys(conn: Any, since_date: str) -> set[tuple[str, str, str]]:
    """Sends since ``since_date`` as ``(recipient_source, recipient_id, send_date)``."""
    cursor = conn.execute(
        """
        SELECT recipient_source, recipient_id, send_date
        FROM daily_brief_sends
        WHERE send_date >= ?
        """,
        (since_date,),
    )
    return {(row[0], row[1], row[2]) for row in cursor.fetchall()}


def record_weekly_send(
    conn: Any, recipient_id: str, source: RecipientSource, week_date: str
) -> None:
    conn.execute(
        """
        INSERT INTO weekly_brief_sends (recipient_id, recipient_source, week_date, sent_at)
        VALUES (?, ?, ?, ?)
        """,
        (recipient_id, source.value, week_date, utc_now_iso()),
    )
    conn.commit()


def count_weekly_sends(conn: Any, week_date: str) -> int:
    cursor = conn.execute(
        "SELECT COUNT(DISTINCT recipient_id) FROM weekly_brief_sends WHERE week_date = ?",
        (week_date,),
    )
    row = cursor.fetchone()
    return int(row[0]) if row else 0


# Execution log


def record_cron_execution(
    conn: Any,
    job_name: str,
    started_at: str,
    completed_at: str | None,
    success: bool | None,
    items_processed: int = 0,
    errors: list[str] | None = None,
    metadata: dict[str, object] | None = None,
    triggered_by: str | None = None,
) -> str:
    execution_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO cron_executions
            (id, job_name, started_at, completed_at, success, items_processed,
             errors_json, metadata_json, triggered_by)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            execution_id,
            job_name,
            started_at,
            completed_at,
            None if success is None else (1 if success else 0),
            items_processed,
            json_dumps(errors) if errors else None,
            json_dumps(metadata) if metadata else None,
            triggered_by,
        ),
    )
    conn.commit()
    return execution_id


def list_executions(
    conn: Any,
    since: str | None = None,
    until: str | None = None,
    job_name: str | None = None,
    failed_only: bool = False,
    limit: int | None = None,
) -> list[CronExecution]:
    clauses: list[str] = []
    params: list[object] = []
    if since:
        clauses.append("started_at >= ?")
        params.append(since)
    if until:
        clauses.append("started_at < ?")
        params.append(until)
    if job_name:
        clauses.append("job_name = ?")
        params.append(job_name)
    if failed_only:
        clauses.append("success = 0")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    limit_clause = f" LIMIT {int(limit)}" if limit else ""
    cursor = conn.execute(
        f"""
        SELECT {_EXECUTION_COLUMNS}
        FROM cron_executions
        {where}
        ORDER BY started_at DESC{limit_clause}
        """,
        tuple(params),
    )
    return [_execution_from_row(row) for row in cursor.fetchall()]


def _execution_from_row(row) -> CronExecution:
    errors = json_loads(row[6], [])
    metadata = json_loads(row[7], {})
    return CronExecution(
        id=row[0],
        job_name=row[1],
        started_at=row[2],
        completed_at=row[3],
        success=None if row[4] is None else bool(row[4]),
        items_processed=int(row[5] or 0),
        errors=[str(item) for item in errors] if isinstance(errors, list) else [str(errors)],
        metadata=metadata if isinstance(metadata, dict) else {},
        triggered_by=row[8],
    )


# Run leases


def try_acquire_lease(
    conn: Any,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
    now: datetime | None = None,
) -> bool:
    """Take the named lease unless another holder has an unexpired one."""
    current = now or datetime.now(tz=timezone.utc)
    now_iso = isoformat_utc(current)
    expires_at = isoformat_utc(current + timedelta(seconds=ttl_seconds))
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO leases (name, holder, acquired_at, expires_at)
        VALUES (?, ?, ?, ?)
        """,
        (lease_name, holder, now_iso, expires_at),
    )
    if cursor.rowcount == 1:
        conn.commit()
        return True
    cursor = conn.execute(
        """
        UPDATE leases
        SET holder = ?, acquired_at = ?, expires_at = ?
        WHERE name = ? AND (expires_at <= ? OR holder = ?)
        """,
        (holder, now_iso, expires_at, lease_name, now_iso, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1
