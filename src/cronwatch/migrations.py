from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("cronwatch.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_content_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS neighborhoods (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            city TEXT NULL,
            country TEXT NULL,
            timezone TEXT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS neighborhood_briefs (
            id TEXT PRIMARY KEY,
            neighborhood_id TEXT NOT NULL REFERENCES neighborhoods(id),
            headline TEXT NULL,
            content TEXT NULL,
            enriched_content TEXT NULL,
            enriched_categories_json TEXT NULL,
            created_at TEXT NOT NULL,
            enriched_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS weekly_briefs (
            id TEXT PRIMARY KEY,
            neighborhood_id TEXT NOT NULL REFERENCES neighborhoods(id),
            week_date TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            neighborhood_id TEXT NOT NULL REFERENCES neighborhoods(id),
            brief_id TEXT NULL,
            headline TEXT NOT NULL,
            slug TEXT NOT NULL UNIQUE,
            preview_text TEXT NULL,
            body_text TEXT NULL,
            image_url TEXT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            author_type TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id TEXT NOT NULL REFERENCES articles(id),
            source_name TEXT NOT NULL,
            source_type TEXT NOT NULL,
            source_url TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_translations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id TEXT NOT NULL REFERENCES articles(id),
            language TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(article_id, language)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS brief_translations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            brief_id TEXT NOT NULL REFERENCES neighborhood_briefs(id),
            language TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(brief_id, language)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_briefs_created ON neighborhood_briefs(created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(status, published_at)"
    )


def _migration_recipients(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            primary_timezone TEXT NULL,
            daily_email_enabled INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_neighborhood_preferences (
            user_id TEXT NOT NULL REFERENCES profiles(id),
            neighborhood_id TEXT NOT NULL REFERENCES neighborhoods(id),
            created_at TEXT NOT NULL,
            PRIMARY KEY (user_id, neighborhood_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS newsletter_subscribers (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            timezone TEXT NULL,
            daily_email_enabled INTEGER NOT NULL DEFAULT 1,
            email_verified INTEGER NOT NULL DEFAULT 0,
            neighborhood_ids_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS daily_brief_sends (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient_id TEXT NOT NULL,
            recipient_source TEXT NOT NULL,
            send_date TEXT NOT NULL,
            sent_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS weekly_brief_sends (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient_id TEXT NOT NULL,
            recipient_source TEXT NOT NULL,
            week_date TEXT NOT NULL,
            sent_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_daily_sends_recipient ON daily_brief_sends(recipient_id, send_date)"
    )


def _migration_cron_monitor(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cron_executions (
            id TEXT PRIMARY KEY,
            job_name TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT NULL,
            success INTEGER NULL,
            items_processed INTEGER NOT NULL DEFAULT 0,
            errors_json TEXT NULL,
            metadata_json TEXT NULL,
            triggered_by TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cron_issues (
            id TEXT PRIMARY KEY,
            issue_type TEXT NOT NULL,
            article_id TEXT NULL,
            neighborhood_id TEXT NULL,
            job_name TEXT NULL,
            description TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            next_retry_at TEXT NULL,
            auto_fixable INTEGER NOT NULL DEFAULT 0,
            fix_attempted_at TEXT NULL,
            fix_result TEXT NULL,
            created_at TEXT NOT NULL,
            resolved_at TEXT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_cron_issues_status ON cron_issues(status, next_retry_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_cron_executions_job ON cron_executions(job_name, started_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )


def _migration_email_diagnoses(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS email_diagnoses (
            issue_id TEXT PRIMARY KEY REFERENCES cron_issues(id),
            recipient_id TEXT NOT NULL,
            email TEXT NOT NULL,
            source TEXT NOT NULL,
            cause TEXT NOT NULL,
            details TEXT NOT NULL,
            auto_fixable INTEGER NOT NULL DEFAULT 0,
            fix_action TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_content_schema", _migration_content_schema),
        ("002_recipients", _migration_recipients),
        ("003_cron_monitor", _migration_cron_monitor),
        ("004_email_diagnoses", _migration_email_diagnoses),
    ]
