from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    # Works for both backends; conn is a DBConn so `?` placeholders are normalised.
    logger = logging.getLogger("valuebot.migrations")
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
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_analysis_queue(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS analysis_queue (
            id TEXT PRIMARY KEY,
            ticker TEXT NULL,
            company_name TEXT NULL,
            status TEXT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            provider TEXT NULL,
            model TEXT NULL,
            timeframe TEXT NULL,
            custom_question TEXT NULL,
            profile_id TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            last_run TEXT NULL,
            last_run_at TEXT NULL,
            updated_at TEXT NULL,
            error TEXT NULL,
            last_error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_analysis_queue_status_created "
        "ON analysis_queue(status, created_at)"
    )


def _migration_investment_universe(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS investment_universe (
            profile_id TEXT NOT NULL DEFAULT '',
            symbol TEXT NOT NULL,
            name TEXT NULL,
            last_deep_dive_at TEXT NULL,
            last_risk_label TEXT NULL,
            last_quality_label TEXT NULL,
            last_timing_label TEXT NULL,
            last_composite_score DOUBLE PRECISION NULL,
            last_model TEXT NULL,
            addon_summary TEXT NULL,
            addon_flags TEXT NULL,
            last_addon_run_at TEXT NULL,
            updated_at TEXT NULL,
            PRIMARY KEY (profile_id, symbol)
        )
        """
    )


def _migration_deep_dives(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS deep_dives (
            id TEXT PRIMARY KEY,
            job_id TEXT NULL,
            ticker TEXT NOT NULL,
            company_name TEXT NULL,
            provider TEXT NOT NULL,
            model TEXT NULL,
            timeframe TEXT NULL,
            custom_question TEXT NULL,
            module0_markdown TEXT NULL,
            module1_markdown TEXT NULL,
            module2_markdown TEXT NULL,
            module3_markdown TEXT NULL,
            module4_markdown TEXT NULL,
            module5_markdown TEXT NULL,
            module6_markdown TEXT NULL,
            meta_json TEXT NULL,
            source TEXT NOT NULL,
            profile_id TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_deep_dives_ticker ON deep_dives(ticker)")


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_analysis_queue", _migration_analysis_queue),
        ("002_investment_universe", _migration_investment_universe),
        ("003_deep_dives", _migration_deep_dives),
    ]
