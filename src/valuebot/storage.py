from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import connect_db
from .errors import CountError, FetchError
from .models import Job, QueueStatus
from .utils import clean_text, json_dumps, utc_now_iso, utc_now_iso_offset

JOB_COLUMNS = (
    "id",
    "ticker",
    "company_name",
    "status",
    "attempts",
    "provider",
    "model",
    "timeframe",
    "custom_question",
    "profile_id",
    "created_at",
    "started_at",
    "last_run_at",
    "updated_at",
    "error",
    "last_error",
)

JOB_PATCH_COLUMNS = {
    "status",
    "started_at",
    "last_run",
    "last_run_at",
    "attempts",
    "error",
    "last_error",
}

UNIVERSE_COLUMNS = (
    "profile_id",
    "symbol",
    "name",
    "last_deep_dive_at",
    "last_risk_label",
    "last_quality_label",
    "last_timing_label",
    "last_composite_score",
    "last_model",
    "addon_summary",
    "addon_flags",
    "last_addon_run_at",
    "updated_at",
)

UNIVERSE_PATCH_COLUMNS = set(UNIVERSE_COLUMNS) - {"profile_id", "symbol", "updated_at"}

# A null status means "never claimed" and is treated exactly like pending.
PENDING_PREDICATE = "(status IS NULL OR status = 'pending')"


def init_db(path: str | None = None, url: str | None = None):
    return connect_db(path, url)


def enqueue_job(
    conn: Any,
    *,
    ticker: str | None = None,
    company_name: str | None = None,
    provider: str | None = None,
    model: str | None = None,
    timeframe: str | None = None,
    custom_question: str | None = None,
    profile_id: str | None = None,
    status: str | None = QueueStatus.PENDING.value,
    attempts: int = 0,
    created_at: str | None = None,
) -> str:
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO analysis_queue
            (id, ticker, company_name, status, attempts, provider, model, timeframe,
             custom_question, profile_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            ticker,
            company_name,
            status,
            attempts,
            provider,
            model,
            timeframe,
            custom_question,
            profile_id,
            created_at or now,
            now,
        ),
    )
    conn.commit()
    return job_id


def get_job(conn: Any, job_id: str) -> Job | None:
    cursor = conn.execute(
        f"SELECT {', '.join(JOB_COLUMNS)} FROM analysis_queue WHERE id = ?",
        (job_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(conn: Any, status: str | None = None, limit: int = 50) -> list[Job]:
    if status == QueueStatus.PENDING.value:
        cursor = conn.execute(
            f"""
            SELECT {', '.join(JOB_COLUMNS)}
            FROM analysis_queue
            WHERE {PENDING_PREDICATE}
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (limit,),
        )
    elif status:
        cursor = conn.execute(
            f"""
            SELECT {', '.join(JOB_COLUMNS)}
            FROM analysis_queue
            WHERE status = ?
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {', '.join(JOB_COLUMNS)}
            FROM analysis_queue
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def fetch_pending_jobs(conn: Any, limit: int) -> list[Job]:
    try:
        cursor = conn.execute(
            f"""
            SELECT {', '.join(JOB_COLUMNS)}
            FROM analysis_queue
            WHERE {PENDING_PREDICATE}
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (limit,),
        )
        rows = cursor.fetchall()
    except Exception as exc:  # noqa: BLE001
        _safe_rollback(conn)
        raise FetchError(f"Failed to fetch pending jobs: {exc}") from exc
    return [_row_to_job(row) for row in rows]


def claim_jobs(conn: Any, job_ids: Iterable[str]) -> set[str]:
    """Move the given pending jobs to running in one conditional update.

    The WHERE clause re-checks the pending predicate, so rows another worker
    claimed between our select and this update are left alone and are missing
    from the returned set. Only ids passed in can ever be claimed.
    """
    ids = list(dict.fromkeys(job_ids))
    if not ids:
        return set()
    now = utc_now_iso()
    placeholders = ", ".join(["?"] * len(ids))
    try:
        cursor = conn.execute(
            f"""
            UPDATE analysis_queue
            SET status = 'running', started_at = ?, updated_at = ?
            WHERE id IN ({placeholders}) AND {PENDING_PREDICATE}
            RETURNING id
            """,
            (now, now, *ids),
        )
        claimed = {row[0] for row in cursor.fetchall()}
        conn.commit()
    except Exception as exc:  # noqa: BLE001
        _safe_rollback(conn)
        raise FetchError(f"Failed to claim jobs: {exc}") from exc
    return claimed


def update_job_status(conn: Any, job_id: str, patch: dict[str, Any]) -> None:
    unknown = set(patch) - JOB_PATCH_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported job columns: {', '.join(sorted(unknown))}")
    values = dict(patch)
    values["updated_at"] = utc_now_iso()
    assignments = ", ".join(f"{column} = ?" for column in values)
    conn.execute(
        f"UPDATE analysis_queue SET {assignments} WHERE id = ?",
        (*values.values(), job_id),
    )
    conn.commit()


def count_pending_jobs(conn: Any) -> int:
    return _count(conn, f"SELECT COUNT(*) FROM analysis_queue WHERE {PENDING_PREDICATE}", ())


def count_completed_jobs(conn: Any) -> int:
    return _count(
        conn,
        "SELECT COUNT(*) FROM analysis_queue WHERE status = ?",
        (QueueStatus.COMPLETED.value,),
    )


def reset_stuck_jobs(conn: Any, older_than_seconds: int) -> int:
    cutoff = utc_now_iso_offset(seconds=-older_than_seconds)
    cursor = conn.execute(
        """
        UPDATE analysis_queue
        SET status = 'pending', updated_at = ?
        WHERE status = 'running' AND (started_at IS NULL OR started_at < ?)
        """,
        (utc_now_iso(), cutoff),
    )
    count = cursor.rowcount
    conn.commit()
    return count


def get_universe_row(conn: Any, symbol: str, profile_id: str | None = None) -> dict[str, Any] | None:
    cursor = conn.execute(
        f"""
        SELECT {', '.join(UNIVERSE_COLUMNS)}
        FROM investment_universe
        WHERE symbol = ? AND profile_id = ?
        """,
        (symbol, profile_id or ""),
    )
    row = cursor.fetchone()
    if not row:
        return None
    data = dict(zip(UNIVERSE_COLUMNS, row))
    data["addon_flags"] = _load_json(data.get("addon_flags"), {})
    if data.get("profile_id") == "":
        data["profile_id"] = None
    return data


def upsert_universe_row(
    conn: Any, symbol: str, profile_id: str | None, values: dict[str, Any]
) -> None:
    unknown = set(values) - UNIVERSE_PATCH_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported universe columns: {', '.join(sorted(unknown))}")
    columns = dict(values)
    if "addon_flags" in columns and columns["addon_flags"] is not None:
        columns["addon_flags"] = json_dumps(columns["addon_flags"])
    columns["updated_at"] = utc_now_iso()
    names = ["profile_id", "symbol", *columns.keys()]
    placeholders = ", ".join(["?"] * len(names))
    updates = ", ".join(f"{name} = excluded.{name}" for name in columns)
    conn.execute(
        f"""
        INSERT INTO investment_universe ({', '.join(names)})
        VALUES ({placeholders})
        ON CONFLICT(profile_id, symbol) DO UPDATE SET {updates}
        """,
        (profile_id or "", symbol, *columns.values()),
    )
    conn.commit()


def insert_deep_dive(conn: Any, record: dict[str, Any]) -> str:
    deep_dive_id = uuid.uuid4().hex
    conn.execute(
        """
        INSERT INTO deep_dives
            (id, job_id, ticker, company_name, provider, model, timeframe, custom_question,
             module0_markdown, module1_markdown, module2_markdown, module3_markdown,
             module4_markdown, module5_markdown, module6_markdown, meta_json, source,
             profile_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            deep_dive_id,
            record.get("job_id"),
            record["ticker"],
            record.get("company_name"),
            record["provider"],
            record.get("model"),
            record.get("timeframe"),
            record.get("custom_question"),
            record.get("module0_markdown"),
            record.get("module1_markdown"),
            record.get("module2_markdown"),
            record.get("module3_markdown"),
            record.get("module4_markdown"),
            record.get("module5_markdown"),
            record.get("module6_markdown"),
            json_dumps(record["meta"]) if record.get("meta") is not None else None,
            record.get("source") or "valuebot_deep_dive",
            record.get("profile_id"),
            utc_now_iso(),
        ),
    )
    conn.commit()
    return deep_dive_id


def _count(conn: Any, sql: str, params: tuple) -> int:
    try:
        row = conn.execute(sql, params).fetchone()
    except Exception as exc:  # noqa: BLE001
        _safe_rollback(conn)
        raise CountError(str(exc)) from exc
    return int(row[0]) if row and row[0] is not None else 0


def _row_to_job(row: tuple) -> Job:
    data = dict(zip(JOB_COLUMNS, row))
    return Job(
        id=str(data["id"]),
        ticker=clean_text(data["ticker"]),
        company_name=clean_text(data["company_name"]),
        status=QueueStatus.parse(data["status"]) if data["status"] else None,
        attempts=int(data["attempts"] or 0),
        provider=clean_text(data["provider"]) or "openai",
        model=clean_text(data["model"]) or "default",
        timeframe=clean_text(data["timeframe"]),
        custom_question=clean_text(data["custom_question"]),
        profile_id=clean_text(data["profile_id"]),
        created_at=data["created_at"],
        started_at=data["started_at"],
        last_run_at=data["last_run_at"],
        updated_at=data["updated_at"],
        error=data["error"],
        last_error=data["last_error"],
    )


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return default


def _safe_rollback(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass


def _new_job_id() -> str:
    return str(uuid.uuid4())
