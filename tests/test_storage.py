import sqlite3

import pytest

from valuebot.errors import CountError, FetchError
from valuebot.migrations import _get_migrations, apply_migrations
from valuebot.models import QueueStatus
from valuebot.storage import (
    claim_jobs,
    count_completed_jobs,
    count_pending_jobs,
    enqueue_job,
    fetch_pending_jobs,
    get_job,
    get_universe_row,
    insert_deep_dive,
    list_jobs,
    reset_stuck_jobs,
    update_job_status,
    upsert_universe_row,
)
from valuebot.utils import utc_now_iso_offset


def test_apply_migrations_idempotent(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)


def test_fetch_pending_is_fifo_and_includes_null_status(conn):
    newest = enqueue_job(conn, ticker="NEW", created_at="2025-01-03T00:00:00+00:00")
    oldest = enqueue_job(conn, ticker="OLD", status=None, created_at="2025-01-01T00:00:00+00:00")
    enqueue_job(conn, ticker="DONE", status="completed", created_at="2025-01-02T00:00:00+00:00")

    jobs = fetch_pending_jobs(conn, 5)

    assert [job.id for job in jobs] == [oldest, newest]
    assert jobs[0].status is None
    assert jobs[0].is_pending
    assert jobs[0].provider == "openai"
    assert jobs[0].model == "default"


def test_fetch_pending_respects_limit(conn):
    for index in range(4):
        enqueue_job(conn, ticker=f"T{index}", created_at=f"2025-01-0{index + 1}T00:00:00+00:00")
    assert [job.ticker for job in fetch_pending_jobs(conn, 2)] == ["T0", "T1"]


def test_claim_only_takes_pending_rows(conn):
    first = enqueue_job(conn, ticker="AAA")
    second = enqueue_job(conn, ticker="BBB")
    third = enqueue_job(conn, ticker="CCC")

    assert claim_jobs(conn, [second]) == {second}
    claimed = claim_jobs(conn, [first, second])

    assert claimed == {first}
    assert get_job(conn, first).status == QueueStatus.RUNNING
    assert get_job(conn, first).started_at is not None
    assert get_job(conn, third).status == QueueStatus.PENDING


def test_second_connection_cannot_reclaim(tmp_path):
    from valuebot.storage import init_db

    db_path = str(tmp_path / "queue.sqlite3")
    conn = init_db(db_path)
    conn2 = init_db(db_path)
    job_id = enqueue_job(conn, ticker="ABC")

    assert claim_jobs(conn, [job_id]) == {job_id}
    assert claim_jobs(conn2, [job_id]) == set()
    conn.close()
    conn2.close()


def test_claim_with_no_ids(conn):
    assert claim_jobs(conn, []) == set()


def test_claimed_never_exceeds_requested(conn):
    for index in range(6):
        enqueue_job(conn, ticker=f"T{index}", created_at=f"2025-01-0{index + 1}T00:00:00+00:00")
    jobs = fetch_pending_jobs(conn, 3)
    claimed = claim_jobs(conn, [job.id for job in jobs])
    assert claimed == {job.id for job in jobs}
    assert [job.ticker for job in jobs] == ["T0", "T1", "T2"]
    assert count_pending_jobs(conn) == 3


def test_update_job_status_rejects_unknown_columns(conn):
    job_id = enqueue_job(conn, ticker="ABC")
    with pytest.raises(ValueError):
        update_job_status(conn, job_id, {"ticker": "XYZ"})


def test_update_job_status_writes_patch(conn):
    job_id = enqueue_job(conn, ticker="ABC")
    update_job_status(conn, job_id, {"status": "failed", "error": "boom", "last_error": "boom"})
    job = get_job(conn, job_id)
    assert job.status == QueueStatus.FAILED
    assert job.error == "boom"
    assert job.last_error == "boom"
    assert count_completed_jobs(conn) == 0


def test_list_jobs_by_status(conn):
    enqueue_job(conn, ticker="AAA")
    enqueue_job(conn, ticker="BBB", status="failed")
    assert [job.ticker for job in list_jobs(conn, status="failed")] == ["BBB"]
    assert len(list_jobs(conn)) == 2


def test_reset_stuck_jobs(conn):
    stuck = enqueue_job(conn, ticker="OLD")
    fresh = enqueue_job(conn, ticker="NEW")
    claim_jobs(conn, [stuck, fresh])
    conn.execute(
        "UPDATE analysis_queue SET started_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), stuck),
    )
    conn.commit()

    assert reset_stuck_jobs(conn, 600) == 1
    assert get_job(conn, stuck).status == QueueStatus.PENDING
    assert get_job(conn, fresh).status == QueueStatus.RUNNING


def test_fetch_errors_are_wrapped():
    class Broken:
        def execute(self, sql, params=()):
            raise RuntimeError("connection reset")

        def rollback(self):
            raise RuntimeError("no transaction")

    with pytest.raises(FetchError):
        fetch_pending_jobs(Broken(), 5)
    with pytest.raises(FetchError):
        claim_jobs(Broken(), ["a"])
    with pytest.raises(CountError):
        count_pending_jobs(Broken())


def test_universe_upsert_round_trip(conn):
    upsert_universe_row(conn, "ABC", None, {"name": "ABC Corp", "last_risk_label": "Low"})
    upsert_universe_row(
        conn, "ABC", None, {"addon_flags": {"debt_stress_flag": True}, "last_composite_score": 6.1}
    )

    row = get_universe_row(conn, "ABC")
    assert row["name"] == "ABC Corp"
    assert row["last_risk_label"] == "Low"
    assert row["addon_flags"] == {"debt_stress_flag": True}
    assert row["last_composite_score"] == 6.1
    assert row["profile_id"] is None


def test_insert_deep_dive(conn):
    deep_dive_id = insert_deep_dive(
        conn,
        {"ticker": "ABC", "provider": "openai", "module6_markdown": "Verdict", "meta": {"risk_label": "Low"}},
    )
    row = conn.execute(
        "SELECT ticker, module6_markdown, meta_json, source FROM deep_dives WHERE id = ?",
        (deep_dive_id,),
    ).fetchone()
    assert row[0] == "ABC"
    assert row[1] == "Verdict"
    assert '"risk_label": "Low"' in row[2]
    assert row[3] == "valuebot_deep_dive"


def test_unknown_status_does_not_break_listing(conn):
    job_id = enqueue_job(conn, ticker="ABC")
    conn.execute("UPDATE analysis_queue SET status = 'archived' WHERE id = ?", (job_id,))
    conn.commit()

    jobs = list_jobs(conn)

    assert [job.id for job in jobs] == [job_id]
    assert jobs[0].status is None
    assert QueueStatus.parse("archived") is None
    assert QueueStatus.parse(" Running ") == QueueStatus.RUNNING
