import json
import logging

import pytest

import valuebot.cli as cli
from valuebot.models import RunSummary
from valuebot.storage import claim_jobs, enqueue_job, get_job, init_db


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "queue.sqlite3")
    monkeypatch.setenv("VB_DB_PATH", path)
    monkeypatch.setattr(cli, "_setup_logging", lambda: logging.getLogger("test"))
    return path


def _output(capsys):
    return json.loads(capsys.readouterr().out)


def test_enqueue_and_list(db_path, capsys):
    assert cli.main(["enqueue", "--ticker", "ABC", "--company", "ABC Corp"]) == 0
    job_id = _output(capsys)["id"]

    assert cli.main(["queue", "list", "--status", "pending"]) == 0
    rows = _output(capsys)
    assert [row["id"] for row in rows] == [job_id]
    assert rows[0]["ticker"] == "ABC"
    assert rows[0]["status"] == "pending"


def test_enqueue_requires_identifier(db_path):
    assert cli.main(["enqueue"]) == 2


def test_reset_stuck(db_path, capsys):
    conn = init_db(db_path)
    job_id = enqueue_job(conn, ticker="ABC")
    claim_jobs(conn, [job_id])
    conn.execute("UPDATE analysis_queue SET started_at = '2000-01-01T00:00:00+00:00'")
    conn.commit()

    assert cli.main(["queue", "reset-stuck", "--older-than", "60"]) == 0
    assert _output(capsys) == {"reset": 1}
    assert get_job(conn, job_id).status.value == "pending"
    conn.close()


def test_run_prints_summary(db_path, capsys, monkeypatch):
    captured = {}

    def fake_worker(**kwargs):
        captured.update(kwargs)
        return RunSummary(
            processed=0,
            failed=0,
            remaining=0,
            completed=0,
            errors=[],
            jobs=[],
            run_source=kwargs["run_source"],
            max_jobs=kwargs["max_jobs"],
            seconds_per_job_estimate=70,
            estimated_seconds_this_run=0,
        )

    monkeypatch.setattr(cli, "run_queue_worker", fake_worker)

    assert cli.main(["run", "--max-jobs", "2", "--source", "cron"]) == 0
    summary = _output(capsys)
    assert summary["run_source"] == "cron"
    assert summary["max_jobs"] == 2
    assert captured["config"].store.db_path == db_path


def test_run_without_store_fails(monkeypatch):
    monkeypatch.setattr(cli, "_setup_logging", lambda: logging.getLogger("test"))
    assert cli.main(["run"]) == 1


def test_list_without_store_fails(monkeypatch):
    monkeypatch.setattr(cli, "_setup_logging", lambda: logging.getLogger("test"))
    assert cli.main(["queue", "list"]) == 1
