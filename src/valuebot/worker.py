from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable

from .addons.engine import run_addons_for_job
from .config import Config, get_configured_max_jobs, load_config
from .errors import CountError, FetchError
from .llm.client import CompletionClient, HttpCompletionClient
from .models import JobSummary, RunSummary
from .pipelines.deep_dive import run_deep_dive
from .processor import AddonRunner, DeepDiveRunner, JobProcessor
from .storage import (
    claim_jobs,
    count_completed_jobs,
    count_pending_jobs,
    fetch_pending_jobs,
    init_db,
)
from .utils import configure_logging, log_event

Clock = Callable[[], float]


def _setup_logging() -> logging.Logger:
    return configure_logging("valuebot.worker")


class QueueWorker:
    """One bounded pass over the analysis queue.

    Fetches up to ``max_jobs`` pending jobs oldest first, claims them with a
    single conditional update and processes the claimed ones in order until
    the batch is done or the time budget runs out. Jobs left unprocessed
    after a timeout stay ``running``; nothing here reclaims them.
    """

    def __init__(
        self,
        conn: Any,
        processor: JobProcessor,
        *,
        time_budget_seconds: float,
        seconds_per_job_estimate: int,
        clock: Clock = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._processor = processor
        self._time_budget_seconds = time_budget_seconds
        self._seconds_per_job_estimate = seconds_per_job_estimate
        self._clock = clock
        self._logger = logger or logging.getLogger("valuebot.worker")

    def run(self, max_jobs: int, run_source: str = "manual") -> RunSummary:
        started = self._clock()
        log_event(self._logger, logging.INFO, "worker_started", max_jobs=max_jobs, run_source=run_source)

        jobs = fetch_pending_jobs(self._conn, max_jobs)
        log_event(self._logger, logging.INFO, "jobs_fetched", count=len(jobs))
        if jobs:
            try:
                claimed = claim_jobs(self._conn, [job.id for job in jobs])
            except FetchError as exc:
                # Known gap: without a claim another invocation may pick up
                # the same rows.
                log_event(self._logger, logging.WARNING, "claim_failed", error=str(exc))
            else:
                jobs = [job for job in jobs if job.id in claimed]
                log_event(self._logger, logging.INFO, "jobs_claimed", count=len(jobs))

        processed = 0
        failed = 0
        errors: list[dict[str, str]] = []
        summaries: list[JobSummary] = []
        for job in jobs:
            summary, error = self._processor.process(job)
            summaries.append(summary)
            if error is None:
                processed += 1
            else:
                failed += 1
                errors.append({"id": job.id, "error": error})
            elapsed = self._clock() - started
            if elapsed > self._time_budget_seconds:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "time_budget_exceeded",
                    elapsed=round(elapsed, 1),
                    handled=len(summaries),
                    left=len(jobs) - len(summaries),
                )
                break

        remaining = self._count(count_pending_jobs, "pending")
        completed = self._count(count_completed_jobs, "completed")
        considered = min(remaining + processed, max_jobs)
        summary = RunSummary(
            processed=processed,
            failed=failed,
            remaining=remaining,
            completed=completed,
            errors=errors,
            jobs=summaries,
            run_source=run_source,
            max_jobs=max_jobs,
            seconds_per_job_estimate=self._seconds_per_job_estimate,
            estimated_seconds_this_run=considered * self._seconds_per_job_estimate,
        )
        log_event(
            self._logger,
            logging.INFO,
            "worker_finished",
            processed=processed,
            failed=failed,
            remaining=remaining,
            completed=completed,
        )
        return summary

    def _count(self, counter: Callable[[Any], int], label: str) -> int:
        try:
            return counter(self._conn)
        except CountError as exc:
            log_event(self._logger, logging.ERROR, "count_failed", count=label, error=str(exc))
            return 0


def run_queue_worker(
    conn: Any = None,
    max_jobs: Any = None,
    run_source: str = "manual",
    *,
    config: Config | None = None,
    client: CompletionClient | None = None,
    deep_dive: DeepDiveRunner | None = None,
    addon_engine: AddonRunner | None = None,
    clock: Clock = time.monotonic,
    logger: logging.Logger | None = None,
) -> RunSummary:
    """Process one batch of queued analysis jobs and report what happened.

    When ``conn`` is omitted the store is opened from configuration, and
    missing credentials raise ConfigError before any job is touched.
    """
    logger = logger or _setup_logging()
    config = config or load_config()
    owns_conn = conn is None
    if owns_conn:
        conn = init_db(config.store.db_path or None, config.store.db_url or None)
    try:
        if client is None and (deep_dive is None or addon_engine is None):
            client = HttpCompletionClient(config.llm, logger=logging.getLogger("valuebot.llm"))
        if deep_dive is None:
            deep_dive = functools.partial(run_deep_dive, conn, client, logger=logger)
        if addon_engine is None:
            addon_engine = functools.partial(run_addons_for_job, conn, client, logger=logger)
        processor = JobProcessor(
            conn,
            deep_dive=deep_dive,
            addon_engine=addon_engine,
            addons_enabled=config.addons.enabled,
            max_attempts=config.worker.max_attempts,
            error_snippet_chars=config.worker.error_snippet_chars,
            logger=logger,
        )
        worker = QueueWorker(
            conn,
            processor,
            time_budget_seconds=config.worker.time_budget_seconds,
            seconds_per_job_estimate=config.worker.seconds_per_job_estimate,
            clock=clock,
            logger=logger,
        )
        return worker.run(get_configured_max_jobs(max_jobs, config.worker.max_jobs), run_source)
    finally:
        if owns_conn:
            conn.close()
