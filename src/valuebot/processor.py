from __future__ import annotations

import logging
from typing import Any, Callable

from .addons.engine import AddonRunResult, apply_universe_patch
from .errors import JobValidationError
from .models import Job, JobSummary, QueueStatus
from .storage import update_job_status
from .utils import log_event, truncate, utc_now_iso

DeepDiveRunner = Callable[[Job], Any]
AddonRunner = Callable[[Job, Any], "AddonRunResult | None"]


class JobProcessor:
    """Drives one claimed job through running to completed or failed.

    Guards run before anything is written: a job that has used up its
    attempts, or that has no ticker and no company name, is failed without
    touching the pipeline and without bumping ``attempts``.
    """

    def __init__(
        self,
        conn: Any,
        *,
        deep_dive: DeepDiveRunner,
        addon_engine: AddonRunner | None = None,
        addons_enabled: bool = False,
        max_attempts: int = 3,
        error_snippet_chars: int = 600,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._deep_dive = deep_dive
        self._addon_engine = addon_engine
        self._addons_enabled = addons_enabled
        self._max_attempts = max_attempts
        self._error_snippet_chars = error_snippet_chars
        self._logger = logger or logging.getLogger("valuebot.processor")

    def process(self, job: Job) -> tuple[JobSummary, str | None]:
        try:
            self._check_guards(job)
        except JobValidationError as exc:
            error = self._fail(job, str(exc))
            return self._summary(job, QueueStatus.FAILED, job.attempts, job.last_run_at, error), error

        attempts = job.attempts + 1
        started = utc_now_iso()
        self._write_status(
            job,
            {
                "status": QueueStatus.RUNNING.value,
                "attempts": attempts,
                "started_at": started,
                "last_run": started,
                "last_run_at": started,
            },
        )
        log_event(
            self._logger,
            logging.INFO,
            "job_started",
            job_id=job.id,
            ticker=job.ticker,
            company=job.company_name,
            attempt=attempts,
        )

        try:
            self._run_pipeline(job)
        except Exception as exc:  # noqa: BLE001
            _rollback(self._conn)
            error = self._fail(job, str(exc) or exc.__class__.__name__)
            return self._summary(job, QueueStatus.FAILED, attempts, started, error), error

        self._write_status(
            job,
            {"status": QueueStatus.COMPLETED.value, "error": None, "last_error": None},
        )
        log_event(self._logger, logging.INFO, "job_completed", job_id=job.id, ticker=job.ticker)
        return self._summary(job, QueueStatus.COMPLETED, attempts, started, None), None

    def _check_guards(self, job: Job) -> None:
        if job.attempts >= self._max_attempts:
            raise JobValidationError(f"Max attempts ({self._max_attempts}) exceeded")
        if not job.has_identifiers:
            raise JobValidationError("missing identifiers (ticker and company name are empty)")

    def _run_pipeline(self, job: Job) -> None:
        result = self._deep_dive(job)
        if not self._addons_enabled or self._addon_engine is None:
            return
        addons = self._addon_engine(job, result)
        if addons is not None and addons.universe_patch:
            apply_universe_patch(
                self._conn,
                addons,
                symbol=job.ticker or job.company_name or "",
                profile_id=job.profile_id,
            )

    def _fail(self, job: Job, message: str) -> str:
        error = truncate(message, self._error_snippet_chars)
        self._write_status(
            job,
            {"status": QueueStatus.FAILED.value, "error": error, "last_error": error},
        )
        log_event(self._logger, logging.ERROR, "job_failed", job_id=job.id, ticker=job.ticker, error=error)
        return error

    def _write_status(self, job: Job, patch: dict[str, Any]) -> bool:
        try:
            update_job_status(self._conn, job.id, patch)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "job_update_failed",
                job_id=job.id,
                status=patch.get("status"),
                error=str(exc),
            )
            _rollback(self._conn)
            return False
        return True

    @staticmethod
    def _summary(
        job: Job, status: QueueStatus, attempts: int, last_run: str | None, error: str | None
    ) -> JobSummary:
        return JobSummary(
            id=job.id,
            ticker=job.ticker,
            company_name=job.company_name,
            status=status.value,
            attempts=attempts,
            last_run=last_run,
            error=error,
        )


def _rollback(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass
