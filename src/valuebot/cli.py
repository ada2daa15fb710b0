from __future__ import annotations

import argparse
import logging
import sys

from .config import ConfigError, load_config
from .errors import FetchError
from .models import QueueStatus
from .storage import enqueue_job, init_db, list_jobs, reset_stuck_jobs
from .utils import configure_logging, json_dumps, log_event
from .worker import run_queue_worker


def _setup_logging() -> logging.Logger:
    return configure_logging("valuebot")


def _open_store(args: argparse.Namespace, logger: logging.Logger):
    try:
        config = load_config(args.config)
        return init_db(config.store.db_path or None, config.store.db_url or None)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
        summary = run_queue_worker(
            max_jobs=args.max_jobs,
            run_source=args.source,
            config=config,
            logger=logger,
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    except FetchError as exc:
        log_event(logger, logging.ERROR, "fetch_failed", error=str(exc))
        return 1
    sys.stdout.write(json_dumps(summary.as_dict(), indent=2) + "\n")
    return 0


def _cmd_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    if not (args.ticker or args.company):
        log_event(logger, logging.ERROR, "enqueue_rejected", error="ticker or company is required")
        return 2
    conn = _open_store(args, logger)
    if conn is None:
        return 1
    try:
        job_id = enqueue_job(
            conn,
            ticker=args.ticker,
            company_name=args.company,
            provider=args.provider,
            model=args.model,
            timeframe=args.timeframe,
            custom_question=args.question,
            profile_id=args.profile_id,
        )
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, ticker=args.ticker)
    sys.stdout.write(json_dumps({"id": job_id}) + "\n")
    return 0


def _cmd_queue_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open_store(args, logger)
    if conn is None:
        return 1
    try:
        jobs = list_jobs(conn, status=args.status, limit=args.limit)
    finally:
        conn.close()
    rows = [
        {
            "id": job.id,
            "ticker": job.ticker,
            "company_name": job.company_name,
            "status": job.status.value if job.status else None,
            "attempts": job.attempts,
            "created_at": job.created_at,
            "last_run_at": job.last_run_at,
            "error": job.error,
        }
        for job in jobs
    ]
    sys.stdout.write(json_dumps(rows, indent=2) + "\n")
    return 0


def _cmd_queue_reset_stuck(args: argparse.Namespace, logger: logging.Logger) -> int:
    if args.older_than <= 0:
        log_event(logger, logging.ERROR, "reset_rejected", error="--older-than must be positive")
        return 2
    conn = _open_store(args, logger)
    if conn is None:
        return 1
    try:
        count = reset_stuck_jobs(conn, args.older_than)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "jobs_reset", count=count, older_than=args.older_than)
    sys.stdout.write(json_dumps({"reset": count}) + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="valuebot", description="ValueBot analysis queue worker")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to VB_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Process one batch of queued jobs")
    run_parser.add_argument("--max-jobs", type=int, default=None, help="Batch size for this run")
    run_parser.add_argument(
        "--source",
        choices=["manual", "cron"],
        default="manual",
        help="Label recorded in the run summary",
    )
    run_parser.set_defaults(func=_cmd_run)

    enqueue_parser = subparsers.add_parser("enqueue", help="Add a deep-dive job to the queue")
    enqueue_parser.add_argument("--ticker", default=None, help="Ticker symbol")
    enqueue_parser.add_argument("--company", default=None, help="Company name")
    enqueue_parser.add_argument("--provider", default="openai", help="Completion provider")
    enqueue_parser.add_argument("--model", default=None, help="Model id (provider default when omitted)")
    enqueue_parser.add_argument("--timeframe", default=None, help="Investment timeframe")
    enqueue_parser.add_argument("--question", default=None, help="Custom question for the analysis")
    enqueue_parser.add_argument("--profile-id", default=None, help="Owning profile id")
    enqueue_parser.set_defaults(func=_cmd_enqueue)

    queue_parser = subparsers.add_parser("queue", help="Inspect and repair the queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)

    queue_list = queue_subparsers.add_parser("list", help="List queued jobs")
    queue_list.add_argument(
        "--status",
        choices=[status.value for status in QueueStatus],
        default=None,
        help="Only show jobs with this status",
    )
    queue_list.add_argument("--limit", type=int, default=50, help="Number of jobs to show")
    queue_list.set_defaults(func=_cmd_queue_list)

    queue_reset = queue_subparsers.add_parser(
        "reset-stuck", help="Return long-running jobs to pending"
    )
    queue_reset.add_argument(
        "--older-than",
        type=int,
        required=True,
        help="Seconds since started_at after which a running job counts as stuck",
    )
    queue_reset.set_defaults(func=_cmd_queue_reset_stuck)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
