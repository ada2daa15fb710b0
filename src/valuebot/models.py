from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class QueueStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str | None) -> "QueueStatus | None":
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


SCORE_KEYS = ("risk", "quality", "timing", "composite")
FLAG_KEYS = (
    "debt_stress_flag",
    "liquidity_risk_flag",
    "dividend_at_risk_flag",
    "fraud_red_flag",
)


@dataclass(frozen=True)
class Job:
    id: str
    ticker: str | None
    company_name: str | None
    status: QueueStatus | None
    attempts: int
    provider: str
    model: str
    timeframe: str | None
    custom_question: str | None
    profile_id: str | None
    created_at: str | None
    started_at: str | None
    last_run_at: str | None
    updated_at: str | None
    error: str | None
    last_error: str | None

    @property
    def has_identifiers(self) -> bool:
        return bool(self.ticker or self.company_name)

    @property
    def is_pending(self) -> bool:
        return self.status in (None, QueueStatus.PENDING)


@dataclass
class JobSummary:
    id: str
    ticker: str | None
    company_name: str | None
    status: str
    attempts: int
    last_run: str | None
    error: str | None

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class Delta:
    new_scores: dict[str, float | None]
    universe_flags: dict[str, Any]
    module_id: str
    module_name: str
    summary_for_universe_table: str = ""
    notes_for_human_analyst: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModuleSelection:
    id: str | None
    priority: float
    reason: str | None
    key_question: str | None


@dataclass(frozen=True)
class AddonSelection:
    ticker: str | None
    run_addons: bool
    selected_modules: list[ModuleSelection]


@dataclass
class RunSummary:
    processed: int
    failed: int
    remaining: int
    completed: int
    errors: list[dict[str, str]]
    jobs: list[JobSummary]
    run_source: str
    max_jobs: int
    seconds_per_job_estimate: int
    estimated_seconds_this_run: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "remaining": self.remaining,
            "completed": self.completed,
            "errors": [dict(item) for item in self.errors],
            "jobs": [job.as_dict() for job in self.jobs],
            "run_source": self.run_source,
            "max_jobs": self.max_jobs,
            "seconds_per_job_estimate": self.seconds_per_job_estimate,
            "estimated_seconds_this_run": self.estimated_seconds_this_run,
        }
