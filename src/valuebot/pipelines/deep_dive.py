from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..addons.parsers import extract_json_block
from ..errors import PipelineError
from ..llm.client import CompletionClient, CompletionRequest, response_text
from ..models import Job
from ..storage import insert_deep_dive, upsert_universe_row
from ..utils import log_event, to_finite_float, utc_now_iso

DEFAULT_MODELS = {"openai": "gpt-4o-mini"}
SCORE_SUMMARY_STAGE = "step_7_score_summary"
SAVE_STAGE = "save_deep_dive"
DEEP_DIVE_SOURCE = "valuebot_deep_dive"

StagePrompt = Callable[[Job, dict[str, str]], str]


@dataclass
class DeepDiveResult:
    deep_dive_id: str | None
    ticker: str
    company_name: str | None
    provider: str
    model: str | None
    stage_outputs: dict[str, str] = field(default_factory=dict)
    meta: dict[str, Any] | None = None

    @property
    def verdict_summary(self) -> str:
        return self.stage_outputs.get("module_6_final_verdict", "")


def resolve_model(provider: str | None, model: str | None) -> str | None:
    """Blank or placeholder models fall back to the provider's default model."""
    cleaned = (model or "").strip()
    if cleaned and cleaned.lower() != "default":
        return cleaned
    return DEFAULT_MODELS.get((provider or "openai").strip().lower())


def _subject(job: Job) -> str:
    if job.ticker and job.company_name:
        return f"{job.company_name} ({job.ticker})"
    return job.ticker or job.company_name or "[unknown]"


def _context(job: Job) -> str:
    return (
        f"Company or ticker: {_subject(job)}\n"
        f"Timeframe: {job.timeframe or 'Not specified'}\n"
        f"Custom question: {job.custom_question or 'None'}"
    )


def _earlier(outputs: dict[str, str], *labels: str) -> str:
    sections = []
    for label in labels:
        text = outputs.get(label)
        if text:
            sections.append(f"### {label}\n{text}")
    return "\n\n".join(sections) or "No earlier stage output."


def _data_loader_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        "You are ValueBot, Module 0: Data Loader.\n\n"
        f"{_context(job)}\n\n"
        "Collect the company profile (exchange, ticker, currency, sector), five years of "
        "revenue, margins, free cash flow, net debt and share count, and the current "
        "valuation multiples. Present them as compact markdown tables."
    )


def _core_diagnostics_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        "You are ValueBot, Module 1: Core Diagnostics.\n\n"
        f"{_context(job)}\n\n"
        f"Data pack:\n{_earlier(outputs, 'module_0_data_loader')}\n\n"
        "Assess profitability, balance sheet strength, cash conversion and dilution. "
        "Close with a short risk and quality read."
    )


def _business_model_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        "You are ValueBot, Module 2: Business Model and Growth.\n\n"
        f"{_context(job)}\n\n"
        f"Earlier analysis:\n{_earlier(outputs, 'module_0_data_loader', 'module_1_core_diagnostics')}\n\n"
        "Explain how the company makes money, its growth drivers and how durable they are."
    )


def _scenario_engine_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        "You are ValueBot, Module 3: Scenario Engine.\n\n"
        f"{_context(job)}\n\n"
        "Earlier analysis:\n"
        f"{_earlier(outputs, 'module_1_core_diagnostics', 'module_2_business_model')}\n\n"
        "Build bear, base and bull scenarios with revenue, margin and valuation assumptions "
        "and the implied per-share value for each."
    )


def _competitive_dynamics_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        "You are ValueBot, Module 4: Competitive Dynamics.\n\n"
        f"{_context(job)}\n\n"
        "Earlier analysis:\n"
        f"{_earlier(outputs, 'module_2_business_model', 'module_3_scenario_engine')}\n\n"
        "Assess the moat, pricing power, key competitors and disruption threats."
    )


def _capital_allocation_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        "You are ValueBot, Module 5: Capital Allocation and Timing.\n\n"
        f"{_context(job)}\n\n"
        "Earlier analysis:\n"
        f"{_earlier(outputs, 'module_1_core_diagnostics', 'module_4_competitive_dynamics')}\n\n"
        "Review buybacks, dividends, acquisitions and management incentives, then comment "
        "on price momentum and entry timing."
    )


def _final_verdict_prompt(job: Job, outputs: dict[str, str]) -> str:
    return (
        f"You are ValueBot, Module 6: Final Verdict for {_subject(job)}.\n\n"
        f"{_context(job)}\n\n"
        "Stage outputs:\n"
        f"{_earlier(outputs, *[label for label, _ in STAGES[:6]])}\n\n"
        "Synthesize a final verdict: risk (Low, Medium or High), quality (Poor to World "
        "Class), timing (Buy, Hold, Wait or Avoid), a composite score from 0 to 10 and "
        "the three facts that matter most."
    )


STAGES: list[tuple[str, StagePrompt]] = [
    ("module_0_data_loader", _data_loader_prompt),
    ("module_1_core_diagnostics", _core_diagnostics_prompt),
    ("module_2_business_model", _business_model_prompt),
    ("module_3_scenario_engine", _scenario_engine_prompt),
    ("module_4_competitive_dynamics", _competitive_dynamics_prompt),
    ("module_5_capital_allocation", _capital_allocation_prompt),
    ("module_6_final_verdict", _final_verdict_prompt),
]


def build_score_summary_prompt(job: Job, verdict: str) -> str:
    return (
        f"Summarize the final verdict for {_subject(job)} as scores.\n\n"
        f"Final verdict:\n{verdict}\n\n"
        "Respond with JSON only:\n"
        '{"risk_label": "Low|Medium|High", "quality_label": "...", '
        '"timing_label": "Buy|Hold|Wait|Avoid", "composite_score": 0}'
    )


def run_deep_dive(
    conn: Any,
    client: CompletionClient,
    job: Job,
    *,
    logger: logging.Logger | None = None,
) -> DeepDiveResult:
    """Run the seven analysis stages for ``job`` and persist the result.

    Stage failures are raised as PipelineError prefixed with the stage label.
    A failed score summary is logged and leaves ``meta`` empty; a failed
    universe refresh is logged and does not fail the run.
    """
    logger = logger or logging.getLogger("valuebot.deep_dive")
    provider = (job.provider or "openai").strip()
    model = resolve_model(provider, job.model)
    ticker = job.ticker or job.company_name or ""
    outputs: dict[str, str] = {}

    for label, build_prompt in STAGES:
        outputs[label] = _run_stage(client, job, provider, model, label, build_prompt(job, outputs), logger)

    meta = _score_summary(client, job, provider, model, outputs["module_6_final_verdict"], logger)

    try:
        deep_dive_id = insert_deep_dive(
            conn,
            {
                "job_id": job.id,
                "ticker": ticker,
                "company_name": job.company_name,
                "provider": provider,
                "model": model,
                "timeframe": job.timeframe,
                "custom_question": job.custom_question,
                "meta": meta,
                "source": DEEP_DIVE_SOURCE,
                "profile_id": job.profile_id,
                **{f"module{index}_markdown": outputs[label] for index, (label, _) in enumerate(STAGES)},
            },
        )
    except Exception as exc:  # noqa: BLE001
        raise PipelineError(f"[stage={SAVE_STAGE}] Unable to save deep dive: {exc}") from exc

    _refresh_universe(conn, job, ticker, model, meta, logger)
    return DeepDiveResult(
        deep_dive_id=deep_dive_id,
        ticker=ticker,
        company_name=job.company_name,
        provider=provider,
        model=model,
        stage_outputs=outputs,
        meta=meta,
    )


def _run_stage(
    client: CompletionClient,
    job: Job,
    provider: str,
    model: str | None,
    label: str,
    prompt: str,
    logger: logging.Logger,
) -> str:
    log_event(logger, logging.INFO, "deep_dive_stage", job_id=job.id, stage=label, status="running")
    try:
        payload = client.complete(
            CompletionRequest(
                provider=provider,
                model=model,
                ticker=job.ticker,
                company_name=job.company_name,
                question=prompt,
                timeframe=job.timeframe,
                stage_label=label,
            )
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "deep_dive_stage", job_id=job.id, stage=label, status="error")
        message = str(exc)
        if message.startswith("[stage="):
            raise PipelineError(message) from exc
        raise PipelineError(f"[stage={label}] {message}") from exc
    log_event(logger, logging.INFO, "deep_dive_stage", job_id=job.id, stage=label, status="done")
    return response_text(payload).strip()


def _score_summary(
    client: CompletionClient,
    job: Job,
    provider: str,
    model: str | None,
    verdict: str,
    logger: logging.Logger,
) -> dict[str, Any] | None:
    if not verdict.strip():
        log_event(
            logger,
            logging.WARNING,
            "deep_dive_stage",
            job_id=job.id,
            stage=SCORE_SUMMARY_STAGE,
            status="skipped",
        )
        return None
    try:
        payload = client.complete(
            CompletionRequest(
                provider=provider,
                model=model,
                ticker=job.ticker,
                company_name=job.company_name,
                question=build_score_summary_prompt(job, verdict),
                timeframe=job.timeframe,
                stage_label=SCORE_SUMMARY_STAGE,
            )
        )
        parsed = extract_json_block(response_text(payload))
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "deep_dive_stage",
            job_id=job.id,
            stage=SCORE_SUMMARY_STAGE,
            status="error",
            error=str(exc),
        )
        return None
    if not isinstance(parsed, dict):
        return None
    meta = {key: parsed.get(key) for key in ("risk_label", "quality_label", "timing_label")}
    meta["composite_score"] = to_finite_float(parsed.get("composite_score"))
    log_event(logger, logging.INFO, "deep_dive_stage", job_id=job.id, stage=SCORE_SUMMARY_STAGE, status="done")
    return meta


def _refresh_universe(
    conn: Any,
    job: Job,
    symbol: str,
    model: str | None,
    meta: dict[str, Any] | None,
    logger: logging.Logger,
) -> None:
    meta = meta or {}
    try:
        upsert_universe_row(
            conn,
            symbol,
            job.profile_id,
            {
                "name": job.company_name or symbol,
                "last_deep_dive_at": utc_now_iso(),
                "last_risk_label": meta.get("risk_label"),
                "last_quality_label": meta.get("quality_label"),
                "last_timing_label": meta.get("timing_label"),
                "last_composite_score": meta.get("composite_score"),
                "last_model": model,
            },
        )
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "universe_upsert_failed",
            job_id=job.id,
            symbol=symbol,
            error=str(exc),
        )
        try:
            conn.rollback()
        except Exception:  # noqa: BLE001
            pass
