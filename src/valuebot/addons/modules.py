from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..llm.client import CompletionClient, CompletionRequest, response_text
from ..models import Delta
from .parsers import build_meta_from_scores, extract_json_block, merge_flags, normalize_scores
from .prompts import build_high_debt_question

_DELTA_KEYS = {
    "new_scores",
    "universe_flags",
    "module_id",
    "module_name",
    "summary_for_universe_table",
    "notes_for_human_analyst",
}


@dataclass(frozen=True)
class ModuleContext:
    provider: str
    model: str | None
    ticker: str | None
    company_name: str | None
    universe_row: dict[str, Any] | None
    scores: dict[str, Any]
    reason: str | None
    key_question: str | None
    key_metrics: dict[str, Any] = field(default_factory=dict)
    excerpts: str | None = None


@dataclass(frozen=True)
class ModuleResult:
    delta: Delta
    meta_from_scores: dict[str, Any]
    raw_output: str


class ModuleExecutor(Protocol):
    module_id: str
    module_name: str

    def run(self, client: CompletionClient, context: ModuleContext) -> ModuleResult:
        ...


def build_delta(
    parsed: Any, old_scores: dict[str, Any], module_id: str, module_name: str
) -> Delta:
    """Fold a parsed module reply into a Delta on top of ``old_scores``.

    Score fields only replace the prior value when they coerce to a finite
    number; anything else keeps what the earlier stages produced.
    """
    payload = parsed if isinstance(parsed, dict) else {}
    flags = payload.get("universe_flags")
    return Delta(
        new_scores=normalize_scores(old_scores, payload.get("new_scores")),
        universe_flags=merge_flags({}, flags if isinstance(flags, dict) else {}),
        module_id=payload.get("module_id") or module_id,
        module_name=payload.get("module_name") or module_name,
        summary_for_universe_table=payload.get("summary_for_universe_table") or "",
        notes_for_human_analyst=payload.get("notes_for_human_analyst") or "",
        extra={key: value for key, value in payload.items() if key not in _DELTA_KEYS},
    )


class HighDebtStressTest:
    module_id = "high_debt_stress_test"
    module_name = "High Debt Stress Test"
    stage_label = "addon_high_debt"

    def run(self, client: CompletionClient, context: ModuleContext) -> ModuleResult:
        question = build_high_debt_question(
            ticker=context.ticker,
            company_name=context.company_name,
            universe_row=context.universe_row,
            scores=context.scores,
            reason=context.reason,
            key_metrics=context.key_metrics,
            excerpts=context.excerpts,
            key_question=context.key_question,
        )
        payload = client.complete(
            CompletionRequest(
                provider=context.provider or "openai",
                model=context.model,
                ticker=context.ticker,
                company_name=context.company_name,
                question=question,
                timeframe=None,
                stage_label=self.stage_label,
            )
        )
        raw_output = response_text(payload)
        delta = build_delta(
            extract_json_block(raw_output), context.scores, self.module_id, self.module_name
        )
        return ModuleResult(
            delta=delta,
            meta_from_scores=build_meta_from_scores({}, delta.new_scores),
            raw_output=raw_output,
        )


def _build_registry(*executors: ModuleExecutor) -> dict[str, ModuleExecutor]:
    return {executor.module_id: executor for executor in executors}


# Closed set. The engine skips ids that are not registered here instead of
# failing, so a selector prompt that names a newer module does not sink the job.
MODULE_REGISTRY: dict[str, ModuleExecutor] = _build_registry(HighDebtStressTest())
