from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..llm.client import CompletionClient
from ..models import AddonSelection, Delta, Job
from ..storage import get_universe_row, upsert_universe_row
from ..utils import log_event, to_finite_float, utc_now_iso
from .modules import MODULE_REGISTRY, ModuleContext, ModuleExecutor
from .parsers import build_meta_from_scores, derive_numeric_scores_from_meta, map_risk_label, merge_flags
from .selector import select_addons

_LABEL_KEYS = ("risk_label", "quality_label", "timing_label")


@dataclass
class AddonRunResult:
    selection: AddonSelection
    module_deltas: list[Delta] = field(default_factory=list)
    addon_flags: dict[str, Any] = field(default_factory=dict)
    addon_summary: str = ""
    updated_meta: dict[str, Any] = field(default_factory=dict)
    universe_patch: dict[str, Any] | None = None
    run_timestamp: str | None = None
    raw_output: str = ""


def build_base_scores(
    master_meta: dict[str, Any] | None, universe_row: dict[str, Any] | None
) -> dict[str, float]:
    from_meta = derive_numeric_scores_from_meta(master_meta or {})
    if from_meta:
        return from_meta
    if not universe_row:
        return {}
    return derive_numeric_scores_from_meta(
        {
            "risk_label": universe_row.get("last_risk_label"),
            "quality_label": universe_row.get("last_quality_label"),
            "timing_label": universe_row.get("last_timing_label"),
            "composite_score": to_finite_float(universe_row.get("last_composite_score")),
        }
    )


def merge_meta(master_meta: dict[str, Any] | None, scores: dict[str, Any] | None) -> dict[str, Any]:
    """Regenerate labels from ``scores`` while keeping prior labels that the
    scores cannot produce."""
    master_meta = master_meta or {}
    updated = build_meta_from_scores(master_meta, scores or {})
    for key in _LABEL_KEYS:
        if not updated.get(key) and master_meta.get(key):
            updated[key] = master_meta[key]
    if to_finite_float(updated.get("composite_score")) is None:
        prior = to_finite_float(master_meta.get("composite_score"))
        if prior is not None:
            updated["composite_score"] = prior
    return updated


def run_addon_engine(
    conn: Any,
    client: CompletionClient,
    *,
    ticker: str | None,
    company_name: str | None,
    profile_id: str | None,
    provider: str,
    model: str | None,
    verdict_summary: str | None,
    master_meta: dict[str, Any] | None,
    key_metrics: dict[str, Any] | None = None,
    registry: Mapping[str, ModuleExecutor] | None = None,
    logger: logging.Logger | None = None,
) -> AddonRunResult:
    logger = logger or logging.getLogger("valuebot.addons")
    registry = MODULE_REGISTRY if registry is None else registry
    key_metrics = key_metrics or {}
    universe_row = _fetch_universe_row(conn, ticker, profile_id, logger)
    prior_flags = dict((universe_row or {}).get("addon_flags") or {})
    prior_summary = (universe_row or {}).get("addon_summary") or ""

    selection, raw_output = select_addons(
        client,
        provider=provider,
        model=model,
        ticker=ticker,
        company_name=company_name,
        universe_row=universe_row,
        key_metrics=key_metrics,
        verdict_summary=verdict_summary,
        logger=logger,
    )
    if not selection.run_addons or not selection.selected_modules:
        return AddonRunResult(
            selection=selection,
            addon_flags=prior_flags,
            addon_summary=prior_summary,
            updated_meta=dict(master_meta or {}),
            raw_output=raw_output,
        )

    master_meta = master_meta or {}
    addon_flags = prior_flags
    addon_summary = prior_summary
    deltas: list[Delta] = []
    current_scores: dict[str, Any] = build_base_scores(master_meta, universe_row)
    if "composite" not in current_scores:
        prior_composite = to_finite_float(master_meta.get("composite_score"))
        if prior_composite is not None:
            current_scores["composite"] = prior_composite
    updated_meta = merge_meta(master_meta, current_scores)

    for module in selection.selected_modules:
        executor = registry.get(module.id) if module.id else None
        if executor is None:
            log_event(logger, logging.INFO, "addon_module_skipped", ticker=ticker, module=module.id)
            continue
        result = executor.run(
            client,
            ModuleContext(
                provider=provider,
                model=model,
                ticker=ticker,
                company_name=company_name or ticker,
                universe_row=universe_row,
                scores=current_scores,
                reason=module.reason,
                key_question=module.key_question,
                key_metrics=key_metrics,
                excerpts=verdict_summary,
            ),
        )
        delta = result.delta
        current_scores = delta.new_scores or current_scores
        updated_meta = merge_meta(updated_meta, {**result.meta_from_scores, **current_scores})
        addon_flags = merge_flags(addon_flags, delta.universe_flags)
        addon_summary = delta.summary_for_universe_table or addon_summary
        deltas.append(delta)

    run_timestamp = utc_now_iso()
    final_meta = merge_meta(updated_meta, current_scores)
    composite = to_finite_float(final_meta.get("composite_score"))
    universe_patch = {
        "addon_summary": addon_summary or None,
        "addon_flags": addon_flags,
        "last_addon_run_at": run_timestamp,
        "last_risk_label": final_meta.get("risk_label")
        or map_risk_label(current_scores.get("risk"))
        or master_meta.get("risk_label"),
        "last_quality_label": final_meta.get("quality_label") or master_meta.get("quality_label"),
        "last_timing_label": final_meta.get("timing_label") or master_meta.get("timing_label"),
        "last_composite_score": composite
        if composite is not None
        else to_finite_float(master_meta.get("composite_score")),
    }
    return AddonRunResult(
        selection=selection,
        module_deltas=deltas,
        addon_flags=addon_flags,
        addon_summary=addon_summary,
        updated_meta=final_meta,
        universe_patch=universe_patch,
        run_timestamp=run_timestamp,
        raw_output=raw_output,
    )


def run_addons_for_job(
    conn: Any,
    client: CompletionClient,
    job: Job,
    deep_dive: Any,
    *,
    registry: Mapping[str, ModuleExecutor] | None = None,
    logger: logging.Logger | None = None,
) -> AddonRunResult:
    return run_addon_engine(
        conn,
        client,
        ticker=job.ticker or job.company_name,
        company_name=job.company_name,
        profile_id=job.profile_id,
        provider=job.provider,
        model=getattr(deep_dive, "model", None) or job.model,
        verdict_summary=getattr(deep_dive, "verdict_summary", None),
        master_meta=getattr(deep_dive, "meta", None),
        registry=registry,
        logger=logger,
    )


def apply_universe_patch(
    conn: Any, result: AddonRunResult, *, symbol: str, profile_id: str | None
) -> bool:
    if not result.universe_patch:
        return False
    upsert_universe_row(conn, symbol, profile_id, result.universe_patch)
    return True


def _fetch_universe_row(
    conn: Any, ticker: str | None, profile_id: str | None, logger: logging.Logger
) -> dict[str, Any] | None:
    if conn is None or not ticker:
        return None
    try:
        return get_universe_row(conn, ticker, profile_id)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "universe_fetch_failed", ticker=ticker, error=str(exc))
        try:
            conn.rollback()
        except Exception:  # noqa: BLE001
            pass
        return None
