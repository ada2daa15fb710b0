from __future__ import annotations

import logging
from typing import Any

import jsonschema

from ..errors import SelectionError
from ..llm.client import CompletionClient, CompletionRequest, response_text
from ..models import AddonSelection, ModuleSelection
from ..utils import log_event
from .parsers import extract_json_block
from .prompts import build_addon_assessment_question

_NULLABLE_STRING = {"type": ["string", "null"]}

SELECTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["run_addons"],
    "properties": {
        "ticker": _NULLABLE_STRING,
        "run_addons": {"type": "boolean"},
        "selected_modules": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": _NULLABLE_STRING,
                    "priority": {"type": ["number", "null"]},
                    "reason": _NULLABLE_STRING,
                    "key_question": _NULLABLE_STRING,
                },
            },
        },
    },
}


def parse_selection(raw_output: str) -> AddonSelection:
    parsed = extract_json_block(raw_output)
    try:
        jsonschema.validate(parsed, SELECTION_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise SelectionError(f"Invalid add-on selection: {exc.message}") from exc

    modules = [
        ModuleSelection(
            id=item.get("id"),
            priority=item.get("priority") or 0,
            reason=item.get("reason"),
            key_question=item.get("key_question"),
        )
        for item in parsed.get("selected_modules") or []
    ]
    # Missing priority sorts as 0, so unprioritised modules run first.
    modules.sort(key=lambda module: module.priority)
    return AddonSelection(
        ticker=parsed.get("ticker"),
        run_addons=parsed["run_addons"],
        selected_modules=modules,
    )


def select_addons(
    client: CompletionClient,
    *,
    provider: str,
    model: str | None,
    ticker: str | None,
    company_name: str | None,
    universe_row: dict[str, Any] | None,
    key_metrics: dict[str, Any] | None,
    verdict_summary: str | None,
    logger: logging.Logger,
) -> tuple[AddonSelection, str]:
    question = build_addon_assessment_question(
        ticker=ticker,
        universe_row=universe_row,
        key_metrics=key_metrics,
        verdict_summary=verdict_summary,
    )
    payload = client.complete(
        CompletionRequest(
            provider=provider,
            model=model,
            ticker=ticker,
            company_name=company_name,
            question=question,
            timeframe=None,
            stage_label="addon_assessment",
        )
    )
    raw_output = response_text(payload)
    selection = parse_selection(raw_output)
    log_event(
        logger,
        logging.INFO,
        "addon_selection",
        ticker=ticker,
        run_addons=selection.run_addons,
        modules=",".join(str(module.id) for module in selection.selected_modules) or "-",
    )
    return selection, raw_output
