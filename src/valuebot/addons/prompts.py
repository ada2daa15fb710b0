from __future__ import annotations

from typing import Any

from ..models import SCORE_KEYS
from ..utils import json_dumps

ADDON_ASSESSMENT_SYSTEM_PROMPT = """You are ValueBot, acting as the add-on controller.

The core deep-dive analysis (stages 0 to 6) for this stock is already complete and saved.
Do not repeat it.

Your task:
1. Read the universe row (scores, flags, key metrics), the final verdict summary and any
   financial highlights provided.
2. Decide whether any specialised add-on modules should run. Only select a module when
   there is a clear signal or an open uncertainty that needs more analysis.
3. For every selected module give its id, a priority (1 runs first), the reason it is
   relevant and the key question it must answer.

Available modules:
- high_debt_stress_test: leverage, interest burden, refinancing and dividend safety
  under stress.

Answer in two parts:
(A) A short human-readable explanation of your recommendation.
(B) A strict JSON block:
```json
{
  "ticker": "<ticker>",
  "run_addons": true,
  "selected_modules": [
    {"id": "high_debt_stress_test", "priority": 1, "reason": "...", "key_question": "..."}
  ]
}
```

You are an extra layer on top of the existing analysis. Do not propose score changes
here; the modules themselves do that."""

HIGH_DEBT_SYSTEM_PROMPT = """You are ValueBot, running the High Debt Stress Test add-on module.

The core deep-dive analysis of this stock is complete. Do not redo it.

Your task:
- Analyse leverage, interest burden, refinancing risk and dividend safety under stress.
- Model two or three realistically bad but plausible scenarios (mild recession, deep
  downturn, stagnation).
- Decide whether debt is a non-issue, a manageable constraint, or a significant equity
  risk that changes the investment case.

You may refine the risk, timing and composite scores (0 to 10, higher is better) when
your findings materially change the downside.

Return a markdown analysis followed by a JSON block:
```json
{
  "module_id": "high_debt_stress_test",
  "module_name": "High Debt Stress Test",
  "new_scores": {"risk": 0, "quality": 0, "timing": 0, "composite": 0},
  "universe_flags": {
    "debt_stress_flag": false,
    "liquidity_risk_flag": false,
    "dividend_at_risk_flag": false,
    "fraud_red_flag": false,
    "other_flags": []
  },
  "summary_for_universe_table": "...",
  "notes_for_human_analyst": "..."
}
```"""


def build_addon_assessment_question(
    *,
    ticker: str | None,
    universe_row: dict[str, Any] | None,
    key_metrics: dict[str, Any] | None,
    verdict_summary: str | None,
) -> str:
    user_prompt = (
        f"Ticker: {ticker or '[unknown]'}\n\n"
        f"Universe row snapshot (JSON):\n{json_dumps(universe_row or {}, indent=2)}\n\n"
        f"Key financial metrics (JSON):\n{json_dumps(key_metrics or {}, indent=2)}\n\n"
        "Final verdict summary from the deep dive:\n"
        f"{verdict_summary or 'No final verdict summary available.'}\n\n"
        "Decide which add-on modules to run and answer with the JSON shape described above."
    )
    return (
        f"{ADDON_ASSESSMENT_SYSTEM_PROMPT}\n\n{user_prompt}\n\n"
        "Return the strict JSON block after your short explanation."
    )


def build_high_debt_question(
    *,
    ticker: str | None,
    company_name: str | None,
    universe_row: dict[str, Any] | None,
    scores: dict[str, Any],
    reason: str | None,
    key_metrics: dict[str, Any] | None,
    excerpts: str | None,
    key_question: str | None,
) -> str:
    score_line = " | ".join(
        f"{key.capitalize()}: {_score_text(scores.get(key))}"
        for key in SCORE_KEYS
    )
    user_prompt = (
        f"Ticker: {ticker or '[unknown]'}\n"
        f"Company name: {company_name or ticker or '[unknown company]'}\n\n"
        f"Universe row before add-ons (JSON):\n{json_dumps(universe_row or {}, indent=2)}\n\n"
        f"Current scores:\n{score_line}\n\n"
        f"Why this module was triggered:\n{reason or 'Not specified'}\n\n"
        f"Key leverage metrics (JSON):\n{json_dumps(key_metrics or {}, indent=2)}\n\n"
        "Relevant excerpts from the deep dive:\n"
        f"{excerpts or 'No deep-dive excerpts available.'}\n\n"
        f"Key question: {key_question or 'Is leverage a material equity risk?'}\n\n"
        "Run two or three stress scenarios and answer with the markdown analysis and JSON block."
    )
    return (
        f"{HIGH_DEBT_SYSTEM_PROMPT}\n\nUSER INPUT:\n{user_prompt}\n\n"
        "Return the markdown analysis followed by the JSON block exactly."
    )


def _score_text(value: Any) -> str:
    return "n/a" if value is None else str(value)
