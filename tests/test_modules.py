import json

import pytest

from valuebot.addons.modules import MODULE_REGISTRY, HighDebtStressTest, ModuleContext, build_delta
from valuebot.errors import NoJsonContentError


def _context(**overrides):
    values = {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "ticker": "ABC",
        "company_name": "ABC Corp",
        "universe_row": {"symbol": "ABC"},
        "scores": {"risk": 6.0, "quality": 7.0, "timing": 5.0, "composite": 6.5},
        "reason": "Net debt is high",
        "key_question": "Can it refinance in 2027?",
        "key_metrics": {"interest_cover": 1.8},
        "excerpts": "Verdict: leverage matters",
    }
    values.update(overrides)
    return ModuleContext(**values)


def _reply(payload):
    return "## Stress test\nDebt is a real constraint.\n```json\n" + json.dumps(payload) + "\n```"


def test_registry_contains_high_debt_module():
    assert isinstance(MODULE_REGISTRY["high_debt_stress_test"], HighDebtStressTest)


def test_high_debt_module_merges_scores_and_flags(fake_client):
    client = fake_client(
        {
            "addon_high_debt": _reply(
                {
                    "new_scores": {"risk": 3.5, "quality": "", "timing": "4"},
                    "universe_flags": {"debt_stress_flag": True, "other_flags": ["refinancing_wall"]},
                    "summary_for_universe_table": "Refinancing risk in 2027",
                    "confidence": "medium",
                }
            )
        }
    )
    result = HighDebtStressTest().run(client, _context())

    delta = result.delta
    assert delta.new_scores == {"risk": 3.5, "quality": 7.0, "timing": 4.0, "composite": 6.5}
    assert delta.universe_flags == {"debt_stress_flag": True, "other_flags": ["refinancing_wall"]}
    assert delta.module_id == "high_debt_stress_test"
    assert delta.module_name == "High Debt Stress Test"
    assert delta.summary_for_universe_table == "Refinancing risk in 2027"
    assert delta.notes_for_human_analyst == ""
    assert delta.extra == {"confidence": "medium"}
    assert result.meta_from_scores["risk_label"] == "High"
    assert result.meta_from_scores["timing_label"] == "Wait"
    assert result.meta_from_scores["composite_score"] == 6.5


def test_high_debt_module_prompt_carries_context(fake_client):
    client = fake_client({"addon_high_debt": _reply({"new_scores": {}})})
    HighDebtStressTest().run(client, _context())

    request = client.requests[0]
    assert request.stage_label == "addon_high_debt"
    assert "Net debt is high" in request.question
    assert "Can it refinance in 2027?" in request.question
    assert "interest_cover" in request.question
    assert "Verdict: leverage matters" in request.question
    assert "Risk: 6.0" in request.question


def test_high_debt_module_keeps_reported_ids():
    class Client:
        def complete(self, request):
            return {"summary": _reply({"module_id": "custom", "module_name": "Custom"})}

    delta = HighDebtStressTest().run(Client(), _context()).delta
    assert delta.module_id == "custom"
    assert delta.module_name == "Custom"


def test_high_debt_module_without_json_fails(fake_client):
    client = fake_client({"addon_high_debt": "Only prose, no block."})
    with pytest.raises(NoJsonContentError):
        HighDebtStressTest().run(client, _context())


def test_out_of_range_scores_keep_prior_values():
    delta = build_delta(
        {"new_scores": {"risk": 10**400, "quality": "6"}},
        {"risk": 5.0, "quality": 7.0},
        "high_debt_stress_test",
        "High Debt Stress Test",
    )
    assert delta.new_scores == {"risk": 5.0, "quality": 6.0}


def test_high_debt_module_survives_huge_integer_score(fake_client):
    client = fake_client({"addon_high_debt": _reply({"new_scores": {"risk": 10**400, "timing": 4}})})
    result = HighDebtStressTest().run(client, _context())

    assert result.delta.new_scores["risk"] == 6.0
    assert result.delta.new_scores["timing"] == 4.0
    assert result.meta_from_scores["risk_label"] == "Medium"
