import io
import json
import logging
import urllib.error

import pytest

from valuebot.config import LlmConfig
from valuebot.errors import CompletionError
from valuebot.llm import client as client_module
from valuebot.llm.client import CompletionRequest, HttpCompletionClient, response_text


class FakeResponse:
    def __init__(self, body, status=200, content_type="application/json"):
        self._body = body.encode("utf-8")
        self.status = status
        self.headers = {"Content-Type": content_type}

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


def _config(base_url="https://valuebot.example"):
    return LlmConfig(
        base_url=base_url,
        endpoint_path="/api/stock-analysis",
        timeout_seconds=5,
        default_provider="openai",
        default_model="default",
    )


def _request():
    return CompletionRequest(
        provider="openai",
        model="gpt-4o-mini",
        ticker="ABC",
        company_name="ABC Corp",
        question="Analyse ABC",
        timeframe="3y",
        stage_label="module_0_data_loader",
    )


def test_response_text_prefers_raw_response():
    assert response_text({"rawResponse": "raw", "summary": "short"}) == "raw"
    assert response_text({"summary": "short"}) == "short"
    assert response_text({}) == ""
    assert response_text(None) == ""


def test_complete_posts_payload(monkeypatch):
    seen = {}

    def fake_urlopen(request, timeout):
        seen["url"] = request.full_url
        seen["body"] = json.loads(request.data.decode("utf-8"))
        seen["timeout"] = timeout
        return FakeResponse(json.dumps({"rawResponse": "analysis"}))

    monkeypatch.setattr(client_module.urllib.request, "urlopen", fake_urlopen)
    payload = HttpCompletionClient(_config(), logger=logging.getLogger("test")).complete(_request())

    assert payload == {"rawResponse": "analysis"}
    assert seen["url"] == "https://valuebot.example/api/stock-analysis"
    assert seen["timeout"] == 5
    assert seen["body"] == {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "ticker": "ABC",
        "companyName": "ABC Corp",
        "question": "Analyse ABC",
        "timeframe": "3y",
    }


def test_non_json_content_type(monkeypatch):
    monkeypatch.setattr(
        client_module.urllib.request,
        "urlopen",
        lambda request, timeout: FakeResponse("<html>oops</html>", content_type="text/html"),
    )
    with pytest.raises(CompletionError) as excinfo:
        HttpCompletionClient(_config()).complete(_request())
    assert str(excinfo.value).startswith("[stage=module_0_data_loader] Non-JSON response")


def test_invalid_json_body(monkeypatch):
    monkeypatch.setattr(
        client_module.urllib.request, "urlopen", lambda request, timeout: FakeResponse("{broken")
    )
    with pytest.raises(CompletionError) as excinfo:
        HttpCompletionClient(_config()).complete(_request())
    assert "JSON parse failed" in str(excinfo.value)


def test_http_error_uses_service_message(monkeypatch):
    def fake_urlopen(request, timeout):
        raise urllib.error.HTTPError(
            request.full_url,
            429,
            "Too Many Requests",
            {"Content-Type": "application/json"},
            io.BytesIO(json.dumps({"message": "Rate limited"}).encode("utf-8")),
        )

    monkeypatch.setattr(client_module.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(CompletionError) as excinfo:
        HttpCompletionClient(_config()).complete(_request())
    assert str(excinfo.value) == "Rate limited"


def test_missing_base_url():
    with pytest.raises(CompletionError) as excinfo:
        HttpCompletionClient(_config(base_url="")).complete(_request())
    assert "not configured" in str(excinfo.value)
