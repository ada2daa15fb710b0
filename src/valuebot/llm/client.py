from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Protocol

from ..config import LlmConfig
from ..errors import CompletionError
from ..utils import log_event

SNIPPET_CHARS = 300


@dataclass(frozen=True)
class CompletionRequest:
    provider: str
    model: str | None
    ticker: str | None
    company_name: str | None
    question: str
    timeframe: str | None
    stage_label: str

    def payload(self) -> dict[str, Any]:
        return {
            "provider": self.provider or "openai",
            "model": self.model,
            "ticker": self.ticker,
            "companyName": self.company_name,
            "question": self.question,
            "timeframe": self.timeframe,
        }


class CompletionClient(Protocol):
    def complete(self, request: CompletionRequest) -> dict[str, Any]:
        ...


def response_text(payload: dict[str, Any] | None) -> str:
    if not payload:
        return ""
    text = payload.get("rawResponse") or payload.get("summary") or ""
    return text if isinstance(text, str) else str(text)


class HttpCompletionClient:
    """Posts analysis prompts to the stock-analysis completion endpoint."""

    def __init__(self, config: LlmConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("valuebot.llm")

    @property
    def url(self) -> str:
        path = self._config.endpoint_path
        if not self._config.base_url:
            return path
        return self._config.base_url.rstrip("/") + path

    def complete(self, request: CompletionRequest) -> dict[str, Any]:
        url = self.url
        if not url.startswith("http"):
            raise CompletionError(
                f"[stage={request.stage_label}] completion service URL is not configured"
            )
        data = json.dumps(request.payload()).encode("utf-8")
        http_request = urllib.request.Request(url, data=data, method="POST")
        http_request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(http_request, timeout=self._config.timeout_seconds) as response:
                status = response.status
                content_type = response.headers.get("Content-Type", "")
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            status = exc.code
            content_type = exc.headers.get("Content-Type", "") if exc.headers else ""
            raw = exc.read().decode("utf-8", errors="ignore")
        except urllib.error.URLError as exc:
            raise CompletionError(f"[stage={request.stage_label}] network_error: {exc}") from exc

        log_event(
            self._logger,
            logging.INFO,
            "llm_fetch",
            stage=request.stage_label,
            status=status,
            content_type=content_type or "-",
            snippet=json.dumps(raw[:SNIPPET_CHARS]),
        )
        if "application/json" not in content_type.lower():
            raise CompletionError(
                f"[stage={request.stage_label}] Non-JSON response from {url} (status {status})"
            )
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CompletionError(
                f"[stage={request.stage_label}] JSON parse failed from {url} (status {status}): {exc}"
            ) from exc
        if status >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise CompletionError(message or f"HTTP error {status}")
        if not isinstance(payload, dict):
            raise CompletionError(f"[stage={request.stage_label}] unexpected response shape")
        return payload
