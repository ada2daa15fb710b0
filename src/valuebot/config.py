from __future__ import annotations

import copy
import math
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .errors import ConfigError


@dataclass(frozen=True)
class WorkerConfig:
    max_jobs: int
    max_attempts: int
    time_budget_seconds: float
    seconds_per_job_estimate: int
    error_snippet_chars: int


@dataclass(frozen=True)
class LlmConfig:
    base_url: str
    endpoint_path: str
    timeout_seconds: int
    default_provider: str
    default_model: str


@dataclass(frozen=True)
class AddonsConfig:
    enabled: bool


@dataclass(frozen=True)
class StoreConfig:
    db_url: str
    db_path: str


@dataclass(frozen=True)
class Config:
    worker: WorkerConfig
    llm: LlmConfig
    addons: AddonsConfig
    store: StoreConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "worker": {
        "max_jobs": 5,
        "max_attempts": 3,
        "time_budget_seconds": 250.0,
        "seconds_per_job_estimate": 70,
        "error_snippet_chars": 600,
    },
    "llm": {
        "base_url": "",
        "endpoint_path": "/api/stock-analysis",
        "timeout_seconds": 120,
        "default_provider": "openai",
        "default_model": "default",
    },
    "addons": {
        "enabled": False,
    },
    "store": {
        "db_url": "",
        "db_path": "",
    },
}

MAX_JOBS_ENV = "VALUEBOT_CRON_MAX_JOBS"
ADDONS_ENV = "ENABLE_ADDON_ENGINE"
CONFIG_PATH_ENV = "VB_CONFIG_PATH"
_BASE_URL_ENVS = ("SITE_URL", "VERCEL_URL", "DEPLOYMENT_URL", "PUBLIC_URL")


def load_config(path: str | None = None) -> Config:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    path = path or os.environ.get(CONFIG_PATH_ENV, "").strip() or None
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    _apply_env_overrides(cfg)
    return _build_config(cfg)


def get_configured_max_jobs(value: Any = None, default: int | None = None) -> int:
    """Resolve the batch size for one worker run.

    An explicit positive number wins, then a positive integer in
    VALUEBOT_CRON_MAX_JOBS, then the configured default.
    """
    fallback = default if default is not None else DEFAULT_CONFIG["worker"]["max_jobs"]
    env_value = _positive_int(os.environ.get(MAX_JOBS_ENV, ""))
    configured = env_value if env_value is not None else fallback
    if value is None:
        return configured
    provided = _positive_number(value)
    if provided is None:
        return configured
    return max(1, int(provided))


def addons_enabled_from_env(default: bool = False) -> bool:
    raw = os.environ.get(ADDONS_ENV)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


def resolve_api_base_url(configured: str = "") -> str:
    explicit = os.environ.get("VALUEBOT_API_BASE_URL", "").strip() or configured.strip()
    if explicit:
        return explicit.rstrip("/")
    for name in _BASE_URL_ENVS:
        value = os.environ.get(name, "").strip()
        if value:
            normalized = value if value.startswith("http") else f"https://{value}"
            return normalized.rstrip("/")
    return ""


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    worker = cfg.get("worker") if isinstance(cfg.get("worker"), dict) else {}
    for key in ("max_jobs", "max_attempts", "seconds_per_job_estimate", "error_snippet_chars"):
        value = worker.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value < 1:
            errors.append(f"config.worker.{key} must be positive")
    budget = worker.get("time_budget_seconds")
    if isinstance(budget, (int, float)) and not isinstance(budget, bool) and budget <= 0:
        errors.append("config.worker.time_budget_seconds must be positive")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    cfg["worker"]["max_jobs"] = get_configured_max_jobs(None, cfg["worker"]["max_jobs"])
    cfg["addons"]["enabled"] = addons_enabled_from_env(cfg["addons"]["enabled"])
    cfg["llm"]["base_url"] = resolve_api_base_url(cfg["llm"]["base_url"])
    cfg["store"]["db_url"] = os.environ.get("VB_DB_URL", "").strip() or cfg["store"]["db_url"]
    cfg["store"]["db_path"] = os.environ.get("VB_DB_PATH", "").strip() or cfg["store"]["db_path"]


def _build_config(cfg: dict[str, Any]) -> Config:
    worker_cfg = cfg["worker"]
    llm_cfg = cfg["llm"]
    worker = WorkerConfig(
        max_jobs=int(worker_cfg["max_jobs"]),
        max_attempts=int(worker_cfg["max_attempts"]),
        time_budget_seconds=float(worker_cfg["time_budget_seconds"]),
        seconds_per_job_estimate=int(worker_cfg["seconds_per_job_estimate"]),
        error_snippet_chars=int(worker_cfg["error_snippet_chars"]),
    )
    llm = LlmConfig(
        base_url=str(llm_cfg["base_url"]),
        endpoint_path=str(llm_cfg["endpoint_path"]),
        timeout_seconds=int(llm_cfg["timeout_seconds"]),
        default_provider=str(llm_cfg["default_provider"]),
        default_model=str(llm_cfg["default_model"]),
    )
    return Config(
        worker=worker,
        llm=llm,
        addons=AddonsConfig(enabled=bool(cfg["addons"]["enabled"])),
        store=StoreConfig(
            db_url=str(cfg["store"]["db_url"]),
            db_path=str(cfg["store"]["db_path"]),
        ),
    )


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _positive_int(raw: str) -> int | None:
    try:
        value = int(raw.strip())
    except (AttributeError, ValueError):
        return None
    return value if value > 0 else None


def _positive_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number

