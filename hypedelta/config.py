"""Load and validate configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

DEFAULT_FETCH_HOURS = {
    "twitter": 4,
    "bluesky": 4,
    "substack": 6,
    "youtube": 6,
    "blog": 12,
    "podcast": 12,
    "lesswrong": 12,
    "arxiv": 24,
}

DEFAULT_RATE_LIMITS = {
    "twitterapi": 0.05,
    "nitter": 1.0,
    "bluesky": 0.2,
    "lesswrong": 1.0,
    "arxiv": 3.0,
    "youtube": 0.5,
    "feed": 0.5,
}


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{([^}]+)\}")
        match = pattern.search(value)
        if match:
            if match.group(0) == value:
                return os.environ.get(match.group(1), "")
            return pattern.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def get_db_path(config: dict) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", "data/hypedelta.db")


def get_llm_task_config(config: dict, task: str) -> dict:
    """Get provider name and model for a given analysis task."""
    tasks = config.get("llm", {}).get("tasks", {})
    task_cfg = tasks.get(task, {})
    provider_name = task_cfg.get("provider", "anthropic")
    model_override = task_cfg.get("model")

    providers = config.get("llm", {}).get("providers", {})
    provider_cfg = providers.get(provider_name, {})

    return {
        "provider_name": provider_name,
        "provider_type": provider_cfg.get("type", "anthropic"),
        "api_key": provider_cfg.get("api_key", ""),
        "base_url": provider_cfg.get("base_url", ""),
        "model": model_override or provider_cfg.get("default_model", ""),
        "default_model": provider_cfg.get("default_model", ""),
        "max_retries": provider_cfg.get("max_retries", 3),
        "timeout": provider_cfg.get("timeout", 120),
        "json_mode": provider_cfg.get("json_mode", False),
    }


def get_analysis_config(config: dict) -> dict:
    """Settings for the analysis gateway and pipeline thresholds."""
    cfg = config.get("analysis", {})
    return {
        "mode": cfg.get("mode", "llm"),
        "relevance_threshold": cfg.get("relevance_threshold", 0.3),
        "filter_batch_size": min(cfg.get("filter_batch_size", 20), 20),
        "extract_batch_size": min(cfg.get("extract_batch_size", 10), 10),
        "max_concurrent": cfg.get("max_concurrent", 2),
        "min_claims_per_topic": cfg.get("min_claims_per_topic", 1),
        "topics": cfg.get("topics"),
    }


def get_embedding_config(config: dict) -> dict:
    """Embedding backend settings."""
    cfg = config.get("embeddings", {})
    return {
        "provider": cfg.get("provider", "model2vec"),
        "model": cfg.get("model", ""),
        "api_key": cfg.get("api_key", ""),
        "base_url": cfg.get("base_url", ""),
        "max_concurrent": cfg.get("max_concurrent", 5),
        "enabled": cfg.get("enabled", True),
    }


def get_schedule_config(config: dict) -> dict:
    """Scheduler cadences (hours) and weekly digest anchor."""
    cfg = config.get("schedule", {})
    fetch_hours = dict(DEFAULT_FETCH_HOURS)
    fetch_hours.update(cfg.get("fetch_hours", {}))
    weekly = cfg.get("weekly_digest", {})
    return {
        "fetch_hours": fetch_hours,
        "process_hours": cfg.get("process_hours", 2),
        "synthesis_hours": cfg.get("synthesis_hours", 24),
        "process_limit": cfg.get("process_limit", 100),
        "synthesis_days": cfg.get("synthesis_days", 7),
        "weekly_weekday": weekly.get("weekday", 6),
        "weekly_hour": weekly.get("hour", 9),
    }


def get_rate_limits(config: dict) -> dict[str, float]:
    """Per-endpoint minimum seconds between requests."""
    limits = dict(DEFAULT_RATE_LIMITS)
    limits.update(config.get("rate_limits", {}))
    return limits


def get_cohorts(config: dict) -> tuple[set[str], set[str]]:
    """Return (lab categories, critic categories) for hype delta."""
    cfg = config.get("analysis", {}).get("cohorts", {})
    lab = set(cfg.get("lab", ["lab-researcher"]))
    critic = set(cfg.get("critic", ["critic"]))
    return lab, critic


def get_source_kind_config(config: dict, kind: str) -> dict:
    """Adapter-specific options for a source kind."""
    return config.get("sources", {}).get(kind, {}) or {}


def get_seed_sources(config: dict) -> list[dict]:
    """Source definitions to seed into the database."""
    return config.get("sources", {}).get("seed", []) or []


def get_digest_dir(config: dict) -> str:
    """Directory where weekly digests are written."""
    return config.get("digest", {}).get("dir", "data/digests")
