"""Tests for config loading, env var resolution and typed getters."""

from __future__ import annotations

import pytest

from hypedelta.config import (
    get_analysis_config,
    get_cohorts,
    get_db_path,
    get_embedding_config,
    get_llm_task_config,
    get_rate_limits,
    get_schedule_config,
    get_seed_sources,
    get_source_kind_config,
    load_config,
)


def test_load_config(sample_config):
    """Config loads and has expected structure."""
    assert "llm" in sample_config
    assert "sources" in sample_config
    assert "analysis" in sample_config


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_env_var_resolution(tmp_path, monkeypatch):
    """Environment variables in ${VAR} format are resolved."""
    monkeypatch.setenv("TEST_API_KEY", "my-secret-key")
    monkeypatch.delenv("UNSET_VAR", raising=False)
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("""
llm:
  providers:
    test:
      api_key: "${TEST_API_KEY}"
      base_url: "https://${TEST_API_KEY}.example.com"
      other: "${UNSET_VAR}"
""")
    config = load_config(str(cfg_path))
    provider = config["llm"]["providers"]["test"]
    assert provider["api_key"] == "my-secret-key"
    assert provider["base_url"] == "https://my-secret-key.example.com"
    assert provider["other"] == ""


def test_get_llm_task_config(sample_config):
    """Task-to-provider mapping works."""
    cfg = get_llm_task_config(sample_config, "extract")
    assert cfg["provider_name"] == "mock"
    assert cfg["provider_type"] == "openai_compatible"
    assert cfg["model"] == "test-model"


def test_get_llm_task_config_model_override():
    config = {
        "llm": {
            "providers": {"a": {"type": "anthropic", "default_model": "big"}},
            "tasks": {"filter": {"provider": "a", "model": "small"}},
        },
    }
    assert get_llm_task_config(config, "filter")["model"] == "small"
    assert get_llm_task_config(config, "digest")["provider_name"] == "anthropic"


def test_get_db_path(sample_config):
    """DB path is extracted from config."""
    assert get_db_path(sample_config).endswith("test.db")
    assert get_db_path({}) == "data/hypedelta.db"


def test_analysis_defaults_and_batch_caps():
    cfg = get_analysis_config({"analysis": {"filter_batch_size": 50, "extract_batch_size": 4}})
    assert cfg["filter_batch_size"] == 20
    assert cfg["extract_batch_size"] == 4
    assert cfg["relevance_threshold"] == 0.3
    assert cfg["mode"] == "llm"


def test_embedding_defaults():
    cfg = get_embedding_config({})
    assert cfg["provider"] == "model2vec"
    assert cfg["max_concurrent"] == 5
    assert cfg["enabled"] is True


def test_schedule_defaults_merge_overrides():
    cfg = get_schedule_config({"schedule": {"fetch_hours": {"twitter": 1}}})
    assert cfg["fetch_hours"]["twitter"] == 1
    assert cfg["fetch_hours"]["arxiv"] == 24
    assert cfg["fetch_hours"]["substack"] == 6
    assert cfg["process_hours"] == 2
    assert cfg["synthesis_hours"] == 24
    assert (cfg["weekly_weekday"], cfg["weekly_hour"]) == (6, 9)


def test_rate_limits_and_cohorts(sample_config):
    assert get_rate_limits(sample_config)["arxiv"] == 0
    assert get_rate_limits({})["arxiv"] == 3.0
    assert get_cohorts({}) == ({"lab-researcher"}, {"critic"})


def test_source_kind_config_and_seed(sample_config):
    assert get_source_kind_config(sample_config, "twitter")["api_key"] == "tw-key"
    assert get_source_kind_config(sample_config, "podcast") == {}
    assert len(get_seed_sources(sample_config)) == 3
