"""LLM backends and the routing of analysis tasks onto them.

Each analysis task (filter, extract, synthesize, hype, digest) names a
configured provider under `llm.tasks`; several tasks may share one provider
entry and therefore one client instance. The model is resolved per task with
`task_model` and passed on every call, since a shared instance may serve
several tasks at once.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hypedelta.llm.base import BaseLLMProvider

PROVIDERS: dict[str, type[BaseLLMProvider]] = {}

# Keyed by the provider entry name in config, not by type
_instances: dict[str, BaseLLMProvider] = {}


def register_provider(name: str):
    def decorator(cls):
        cls.provider_name = name
        PROVIDERS[name] = cls
        return cls

    return decorator


def build_provider(task_cfg: dict) -> BaseLLMProvider:
    """Instantiate the backend described by a resolved task config."""
    provider_type = task_cfg["provider_type"]
    try:
        cls = PROVIDERS[provider_type]
    except KeyError:
        raise ValueError(
            f"Unknown LLM provider type {provider_type!r} "
            f"for provider {task_cfg['provider_name']!r}"
        ) from None
    return cls(
        api_key=task_cfg["api_key"],
        base_url=task_cfg["base_url"],
        default_model=task_cfg["default_model"] or task_cfg["model"],
        max_retries=task_cfg["max_retries"],
        timeout=task_cfg["timeout"],
        json_mode=task_cfg["json_mode"],
    )


def get_provider_for_task(config: dict, task: str) -> BaseLLMProvider:
    """Return the (shared) provider serving an analysis task."""
    from hypedelta.config import get_llm_task_config

    task_cfg = get_llm_task_config(config, task)
    name = task_cfg["provider_name"]
    provider = _instances.get(name)
    if provider is None:
        provider = _instances[name] = build_provider(task_cfg)
    return provider


def task_model(config: dict, task: str) -> str:
    """Model for an analysis task: its own override, else the provider default."""
    from hypedelta.config import get_llm_task_config

    return get_llm_task_config(config, task)["model"]


def clear_provider_cache() -> None:
    _instances.clear()


# Registration happens on import
from hypedelta.llm.anthropic_provider import AnthropicProvider  # noqa: E402, F401
from hypedelta.llm.claude_code import ClaudeCodeProvider  # noqa: E402, F401
from hypedelta.llm.openai_compat import OpenAICompatibleProvider  # noqa: E402, F401
