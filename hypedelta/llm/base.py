"""Provider interface shared by every LLM backend.

Backends implement `_send` only. `complete` wraps it with model resolution,
retries and usage reporting to the cost tracker of the running cycle.

The analysis task being served travels in a context variable rather than
through the call signature, so `batch_complete` and the gateway stay
backend-agnostic while backends can still switch structured output per task.
"""

from __future__ import annotations

import contextvars
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from hypedelta.retry import retry_async

logger = logging.getLogger(__name__)

# Tasks whose prompts ask for a JSON document; "digest" answers in markdown
STRUCTURED_TASKS = frozenset({"filter", "extract", "synthesize", "hype"})

_analysis_task: contextvars.ContextVar[str] = contextvars.ContextVar(
    "_analysis_task", default="",
)


def set_current_task(task: str) -> None:
    """Mark the analysis task served by LLM calls in this context."""
    _analysis_task.set(task)


def current_task() -> str:
    return _analysis_task.get()


@dataclass
class LLMResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    cost_usd: float = 0.0
    truncated: bool = False


class BaseLLMProvider(ABC):
    # Filled in by register_provider
    provider_name: str = ""

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "",
        default_model: str = "",
        max_retries: int = 3,
        timeout: int = 120,
        json_mode: bool = False,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self.max_retries = max_retries
        self.timeout = timeout
        self.json_mode = json_mode

    @property
    def structured_output(self) -> bool:
        """Whether to request JSON-only output for the current task."""
        return self.json_mode and current_task() != "digest"

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4000,
    ) -> LLMResponse:
        model = model or self.default_model
        response = await retry_async(
            self._send, prompt, system, model, temperature, max_tokens,
            max_retries=self.max_retries,
        )
        response.model = response.model or model
        if response.truncated:
            logger.warning(
                "[%s] %s response hit max_tokens=%d, output may be cut short",
                current_task() or "adhoc", self.provider_name, max_tokens,
            )
        self._report_usage(response)
        return response

    @abstractmethod
    async def _send(
        self,
        prompt: str,
        system: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        """Perform one request against the backend."""

    def _report_usage(self, response: LLMResponse) -> None:
        from hypedelta.llm.batch import get_cost_tracker

        tracker = get_cost_tracker()
        if tracker is None:
            return
        if response.input_tokens or response.output_tokens or response.cost_usd:
            tracker.track(
                response.input_tokens,
                response.output_tokens,
                response.model,
                cost_usd=response.cost_usd or None,
            )
