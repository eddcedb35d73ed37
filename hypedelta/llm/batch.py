"""Concurrent LLM calls and per-cycle cost accounting."""

from __future__ import annotations

import asyncio
import contextvars
import logging
from contextlib import contextmanager

from hypedelta.llm.base import BaseLLMProvider, LLMResponse

logger = logging.getLogger(__name__)


async def batch_complete(
    provider: BaseLLMProvider,
    prompts: list[str],
    system: str = "",
    max_concurrent: int = 3,
    temperature: float = 0.2,
    max_tokens: int = 4000,
    model: str | None = None,
) -> list[LLMResponse]:
    """Run multiple completions with concurrency control.

    A failed call yields an empty response at its position so callers can
    degrade per batch.
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def _call(prompt: str) -> LLMResponse:
        async with semaphore:
            return await provider.complete(
                prompt, system=system, model=model,
                temperature=temperature, max_tokens=max_tokens,
            )

    results = await asyncio.gather(*[_call(p) for p in prompts], return_exceptions=True)

    responses = []
    for i, result in enumerate(results):
        if isinstance(result, Exception):
            logger.error("Batch call %d failed: %s", i, result)
            responses.append(LLMResponse(text="", model=model or provider.default_model))
        else:
            responses.append(result)

    return responses


def estimate_cost(
    input_tokens: int,
    output_tokens: int,
    model: str,
) -> float:
    """Rough cost estimate based on known pricing (per 1M tokens)."""
    pricing = {
        "claude-sonnet-4-5": (3.0, 15.0),
        "claude-haiku-4-5": (1.0, 5.0),
        "claude-opus-4-1": (15.0, 75.0),
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-4o": (2.50, 10.0),
        "deepseek-chat": (0.27, 1.10),
    }
    rates = next(
        (rate for name, rate in pricing.items() if model.startswith(name)),
        (1.0, 2.0),
    )
    input_rate, output_rate = rates
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


class CostTracker:
    """Accumulate LLM token usage and cost across one orchestration cycle."""

    def __init__(self):
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_cost_usd = 0.0

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    def track(
        self,
        input_tokens: int,
        output_tokens: int,
        model: str,
        cost_usd: float | None = None,
    ):
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        if cost_usd is None:
            cost_usd = estimate_cost(input_tokens, output_tokens, model)
        self.total_cost_usd += cost_usd


# Context-local so concurrent cycles (e.g. process and synthesize) keep separate totals
_cost_tracker: contextvars.ContextVar[CostTracker | None] = contextvars.ContextVar(
    "_cost_tracker", default=None,
)


def get_cost_tracker() -> CostTracker | None:
    return _cost_tracker.get()


@contextmanager
def track_costs():
    """Install a fresh CostTracker for the duration of a cycle."""
    tracker = CostTracker()
    token = _cost_tracker.set(tracker)
    try:
        yield tracker
    finally:
        _cost_tracker.reset(token)
