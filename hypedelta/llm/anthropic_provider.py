"""Anthropic Messages API backend."""

from __future__ import annotations

import logging

import anthropic

from hypedelta.llm import register_provider
from hypedelta.llm.base import BaseLLMProvider, LLMResponse

logger = logging.getLogger(__name__)


@register_provider("anthropic")
class AnthropicProvider(BaseLLMProvider):
    """Claude models through the official SDK.

    The analyst system prompt is identical across every batch of a cycle, so
    it is sent as a cacheable block; cache reads and writes count towards
    input tokens.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._client: anthropic.AsyncAnthropic | None = None

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key or None,
                timeout=self.timeout,
                # retries are driven by retry_async
                max_retries=0,
            )
        return self._client

    async def _send(
        self,
        prompt: str,
        system: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        request = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            request["system"] = [{
                "type": "text",
                "text": system,
                "cache_control": {"type": "ephemeral"},
            }]

        message = await self.client.messages.create(**request)

        usage = message.usage
        input_tokens = (
            usage.input_tokens
            + (getattr(usage, "cache_creation_input_tokens", 0) or 0)
            + (getattr(usage, "cache_read_input_tokens", 0) or 0)
        )
        return LLMResponse(
            text="".join(
                block.text for block in message.content if getattr(block, "type", "") == "text"
            ),
            input_tokens=input_tokens,
            output_tokens=usage.output_tokens,
            model=model,
            truncated=message.stop_reason == "max_tokens",
        )
