"""Backend for OpenAI-style `/chat/completions` servers.

Covers OpenAI itself plus DeepSeek, OpenRouter, Ollama and vLLM. With
`json_mode` on, JSON tasks are sent with `response_format: json_object`;
the digest task always gets free text.
"""

from __future__ import annotations

import logging

import httpx

from hypedelta.llm import register_provider
from hypedelta.llm.base import BaseLLMProvider, LLMResponse

logger = logging.getLogger(__name__)


@register_provider("openai_compatible")
class OpenAICompatibleProvider(BaseLLMProvider):

    @property
    def endpoint(self) -> str:
        return self.base_url.rstrip("/") + "/chat/completions"

    def _headers(self) -> dict[str, str]:
        # Local servers (Ollama, vLLM) run without a key
        if not self.api_key:
            return {"Content-Type": "application/json"}
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _payload(
        self, prompt: str, system: str, model: str, temperature: float, max_tokens: int,
    ) -> dict:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.structured_output:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _send(
        self,
        prompt: str,
        system: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                self.endpoint,
                json=self._payload(prompt, system, model, temperature, max_tokens),
                headers=self._headers(),
            )
            resp.raise_for_status()
            data = resp.json()

        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return LLMResponse(
            text=choice["message"].get("content") or "",
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=data.get("model") or model,
            truncated=choice.get("finish_reason") == "length",
        )
