"""Claude Code CLI provider: uses `claude -p` for headless LLM calls."""

from __future__ import annotations

import asyncio
import json
import logging

from hypedelta.llm import register_provider
from hypedelta.llm.base import BaseLLMProvider, LLMResponse, current_task

logger = logging.getLogger(__name__)

_SCORE = {"type": "number", "minimum": 0, "maximum": 1}

FILTER_SCHEMA = json.dumps({
    "type": "object",
    "properties": {
        "assessments": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "itemIndex": {"type": "integer"},
                    "relevanceScore": _SCORE,
                    "isSubstantive": {"type": "boolean"},
                    "primaryTopic": {"type": "string"},
                    "contentType": {"type": "string"},
                    "authorCategory": {"type": "string"},
                    "briefSummary": {"type": "string"},
                },
                "required": ["itemIndex", "relevanceScore"],
            },
        },
    },
    "required": ["assessments"],
})

EXTRACT_SCHEMA = json.dumps({
    "type": "object",
    "properties": {
        "claims": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "itemIndex": {"type": "integer"},
                    "claimText": {"type": "string"},
                    "claimType": {"type": "string"},
                    "topic": {"type": "string"},
                    "stance": {"type": "string"},
                    "bullishness": _SCORE,
                    "confidence": _SCORE,
                    "timeframe": {"type": "string"},
                    "targetEntity": {"type": "string"},
                    "evidenceProvided": {"type": "string"},
                    "quoteworthiness": _SCORE,
                    "relatedEntities": {"type": "array", "items": {"type": "string"}},
                    "originalQuote": {"type": "string"},
                },
                "required": ["itemIndex", "claimText"],
            },
        },
    },
    "required": ["claims"],
})

SYNTHESIS_SCHEMA = json.dumps({
    "type": "object",
    "properties": {
        "labConsensus": {"type": "string"},
        "criticConsensus": {"type": "string"},
        "agreements": {"type": "array", "items": {"type": "string"}},
        "disagreements": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "point": {"type": "string"},
                    "labPosition": {"type": "string"},
                    "criticPosition": {"type": "string"},
                },
                "required": ["point"],
            },
        },
        "emergingNarratives": {"type": "array", "items": {"type": "string"}},
        "notablePredictions": {"type": "array", "items": {"type": "string"}},
        "synthesisNarrative": {"type": "string"},
    },
    "required": ["synthesisNarrative"],
})

_TOPIC_SCORE = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "topic": {"type": "string"},
            "score": {"type": "number"},
            "reasoning": {"type": "string"},
            "keyEvidence": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["topic", "score"],
    },
}

HYPE_SCHEMA = json.dumps({
    "type": "object",
    "properties": {
        "overhyped": _TOPIC_SCORE,
        "underhyped": _TOPIC_SCORE,
        "accuratelyAssessed": _TOPIC_SCORE,
        "overallSentiment": _SCORE,
        "summary": {"type": "string"},
    },
    "required": ["overhyped", "underhyped", "summary"],
})

# Map analysis task names to JSON schemas for structured output
TASK_SCHEMAS: dict[str, str] = {
    "filter": FILTER_SCHEMA,
    "extract": EXTRACT_SCHEMA,
    "synthesize": SYNTHESIS_SCHEMA,
    "hype": HYPE_SCHEMA,
    "digest": "",
}


@register_provider("claude_code")
class ClaudeCodeProvider(BaseLLMProvider):
    """Provider that shells out to the `claude -p` CLI."""

    def __init__(self, **kwargs):
        super().__init__(
            api_key=kwargs.get("api_key", ""),
            base_url=kwargs.get("base_url", ""),
            default_model=kwargs.get("default_model") or "sonnet",
            max_retries=kwargs.get("max_retries", 2),
            timeout=kwargs.get("timeout", 180),
        )

    async def _send(
        self,
        prompt: str,
        system: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        cmd = ["claude", "-p", "--output-format", "json", "--model", model]

        if system:
            cmd.extend(["--system-prompt", system])

        task = current_task()
        schema = TASK_SCHEMAS.get(task, "")
        if schema:
            cmd.extend(["--json-schema", schema])

        task = task or "unknown"
        logger.info(
            "[%s] Starting claude -p --model %s (%d chars)",
            task, model, len(prompt),
        )
        loop = asyncio.get_running_loop()
        t0 = loop.time()

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=prompt.encode()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("[%s] claude -p timed out after %.1fs", task, loop.time() - t0)
            raise TimeoutError(f"claude -p timed out after {self.timeout}s")

        elapsed = loop.time() - t0

        if proc.returncode != 0:
            err = stderr.decode().strip()
            logger.error(
                "[%s] claude -p failed (rc=%d, %.1fs): %s",
                task, proc.returncode, elapsed, err[:500],
            )
            raise RuntimeError(f"claude -p exited with code {proc.returncode}: {err[:200]}")

        raw = stdout.decode()

        # --output-format json wraps the response in a JSON envelope
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            envelope = {}
        if isinstance(envelope, dict) and envelope:
            structured = envelope.get("structured_output")
            text = json.dumps(structured) if structured else envelope.get("result", raw)
            usage = envelope.get("usage") or {}
            cost = envelope.get("total_cost_usd", envelope.get("cost_usd", 0.0))
            input_tokens = usage.get("input_tokens", envelope.get("input_tokens", 0))
            output_tokens = usage.get("output_tokens", envelope.get("output_tokens", 0))
        else:
            text, cost, input_tokens, output_tokens = raw.strip(), 0.0, 0, 0

        logger.info(
            "[%s] claude -p done in %.1fs (%d+%d tokens, $%.4f)",
            task, elapsed, input_tokens, output_tokens, cost,
        )

        return LLMResponse(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            cost_usd=cost,
        )
