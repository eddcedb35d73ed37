"""Embedding backends and text chunking.

The default backend is Model2Vec (lightweight, CPU-only, no network). Remote
backends (Ollama, OpenAI, Voyage) are reached over httpx with bounded
concurrency.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

import httpx
import numpy as np

from hypedelta.config import get_embedding_config
from hypedelta.retry import retry_async

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 8000

BACKENDS = {
    "model2vec": {"model": "minishlab/potion-base-8M", "dimensions": 256},
    "ollama": {
        "model": "nomic-embed-text",
        "dimensions": 768,
        "base_url": "http://localhost:11434",
    },
    "openai": {
        "model": "text-embedding-3-small",
        "dimensions": 1536,
        "base_url": "https://api.openai.com/v1",
    },
    "voyage": {
        "model": "voyage-3",
        "dimensions": 1024,
        "base_url": "https://api.voyageai.com/v1",
    },
}

_models: dict[str, object] = {}


def get_model(model_name: str = "minishlab/potion-base-8M"):
    """Lazy-load a Model2Vec model (cached per name)."""
    if model_name not in _models:
        from model2vec import StaticModel

        logger.info("Loading embedding model: %s", model_name)
        _models[model_name] = StaticModel.from_pretrained(model_name)
    return _models[model_name]


def cosine_similarity(a, b) -> float:
    """Compute cosine similarity between two vectors."""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def euclidean_distance(a, b) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float32) - np.asarray(b, dtype=np.float32)))


@dataclass
class Chunk:
    text: str
    index: int
    start: int
    end: int


def _split_units(text: str, split_on: str) -> list[tuple[int, int]]:
    """Spans of paragraphs or sentences, as (start, end) offsets."""
    pattern = r"\n\s*\n" if split_on == "paragraph" else r"(?<=[.!?])\s+"
    spans = []
    pos = 0
    for match in re.finditer(pattern, text):
        if match.start() > pos:
            spans.append((pos, match.start()))
        pos = match.end()
    if pos < len(text):
        spans.append((pos, len(text)))
    return spans


def chunk_text(
    text: str,
    max_chunk_size: int = 500,
    overlap: int = 50,
    split_on: str = "paragraph",
) -> list[Chunk]:
    """Split text into chunks of at most max_chunk_size characters.

    split_on is "paragraph", "sentence" or "fixed". Natural units are packed
    greedily; a unit longer than max_chunk_size is cut into fixed windows.
    Fixed windows advance by max_chunk_size - overlap characters.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if not text or not text.strip():
        return []
    overlap = max(0, min(overlap, max_chunk_size - 1))

    def _fixed(start: int, end: int) -> list[tuple[int, int]]:
        spans = []
        step = max_chunk_size - overlap
        pos = start
        while pos < end:
            spans.append((pos, min(pos + max_chunk_size, end)))
            if pos + max_chunk_size >= end:
                break
            pos += step
        return spans

    if split_on == "fixed":
        spans = _fixed(0, len(text))
    else:
        spans = []
        current: tuple[int, int] | None = None
        for start, end in _split_units(text, split_on):
            if end - start > max_chunk_size:
                if current:
                    spans.append(current)
                    current = None
                spans.extend(_fixed(start, end))
            elif current and end - current[0] <= max_chunk_size:
                current = (current[0], end)
            else:
                if current:
                    spans.append(current)
                current = (start, end)
        if current:
            spans.append(current)

    chunks = []
    for start, end in spans:
        piece = text[start:end].strip()
        if piece:
            chunks.append(Chunk(text=piece, index=len(chunks), start=start, end=end))
    return chunks


def truncate_text(text: str, limit: int) -> str:
    """Shorten text to at most limit chars, preferring a sentence boundary."""
    if len(text) <= limit:
        return text
    chunks = chunk_text(text, max_chunk_size=limit, overlap=0, split_on="sentence")
    return chunks[0].text if chunks else text[:limit]


class EmbeddingService:
    """Pluggable embedding backend selected by the embeddings config block."""

    def __init__(self, config: dict):
        cfg = get_embedding_config(config)
        self.provider = cfg["provider"]
        if self.provider not in BACKENDS:
            raise ValueError(f"Unknown embedding provider: {self.provider}")
        defaults = BACKENDS[self.provider]
        self.model = cfg["model"] or defaults["model"]
        self.base_url = (cfg["base_url"] or defaults.get("base_url", "")).rstrip("/")
        self.api_key = cfg["api_key"]
        self.dimensions = defaults["dimensions"]
        self.max_concurrent = cfg["max_concurrent"]
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        texts = [t[:MAX_INPUT_CHARS] for t in texts]
        if not texts:
            return []
        if self.provider == "model2vec":
            vectors = await asyncio.to_thread(get_model(self.model).encode, texts)
            return [list(map(float, v)) for v in vectors]
        if self.provider == "ollama":
            return list(await asyncio.gather(*[self._ollama(t) for t in texts]))
        async with self._semaphore:
            if self.provider == "openai":
                return await retry_async(self._openai, texts)
            return await retry_async(self._voyage, texts)

    async def embed_document(self, text: str, max_chunk_size: int = 1000) -> list[float]:
        """Mean of chunk embeddings, for texts longer than one chunk."""
        chunks = chunk_text(text, max_chunk_size=max_chunk_size, overlap=100)
        if not chunks:
            return [0.0] * self.dimensions
        vectors = await self.embed_batch([c.text for c in chunks])
        return list(map(float, np.mean(np.asarray(vectors), axis=0)))

    async def _ollama(self, text: str) -> list[float]:
        async with self._semaphore:
            data = await retry_async(
                self._post, f"{self.base_url}/api/embeddings",
                {"model": self.model, "prompt": text}, {},
            )
        return data["embedding"]

    async def _openai(self, texts: list[str]) -> list[list[float]]:
        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": texts},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        ordered = sorted(data["data"], key=lambda d: d["index"])
        return [d["embedding"] for d in ordered]

    async def _voyage(self, texts: list[str]) -> list[list[float]]:
        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": texts, "input_type": "document"},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        return [d["embedding"] for d in data["data"]]

    @staticmethod
    async def _post(url: str, payload: dict, headers: dict) -> dict:
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
