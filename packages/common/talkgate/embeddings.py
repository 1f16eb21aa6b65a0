"""Embedding backends used for semantic intent matching."""

from __future__ import annotations

import asyncio
import math
from typing import Any, List, Optional, Protocol, Sequence

import structlog

from .messaging import MessageBusClient

logger = structlog.get_logger(__name__)

Vector = List[float]

DEFAULT_MODEL = "all-MiniLM-L6-v2"


class EmbeddingBackend(Protocol):
    """Anything that turns texts into comparable vectors."""

    async def embed(self, texts: Sequence[str]) -> List[Vector]:
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class SentenceTransformerEmbedder:
    """Local sentence-transformers model.

    The model is loaded on first use and every encode runs in a worker thread,
    so the event loop never waits on model inference.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL, model: Optional[Any] = None):
        self.model_name = model_name
        self._model = model
        self._load_lock = asyncio.Lock()

    def _load(self) -> Any:
        from sentence_transformers import SentenceTransformer

        logger.info("Loading embedding model...", model=self.model_name)
        model = SentenceTransformer(self.model_name)
        logger.info("Embedding model loaded", model=self.model_name)
        return model

    async def _ensure_model(self) -> Any:
        async with self._load_lock:
            if self._model is None:
                self._model = await asyncio.to_thread(self._load)
        return self._model

    async def embed(self, texts: Sequence[str]) -> List[Vector]:
        if not texts:
            return []
        model = await self._ensure_model()
        vectors = await asyncio.to_thread(model.encode, list(texts))
        return [[float(x) for x in vector] for vector in vectors]


class BusEmbedder:
    """Requests embeddings from the LLM service over the message bus.

    The service embeds one ``text`` per request and answers with one
    ``embedding``. Any failure sends the whole batch to ``fallback``.
    """

    def __init__(
        self,
        message_bus: MessageBusClient,
        subject: str = "ai.llm.embed",
        timeout: float = 5.0,
        fallback: Optional[EmbeddingBackend] = None,
    ):
        self.message_bus = message_bus
        self.subject = subject
        self.timeout = timeout
        self.fallback = fallback or SentenceTransformerEmbedder()

    async def _embed_one(self, text: str) -> Vector:
        response = await self.message_bus.request(self.subject, {"text": text}, timeout=self.timeout)
        if response.get("error"):
            raise RuntimeError(response["error"])
        embedding = response.get("embedding")
        if not embedding:
            raise RuntimeError("response carries no embedding")
        return [float(x) for x in embedding]

    async def embed(self, texts: Sequence[str]) -> List[Vector]:
        try:
            return list(await asyncio.gather(*(self._embed_one(t) for t in texts)))
        except (asyncio.TimeoutError, RuntimeError, TypeError, ValueError) as e:
            logger.warning("Embedding service degraded, using local model", subject=self.subject, error=str(e))
            return await self.fallback.embed(texts)
