"""Semantic similarity between transaction and document text."""

from __future__ import annotations

import hashlib
import math
import threading
from collections import OrderedDict
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from reconciler.config import settings
from reconciler.errors import EmbeddingError
from reconciler.logger import get_logger, log_external_api
from reconciler.services.scoring import score_description

logger = get_logger(__name__)

_MAX_CACHE_ENTRIES = 512


class SimilarityProvider(Protocol):
    """Anything that scores how alike a transaction and a document read (0-1)."""

    async def similarity(self, transaction: Any, inbox_item: Any) -> float: ...


class LRUCache:
    def __init__(self, maxsize: int = _MAX_CACHE_ENTRIES):
        self.cache: OrderedDict[str, list[float]] = OrderedDict()
        self.maxsize = maxsize
        self.lock = threading.Lock()

    def get(self, key: str) -> list[float] | None:
        with self.lock:
            if key in self.cache:
                self.cache.move_to_end(key)
                return self.cache[key]
            return None

    def set(self, key: str, value: list[float]) -> None:
        with self.lock:
            if key in self.cache:
                self.cache.move_to_end(key)
            self.cache[key] = value
            if len(self.cache) > self.maxsize:
                self.cache.popitem(last=False)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1]; opposite vectors count as unrelated."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    value = dot / (norm_a * norm_b)
    if not math.isfinite(value):
        return 0.0
    return round(min(1.0, max(0.0, value)), 4)


class TextSimilarity:
    """Normalized text comparison used when no embeddings are available."""

    async def similarity(self, transaction: Any, inbox_item: Any) -> float:
        return score_description(getattr(transaction, "text", None), getattr(inbox_item, "text", None))


class EmbeddingSimilarity:
    """Cosine similarity of embeddings.

    Stored embeddings are used when both records carry one. Otherwise the
    descriptive texts are embedded through the OpenAI-compatible
    ``/embeddings`` endpoint of OpenRouter. Without an API key the provider
    degrades to ``TextSimilarity``.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: LRUCache | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self.model = model or settings.embedding_model
        self.timeout_seconds = timeout_seconds or settings.embedding_timeout_seconds
        self._transport = transport
        self._cache = cache or LRUCache()
        self._fallback = TextSimilarity()

    def _cache_key(self, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{self.model}:{digest}"

    @log_external_api("openrouter-embeddings", log_args=True)
    async def _request_embeddings(self, texts: list[str]) -> list[list[float]]:
        timeout = httpx.Timeout(self.timeout_seconds, connect=5.0, read=self.timeout_seconds)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers=headers,
                json={"model": self.model, "input": texts},
            )
            response.raise_for_status()
            payload = response.json()

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbeddingError("Embedding response did not contain one vector per input")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        vectors: list[list[float]] = []
        for item in ordered:
            vector = item.get("embedding")
            if not isinstance(vector, list) or not vector:
                raise EmbeddingError("Embedding response contained an empty vector")
            vectors.append([float(x) for x in vector])
        return vectors

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, serving repeats from the in-process cache."""
        missing = [text for text in dict.fromkeys(texts) if self._cache.get(self._cache_key(text)) is None]
        if missing:
            try:
                vectors = await self._request_embeddings(missing)
            except httpx.HTTPError as exc:
                raise EmbeddingError(f"Embedding request failed: {exc}") from exc
            for text, vector in zip(missing, vectors, strict=True):
                self._cache.set(self._cache_key(text), vector)

        result: list[list[float]] = []
        for text in texts:
            vector = self._cache.get(self._cache_key(text))
            if vector is None:
                raise EmbeddingError("Embedding evicted before use")
            result.append(vector)
        return result

    async def similarity(self, transaction: Any, inbox_item: Any) -> float:
        stored_txn = getattr(transaction, "embedding", None)
        stored_doc = getattr(inbox_item, "embedding", None)
        if stored_txn and stored_doc:
            return cosine_similarity(stored_txn, stored_doc)

        if not self.api_key:
            return await self._fallback.similarity(transaction, inbox_item)

        txn_text = getattr(transaction, "text", "") or ""
        doc_text = getattr(inbox_item, "text", "") or ""
        if not txn_text.strip() or not doc_text.strip():
            return 0.0

        txn_vector, doc_vector = await self.embed([txn_text, doc_text])
        return cosine_similarity(txn_vector, doc_vector)


def get_similarity_provider() -> SimilarityProvider:
    """Default provider for the configured environment."""
    if settings.openrouter_api_key:
        return EmbeddingSimilarity()
    logger.debug("OpenRouter API key not configured - using text similarity")
    return TextSimilarity()
