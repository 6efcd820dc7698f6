"""
Embedding generation service using Ollama API.

Provides:
- OllamaEmbeddingService: concurrency-limited, caching, normalizing embedder
  that answers every failure with a deterministic fallback vector
- fallback_embedding: character-code pseudo-embedding of fixed dimension
- cosine_similarity / similarity_matrix: pure vector helpers
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Dict, List, Optional, Sequence

import httpx
import numpy as np

from app.config import settings
from app.models.schemas import Source
from app.services.results import ServiceResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure vector helpers
# ---------------------------------------------------------------------------

def _hash_text(content: str) -> str:
    """SHA-256 digest of a text string, used as cache key."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _normalize(vector: np.ndarray) -> np.ndarray:
    """Return a unit-length copy of *vector*; zero vectors come back unchanged."""
    magnitude = float(np.linalg.norm(vector))
    if magnitude == 0.0:
        return vector
    return vector / magnitude


def fallback_embedding(text: str, dimension: Optional[int] = None) -> List[float]:
    """
    Deterministic pseudo-embedding.

    Every character code ``c`` adds ``sin(c) * 0.1`` to slot ``c % dimension``;
    the accumulator is then L2-normalised.  Empty text gives the zero vector.
    """
    dim = dimension or settings.VECTOR_DIMENSION
    vec = np.zeros(dim, dtype=np.float64)
    if text:
        codes = np.fromiter((ord(ch) for ch in text), dtype=np.int64, count=len(text))
        np.add.at(vec, codes % dim, np.sin(codes) * 0.1)
    return _normalize(vec).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty, mismatched or zero vectors."""
    if not len(a) or not len(b) or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> List[List[float]]:
    """Symmetric pairwise cosine similarity matrix with a diagonal of 1.0."""
    n = len(vectors)
    matrix = np.eye(n, dtype=np.float64)
    for i in range(n):
        for j in range(i + 1, n):
            sim = cosine_similarity(vectors[i], vectors[j])
            matrix[i, j] = sim
            matrix[j, i] = sim
    return matrix.tolist()


def embedding_text_for(source: Source) -> str:
    """Text that represents a source for embedding purposes."""
    return f"{source.title} {source.abstract or ''}".strip()


# ---------------------------------------------------------------------------
# Main service class
# ---------------------------------------------------------------------------

class OllamaEmbeddingService:
    """
    Embedding generation via Ollama:

    * Semaphore caps concurrent Ollama calls (MAX_CONCURRENT = 3)
    * One attempt per text with an explicit timeout; any failure is answered
      with ``fallback_embedding`` so callers always receive a vector
    * Unit-length normalization of real embeddings
    * Per-instance content-hash cache; only real embeddings are cached
    """

    MAX_CONCURRENT: int = 3

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url or settings.OLLAMA_BASE_URL
        self.model = model or settings.OLLAMA_EMBED_MODEL
        self.expected_dim = dimension or settings.VECTOR_DIMENSION
        self.timeout = httpx.Timeout(timeout or settings.EMBED_TIMEOUT, connect=5.0)
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT)
        self._cache: Dict[str, List[float]] = {}

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def embed_text(self, text: str) -> ServiceResult[List[float]]:
        """
        Embed a single text string.

        Returns ``ok`` with a normalized vector, or ``fallback`` with the
        deterministic pseudo-embedding when Ollama cannot provide one.
        """
        text = (text or "").strip()
        if not text:
            return ServiceResult.fallback(
                fallback_embedding(text, self.expected_dim), error="empty text"
            )

        key = _hash_text(text)
        cached = self._cache.get(key)
        if cached is not None:
            return ServiceResult.ok(cached)

        outcome = await self._call_ollama(text)
        if isinstance(outcome, list):
            self._cache[key] = outcome
            return ServiceResult.ok(outcome)

        logger.warning(
            "Embedding unavailable (%s); using fallback vector for %d chars",
            outcome,
            len(text),
        )
        return ServiceResult.fallback(fallback_embedding(text, self.expected_dim), error=outcome)

    async def embed_batch(self, texts: List[str]) -> List[ServiceResult[List[float]]]:
        """
        Embed a list of texts concurrently.

        Returns a list of the same length as *texts*.  Each item fails
        independently; a failed item carries its fallback vector.
        """
        gathered = await asyncio.gather(
            *[self.embed_text(t) for t in texts],
            return_exceptions=True,
        )

        results: List[ServiceResult[List[float]]] = []
        for idx, res in enumerate(gathered):
            if isinstance(res, BaseException):
                logger.warning("embed_batch: item %d raised: %s", idx, res)
                results.append(
                    ServiceResult.fallback(
                        fallback_embedding(texts[idx], self.expected_dim), error=str(res)
                    )
                )
            else:
                results.append(res)

        fallbacks = sum(1 for r in results if r.is_fallback)
        logger.info(
            "embed_batch: %d/%d embeddings from Ollama, %d fallbacks",
            len(results) - fallbacks,
            len(texts),
            fallbacks,
        )
        return results

    async def embed_sources(self, sources: List[Source]) -> List[ServiceResult[List[float]]]:
        """Embed ``title + abstract`` of every source, in input order."""
        return await self.embed_batch([embedding_text_for(s) for s in sources])

    async def check_health(self) -> bool:
        """Return ``True`` if Ollama is reachable and returns HTTP 200."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
                return resp.status_code == 200
        except Exception as exc:
            logger.warning("Ollama health check failed: %s", exc)
            return False

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _call_ollama(self, text: str):
        """
        POST once to Ollama /api/embeddings.

        Returns the normalized vector on success, otherwise a short string
        describing the failure.
        """
        async with self._semaphore:
            try:
                t0 = time.perf_counter()
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(
                        f"{self.base_url}/api/embeddings",
                        json={"model": self.model, "prompt": text},
                    )
                elapsed_ms = (time.perf_counter() - t0) * 1000
            except httpx.ConnectError as exc:
                return f"connect error: {exc}"
            except httpx.TimeoutException as exc:
                return f"timeout: {exc}"
            except httpx.HTTPError as exc:
                return f"http error: {exc}"

        if resp.status_code != 200:
            return f"status {resp.status_code}: {resp.text[:200]}"

        try:
            body = resp.json()
        except ValueError:
            return "invalid JSON body"
        if not isinstance(body, dict):
            return f"unexpected JSON body: {type(body).__name__}"
        raw = body.get("embedding")
        if not isinstance(raw, list) or not raw:
            return "response missing 'embedding' field"
        if len(raw) != self.expected_dim:
            return f"dimension mismatch: expected {self.expected_dim}, got {len(raw)}"

        logger.debug(
            "Embedded %d chars -> %d-dim in %.1f ms",
            len(text),
            self.expected_dim,
            elapsed_ms,
        )
        return _normalize(np.asarray(raw, dtype=np.float64)).tolist()
