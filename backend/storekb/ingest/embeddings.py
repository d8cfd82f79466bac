"""Embedding backends and the batching embedder."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import Protocol, Sequence

import httpx

from storekb.core.config import Settings
from storekb.core.errors import EmbeddingAPIError, RateLimitedError
from storekb.core.logging import get_logger
from storekb.core.metrics import EMBEDDING_REQUESTS
from storekb.ingest.types import EmbeddingOutcome

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")


class EmbeddingBackend(Protocol):
    """Anything that turns texts into vectors; ``None`` marks a per-item failure."""

    @property
    def dim(self) -> int: ...

    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]: ...


class HashedEmbeddingBackend:
    """Lightweight hashed bag-of-words embedding with deterministic output."""

    def __init__(self, dim: int = 384) -> None:
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    def encode(self, text: str) -> list[float]:
        vector = [0.0] * self._dim
        for token in _tokenize(text):
            vector[_hash_token(token, self._dim)] += 1.0
        _normalize(vector)
        return vector

    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]:
        return [self.encode(text) for text in texts]


class OpenAIEmbeddingBackend:
    """Client for an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None,
        model: str,
        dim: int,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.model = model
        self._dim = dim
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client: httpx.AsyncClient | None = None

    @property
    def dim(self) -> int:
        return self._dim

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]:
        payload: dict[str, object] = {"model": self.model, "input": list(texts)}
        if self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self._dim
        client = self._ensure_client()
        try:
            response = await client.post(f"{self.api_base}/embeddings", json=payload)
        except httpx.HTTPError as exc:
            raise EmbeddingAPIError(f"embedding request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError(
                "embedding service rate limited the request",
                retry_after=_retry_after(response),
            )
        if response.status_code >= 500:
            raise EmbeddingAPIError(f"embedding service returned {response.status_code}")
        if response.status_code >= 400:
            raise EmbeddingAPIError(
                f"embedding request rejected with {response.status_code}: {response.text[:200]}"
            )

        try:
            items = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingAPIError("malformed embedding response") from exc

        vectors: list[list[float] | None] = [None] * len(texts)
        for position, item in enumerate(items):
            index = item.get("index", position)
            embedding = item.get("embedding")
            if not isinstance(index, int) or not 0 <= index < len(texts):
                continue
            if isinstance(embedding, list) and len(embedding) == self._dim:
                vectors[index] = [float(value) for value in embedding]
        return vectors


class Embedder:
    """Batch texts through a backend with rate-limit backoff and per-item retries."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = 16,
        max_attempts: int = 4,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        self.backend = backend
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @classmethod
    def from_settings(cls, settings: Settings, backend: EmbeddingBackend | None = None) -> "Embedder":
        return cls(
            backend=backend or build_backend(settings),
            batch_size=settings.embedding_batch_size,
            max_attempts=settings.embedding_max_attempts,
            backoff_base=settings.embedding_backoff_base,
            backoff_max=settings.embedding_backoff_max,
        )

    @property
    def dim(self) -> int:
        return self.backend.dim

    async def aclose(self) -> None:
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()

    async def embed_chunks(self, texts: Sequence[str]) -> EmbeddingOutcome:
        outcome = EmbeddingOutcome(vectors=[None] * len(texts))
        for offset in range(0, len(texts), self.batch_size):
            indices = list(range(offset, min(offset + self.batch_size, len(texts))))
            await self._embed_batch(texts, indices, outcome)
        return outcome

    async def embed_query(self, text: str) -> list[float]:
        outcome = EmbeddingOutcome(vectors=[None])
        await self._embed_batch([text], [0], outcome)
        vector = outcome.vectors[0]
        if vector is None:
            raise EmbeddingAPIError(outcome.failures.get(0, "query could not be embedded"))
        return vector

    async def _embed_batch(
        self,
        texts: Sequence[str],
        indices: list[int],
        outcome: EmbeddingOutcome,
    ) -> None:
        pending = indices
        reason = "embedding missing from response"
        attempt = 0
        while pending and attempt < self.max_attempts:
            attempt += 1
            outcome.attempts += 1
            final = attempt == self.max_attempts
            try:
                results = await self.backend.embed([texts[index] for index in pending])
            except RateLimitedError as exc:
                EMBEDDING_REQUESTS.labels(outcome="rate_limited").inc()
                reason = str(exc)
                if not final:
                    delay = self._backoff(attempt, exc.retry_after)
                    logger.warning("Embedding rate limited, retrying in %.1fs", delay)
                    await asyncio.sleep(delay)
                continue
            except EmbeddingAPIError as exc:
                EMBEDDING_REQUESTS.labels(outcome="error").inc()
                reason = str(exc)
                logger.warning("Embedding batch failed (attempt %s/%s): %s", attempt, self.max_attempts, exc)
                if not final:
                    await asyncio.sleep(self._backoff(attempt))
                continue

            EMBEDDING_REQUESTS.labels(outcome="ok").inc()
            retry: list[int] = []
            for offset, index in enumerate(pending):
                vector = results[offset] if offset < len(results) else None
                if vector is None or len(vector) != self.dim:
                    retry.append(index)
                else:
                    outcome.vectors[index] = vector
            pending = retry
            if pending:
                reason = "embedding missing from response"
                if not final:
                    await asyncio.sleep(self._backoff(attempt))

        for index in pending:
            outcome.failures[index] = reason

    def _backoff(self, attempt: int, retry_after: float | None = None) -> float:
        delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.backoff_max))
        return delay


def build_backend(settings: Settings) -> EmbeddingBackend:
    if settings.embedding_backend == "openai":
        return OpenAIEmbeddingBackend(
            api_base=settings.embedding_api_base,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            timeout=settings.embedding_timeout,
        )
    return HashedEmbeddingBackend(dim=settings.embedding_dim)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim


def _normalize(vector: list[float]) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = [
    "EmbeddingBackend",
    "HashedEmbeddingBackend",
    "OpenAIEmbeddingBackend",
    "Embedder",
    "build_backend",
]
