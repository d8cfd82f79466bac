"""Tests for embedding backends and the batching embedder."""

from __future__ import annotations

import asyncio
from typing import Sequence

import httpx
import orjson
import pytest

from storekb.core.errors import EmbeddingAPIError, RateLimitedError
from storekb.ingest.embeddings import Embedder, HashedEmbeddingBackend, OpenAIEmbeddingBackend

from conftest import FlakyBackend


@pytest.mark.asyncio
async def test_hashed_backend_is_deterministic_and_normalized() -> None:
    backend = HashedEmbeddingBackend(dim=32)
    first, second = await backend.embed(["hello world", "hello world"])
    assert first == second
    assert len(first) == 32
    assert abs(sum(value * value for value in first) - 1.0) < 1e-6


class RateLimitedOnce(HashedEmbeddingBackend):
    def __init__(self) -> None:
        super().__init__(dim=16)
        self.calls = 0

    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]:
        self.calls += 1
        if self.calls == 1:
            raise RateLimitedError("slow down", retry_after=0)
        return await super().embed(texts)


class AlwaysDown(HashedEmbeddingBackend):
    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]:
        raise EmbeddingAPIError("service unavailable")


@pytest.mark.asyncio
async def test_embedder_batches_and_retries_only_failed_items() -> None:
    backend = FlakyBackend(dim=16)
    embedder = Embedder(backend, batch_size=4, max_attempts=3, backoff_base=0, backoff_max=0)
    texts = [f"chunk {i}" for i in range(10)]
    texts[5] = "chunk POISON"

    outcome = await embedder.embed_chunks(texts)

    assert outcome.succeeded == 9
    assert list(outcome.failures) == [5]
    assert outcome.vectors[5] is None
    # batches of 4, 4, 2; the failing item is retried alone twice
    assert backend.calls == [4, 4, 1, 1, 2]


@pytest.mark.asyncio
async def test_embedder_backs_off_on_rate_limit() -> None:
    backend = RateLimitedOnce()
    embedder = Embedder(backend, batch_size=8, max_attempts=3, backoff_base=0, backoff_max=0)
    outcome = await embedder.embed_chunks(["a", "b", "c"])
    assert outcome.succeeded == 3
    assert outcome.attempts == 2
    assert backend.calls == 2


@pytest.mark.asyncio
async def test_embedder_records_failures_after_max_attempts() -> None:
    embedder = Embedder(AlwaysDown(dim=8), batch_size=2, max_attempts=2, backoff_base=0, backoff_max=0)
    outcome = await embedder.embed_chunks(["a", "b", "c"])
    assert outcome.succeeded == 0
    assert sorted(outcome.failures) == [0, 1, 2]
    with pytest.raises(EmbeddingAPIError):
        await embedder.embed_query("anything")


class AlwaysRateLimited(HashedEmbeddingBackend):
    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]:
        raise RateLimitedError("slow down")


@pytest.mark.asyncio
async def test_embedder_gives_up_without_sleeping_after_last_attempt(monkeypatch: pytest.MonkeyPatch) -> None:
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(asyncio, "sleep", record_sleep)
    embedder = Embedder(AlwaysRateLimited(dim=8), batch_size=4, max_attempts=3, backoff_base=1.0, backoff_max=10.0)

    outcome = await embedder.embed_chunks(["a", "b"])
    assert outcome.attempts == 3
    assert sorted(outcome.failures) == [0, 1]
    assert delays == [1.0, 2.0]

    delays.clear()
    with pytest.raises(EmbeddingAPIError):
        await embedder.embed_query("anything")
    assert delays == [1.0, 2.0]


def _openai_handler(request: httpx.Request) -> httpx.Response:
    body = orjson.loads(request.content)
    if body["input"] == ["busy"]:
        return httpx.Response(429, headers={"Retry-After": "3"}, json={"error": "rate limited"})
    if body["input"] == ["boom"]:
        return httpx.Response(500, json={"error": "internal"})
    data = [
        {"index": index, "embedding": [0.5] * (4 if text != "short" else 2)}
        for index, text in enumerate(body["input"])
    ]
    return httpx.Response(200, json={"data": data})


@pytest.mark.asyncio
async def test_openai_backend_maps_responses() -> None:
    backend = OpenAIEmbeddingBackend(
        api_base="https://embeddings.test/v1",
        api_key="secret",
        model="custom-model",
        dim=4,
        transport=httpx.MockTransport(_openai_handler),
    )
    try:
        vectors = await backend.embed(["ok", "short"])
        assert vectors[0] == [0.5, 0.5, 0.5, 0.5]
        assert vectors[1] is None

        with pytest.raises(RateLimitedError) as excinfo:
            await backend.embed(["busy"])
        assert excinfo.value.retry_after == 3.0

        with pytest.raises(EmbeddingAPIError):
            await backend.embed(["boom"])
    finally:
        await backend.aclose()
