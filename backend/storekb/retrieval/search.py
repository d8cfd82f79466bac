"""Chat-time retrieval."""

from __future__ import annotations

import time
from typing import Iterable, Sequence

from storekb.core.config import Settings
from storekb.core.metrics import REQUEST_LATENCY
from storekb.ingest.embeddings import Embedder
from storekb.models.entities import EntityRef
from storekb.retrieval.vector_store import ScoredChunk, VectorStore


class RetrievalService:
    """Read-only similarity search over the vector store."""

    def __init__(self, settings: Settings, vector_store: VectorStore, embedder: Embedder) -> None:
        self.settings = settings
        self.vector_store = vector_store
        self.embedder = embedder

    def retrieve(
        self,
        vector: Sequence[float],
        k: int | None = None,
        exclude_entities: Iterable[EntityRef] = (),
    ) -> list[ScoredChunk]:
        start_time = time.perf_counter()
        results = self.vector_store.query(vector, k or self.settings.top_k, exclude_entities)
        REQUEST_LATENCY.labels(endpoint="retrieve").observe(time.perf_counter() - start_time)
        return results

    async def search(
        self,
        query_text: str,
        k: int | None = None,
        exclude_entities: Iterable[EntityRef] = (),
    ) -> list[ScoredChunk]:
        start_time = time.perf_counter()
        vector = await self.embedder.embed_query(query_text)
        results = self.retrieve(vector, k, exclude_entities)
        REQUEST_LATENCY.labels(endpoint="search").observe(time.perf_counter() - start_time)
        return results


def build_context(results: Sequence[ScoredChunk], max_chars: int) -> str:
    """Join retrieved chunks into a prompt block, best match first, within ``max_chars``."""
    blocks: list[str] = []
    used = 0
    for result in results:
        block = f"[Source: {result.source_ref}]\n{result.text.strip()}"
        separator = 2 if blocks else 0
        if used + separator + len(block) > max_chars:
            remaining = max_chars - used - separator
            if not blocks and remaining > 0:
                blocks.append(block[:remaining])
            break
        blocks.append(block)
        used += separator + len(block)
    return "\n\n".join(blocks)


__all__ = ["RetrievalService", "build_context"]
