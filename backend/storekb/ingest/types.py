"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class FetchedDocument:
    """Cleaned text of one fetched page or file."""

    source_ref: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkPayload:
    """Chunk produced by the chunker prior to embedding."""

    source_ref: str
    position: int
    ordinal: int
    text: str
    start_char: int
    end_char: int


@dataclass(slots=True)
class EmbeddingOutcome:
    """Result of embedding a list of texts; ``vectors[i]`` is None when item i failed."""

    vectors: list[list[float] | None]
    failures: dict[int, str] = field(default_factory=dict)
    attempts: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for vector in self.vectors if vector is not None)


@dataclass(slots=True)
class JobRunStats:
    """Aggregated statistics for one job run."""

    pages: int = 0
    skipped_pages: int = 0
    excluded_pages: int = 0
    chunks: int = 0
    embedded: int = 0
    failed: int = 0
    embedding_attempts: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "pages": self.pages,
            "skipped_pages": self.skipped_pages,
            "excluded_pages": self.excluded_pages,
            "chunks": self.chunks,
            "embedded": self.embedded,
            "failed": self.failed,
            "embedding_attempts": self.embedding_attempts,
        }


__all__ = ["FetchedDocument", "ChunkPayload", "EmbeddingOutcome", "JobRunStats"]
