"""Retrieval orchestration components."""

from .exclusions import EntityResolver, ExclusionService
from .vector_store import ScoredChunk, VectorStore
from .search import RetrievalService, build_context

__all__ = [
    "EntityResolver",
    "ExclusionService",
    "ScoredChunk",
    "VectorStore",
    "RetrievalService",
    "build_context",
]
