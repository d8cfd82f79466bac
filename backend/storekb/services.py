"""Service container wiring the store, pipeline, and retrieval together."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from storekb.core.config import Settings
from storekb.db.exclusions import ExclusionRepository
from storekb.db.jobs import JobStore
from storekb.db.sqlite import SQLiteDatabase
from storekb.ingest.chunker import Chunker
from storekb.ingest.embeddings import EmbeddingBackend, Embedder
from storekb.ingest.pipeline import IngestWorker
from storekb.ingest.status import StatusService
from storekb.ingest.web import PageRenderer, WebFetcher
from storekb.retrieval.exclusions import EntityLookup, EntityResolver, ExclusionService
from storekb.retrieval.search import RetrievalService
from storekb.retrieval.vector_store import VectorStore


@dataclass(slots=True)
class Services:
    settings: Settings
    db: SQLiteDatabase
    jobs: JobStore
    vector_store: VectorStore
    exclusions: ExclusionService
    embedder: Embedder
    worker: IngestWorker
    status: StatusService
    retrieval: RetrievalService

    def close(self) -> None:
        self.db.close()

    async def aclose(self) -> None:
        await self.embedder.aclose()
        self.close()


def build_services(
    settings: Settings,
    embedding_backend: EmbeddingBackend | None = None,
    renderer_factory: Callable[[], PageRenderer] | None = None,
    entity_lookup: EntityLookup | None = None,
) -> Services:
    """Build one set of collaborating services over a single database."""
    db = SQLiteDatabase(settings.db_path)
    db.ensure_schema()

    embedder = Embedder.from_settings(settings, backend=embedding_backend)
    resolver = EntityResolver(entity_lookup)
    vector_store = VectorStore(db, dim=embedder.dim, resolver=resolver)
    repository = ExclusionRepository(db)
    jobs = JobStore(db, settings)
    exclusions = ExclusionService(repository, vector_store, jobs, resolver)
    jobs.is_excluded = exclusions.is_excluded

    worker = IngestWorker(
        settings=settings,
        jobs=jobs,
        vector_store=vector_store,
        embedder=embedder,
        exclusions=exclusions,
        web_fetcher=WebFetcher(settings, renderer_factory, is_excluded=exclusions.is_excluded),
        chunker=Chunker.from_settings(settings),
    )
    return Services(
        settings=settings,
        db=db,
        jobs=jobs,
        vector_store=vector_store,
        exclusions=exclusions,
        embedder=embedder,
        worker=worker,
        status=StatusService(jobs),
        retrieval=RetrievalService(settings, vector_store, embedder),
    )


__all__ = ["Services", "build_services"]
