"""Ingest worker: claims queued jobs and runs fetch, chunk, embed, store."""

from __future__ import annotations

import asyncio
import time

from storekb.core.config import Settings
from storekb.core.errors import (
    ConcurrencyConflict,
    EmptyContentError,
    JobCancelled,
    PartialEmbeddingError,
    StoreKBError,
)
from storekb.core.logging import get_logger, job_context
from storekb.core.metrics import JOB_DURATION, JOBS_TOTAL
from storekb.db.jobs import JobStore
from storekb.ingest.chunker import Chunker, chunk_documents
from storekb.ingest.embeddings import Embedder
from storekb.ingest.pdf import PdfFetcher
from storekb.ingest.types import FetchedDocument, JobRunStats
from storekb.ingest.web import WebFetcher
from storekb.models.entities import Job
from storekb.models.jobs import PdfJobConfig, WebJobConfig
from storekb.retrieval.exclusions import ExclusionService
from storekb.retrieval.vector_store import VectorStore

logger = get_logger(__name__)


class IngestWorker:
    """Process jobs one at a time; run several workers to process jobs in parallel."""

    def __init__(
        self,
        settings: Settings,
        jobs: JobStore,
        vector_store: VectorStore,
        embedder: Embedder,
        exclusions: ExclusionService,
        web_fetcher: WebFetcher,
        pdf_fetcher: PdfFetcher | None = None,
        chunker: Chunker | None = None,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.vector_store = vector_store
        self.embedder = embedder
        self.exclusions = exclusions
        self.web_fetcher = web_fetcher
        self.pdf_fetcher = pdf_fetcher or PdfFetcher()
        self.chunker = chunker or Chunker.from_settings(settings)
        self._drain_lock = asyncio.Lock()

    async def run_pending(self, max_jobs: int | None = None) -> int:
        """Drain claimable jobs; returns how many were processed successfully.

        Returns 0 straight away when this worker is already draining, so
        overlapping triggers never run two jobs on one worker.
        """
        if self._drain_lock.locked():
            return 0
        async with self._drain_lock:
            self.jobs.requeue_stale()
            handled = 0
            succeeded = 0
            while max_jobs is None or handled < max_jobs:
                job = self.jobs.claim_next()
                if job is None:
                    break
                handled += 1
                if await self.process(job):
                    succeeded += 1
            return succeeded

    async def process(self, job: Job) -> bool:
        """Run one claimed job to a terminal state. Returns True when it was processed."""
        context = job_context(job.id, job.source_ref, kind=job.kind, attempt=job.attempt_count)
        stats = JobRunStats()
        started = time.perf_counter()
        status = "failed"
        try:
            documents = await self._fetch(job, stats)
            await self._checkpoint(job)

            documents = self._drop_excluded(documents, stats)
            if not documents:
                raise EmptyContentError(f"no content to embed for {job.source_ref}")

            chunks = chunk_documents(documents, self.chunker)
            stats.chunks = len(chunks)
            if not chunks:
                raise EmptyContentError(f"no chunks produced for {job.source_ref}")
            await self._checkpoint(job)

            outcome = await self.embedder.embed_chunks([chunk.text for chunk in chunks])
            stats.embedded = outcome.succeeded
            stats.failed = len(outcome.failures)
            stats.embedding_attempts = outcome.attempts
            await self._checkpoint(job)

            ratio = outcome.succeeded / len(chunks)
            if ratio < self.settings.min_success_ratio:
                raise PartialEmbeddingError(f"only {outcome.succeeded} of {len(chunks)} chunks embedded")

            for index, reason in outcome.failures.items():
                logger.warning(
                    "Chunk %s failed to embed: %s",
                    chunks[index].position,
                    reason,
                    extra=context,
                )
            stored = [
                (chunk, vector)
                for chunk, vector in zip(chunks, outcome.vectors)
                if vector is not None
            ]
            self.vector_store.replace_job_chunks(job.id, stored, attempt=job.attempt_count)
            self.jobs.complete(
                job.id,
                len(stored),
                len(outcome.failures),
                stats.to_dict(),
                attempt=job.attempt_count,
            )
            status = "processed"
            logger.info(
                "Job processed: %s chunks stored, %s failed",
                len(stored),
                len(outcome.failures),
                extra=context,
            )
            return True
        except (JobCancelled, ConcurrencyConflict) as exc:
            status = "cancelled"
            logger.info("Job stopped: %s", exc.detail, extra=context)
            return False
        except StoreKBError as exc:
            status = self._record_failure(job, exc, stats)
            return False
        except Exception as exc:
            logger.exception("Unexpected failure processing job", extra=context)
            status = self._record_failure(job, StoreKBError(f"unexpected error: {exc!r}"), stats)
            return False
        finally:
            JOBS_TOTAL.labels(kind=job.kind, status=status).inc()
            JOB_DURATION.labels(kind=job.kind).observe(time.perf_counter() - started)

    async def _fetch(self, job: Job, stats: JobRunStats) -> list[FetchedDocument]:
        if job.kind == "web":
            config = WebJobConfig.model_validate(job.config)
            return await self.web_fetcher.fetch(config, stats, checkpoint=lambda: self._checkpoint(job))
        config = PdfJobConfig.model_validate(job.config)
        documents = await self.pdf_fetcher.fetch(config)
        stats.pages = sum(int(document.metadata.get("pages", 1)) for document in documents)
        return documents

    def _drop_excluded(self, documents: list[FetchedDocument], stats: JobRunStats) -> list[FetchedDocument]:
        kept = []
        for document in documents:
            if self.exclusions.is_excluded(document.source_ref):
                stats.excluded_pages += 1
                continue
            kept.append(document)
        return kept

    async def _checkpoint(self, job: Job) -> None:
        """Refresh the claim's heartbeat, or abort when the claim is gone.

        The claim is gone when the job was deleted, moved out of ``processing``
        elsewhere, or released as stale and claimed again by another worker.
        """
        if self.jobs.touch(job.id, job.attempt_count):
            return
        current = self.jobs.find(job.id)
        if current is None:
            raise JobCancelled(f"job {job.id} was deleted")
        if current.status != "processing":
            raise JobCancelled(f"job {job.id} is now {current.status}")
        raise JobCancelled(f"job {job.id} was claimed again (attempt {current.attempt_count})")

    def _record_failure(self, job: Job, error: StoreKBError, stats: JobRunStats) -> str:
        context = job_context(job.id, job.source_ref, error_kind=error.code)
        try:
            updated = self.jobs.fail(job.id, error, stats=stats.to_dict(), attempt=job.attempt_count)
        except StoreKBError as exc:
            logger.info("Could not record failure, job changed: %s", exc.detail, extra=context)
            return "cancelled"
        if updated.status == "bot_protected":
            logger.warning("Bot protection detected", extra=context)
        elif updated.retryable:
            logger.warning("Job failed, will retry: %s", error.detail, extra=context)
        else:
            logger.error("Job failed: %s", error.detail, extra=context)
        return updated.status


__all__ = ["IngestWorker"]
