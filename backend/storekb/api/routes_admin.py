"""Administrative routes: crawled URLs, deletion, exclusions, metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storekb.api.dependencies import get_exclusion_service, get_job_store, get_vector_store
from storekb.core.errors import ValidationError
from storekb.core.metrics import metrics_response
from storekb.db.jobs import JobStore
from storekb.models.dto import (
    CleanupResponse,
    CrawledUrl,
    DeleteRequest,
    DeleteResponse,
    ExclusionRequest,
    ExclusionResponse,
    ListUrlsRequest,
    ListUrlsResponse,
)
from storekb.models.entities import EntityRef
from storekb.retrieval.exclusions import ExclusionService, cleanup_message
from storekb.retrieval.vector_store import VectorStore
from storekb.utils.urls import is_http_url, normalize_url

router = APIRouter()


def _web_ref(url: str) -> str:
    if not is_http_url(url):
        raise ValidationError(f"{url!r} is not an http(s) URL", user_message="Please enter a valid URL.")
    return normalize_url(url)


@router.post("/urls", response_model=ListUrlsResponse, summary="List pages stored for a crawled URL")
async def list_crawled_urls(
    request: ListUrlsRequest,
    vector_store: VectorStore = Depends(get_vector_store),
) -> ListUrlsResponse:
    sources = vector_store.list_sources(_web_ref(request.parent_url))
    return ListUrlsResponse(
        success=True,
        urls=[CrawledUrl(url=item.source_ref, job_id=item.job_id, chunks=item.chunks) for item in sources],
    )


@router.post("/delete", response_model=DeleteResponse, summary="Delete stored content")
async def delete_content(
    request: DeleteRequest,
    jobs: JobStore = Depends(get_job_store),
    vector_store: VectorStore = Depends(get_vector_store),
) -> DeleteResponse:
    if request.job_id:
        removed = jobs.delete(request.job_id)
        return DeleteResponse(success=True, count=removed.chunks, jobs_deleted=removed.jobs)

    if request.parent_url and request.delete_all:
        removed = jobs.delete_by_source(_web_ref(request.parent_url))
        return DeleteResponse(success=True, count=removed.chunks, jobs_deleted=removed.jobs)

    url = _web_ref(request.url or request.parent_url or "")
    count = vector_store.delete_by_source(url)
    jobs_deleted = 0
    job = jobs.get_by_source("web", url)
    if job is not None:
        removed = jobs.delete(job.id)
        count += removed.chunks
        jobs_deleted = removed.jobs
    return DeleteResponse(success=True, count=count, jobs_deleted=jobs_deleted)


@router.post("/exclusions", response_model=ExclusionResponse, summary="Exclude or re-include an entity")
async def set_exclusion(
    request: ExclusionRequest,
    service: ExclusionService = Depends(get_exclusion_service),
) -> ExclusionResponse:
    entity_id = request.entity_id
    if request.entity_type == "url":
        entity_id = _web_ref(entity_id)
    entity = EntityRef(request.entity_type, entity_id)
    if not request.excluded:
        service.include(entity)
        return ExclusionResponse(success=True, created=False, removed=0)
    result = service.exclude(entity)
    return ExclusionResponse(
        success=True,
        created=result.created,
        removed=result.chunks_removed,
        jobs_deleted=result.jobs_removed,
    )


@router.post("/exclusions/cleanup", response_model=CleanupResponse, summary="Re-apply exclusion rules")
async def cleanup_exclusions(service: ExclusionService = Depends(get_exclusion_service)) -> CleanupResponse:
    removed = service.cleanup()
    return CleanupResponse(success=True, removed=removed, message=cleanup_message(removed))


@router.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
