"""Query API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storekb.api.dependencies import get_app_settings, get_retrieval_service
from storekb.core.config import Settings
from storekb.models.dto import ChunkResult, QueryRequest, QueryResponse
from storekb.models.entities import EntityRef
from storekb.retrieval.search import RetrievalService, build_context

router = APIRouter()


@router.post("/query", response_model=QueryResponse, summary="Retrieve the most similar chunks")
async def run_query(
    request: QueryRequest,
    service: RetrievalService = Depends(get_retrieval_service),
    settings: Settings = Depends(get_app_settings),
) -> QueryResponse:
    excluded = [EntityRef(item.entity_type, item.entity_id) for item in request.exclude_entities]
    results = await service.search(request.query, k=request.k, exclude_entities=excluded)
    return QueryResponse(
        results=[
            ChunkResult(
                chunk_id=result.chunk_id,
                job_id=result.job_id,
                source_ref=result.source_ref,
                position=result.position,
                score=result.score,
                text=result.text,
            )
            for result in results
        ],
        context=build_context(results, settings.context_max_chars),
    )
