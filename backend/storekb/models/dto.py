"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class SubmitWebJobRequest(BaseModel):
    """Raw crawl request; validated into ``WebJobConfig`` by the job store."""

    url: str
    follow_links: bool = False
    include_paths: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    include_selectors: list[str] = Field(default_factory=list)
    exclude_selectors: list[str] = Field(default_factory=list)


class SubmitJobResponse(BaseModel):
    job_id: str


class StatusRequest(BaseModel):
    job_ids: list[str] = Field(min_length=1, max_length=100)


class JobStatusView(BaseModel):
    status: Literal["queued", "processing", "processed", "failed", "bot_protected", "not_found"]
    user_message: str
    processed: bool = False
    processed_count: int = 0
    failed: int = 0
    error: str | None = None
    attempts: int = 0


class RunWorkerRequest(BaseModel):
    max_jobs: int | None = Field(default=None, ge=1)


class RunWorkerResponse(BaseModel):
    success: bool
    processed: int


class ListUrlsRequest(BaseModel):
    parent_url: str


class CrawledUrl(BaseModel):
    url: str
    job_id: str
    chunks: int


class ListUrlsResponse(BaseModel):
    success: bool
    urls: list[CrawledUrl]


class DeleteRequest(BaseModel):
    url: str | None = None
    job_id: str | None = None
    parent_url: str | None = None
    delete_all: bool = False

    @model_validator(mode="after")
    def _one_target(self) -> "DeleteRequest":
        if self.delete_all and not self.parent_url:
            raise ValueError("delete_all requires parent_url")
        if not (self.url or self.job_id or self.parent_url):
            raise ValueError("one of url, job_id or parent_url is required")
        return self


class DeleteResponse(BaseModel):
    success: bool
    count: int
    jobs_deleted: int


class ExclusionRequest(BaseModel):
    entity_type: str = Field(min_length=1, max_length=64)
    entity_id: str = Field(min_length=1, max_length=2048)
    excluded: bool = True


class ExclusionResponse(BaseModel):
    success: bool
    created: bool
    removed: int
    jobs_deleted: int = 0


class CleanupResponse(BaseModel):
    success: bool
    removed: int
    message: str


class EntityModel(BaseModel):
    entity_type: str
    entity_id: str


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    k: int | None = Field(default=None, ge=1, le=50)
    exclude_entities: list[EntityModel] = Field(default_factory=list)


class ChunkResult(BaseModel):
    chunk_id: str
    job_id: str
    source_ref: str
    position: int
    score: float
    text: str


class QueryResponse(BaseModel):
    results: list[ChunkResult]
    context: str


__all__ = [
    "SubmitWebJobRequest",
    "SubmitJobResponse",
    "StatusRequest",
    "JobStatusView",
    "RunWorkerRequest",
    "RunWorkerResponse",
    "ListUrlsRequest",
    "CrawledUrl",
    "ListUrlsResponse",
    "DeleteRequest",
    "DeleteResponse",
    "ExclusionRequest",
    "ExclusionResponse",
    "CleanupResponse",
    "EntityModel",
    "QueryRequest",
    "ChunkResult",
    "QueryResponse",
]
