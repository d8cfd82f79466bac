"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from storekb.core.config import Settings
from storekb.db.jobs import JobStore
from storekb.ingest.pipeline import IngestWorker
from storekb.ingest.status import StatusService
from storekb.retrieval.exclusions import ExclusionService
from storekb.retrieval.search import RetrievalService
from storekb.retrieval.vector_store import VectorStore
from storekb.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_app_settings(request: Request) -> Settings:
    return get_services(request).settings


def get_job_store(request: Request) -> JobStore:
    return get_services(request).jobs


def get_worker(request: Request) -> IngestWorker:
    return get_services(request).worker


def get_status_service(request: Request) -> StatusService:
    return get_services(request).status


def get_vector_store(request: Request) -> VectorStore:
    return get_services(request).vector_store


def get_exclusion_service(request: Request) -> ExclusionService:
    return get_services(request).exclusions


def get_retrieval_service(request: Request) -> RetrievalService:
    return get_services(request).retrieval


__all__ = [
    "get_services",
    "get_app_settings",
    "get_job_store",
    "get_worker",
    "get_status_service",
    "get_vector_store",
    "get_exclusion_service",
    "get_retrieval_service",
]
