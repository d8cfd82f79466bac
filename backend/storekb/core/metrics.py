"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

JOBS_TOTAL = Counter(
    "storekb_jobs_total",
    "Ingestion jobs finished, by kind and final status",
    labelnames=("kind", "status"),
    registry=REGISTRY,
)

JOB_DURATION = Histogram(
    "storekb_job_duration_seconds",
    "Wall time of one ingestion job run",
    labelnames=("kind",),
    registry=REGISTRY,
)

EMBEDDING_REQUESTS = Counter(
    "storekb_embedding_requests_total",
    "Embedding service calls by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "storekb_request_latency_seconds",
    "Latency of retrieval requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
)

INDEX_SIZE = Gauge(
    "storekb_index_chunks",
    "Number of chunks stored in the vector store",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "JOBS_TOTAL",
    "JOB_DURATION",
    "EMBEDDING_REQUESTS",
    "REQUEST_LATENCY",
    "INDEX_SIZE",
    "metrics_response",
]
