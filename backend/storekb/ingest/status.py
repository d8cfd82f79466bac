"""Job status polling for the admin UI."""

from __future__ import annotations

from typing import Iterable

from storekb.db.jobs import JobStore
from storekb.models.dto import JobStatusView
from storekb.models.entities import Job

STATUS_MESSAGES = {
    "queued": "Waiting to be processed.",
    "processing": "Processing content. This may take a few minutes.",
    "processed": "Content processed and added to the knowledge base.",
    "failed": "Processing failed. Please try again later.",
    "retrying": "Processing hit a temporary problem and will be retried automatically.",
    "bot_protected": (
        "This URL is protected against automated access. "
        "Please try a different URL or contact the website administrator."
    ),
    "not_found": "Job not found.",
}

ERROR_MESSAGES = {
    "network_error": "We couldn't reach this URL. Please check that it is publicly accessible and try again.",
    "parse_error": "This file could not be read. Please upload a valid, text-based PDF.",
    "empty_content": "No content could be extracted from this source.",
    "embedding_error": "The embedding service is temporarily unavailable. Please try again later.",
    "rate_limited": "The embedding service is busy. Please try again later.",
    "partial_embedding": "Too many parts of this content could not be embedded. Please try again later.",
    "cancelled": "Processing was cancelled.",
    "stale": "Processing was interrupted and will be retried.",
    "retry_limit_exceeded": "This source has failed too many times. Remove it and add it again to start over.",
}


def user_message(job: Job) -> str:
    if job.status == "failed":
        if job.retryable:
            return STATUS_MESSAGES["retrying"]
        return ERROR_MESSAGES.get(job.error_kind or "", STATUS_MESSAGES["failed"])
    if job.status == "processed" and job.failed_count:
        return (
            f"Content processed: {job.result_count} parts added, "
            f"{job.failed_count} could not be embedded."
        )
    return STATUS_MESSAGES[job.status]


def to_view(job: Job) -> JobStatusView:
    error = None
    if job.status in ("failed", "bot_protected"):
        error = job.error_kind or job.status
    return JobStatusView(
        status=job.status,
        user_message=user_message(job),
        processed=job.status == "processed",
        processed_count=job.result_count,
        failed=job.failed_count,
        error=error,
        attempts=job.attempt_count,
    )


class StatusService:
    """Read-only view over job records; raw error text is never exposed."""

    def __init__(self, jobs: JobStore) -> None:
        self.jobs = jobs

    def poll(self, job_ids: Iterable[str]) -> dict[str, JobStatusView]:
        views: dict[str, JobStatusView] = {}
        for job_id in job_ids:
            job = self.jobs.find(job_id)
            if job is None:
                views[job_id] = JobStatusView(status="not_found", user_message=STATUS_MESSAGES["not_found"])
            else:
                views[job_id] = to_view(job)
        return views


__all__ = ["StatusService", "STATUS_MESSAGES", "ERROR_MESSAGES", "user_message", "to_view"]
