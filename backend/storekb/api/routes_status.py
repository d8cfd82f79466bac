"""Job status routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storekb.api.dependencies import get_status_service
from storekb.ingest.status import StatusService
from storekb.models.dto import JobStatusView, StatusRequest

router = APIRouter()


@router.post("/status", response_model=dict[str, JobStatusView], summary="Poll job status")
async def poll_status(
    request: StatusRequest,
    service: StatusService = Depends(get_status_service),
) -> dict[str, JobStatusView]:
    return service.poll(request.job_ids)
