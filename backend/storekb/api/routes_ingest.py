"""Ingest API routes."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile

from storekb.api.dependencies import get_app_settings, get_job_store, get_worker
from storekb.core.config import Settings
from storekb.db.jobs import JobStore
from storekb.ingest.pipeline import IngestWorker
from storekb.models.dto import (
    RunWorkerRequest,
    RunWorkerResponse,
    SubmitJobResponse,
    SubmitWebJobRequest,
)

router = APIRouter()


@router.post("/web", response_model=SubmitJobResponse, summary="Submit a URL for crawling")
async def submit_web_job(
    request: SubmitWebJobRequest,
    background_tasks: BackgroundTasks,
    jobs: JobStore = Depends(get_job_store),
    worker: IngestWorker = Depends(get_worker),
    settings: Settings = Depends(get_app_settings),
) -> SubmitJobResponse:
    job_id = jobs.submit_web(request.model_dump())
    if settings.run_worker_on_submit:
        background_tasks.add_task(worker.run_pending)
    return SubmitJobResponse(job_id=job_id)


@router.post("/pdf", response_model=SubmitJobResponse, summary="Upload a PDF")
async def submit_pdf_job(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    jobs: JobStore = Depends(get_job_store),
    worker: IngestWorker = Depends(get_worker),
    settings: Settings = Depends(get_app_settings),
) -> SubmitJobResponse:
    # One byte past the limit is enough to reject an oversized upload.
    data = await file.read(settings.max_pdf_bytes + 1)
    job_id = jobs.submit_pdf(file.filename or "upload.pdf", data)
    if settings.run_worker_on_submit:
        background_tasks.add_task(worker.run_pending)
    return SubmitJobResponse(job_id=job_id)


@router.post("/run", response_model=RunWorkerResponse, summary="Process pending jobs now")
async def run_pending_jobs(
    request: RunWorkerRequest | None = None,
    worker: IngestWorker = Depends(get_worker),
) -> RunWorkerResponse:
    max_jobs = request.max_jobs if request else None
    processed = await worker.run_pending(max_jobs=max_jobs)
    return RunWorkerResponse(success=True, processed=processed)
