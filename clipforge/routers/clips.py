"""
Clips API Router - submit, poll, cancel and download clip jobs.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse

from clipforge.auth import verify_api_key
from clipforge.schemas.requests import ClipJobSubmitRequest, NarrationRequest
from clipforge.schemas.responses import ClipJobStatusResponse, ClipJobSubmitResponse, WatermarkResponse
from clipforge.services.filter_graph import InvalidParameters
from clipforge.services.job_store import InvalidStatusTransition, JobNotFound, JobStatus
from clipforge.services.orchestrator import ArtifactNotReady, JobOrchestrator, NarrationConflict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clips", tags=["Clips"])


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Get the orchestrator built at startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job orchestrator not initialized",
        )
    return orchestrator


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {job_id}")


@router.post("/jobs", response_model=ClipJobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_clip_job(
    request: ClipJobSubmitRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    _: None = Depends(verify_api_key),
) -> ClipJobSubmitResponse:
    """
    Submit a new clip job.

    The job runs in the background. Poll GET /clips/jobs/{job_id} for status.
    """
    try:
        job_id = orchestrator.submit(request.to_spec())
    except InvalidParameters as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"Job {job_id} submitted for source: {request.source[:100]}")
    return ClipJobSubmitResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message="Job queued for processing",
    )


@router.get("/jobs", response_model=list[ClipJobStatusResponse])
async def list_jobs(
    status_filter: Optional[JobStatus] = None,
    limit: int = 20,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> list[ClipJobStatusResponse]:
    """
    List recent clip jobs, newest first.

    Args:
        status_filter: Only return jobs in this status
        limit: Maximum number of jobs to return
    """
    limit = max(1, min(limit, 200))
    return [ClipJobStatusResponse.from_job(job) for job in orchestrator.list_jobs(status_filter, limit)]


@router.get("/jobs/{job_id}", response_model=ClipJobStatusResponse)
async def get_job_status(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ClipJobStatusResponse:
    """Get the current status of a clip job."""
    try:
        return ClipJobStatusResponse.from_job(orchestrator.get_job(job_id))
    except JobNotFound:
        raise _not_found(job_id)


@router.delete("/jobs/{job_id}", response_model=ClipJobStatusResponse)
async def cancel_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    _: None = Depends(verify_api_key),
) -> ClipJobStatusResponse:
    """
    Cancel a pending or running job.

    Stops the active FFmpeg process and removes the job's temp files before
    returning.
    """
    try:
        job = await orchestrator.cancel(job_id)
    except JobNotFound:
        raise _not_found(job_id)
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ClipJobStatusResponse.from_job(job)


@router.get("/jobs/{job_id}/download")
async def download_clip(
    job_id: str,
    narration: bool = False,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    """
    Download a completed clip.

    With ``narration=true`` the narrated version is served once it is done;
    until then the base clip is served.
    """
    try:
        artifact = orchestrator.get_artifact(job_id, narration=narration)
    except JobNotFound:
        raise _not_found(job_id)
    except ArtifactNotReady as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return FileResponse(artifact.path, media_type=artifact.media_type, filename=artifact.filename)


@router.post(
    "/jobs/{job_id}/narration",
    response_model=ClipJobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_narration(
    job_id: str,
    request: NarrationRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    _: None = Depends(verify_api_key),
) -> ClipJobStatusResponse:
    """
    Mux narration into a completed clip.

    The base clip stays downloadable while narration runs.
    """
    try:
        job = await orchestrator.start_narration(job_id, request.script)
    except JobNotFound:
        raise _not_found(job_id)
    except NarrationConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InvalidParameters as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ClipJobStatusResponse.from_job(job)


@router.get("/watermarks", response_model=list[WatermarkResponse])
async def list_watermarks(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> list[WatermarkResponse]:
    """List watermark images available for the watermark edit."""
    return [
        WatermarkResponse(name=w["name"], size_bytes=w["size_bytes"])
        for w in orchestrator.list_watermarks()
    ]
