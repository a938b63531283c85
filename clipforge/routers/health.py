"""
Health check endpoints for the clip worker.
"""

import shutil

from fastapi import APIRouter, Request

from clipforge.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version="1.0.0",
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready when FFmpeg and ffprobe are on PATH and the orchestrator is up.
    """
    settings = getattr(request.app.state, "settings", None)
    ffmpeg_path = settings.ffmpeg_path if settings else "ffmpeg"
    ffprobe_path = settings.ffprobe_path if settings else "ffprobe"

    ffmpeg_ready = shutil.which(ffmpeg_path) is not None
    ffprobe_ready = shutil.which(ffprobe_path) is not None
    orchestrator_ready = getattr(request.app.state, "orchestrator", None) is not None

    return ReadinessResponse(
        ready=ffmpeg_ready and ffprobe_ready and orchestrator_ready,
        ffmpeg="available" if ffmpeg_ready else "missing",
        ffprobe="available" if ffprobe_ready else "missing",
        orchestrator="ready" if orchestrator_ready else "not_initialized",
    )
