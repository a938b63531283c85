"""
Response schemas for the clips API.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from clipforge.services.job_store import Job, JobStatus


class ClipJobSubmitResponse(BaseModel):
    """Response after submitting a clip job."""

    job_id: str
    status: str
    message: str


class ClipJobStatusResponse(BaseModel):
    """Current state of a clip job."""

    job_id: str
    status: str
    stage: Optional[str] = None
    progress_percent: float = Field(0.0, ge=0.0, le=100.0)
    source: str
    start_seconds: float
    end_seconds: float
    output_format: str
    quality: str
    output_size_bytes: Optional[int] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    narration_status: Optional[str] = None
    narration_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "ClipJobStatusResponse":
        completed = job.status == JobStatus.COMPLETED
        return cls(
            job_id=job.job_id,
            status=job.status.value,
            stage=job.stage,
            progress_percent=job.progress_percent,
            source=job.spec.source,
            start_seconds=job.spec.start_seconds,
            end_seconds=job.spec.end_seconds,
            output_format=job.spec.output_format,
            quality=job.spec.quality,
            output_size_bytes=job.output_size_bytes if completed else None,
            download_url=f"/clips/jobs/{job.job_id}/download" if completed else None,
            error=job.error,
            narration_status=job.narration_status.value if job.narration_status else None,
            narration_error=job.narration_error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class WatermarkResponse(BaseModel):
    """A watermark available in the library."""

    name: str
    size_bytes: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service health status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service can accept jobs")
    ffmpeg: str = Field(..., description="FFmpeg availability")
    ffprobe: str = Field(..., description="ffprobe availability")
    orchestrator: str = Field(..., description="Job orchestrator status")
