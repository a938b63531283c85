"""
Job Store - single source of truth for clip job records.

All mutations go through ``set_status`` / ``set_narration_status``, which are
serialized per job with an ``asyncio.Lock`` and enforce the status ordering:

    pending < running < {completed, failed, cancelled}

Terminal statuses are absorbing. ``output_path`` is present exactly when the
job is completed. Readers get copies, so a poll never observes a half-applied
update.
"""

import asyncio
import copy
import json
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from clipforge.config import OutputFormat, get_format_profile, get_quality_height
from clipforge.services.filter_graph import EditParameters, InvalidParameters

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Primary job status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NarrationStatus(str, Enum):
    """Second-phase narration sub-status."""

    PENDING = "narration_pending"
    RUNNING = "narration_running"
    DONE = "narration_done"
    FAILED = "narration_failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELLED: 2,
}

_NARRATION_TRANSITIONS = {
    None: {NarrationStatus.PENDING},
    NarrationStatus.FAILED: {NarrationStatus.PENDING},
    NarrationStatus.PENDING: {NarrationStatus.RUNNING, NarrationStatus.FAILED},
    NarrationStatus.RUNNING: {NarrationStatus.DONE, NarrationStatus.FAILED},
    NarrationStatus.DONE: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClipJobSpec:
    """What the caller asked for: source, range, output and edits."""

    source: str
    start_seconds: float
    end_seconds: float
    output_format: str = OutputFormat.MP4
    quality: str = "720p"
    edits: EditParameters = field(default_factory=EditParameters)
    callback_url: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds

    def validate(self) -> None:
        """
        Validate everything that does not need the source media.

        Raises:
            InvalidParameters: On a bad range, format or quality
        """
        if not self.source or not self.source.strip():
            raise InvalidParameters("source must not be empty")
        if self.start_seconds < 0:
            raise InvalidParameters(f"start must be >= 0, got {self.start_seconds}")
        if self.start_seconds >= self.end_seconds:
            raise InvalidParameters(
                f"start ({self.start_seconds}) must be before end ({self.end_seconds})"
            )
        try:
            get_format_profile(self.output_format)
            get_quality_height(self.quality)
        except ValueError as e:
            raise InvalidParameters(str(e)) from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "start_seconds": self.start_seconds,
            "end_seconds": self.end_seconds,
            "output_format": self.output_format,
            "quality": self.quality,
            "edits": self.edits.to_dict(),
            "callback_url": self.callback_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClipJobSpec":
        return cls(
            source=data["source"],
            start_seconds=float(data["start_seconds"]),
            end_seconds=float(data["end_seconds"]),
            output_format=data.get("output_format", OutputFormat.MP4),
            quality=data.get("quality", "720p"),
            edits=EditParameters.from_dict(data.get("edits") or {}),
            callback_url=data.get("callback_url"),
        )


@dataclass
class Job:
    """A clip job record."""

    job_id: str
    spec: ClipJobSpec
    status: JobStatus = JobStatus.PENDING
    stage: Optional[str] = None
    progress_percent: float = 0.0
    output_path: Optional[str] = None
    output_size_bytes: Optional[int] = None
    error: Optional[str] = None
    narration_status: Optional[NarrationStatus] = None
    narration_output_path: Optional[str] = None
    narration_error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "spec": self.spec.to_dict(),
            "status": self.status.value,
            "stage": self.stage,
            "progress_percent": self.progress_percent,
            "output_path": self.output_path,
            "output_size_bytes": self.output_size_bytes,
            "error": self.error,
            "narration_status": self.narration_status.value if self.narration_status else None,
            "narration_output_path": self.narration_output_path,
            "narration_error": self.narration_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        narration = data.get("narration_status")
        return cls(
            job_id=data["job_id"],
            spec=ClipJobSpec.from_dict(data["spec"]),
            status=JobStatus(data["status"]),
            stage=data.get("stage"),
            progress_percent=float(data.get("progress_percent", 0.0)),
            output_path=data.get("output_path"),
            output_size_bytes=data.get("output_size_bytes"),
            error=data.get("error"),
            narration_status=NarrationStatus(narration) if narration else None,
            narration_output_path=data.get("narration_output_path"),
            narration_error=data.get("narration_error"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class JobStore:
    """
    In-memory job records with optional JSON snapshot persistence.

    Args:
        snapshot_path: If set, every created job and every status change is
            written to this file, and existing records are loaded from it at
            construction.
    """

    def __init__(self, snapshot_path: Optional[str] = None):
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None
        # One writer thread keeps snapshot writes in submission order
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="job-snapshot") if snapshot_path else None

        if self._snapshot_path and self._snapshot_path.is_file():
            self._load_snapshot()

    def create(self, spec: ClipJobSpec) -> str:
        job_id = str(uuid.uuid4())
        self._jobs[job_id] = Job(job_id=job_id, spec=spec)
        self._locks[job_id] = asyncio.Lock()
        logger.info(f"Created job {job_id} for {spec.source[:100]} [{spec.start_seconds}s - {spec.end_seconds}s]")
        if self._writer is not None:
            self._writer.submit(self._write_snapshot, self._snapshot_data())
        return job_id

    def close(self) -> None:
        """Wait for queued snapshot writes to finish."""
        if self._writer is not None:
            self._writer.shutdown(wait=True)

    def get(self, job_id: str) -> Job:
        """
        Return a copy of the job record.

        Raises:
            JobNotFound: If no job has this id
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return copy.copy(job)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.copy(j) for j in jobs[:limit]]

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        if job_id not in self._jobs:
            raise JobNotFound(job_id)
        return self._locks.setdefault(job_id, asyncio.Lock())

    async def set_status(
        self,
        job_id: str,
        status: JobStatus,
        output_path: Optional[str] = None,
        size: Optional[int] = None,
        *,
        error: Optional[str] = None,
        stage: Optional[str] = None,
        progress: Optional[float] = None,
    ) -> Job:
        """
        Apply a status update; the only mutation point for the primary status.

        Same-status updates are allowed while the job is not terminal and are
        used for stage/progress changes. Progress never goes backwards.

        Raises:
            JobNotFound: If no job has this id
            InvalidStatusTransition: If the update would regress the status,
                touch a terminal job, or break the output_path rule
        """
        async with self._lock_for(job_id):
            job = self._jobs[job_id]

            if job.is_terminal:
                raise InvalidStatusTransition(
                    f"Job {job_id} is already {job.status.value}; cannot move to {status.value}"
                )
            if _STATUS_RANK[status] < _STATUS_RANK[job.status]:
                raise InvalidStatusTransition(
                    f"Job {job_id} cannot go from {job.status.value} back to {status.value}"
                )
            if status == JobStatus.COMPLETED and not output_path:
                raise InvalidStatusTransition(f"Job {job_id} cannot complete without an output path")
            if status != JobStatus.COMPLETED and output_path:
                raise InvalidStatusTransition(f"Job {job_id} may only record an output path on completion")

            updated = copy.copy(job)
            updated.status = status
            updated.updated_at = _now()
            if stage is not None:
                updated.stage = stage
            if progress is not None:
                updated.progress_percent = max(job.progress_percent, min(100.0, max(0.0, float(progress))))

            if status == JobStatus.COMPLETED:
                updated.output_path = output_path
                updated.output_size_bytes = size
                updated.progress_percent = 100.0
            elif status == JobStatus.FAILED:
                updated.error = error or "Unknown error"

            # Swap in the new record whole so readers never see a partial update
            self._jobs[job_id] = updated

            written = None
            if status != job.status:
                logger.info(f"Job {job_id}: {job.status.value} -> {status.value}")
                written = self._save_snapshot()

        if written is not None:
            await written
        return copy.copy(updated)

    async def set_narration_status(
        self,
        job_id: str,
        status: NarrationStatus,
        output_path: Optional[str] = None,
        *,
        error: Optional[str] = None,
    ) -> Job:
        """
        Advance the narration sub-status of a completed job.

        Raises:
            JobNotFound: If no job has this id
            InvalidStatusTransition: If the job is not completed or the
                narration transition is not allowed
        """
        async with self._lock_for(job_id):
            job = self._jobs[job_id]

            if job.status != JobStatus.COMPLETED:
                raise InvalidStatusTransition(
                    f"Job {job_id} is {job.status.value}; narration needs a completed job"
                )
            if status not in _NARRATION_TRANSITIONS[job.narration_status]:
                current = job.narration_status.value if job.narration_status else "none"
                raise InvalidStatusTransition(
                    f"Job {job_id} narration cannot go from {current} to {status.value}"
                )
            if status == NarrationStatus.DONE and not output_path:
                raise InvalidStatusTransition(f"Job {job_id} narration cannot finish without an output path")

            updated = copy.copy(job)
            updated.narration_status = status
            updated.updated_at = _now()
            if status == NarrationStatus.PENDING:
                updated.narration_error = None
            elif status == NarrationStatus.DONE:
                updated.narration_output_path = output_path
            elif status == NarrationStatus.FAILED:
                updated.narration_error = error or "Unknown error"

            self._jobs[job_id] = updated
            logger.info(f"Job {job_id}: narration -> {status.value}")
            written = self._save_snapshot()

        if written is not None:
            await written
        return copy.copy(updated)

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def _snapshot_data(self) -> dict[str, Any]:
        return {"jobs": [job.to_dict() for job in self._jobs.values()]}

    def _save_snapshot(self) -> Optional[asyncio.Future]:
        """
        Queue a write of the current records, captured now.

        Called under the job lock so writes queue in transition order; the
        returned future is awaited after the lock is released.
        """
        if self._writer is None:
            return None
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._writer, self._write_snapshot, self._snapshot_data())

    def _write_snapshot(self, data: dict[str, Any]) -> None:
        tmp_path = self._snapshot_path.with_suffix(self._snapshot_path.suffix + ".tmp")
        try:
            self._snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._snapshot_path)
        except OSError as e:
            logger.warning(f"Failed to write job snapshot {self._snapshot_path}: {e}")

    def _load_snapshot(self) -> None:
        try:
            with open(self._snapshot_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable job snapshot {self._snapshot_path}: {e}")
            return

        interrupted = 0
        for raw in data.get("jobs", []):
            try:
                job = Job.from_dict(raw)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed job record in snapshot: {e}")
                continue

            # Work in flight at shutdown is gone; its intermediates were never durable
            if not job.is_terminal:
                job.status = JobStatus.FAILED
                job.error = "Interrupted by restart"
                job.output_path = None
                interrupted += 1
            if job.narration_status in (NarrationStatus.PENDING, NarrationStatus.RUNNING):
                job.narration_status = NarrationStatus.FAILED
                job.narration_error = "Interrupted by restart"

            self._jobs[job.job_id] = job
            self._locks[job.job_id] = asyncio.Lock()

        logger.info(f"Loaded {len(self._jobs)} jobs from snapshot ({interrupted} interrupted)")


class JobNotFound(KeyError):
    """Exception raised when a job id is unknown."""
    pass


class InvalidStatusTransition(ValueError):
    """Exception raised when a status update would break job ordering rules."""
    pass
