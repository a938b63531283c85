"""
Job Orchestrator - owns every clip job's lifecycle.

submit() validates the request, records a pending job and starts one
supervised asyncio task for it. The task waits for a worker slot (a
semaphore bounding concurrent transcodes), fetches the source, runs the
Stage Pipeline and records the terminal status. It is the only place that
sets a terminal status.

Cancellation cancels the task; the CancelledError propagates through the
Transcode Runner (which stops FFmpeg) and the pipeline (which releases temp
files) before the job is marked cancelled.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

from clipforge.config import Settings, get_format_profile, get_settings
from clipforge.services.filter_graph import EditParameters, InvalidParameters
from clipforge.services.job_store import (
    ClipJobSpec,
    InvalidStatusTransition,
    Job,
    JobStatus,
    JobStore,
    NarrationStatus,
)
from clipforge.services.source_fetcher import SourceFetcher
from clipforge.services.stage_pipeline import PipelineState, StagePipeline
from clipforge.services.temp_files import TempFileManager
from clipforge.services.watermarks import WatermarkLibrary
from clipforge.services.webhook_service import JobEvent, WebhookService

logger = logging.getLogger(__name__)


# Container durations from ffprobe can fall a few ms short of the nominal length
END_TOLERANCE_SECONDS = 0.05

ERROR_SUMMARY_MAX_CHARS = 500


@dataclass
class Artifact:
    """A downloadable job output."""

    path: str
    media_type: str
    filename: str
    narrated: bool = False


def summarize_error(error: BaseException) -> str:
    message = str(error) or type(error).__name__
    summary = f"{type(error).__name__}: {message}"
    if len(summary) > ERROR_SUMMARY_MAX_CHARS:
        summary = summary[: ERROR_SUMMARY_MAX_CHARS - 3] + "..."
    return summary


class JobOrchestrator:
    """Schedules and supervises clip jobs and their narration phase."""

    def __init__(
        self,
        store: JobStore,
        pipeline: StagePipeline,
        fetcher: SourceFetcher,
        temp_files: TempFileManager,
        watermarks: Optional[WatermarkLibrary] = None,
        webhooks: Optional[WebhookService] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.pipeline = pipeline
        self.fetcher = fetcher
        self.temp_files = temp_files
        self.watermarks = watermarks
        self.webhooks = webhooks

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_transcodes)
        self._tasks: dict[str, asyncio.Task] = {}
        self._narration_tasks: dict[str, asyncio.Task] = {}

        logger.info(f"JobOrchestrator initialized (max {self.settings.max_concurrent_transcodes} concurrent transcodes)")

    # ------------------------------------------------------------------
    # Primary jobs
    # ------------------------------------------------------------------

    def submit(self, spec: ClipJobSpec) -> str:
        """
        Validate a request, create a pending job and schedule it.

        Must be called from a running event loop. Returns immediately.

        Raises:
            InvalidParameters: The request is invalid; no job is created
        """
        spec.validate()
        self.pipeline.builder.validate(spec.edits, spec.output_format)

        if spec.edits.watermark:
            if self.watermarks is None:
                raise InvalidParameters("Watermarks are not configured")
            resolved = self.watermarks.resolve(spec.edits.watermark)
            spec = replace(spec, edits=replace(spec.edits, watermark=resolved))

        job_id = self.store.create(spec)
        task = asyncio.create_task(self._run_job(job_id, spec), name=f"clip-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, job_id=job_id: self._tasks.pop(job_id, None))
        return job_id

    async def _run_job(self, job_id: str, spec: ClipJobSpec) -> None:
        try:
            async with self._semaphore:
                await self.store.set_status(
                    job_id, JobStatus.RUNNING, stage=PipelineState.EXTRACTING.value, progress=0.0
                )

                source = await self.fetcher.fetch(spec.source, spec.quality, str(self.temp_files.job_dir(job_id)))
                if source.owned:
                    self.temp_files.track(job_id, source.path)

                if spec.end_seconds > source.info.duration_seconds + END_TOLERANCE_SECONDS:
                    raise InvalidParameters(
                        f"end ({spec.end_seconds}s) is past the source duration "
                        f"({source.info.duration_seconds:.2f}s)"
                    )

                result = await self.pipeline.run(job_id, spec, source, on_progress=self._record_progress(job_id))

            self.temp_files.release_all(job_id)
            job = await self.store.set_status(
                job_id,
                JobStatus.COMPLETED,
                result.output_path,
                result.size_bytes,
                stage=PipelineState.DONE.value,
            )
            logger.info(f"Job {job_id} completed: {result.output_path} ({result.size_bytes} bytes)")
            self._notify(job, "job.completed")

        except asyncio.CancelledError:
            logger.info(f"Job {job_id} cancelled")
            self.temp_files.release_all(job_id)
            # Cancelled between promotion and completion: the artifact must not survive
            self._remove_file(self.pipeline.final_path(job_id, spec.output_format))
            await self._finish(job_id, JobStatus.CANCELLED)
            raise

        except Exception as e:
            logger.exception(f"Job {job_id} failed")
            self.temp_files.release_all(job_id)
            await self._finish(job_id, JobStatus.FAILED, error=summarize_error(e))

    def _record_progress(self, job_id: str):
        async def record(state: PipelineState, percent: float) -> None:
            await self.store.set_status(job_id, JobStatus.RUNNING, stage=state.value, progress=percent)

        return record

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        try:
            job = await self.store.set_status(job_id, status, error=error)
        except InvalidStatusTransition as e:
            logger.warning(f"Could not mark job {job_id} {status.value}: {e}")
            return
        self._notify(job, f"job.{status.value}")

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a pending or running job and wait until it has stopped.

        Raises:
            JobNotFound: Unknown job id
            InvalidStatusTransition: The job already reached a terminal status
        """
        job = self.store.get(job_id)
        if job.is_terminal:
            raise InvalidStatusTransition(f"Job {job_id} is already {job.status.value}")

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        # A task cancelled before it first ran never reaches its own handler
        if not self.store.get(job_id).is_terminal:
            self.temp_files.release_all(job_id)
            await self._finish(job_id, JobStatus.CANCELLED)

        return self.store.get(job_id)

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        return self.store.list_jobs(status=status, limit=limit)

    def list_watermarks(self) -> list[dict]:
        return self.watermarks.list_watermarks() if self.watermarks else []

    # ------------------------------------------------------------------
    # Narration phase
    # ------------------------------------------------------------------

    async def start_narration(self, job_id: str, script: str) -> Job:
        """
        Start muxing narration into a completed job's artifact.

        The primary status is not touched; only the narration sub-status moves.

        Raises:
            JobNotFound: Unknown job id
            NarrationConflict: Job not completed, or narration already pending/running/done
            InvalidParameters: Blank script or a format without audio
        """
        job = self.store.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise NarrationConflict(f"Job {job_id} is {job.status.value}; narration needs a completed job")
        if job.narration_status in (NarrationStatus.PENDING, NarrationStatus.RUNNING, NarrationStatus.DONE):
            raise NarrationConflict(f"Job {job_id} narration is already {job.narration_status.value}")

        self.pipeline.builder.validate(EditParameters(narration_script=script), job.spec.output_format)

        try:
            job = await self.store.set_narration_status(job_id, NarrationStatus.PENDING)
        except InvalidStatusTransition as e:
            raise NarrationConflict(str(e)) from e

        task = asyncio.create_task(self._run_narration(job_id, script), name=f"clip-narration-{job_id}")
        self._narration_tasks[job_id] = task
        task.add_done_callback(lambda _t, job_id=job_id: self._narration_tasks.pop(job_id, None))
        return job

    async def _run_narration(self, job_id: str, script: str) -> None:
        try:
            async with self._semaphore:
                job = await self.store.set_narration_status(job_id, NarrationStatus.RUNNING)
                result = await self.pipeline.run_narration(
                    job_id,
                    job.output_path,
                    script,
                    job.spec.output_format,
                    job.spec.duration_seconds,
                )
            job = await self.store.set_narration_status(job_id, NarrationStatus.DONE, result.output_path)
            logger.info(f"Job {job_id} narration done: {result.output_path}")
            self._notify(job, "narration.completed")

        except asyncio.CancelledError:
            await self._fail_narration(job_id, "Narration cancelled")
            raise

        except Exception as e:
            logger.exception(f"Job {job_id} narration failed")
            await self._fail_narration(job_id, summarize_error(e))

    async def _fail_narration(self, job_id: str, error: str) -> None:
        try:
            job = await self.store.set_narration_status(job_id, NarrationStatus.FAILED, error=error)
        except InvalidStatusTransition as e:
            logger.warning(f"Could not mark job {job_id} narration failed: {e}")
            return
        self._notify(job, "narration.failed")

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def get_artifact(self, job_id: str, narration: bool = False) -> Artifact:
        """
        Resolve the downloadable file of a completed job.

        With ``narration`` set, the narrated artifact is returned once it is
        done; until then the base artifact is returned.

        Raises:
            JobNotFound: Unknown job id
            ArtifactNotReady: Job not completed, or its file is gone
        """
        job = self.store.get(job_id)
        if job.status != JobStatus.COMPLETED or not job.output_path:
            raise ArtifactNotReady(f"Job {job_id} is {job.status.value}; no artifact yet")

        profile = get_format_profile(job.spec.output_format)

        if (
            narration
            and job.narration_status == NarrationStatus.DONE
            and job.narration_output_path
            and os.path.isfile(job.narration_output_path)
        ):
            return Artifact(
                path=job.narration_output_path,
                media_type=profile["media_type"],
                filename=os.path.basename(job.narration_output_path),
                narrated=True,
            )

        if not os.path.isfile(job.output_path):
            raise ArtifactNotReady(f"Artifact for job {job_id} is no longer available")

        return Artifact(
            path=job.output_path,
            media_type=profile["media_type"],
            filename=os.path.basename(job.output_path),
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel every in-flight job and narration and wait for them."""
        tasks = [t for t in [*self._tasks.values(), *self._narration_tasks.values()] if not t.done()]
        if tasks:
            logger.info(f"Cancelling {len(tasks)} in-flight tasks")
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)

        # Cancellation events queued above still get their chance to go out
        if self.webhooks is not None:
            await self.webhooks.drain()

        await asyncio.get_running_loop().run_in_executor(None, self.store.close)

    def _notify(self, job: Job, event: str) -> None:
        if self.webhooks is None or not job.spec.callback_url:
            return
        self.webhooks.notify(job.spec.callback_url, JobEvent.from_job(job, event))

    def _remove_file(self, path: str) -> None:
        try:
            os.remove(path)
            logger.info(f"Removed artifact of cancelled job: {path}")
        except FileNotFoundError:
            pass


class ArtifactNotReady(Exception):
    """Exception raised when a job has no downloadable artifact."""
    pass


class NarrationConflict(Exception):
    """Exception raised when narration cannot start in the job's current state."""
    pass
