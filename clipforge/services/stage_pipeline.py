"""
Stage Pipeline - runs a job's transcode stages in order.

States (skipped when the matching edit is neutral or absent):

    extracting -> correcting -> compositing_watermark -> compositing_filler
        -> muxing_narration -> done

Each stage reads the previous stage's artifact and writes a new temp file.
When a stage succeeds the previous artifact is deleted; when the last stage
succeeds its output is promoted to the output directory. Whatever happens,
the job's temp space is released before ``run`` returns or raises.
"""

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from clipforge.config import Settings, get_format_profile, get_quality_height, get_settings
from clipforge.services.filter_graph import (
    FILLER_PATTERNS,
    EditParameters,
    FilterGraphBuilder,
    FrameSize,
    StageContext,
    StageKind,
    TranscodeCommand,
)
from clipforge.services.job_store import ClipJobSpec
from clipforge.services.source_fetcher import FetchedSource
from clipforge.services.speech_synthesizer import NarrationSynthesisError, SpeechSynthesizer
from clipforge.services.temp_files import TempFileManager
from clipforge.services.transcode_runner import TranscodeRunner

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    EXTRACTING = "extracting"
    CORRECTING = "correcting"
    COMPOSITING_WATERMARK = "compositing_watermark"
    COMPOSITING_FILLER = "compositing_filler"
    MUXING_NARRATION = "muxing_narration"
    DONE = "done"


STAGE_STATES = {
    StageKind.EXTRACT: PipelineState.EXTRACTING,
    StageKind.CORRECT: PipelineState.CORRECTING,
    StageKind.WATERMARK: PipelineState.COMPOSITING_WATERMARK,
    StageKind.FILLER: PipelineState.COMPOSITING_FILLER,
    StageKind.NARRATION_MUX: PipelineState.MUXING_NARRATION,
}

# Receives the current state and overall progress (0-100)
PipelineProgressCallback = Callable[[PipelineState, float], Awaitable[None]]


@dataclass
class StageDescriptor:
    """One stage invocation; lives only while the stage runs."""

    kind: StageKind
    inputs: list[str]
    output_path: str
    command: TranscodeCommand


@dataclass
class PipelineResult:
    """Final artifact of a pipeline run."""

    output_path: str
    size_bytes: int
    stages: list[StageKind] = field(default_factory=list)
    frame: Optional[FrameSize] = None


class StagePipeline:
    """
    Sequences stage commands for a job.

    Stateless between runs; one instance serves every job.
    """

    def __init__(
        self,
        runner: TranscodeRunner,
        temp_files: TempFileManager,
        builder: Optional[FilterGraphBuilder] = None,
        speech_synthesizer: Optional[SpeechSynthesizer] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.runner = runner
        self.temp_files = temp_files
        self.builder = builder or FilterGraphBuilder(self.settings)
        self.speech_synthesizer = speech_synthesizer
        self.output_dir = Path(self.settings.output_directory)

    def final_path(self, job_id: str, output_format: str, narrated: bool = False) -> str:
        extension = get_format_profile(output_format)["extension"]
        name = f"{job_id}_narrated{extension}" if narrated else f"{job_id}{extension}"
        return str(self.output_dir / name)

    async def run(
        self,
        job_id: str,
        spec: ClipJobSpec,
        source: FetchedSource,
        on_progress: Optional[PipelineProgressCallback] = None,
    ) -> PipelineResult:
        """
        Run every planned stage and promote the final artifact.

        Raises:
            InvalidParameters: If a stage cannot be built for this source
            TranscodeFailed / TranscodeTimeout: If a stage fails
            NarrationSynthesisError: If narration audio cannot be produced
            asyncio.CancelledError: If the job is cancelled mid-stage
        """
        params = spec.edits
        extension = get_format_profile(spec.output_format)["extension"]
        quality_height = get_quality_height(spec.quality)
        source_frame = FrameSize(source.info.width, source.info.height)

        extracted_frame = self.builder.extract_frame(source_frame, quality_height, spec.output_format)
        stages = self.builder.plan(params, extracted_frame)
        logger.info(f"Job {job_id} pipeline: {' -> '.join(s.value for s in stages)}")

        current: Optional[str] = None
        frame = source_frame
        try:
            for index, kind in enumerate(stages):
                state = STAGE_STATES[kind]
                await self._report(on_progress, state, index, len(stages), 0.0)

                secondary = None
                if kind == StageKind.WATERMARK:
                    secondary = params.watermark
                elif kind == StageKind.NARRATION_MUX:
                    secondary = await self._synthesize(job_id, params.narration_script)

                output = self.temp_files.allocate(job_id, kind.value, extension)
                context = StageContext(
                    input_path=current or source.path,
                    output_path=output,
                    duration_seconds=spec.duration_seconds,
                    frame=frame,
                    output_format=spec.output_format,
                    start_seconds=spec.start_seconds if kind == StageKind.EXTRACT else 0.0,
                    quality_height=quality_height,
                    secondary_path=secondary,
                    filler_pattern=random.choice(sorted(FILLER_PATTERNS)),
                )
                descriptor = StageDescriptor(
                    kind=kind,
                    inputs=[context.input_path] + ([secondary] if secondary else []),
                    output_path=output,
                    command=self.builder.build(kind, params, context),
                )

                result = await self.runner.run(
                    descriptor.command,
                    on_progress=self._stage_progress(on_progress, state, index, len(stages)),
                )

                # New output supersedes the previous artifact and any generated audio
                if current is not None:
                    self.temp_files.discard(job_id, current)
                if kind == StageKind.NARRATION_MUX and secondary:
                    self.temp_files.discard(job_id, secondary)
                current = result.output_path
                frame = descriptor.command.frame or frame

            final = self.temp_files.promote(job_id, current, self.final_path(job_id, spec.output_format))
            size = Path(final).stat().st_size
            await self._report(on_progress, PipelineState.DONE, len(stages), len(stages), 0.0)
            return PipelineResult(output_path=final, size_bytes=size, stages=stages, frame=frame)
        finally:
            self.temp_files.release_all(job_id)

    async def run_narration(
        self,
        job_id: str,
        base_artifact: str,
        script: str,
        output_format: str,
        duration_seconds: float,
        on_progress: Optional[PipelineProgressCallback] = None,
    ) -> PipelineResult:
        """
        Second-phase pipeline: mux narration into a completed job's artifact.

        The base artifact is read, never modified.
        """
        params = EditParameters(narration_script=script)
        self.builder.validate(params, output_format)
        extension = get_format_profile(output_format)["extension"]

        try:
            await self._report(on_progress, PipelineState.MUXING_NARRATION, 0, 1, 0.0)
            audio = await self._synthesize(job_id, script)
            output = self.temp_files.allocate(job_id, StageKind.NARRATION_MUX.value, extension)
            command = self.builder.build(
                StageKind.NARRATION_MUX,
                params,
                StageContext(
                    input_path=base_artifact,
                    output_path=output,
                    duration_seconds=duration_seconds,
                    output_format=output_format,
                    secondary_path=audio,
                ),
            )
            result = await self.runner.run(
                command,
                on_progress=self._stage_progress(on_progress, PipelineState.MUXING_NARRATION, 0, 1),
            )
            final = self.temp_files.promote(
                job_id, result.output_path, self.final_path(job_id, output_format, narrated=True)
            )
            await self._report(on_progress, PipelineState.DONE, 1, 1, 0.0)
            return PipelineResult(output_path=final, size_bytes=Path(final).stat().st_size, stages=[StageKind.NARRATION_MUX])
        finally:
            self.temp_files.release_all(job_id)

    async def _synthesize(self, job_id: str, script: Optional[str]) -> str:
        if self.speech_synthesizer is None:
            raise NarrationSynthesisError("No speech synthesizer configured")
        if not script:
            raise NarrationSynthesisError("Narration script is empty")
        path = self.temp_files.allocate(job_id, "narration_audio", self.speech_synthesizer.output_suffix)
        return await self.speech_synthesizer.synthesize(script, path)

    def _stage_progress(
        self,
        on_progress: Optional[PipelineProgressCallback],
        state: PipelineState,
        index: int,
        total: int,
    ):
        async def report(percent: Optional[float]) -> None:
            # Indeterminate stage progress keeps the stage's starting point
            await self._report(on_progress, state, index, total, percent or 0.0)

        return report

    async def _report(
        self,
        on_progress: Optional[PipelineProgressCallback],
        state: PipelineState,
        index: int,
        total: int,
        stage_percent: float,
    ) -> None:
        if on_progress is None:
            return
        overall = min(100.0, (index + stage_percent / 100.0) / max(1, total) * 100.0)
        await on_progress(state, round(overall, 1))
