"""
Pytest configuration and fixtures.
"""

import asyncio
import os
import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from clipforge.config import Settings
from clipforge.services.filter_graph import FilterGraphBuilder
from clipforge.services.job_store import JobStore
from clipforge.services.orchestrator import JobOrchestrator
from clipforge.services.source_fetcher import FetchedSource, MediaInfo, SourceUnavailable
from clipforge.services.stage_pipeline import StagePipeline
from clipforge.services.temp_files import TempFileManager
from clipforge.services.transcode_runner import TranscodeFailed, TranscodeResult
from clipforge.services.watermarks import WatermarkLibrary


def input_path_of(command) -> str:
    """First -i argument of a stage command."""
    return command.argv[command.argv.index("-i") + 1]


class FakeRunner:
    """Stands in for TranscodeRunner: writes a small file per stage."""

    def __init__(self, fail_on=None, block_on=None):
        self.commands = []
        self.inputs_existed = []
        self.fail_on = fail_on
        self.block_on = block_on
        self._started = None

    @property
    def started(self) -> asyncio.Event:
        if self._started is None:
            self._started = asyncio.Event()
        return self._started

    async def run(self, command, on_progress=None, timeout=None):
        self.commands.append(command)
        self.inputs_existed.append(os.path.exists(input_path_of(command)))
        if on_progress:
            await on_progress(None)

        if command.stage == self.block_on:
            self.started.set()
            await asyncio.Event().wait()  # until cancelled

        if command.stage == self.fail_on:
            raise TranscodeFailed(command.stage, 1, "simulated encoder failure")

        Path(command.output_path).write_bytes(f"fake {command.stage.value}".encode())
        if on_progress:
            await on_progress(50.0)
            await on_progress(100.0)
        return TranscodeResult(command.output_path, os.path.getsize(command.output_path))

    @property
    def stages(self):
        return [c.stage for c in self.commands]


class FakeFetcher:
    """Stands in for MediaSourceFetcher: 'downloads' a placeholder file."""

    def __init__(self, duration=120.0, width=1280, height=720, error=None):
        self.info = MediaInfo(duration_seconds=duration, width=width, height=height, has_audio=True)
        self.error = error
        self.calls = []

    async def fetch(self, source, quality, destination_dir):
        self.calls.append((source, quality))
        if self.error:
            raise SourceUnavailable(self.error)
        os.makedirs(destination_dir, exist_ok=True)
        path = os.path.join(destination_dir, "source.mp4")
        Path(path).write_bytes(b"fake source")
        return FetchedSource(path=path, info=self.info, source_type="direct_url", owned=True)


class FakeSynthesizer:
    """Stands in for the TTS client."""

    output_suffix = ".mp3"

    def __init__(self, error=None):
        self.scripts = []
        self.error = error
        self.gate = None  # asyncio.Event to hold synthesis open

    async def synthesize(self, script, output_path):
        self.scripts.append(script)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            from clipforge.services.speech_synthesizer import NarrationSynthesisError

            raise NarrationSynthesisError(self.error)
        Path(output_path).write_bytes(b"fake audio")
        return output_path


@pytest.fixture
def settings(tmp_path):
    """Settings pointed at a per-test directory tree."""
    return Settings(
        _env_file=None,
        clipforge_api_key=None,
        clipforge_webhook_secret=None,
        temp_directory=str(tmp_path / "tmp"),
        output_directory=str(tmp_path / "output"),
        watermark_directory=str(tmp_path / "watermarks"),
        job_snapshot_path=None,
        max_render_workers=2,
        transcode_timeout_seconds=30.0,
    )


@pytest.fixture
def watermark_file(settings):
    """A watermark image in the library directory."""
    directory = Path(settings.watermark_directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "logo.png"
    path.write_bytes(b"\x89PNG fake")
    return path


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def make_orchestrator(settings, fake_runner, fake_fetcher, fake_synthesizer):
    """Factory building an orchestrator from fakes (override any of them)."""

    def factory(runner=None, fetcher=None, synthesizer=None, webhooks=None, store=None, app_settings=None):
        app_settings = app_settings or settings
        temp_files = TempFileManager(app_settings)
        pipeline = StagePipeline(
            runner=runner or fake_runner,
            temp_files=temp_files,
            builder=FilterGraphBuilder(app_settings),
            speech_synthesizer=synthesizer or fake_synthesizer,
            settings=app_settings,
        )
        return JobOrchestrator(
            store=store or JobStore(),
            pipeline=pipeline,
            fetcher=fetcher or fake_fetcher,
            temp_files=temp_files,
            watermarks=WatermarkLibrary(app_settings),
            webhooks=webhooks,
            settings=app_settings,
        )

    return factory


async def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(interval)


async def poll_until_terminal(orchestrator, job_id, timeout=5.0):
    """Poll a job like a client would; return the observed status sequence."""
    observed = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = orchestrator.get_job(job_id)
        if not observed or observed[-1] != job.status:
            observed.append(job.status)
        if job.is_terminal:
            return observed
        if loop.time() > deadline:
            raise AssertionError(f"Job {job_id} did not finish; saw {observed}")
        await asyncio.sleep(0.005)
