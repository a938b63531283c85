"""
Tests for the job orchestrator: scheduling, failure, cancellation and narration.
"""

import asyncio
import os
from pathlib import Path

import pytest

from clipforge.services.filter_graph import EditParameters, InvalidParameters, StageKind
from clipforge.services.job_store import (
    ClipJobSpec,
    InvalidStatusTransition,
    JobNotFound,
    JobStatus,
    NarrationStatus,
)
from clipforge.services.orchestrator import ArtifactNotReady, NarrationConflict, summarize_error
from clipforge.services.webhook_service import WebhookService

from conftest import FakeFetcher, FakeRunner, FakeSynthesizer, poll_until_terminal, wait_for

STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELLED: 2,
}


def make_spec(start=10.0, end=20.0, output_format="mp4", callback_url=None, **edits):
    return ClipJobSpec(
        source="https://cdn.example.com/talk.mp4",
        start_seconds=start,
        end_seconds=end,
        output_format=output_format,
        edits=EditParameters(**edits),
        callback_url=callback_url,
    )


def assert_monotonic(observed):
    ranks = [STATUS_RANK[s] for s in observed]
    assert ranks == sorted(ranks), observed


def job_temp_empty(orchestrator, job_id) -> bool:
    directory = orchestrator.temp_files.job_dir(job_id)
    return not directory.exists() or not any(directory.iterdir())


class TestSubmit:
    """Tests for job submission and the happy path."""

    def test_neutral_job_completes(self, make_orchestrator, fake_runner, fake_fetcher):
        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(make_spec())
            observed = await poll_until_terminal(orchestrator, job_id)
            return orchestrator, job_id, observed

        orchestrator, job_id, observed = asyncio.run(scenario())
        job = orchestrator.get_job(job_id)

        assert observed[0] == JobStatus.PENDING
        assert observed[-1] == JobStatus.COMPLETED
        assert_monotonic(observed)
        assert job.progress_percent == 100.0
        assert job.stage == "done"
        assert Path(job.output_path).read_bytes() == b"fake extract"
        assert job.output_size_bytes == len(b"fake extract")
        assert fake_runner.stages == [StageKind.EXTRACT]
        assert fake_fetcher.calls == [("https://cdn.example.com/talk.mp4", "720p")]
        # Downloaded source and intermediates are gone
        assert job_temp_empty(orchestrator, job_id)

    def test_invalid_range_creates_no_job(self, make_orchestrator, fake_runner):
        """Test a rejected request leaves no record and runs nothing."""

        async def scenario():
            orchestrator = make_orchestrator()
            with pytest.raises(InvalidParameters):
                orchestrator.submit(make_spec(start=50.0, end=40.0))
            await asyncio.sleep(0.05)
            return orchestrator

        orchestrator = asyncio.run(scenario())
        assert orchestrator.list_jobs() == []
        assert fake_runner.commands == []

    @pytest.mark.parametrize(
        "edits",
        [
            {"zoom": 0.0},
            {"zoom": 50.0},
            {"brightness": 2.0},
            {"aspect_ratio": "21:9"},
            {"watermark": "missing.png"},
            {"narration_script": "   "},
        ],
    )
    def test_invalid_edits_rejected(self, make_orchestrator, edits):
        async def scenario():
            orchestrator = make_orchestrator()
            with pytest.raises(InvalidParameters):
                orchestrator.submit(make_spec(**edits))
            return orchestrator

        assert asyncio.run(scenario()).list_jobs() == []

    def test_narration_rejected_for_gif(self, make_orchestrator):
        async def scenario():
            orchestrator = make_orchestrator()
            with pytest.raises(InvalidParameters):
                orchestrator.submit(make_spec(output_format="gif", narration_script="hello"))

        asyncio.run(scenario())

    def test_all_edits_run_every_stage(self, make_orchestrator, fake_runner, watermark_file):
        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(
                make_spec(zoom=1.5, saturation=1.3, watermark="logo.png", filler_footage=True, narration_script="Hi")
            )
            await poll_until_terminal(orchestrator, job_id)
            return orchestrator.get_job(job_id)

        job = asyncio.run(scenario())

        assert job.status == JobStatus.COMPLETED
        assert fake_runner.stages == [
            StageKind.EXTRACT,
            StageKind.CORRECT,
            StageKind.WATERMARK,
            StageKind.FILLER,
            StageKind.NARRATION_MUX,
        ]
        watermark_cmd = fake_runner.commands[2]
        assert str(watermark_file.resolve()) in watermark_cmd.argv

    def test_random_watermark_resolves_from_library(self, make_orchestrator, fake_runner, watermark_file):
        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(make_spec(watermark="random"))
            await poll_until_terminal(orchestrator, job_id)
            return orchestrator.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.spec.edits.watermark == str(watermark_file.resolve())
        assert fake_runner.stages == [StageKind.EXTRACT, StageKind.WATERMARK]


class TestFailures:
    """Tests for jobs that end in failed."""

    def test_stage_failure(self, make_orchestrator, watermark_file):
        """Test a failing stage fails the job without leaking temp files."""
        runner = FakeRunner(fail_on=StageKind.WATERMARK)

        async def scenario():
            orchestrator = make_orchestrator(runner=runner)
            job_id = orchestrator.submit(make_spec(zoom=2.0, watermark="logo.png", filler_footage=True))
            observed = await poll_until_terminal(orchestrator, job_id)
            return orchestrator, job_id, observed

        orchestrator, job_id, observed = asyncio.run(scenario())
        job = orchestrator.get_job(job_id)

        assert job.status == JobStatus.FAILED
        assert JobStatus.COMPLETED not in observed
        assert_monotonic(observed)
        assert "TranscodeFailed" in job.error
        assert "simulated encoder failure" in job.error
        assert job.output_path is None
        assert StageKind.FILLER not in runner.stages
        assert job_temp_empty(orchestrator, job_id)
        assert not os.path.exists(orchestrator.pipeline.final_path(job_id, "mp4"))

    def test_source_unavailable(self, make_orchestrator, fake_runner):
        fetcher = FakeFetcher(error="HTTP 404 for https://cdn.example.com/talk.mp4")

        async def scenario():
            orchestrator = make_orchestrator(fetcher=fetcher)
            job_id = orchestrator.submit(make_spec())
            await poll_until_terminal(orchestrator, job_id)
            return orchestrator.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert job.error.startswith("SourceUnavailable")
        assert fake_runner.commands == []

    def test_end_past_source_duration(self, make_orchestrator, fake_runner):
        """Test the range is checked against the probed duration."""
        fetcher = FakeFetcher(duration=30.0)

        async def scenario():
            orchestrator = make_orchestrator(fetcher=fetcher)
            job_id = orchestrator.submit(make_spec(start=20.0, end=40.0))
            await poll_until_terminal(orchestrator, job_id)
            return orchestrator, job_id

        orchestrator, job_id = asyncio.run(scenario())
        job = orchestrator.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "InvalidParameters" in job.error
        assert fake_runner.commands == []
        assert job_temp_empty(orchestrator, job_id)

    def test_end_within_tolerance_is_accepted(self, make_orchestrator):
        fetcher = FakeFetcher(duration=29.98)

        async def scenario():
            orchestrator = make_orchestrator(fetcher=fetcher)
            job_id = orchestrator.submit(make_spec(start=20.0, end=30.0))
            await poll_until_terminal(orchestrator, job_id)
            return orchestrator.get_job(job_id)

        assert asyncio.run(scenario()).status == JobStatus.COMPLETED

    def test_summarize_error_is_bounded(self):
        summary = summarize_error(RuntimeError("x" * 5000))
        assert summary.startswith("RuntimeError: ")
        assert len(summary) <= 500


class TestCancellation:
    """Tests for cancelling pending and running jobs."""

    def test_cancel_running_job(self, make_orchestrator):
        """Test cancel stops the stage and cleans up before returning."""
        runner = FakeRunner(block_on=StageKind.CORRECT)

        async def scenario():
            orchestrator = make_orchestrator(runner=runner)
            job_id = orchestrator.submit(make_spec(zoom=2.0))
            await asyncio.wait_for(runner.started.wait(), timeout=5)
            assert orchestrator.get_job(job_id).status == JobStatus.RUNNING

            job = await orchestrator.cancel(job_id)
            return orchestrator, job

        orchestrator, job = asyncio.run(scenario())

        assert job.status == JobStatus.CANCELLED
        assert job.output_path is None
        assert job_temp_empty(orchestrator, job.job_id)
        assert not os.path.exists(orchestrator.pipeline.final_path(job.job_id, "mp4"))

    def test_cancel_pending_job(self, make_orchestrator, settings):
        """Test a job waiting for a worker slot can be cancelled and never runs."""
        settings.max_render_workers = 1
        runner = FakeRunner(block_on=StageKind.EXTRACT)

        async def scenario():
            orchestrator = make_orchestrator(runner=runner)
            first = orchestrator.submit(make_spec())
            await asyncio.wait_for(runner.started.wait(), timeout=5)
            second = orchestrator.submit(make_spec())
            await asyncio.sleep(0.05)
            assert orchestrator.get_job(second).status == JobStatus.PENDING

            cancelled = await orchestrator.cancel(second)
            still_running = orchestrator.get_job(first).status
            await orchestrator.shutdown()
            return cancelled, still_running

        cancelled, still_running = asyncio.run(scenario())

        assert cancelled.status == JobStatus.CANCELLED
        assert still_running == JobStatus.RUNNING
        assert len(runner.commands) == 1

    def test_cancel_immediately_after_submit(self, make_orchestrator, fake_runner):
        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(make_spec())
            return await orchestrator.cancel(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.CANCELLED
        assert fake_runner.commands == []

    def test_cancel_terminal_job_conflicts(self, make_orchestrator):
        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(make_spec())
            await poll_until_terminal(orchestrator, job_id)
            with pytest.raises(InvalidStatusTransition):
                await orchestrator.cancel(job_id)
            return orchestrator.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.COMPLETED
        assert os.path.exists(job.output_path)

    def test_cancel_unknown_job(self, make_orchestrator):
        async def scenario():
            with pytest.raises(JobNotFound):
                await make_orchestrator().cancel("no-such-job")

        asyncio.run(scenario())

    def test_shutdown_cancels_in_flight(self, make_orchestrator):
        runner = FakeRunner(block_on=StageKind.EXTRACT)

        async def scenario():
            orchestrator = make_orchestrator(runner=runner)
            job_id = orchestrator.submit(make_spec())
            await asyncio.wait_for(runner.started.wait(), timeout=5)
            await orchestrator.shutdown()
            return orchestrator.get_job(job_id)

        assert asyncio.run(scenario()).status == JobStatus.CANCELLED


class TestConcurrency:
    """Tests for the worker bound."""

    def test_running_jobs_never_exceed_workers(self, make_orchestrator, settings):
        runner = FakeRunner(block_on=StageKind.EXTRACT)

        async def scenario():
            orchestrator = make_orchestrator(runner=runner)
            job_ids = [orchestrator.submit(make_spec()) for _ in range(4)]
            await wait_for(lambda: len(runner.commands) == 2)
            await asyncio.sleep(0.05)
            statuses = [orchestrator.get_job(j).status for j in job_ids]
            commands = len(runner.commands)
            await orchestrator.shutdown()
            return statuses, commands

        statuses, commands = asyncio.run(scenario())

        assert commands == settings.max_concurrent_transcodes == 2
        assert statuses.count(JobStatus.RUNNING) == 2
        assert statuses.count(JobStatus.PENDING) == 2

    def test_jobs_do_not_share_temp_files(self, make_orchestrator, fake_runner):
        async def scenario():
            orchestrator = make_orchestrator()
            job_ids = [orchestrator.submit(make_spec(zoom=1.5)) for _ in range(3)]
            for job_id in job_ids:
                await poll_until_terminal(orchestrator, job_id)
            return [orchestrator.get_job(j) for j in job_ids]

        jobs = asyncio.run(scenario())

        assert all(job.status == JobStatus.COMPLETED for job in jobs)
        assert len({job.output_path for job in jobs}) == 3
        outputs = [c.output_path for c in fake_runner.commands]
        assert len(outputs) == len(set(outputs))


class TestNarration:
    """Tests for the narration phase of completed jobs."""

    def test_narration_flow(self, make_orchestrator, fake_synthesizer):
        """Test the base clip is served until the narrated one is done."""

        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(make_spec())
            await poll_until_terminal(orchestrator, job_id)

            fake_synthesizer.gate = asyncio.Event()
            job = await orchestrator.start_narration(job_id, "A short voice-over")
            assert job.narration_status == NarrationStatus.PENDING

            before = orchestrator.get_artifact(job_id, narration=True)
            with pytest.raises(NarrationConflict):
                await orchestrator.start_narration(job_id, "Again")

            fake_synthesizer.gate.set()
            await wait_for(lambda: orchestrator.get_job(job_id).narration_status == NarrationStatus.DONE)
            after = orchestrator.get_artifact(job_id, narration=True)
            plain = orchestrator.get_artifact(job_id)
            return orchestrator.get_job(job_id), before, after, plain

        job, before, after, plain = asyncio.run(scenario())

        assert job.status == JobStatus.COMPLETED
        assert not before.narrated
        assert before.path == job.output_path
        assert after.narrated
        assert after.path == job.narration_output_path
        assert after.filename.endswith("_narrated.mp4")
        assert plain.path == job.output_path
        assert os.path.exists(job.output_path)

    def test_narration_requires_completed_job(self, make_orchestrator):
        runner = FakeRunner(block_on=StageKind.EXTRACT)

        async def scenario():
            orchestrator = make_orchestrator(runner=runner)
            job_id = orchestrator.submit(make_spec())
            await asyncio.wait_for(runner.started.wait(), timeout=5)
            with pytest.raises(NarrationConflict):
                await orchestrator.start_narration(job_id, "too early")
            with pytest.raises(ArtifactNotReady):
                orchestrator.get_artifact(job_id)
            await orchestrator.shutdown()

        asyncio.run(scenario())

    def test_narration_failure_then_retry(self, make_orchestrator):
        synthesizer = FakeSynthesizer(error="TTS quota exceeded")

        async def scenario():
            orchestrator = make_orchestrator(synthesizer=synthesizer)
            job_id = orchestrator.submit(make_spec())
            await poll_until_terminal(orchestrator, job_id)

            await orchestrator.start_narration(job_id, "Take one")
            await wait_for(lambda: orchestrator.get_job(job_id).narration_status == NarrationStatus.FAILED)
            failed = orchestrator.get_job(job_id)

            synthesizer.error = None
            await orchestrator.start_narration(job_id, "Take two")
            await wait_for(lambda: orchestrator.get_job(job_id).narration_status == NarrationStatus.DONE)
            return failed, orchestrator.get_job(job_id)

        failed, done = asyncio.run(scenario())

        assert failed.status == JobStatus.COMPLETED
        assert "TTS quota exceeded" in failed.narration_error
        assert done.narration_error is None
        assert synthesizer.scripts == ["Take one", "Take two"]

    def test_blank_script_rejected(self, make_orchestrator):
        async def scenario():
            orchestrator = make_orchestrator()
            job_id = orchestrator.submit(make_spec())
            await poll_until_terminal(orchestrator, job_id)
            with pytest.raises(InvalidParameters):
                await orchestrator.start_narration(job_id, "  ")
            return orchestrator.get_job(job_id)

        assert asyncio.run(scenario()).narration_status is None


class TestWebhooks:
    """Tests for webhook notifications on terminal and narration events."""

    def test_completed_job_notifies_callback(self, make_orchestrator, mocker):
        webhooks = mocker.Mock(spec=WebhookService)

        async def scenario():
            orchestrator = make_orchestrator(webhooks=webhooks)
            job_id = orchestrator.submit(make_spec(callback_url="https://hooks.example.com/clip"))
            await poll_until_terminal(orchestrator, job_id)
            return job_id

        job_id = asyncio.run(scenario())

        webhooks.notify.assert_called_once()
        url, event = webhooks.notify.call_args.args
        assert url == "https://hooks.example.com/clip"
        assert event.event == "job.completed"
        assert event.job_id == job_id
        assert event.status == "completed"
        assert event.output["download_url"] == f"/clips/jobs/{job_id}/download"

    def test_failed_job_notifies_with_error(self, make_orchestrator, mocker):
        webhooks = mocker.Mock(spec=WebhookService)
        fetcher = FakeFetcher(error="gone")

        async def scenario():
            orchestrator = make_orchestrator(webhooks=webhooks, fetcher=fetcher)
            job_id = orchestrator.submit(make_spec(callback_url="https://hooks.example.com/clip"))
            await poll_until_terminal(orchestrator, job_id)

        asyncio.run(scenario())

        _, event = webhooks.notify.call_args.args
        assert event.event == "job.failed"
        assert "gone" in event.error
        assert event.output is None

    def test_narration_events(self, make_orchestrator, mocker):
        webhooks = mocker.Mock(spec=WebhookService)

        async def scenario():
            orchestrator = make_orchestrator(webhooks=webhooks)
            job_id = orchestrator.submit(make_spec(callback_url="https://hooks.example.com/clip"))
            await poll_until_terminal(orchestrator, job_id)
            await orchestrator.start_narration(job_id, "Voice-over")
            await wait_for(lambda: orchestrator.get_job(job_id).narration_status == NarrationStatus.DONE)

        asyncio.run(scenario())

        events = [call.args[1] for call in webhooks.notify.call_args_list]
        assert [e.event for e in events] == ["job.completed", "narration.completed"]
        assert events[1].output["narrated_download_url"].endswith("?narration=true")

    def test_no_callback_url_sends_nothing(self, make_orchestrator, mocker):
        webhooks = mocker.Mock(spec=WebhookService)

        async def scenario():
            orchestrator = make_orchestrator(webhooks=webhooks)
            job_id = orchestrator.submit(make_spec())
            await poll_until_terminal(orchestrator, job_id)
            await orchestrator.shutdown()

        asyncio.run(scenario())
        webhooks.notify.assert_not_called()
        webhooks.drain.assert_awaited_once()
