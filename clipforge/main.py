"""
FastAPI application entry point for Clipforge.

Clipforge turns a source video and a time range into an edited clip:
1. Trim and transcode (MP4, WebM or GIF at a chosen quality)
2. Optional zoom/crop, aspect ratio and colour correction
3. Optional watermark and generated filler footage
4. Optional narration, muxed after the clip is complete
"""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clipforge.config import Settings, get_settings
from clipforge.routers import clips, health
from clipforge.services.filter_graph import FilterGraphBuilder
from clipforge.services.job_store import JobStore
from clipforge.services.orchestrator import JobOrchestrator
from clipforge.services.source_fetcher import MediaSourceFetcher, SourceFetcher
from clipforge.services.speech_synthesizer import OpenAISpeechSynthesizer, SpeechSynthesizer
from clipforge.services.stage_pipeline import StagePipeline
from clipforge.services.temp_files import TempFileManager
from clipforge.services.transcode_runner import TranscodeRunner
from clipforge.services.watermarks import WatermarkLibrary
from clipforge.services.webhook_service import WebhookService

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Settings,
    fetcher: Optional[SourceFetcher] = None,
    speech_synthesizer: Optional[SpeechSynthesizer] = None,
) -> JobOrchestrator:
    """Construct every service once and wire them together."""
    temp_files = TempFileManager(settings)
    pipeline = StagePipeline(
        runner=TranscodeRunner(settings),
        temp_files=temp_files,
        builder=FilterGraphBuilder(settings),
        speech_synthesizer=speech_synthesizer or OpenAISpeechSynthesizer(settings),
        settings=settings,
    )
    return JobOrchestrator(
        store=JobStore(snapshot_path=settings.job_snapshot_path),
        pipeline=pipeline,
        fetcher=fetcher or MediaSourceFetcher(settings),
        temp_files=temp_files,
        watermarks=WatermarkLibrary(settings),
        webhooks=WebhookService(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Builds the orchestrator on startup and stops in-flight jobs on shutdown.
    """
    settings = getattr(app.state, "settings", None) or get_settings()
    logger.info("Starting Clipforge...")

    os.makedirs(settings.temp_directory, exist_ok=True)
    os.makedirs(settings.output_directory, exist_ok=True)
    logger.info(f"Temp directory: {settings.temp_directory}")
    logger.info(f"Output directory: {settings.output_directory}")
    logger.info(f"Max concurrent transcodes: {settings.max_concurrent_transcodes}")

    # Settings and an orchestrator set before startup (tests, embedding) are used as-is
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator(settings)
    app.state.settings = settings

    _verify_external_tools(settings)

    logger.info("Clipforge ready to accept requests.")

    yield

    logger.info("Shutting down Clipforge...")
    await app.state.orchestrator.shutdown()
    app.state.orchestrator = None

    # Intermediates never need to survive a restart
    if os.path.isdir(settings.temp_directory):
        try:
            shutil.rmtree(settings.temp_directory)
        except OSError as e:
            logger.warning(f"Failed to clean up temp directory: {e}")

    logger.info("Shutdown complete")


def _verify_external_tools(settings: Settings):
    """Verify that required external tools are available."""
    tools = {
        settings.ffmpeg_path: "FFmpeg for transcoding",
        settings.ffprobe_path: "FFprobe for media probing",
    }

    for tool, description in tools.items():
        if shutil.which(tool):
            logger.info(f"✓ {description} available")
        else:
            logger.warning(f"✗ {description} NOT FOUND - jobs will fail")


# Create FastAPI application
app = FastAPI(
    title="Clipforge",
    description="""
Clipforge - clip transformation service.

## Features

### Clips API (`/clips`)
- Sources: YouTube, S3, direct URLs, local files
- Trim and transcode to MP4, WebM or GIF (480p/720p/1080p)
- Zoom, pan, aspect ratio (16:9, 9:16, 1:1, 4:3) and colour correction
- Watermark overlay and generated filler footage
- Narration muxing after completion

## Usage

1. Submit a job: `POST /clips/jobs`
2. Poll status: `GET /clips/jobs/{job_id}`
3. Download: `GET /clips/jobs/{job_id}/download`
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict to specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(clips.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "service": "clipforge",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }
