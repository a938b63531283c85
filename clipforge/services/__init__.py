"""
Services for the clip transformation worker.

Includes:
- Core pipeline (filter graph builder, transcode runner, stage pipeline)
- Job lifecycle (job store, orchestrator, temp file manager)
- Collaborators (source fetcher, speech synthesizer, watermarks, webhooks)
"""

from clipforge.services.filter_graph import EditParameters, FilterGraphBuilder, InvalidParameters, StageKind
from clipforge.services.job_store import ClipJobSpec, JobStatus, JobStore, NarrationStatus
from clipforge.services.orchestrator import JobOrchestrator
from clipforge.services.source_fetcher import MediaSourceFetcher, SourceUnavailable
from clipforge.services.speech_synthesizer import OpenAISpeechSynthesizer
from clipforge.services.stage_pipeline import PipelineState, StagePipeline
from clipforge.services.temp_files import TempFileManager
from clipforge.services.transcode_runner import TranscodeFailed, TranscodeRunner, TranscodeTimeout
from clipforge.services.watermarks import WatermarkLibrary
from clipforge.services.webhook_service import WebhookService

__all__ = [
    # Core pipeline
    "EditParameters",
    "FilterGraphBuilder",
    "InvalidParameters",
    "StageKind",
    "TranscodeRunner",
    "TranscodeFailed",
    "TranscodeTimeout",
    "StagePipeline",
    "PipelineState",
    # Job lifecycle
    "ClipJobSpec",
    "JobStatus",
    "NarrationStatus",
    "JobStore",
    "JobOrchestrator",
    "TempFileManager",
    # Collaborators
    "MediaSourceFetcher",
    "SourceUnavailable",
    "OpenAISpeechSynthesizer",
    "WatermarkLibrary",
    "WebhookService",
]
