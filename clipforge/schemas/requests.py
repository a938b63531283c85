"""
Request schemas for the clips API.
"""

from typing import Optional

from pydantic import BaseModel, Field

from clipforge.config import AspectRatio, OutputFormat
from clipforge.services.filter_graph import EditParameters
from clipforge.services.job_store import ClipJobSpec


class EditParametersInput(BaseModel):
    """Edit values; every field defaults to its neutral value."""

    zoom: float = Field(1.0, description="Zoom factor (0.1-10, 1.0 = none)")
    crop_x: int = Field(0, description="Horizontal pan of the visible window in pixels")
    crop_y: int = Field(0, description="Vertical pan of the visible window in pixels")
    brightness: float = Field(0.0, description="Brightness offset (-1 to 1)")
    contrast: float = Field(1.0, description="Contrast multiplier (0 to 3)")
    saturation: float = Field(1.0, description="Saturation multiplier (0 to 3)")
    aspect_ratio: Optional[str] = Field(
        None,
        description="Target aspect ratio: '16:9', '9:16', '1:1', '4:3'. Omit or 'native' to keep the source ratio.",
    )
    watermark: Optional[str] = Field(
        None,
        description="Watermark file name from the library, an absolute path, or 'random'",
    )
    filler_footage: bool = Field(False, description="Stack generated filler footage under the clip")
    narration_script: Optional[str] = Field(
        None,
        description="Narration text; replaces the clip's audio with synthesized speech",
    )

    def to_edit_parameters(self) -> EditParameters:
        return EditParameters(
            zoom=self.zoom,
            crop_x=self.crop_x,
            crop_y=self.crop_y,
            brightness=self.brightness,
            contrast=self.contrast,
            saturation=self.saturation,
            aspect_ratio=self.aspect_ratio or AspectRatio.NATIVE,
            watermark=self.watermark,
            filler_footage=self.filler_footage,
            narration_script=self.narration_script,
        )


class ClipJobSubmitRequest(BaseModel):
    """Request to submit a new clip job.

    Supports multiple video sources:
    - YouTube URL: https://youtube.com/watch?v=...
    - S3 URL: s3://bucket/key or https://bucket.s3.region.amazonaws.com/key
    - S3 Key: path/to/video.mp4 (uses configured bucket)
    - Direct URL: https://example.com/video.mp4
    - Local file: /absolute/path/video.mp4
    """

    source: str = Field(..., min_length=1, description="Source video reference")
    start_seconds: float = Field(..., ge=0, description="Clip start in seconds")
    end_seconds: float = Field(..., ge=0, description="Clip end in seconds")
    output_format: str = Field(OutputFormat.MP4, description="Output format: 'mp4', 'webm' or 'gif'")
    quality: str = Field("720p", description="Output height: '360p', '480p', '720p' or '1080p'; the source must reach it")
    edits: EditParametersInput = Field(default_factory=EditParametersInput)
    callback_url: Optional[str] = Field(None, description="Webhook URL for terminal status updates")

    def to_spec(self) -> ClipJobSpec:
        return ClipJobSpec(
            source=self.source,
            start_seconds=self.start_seconds,
            end_seconds=self.end_seconds,
            output_format=self.output_format,
            quality=self.quality,
            edits=self.edits.to_edit_parameters(),
            callback_url=self.callback_url,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "source": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
                "start_seconds": 10.0,
                "end_seconds": 40.0,
                "output_format": "mp4",
                "quality": "720p",
                "edits": {"zoom": 1.2, "aspect_ratio": "9:16", "watermark": "random"},
            }
        }


class NarrationRequest(BaseModel):
    """Request to mux narration into a completed clip."""

    script: str = Field(..., min_length=1, description="Narration text to synthesize")
