"""
Filter Graph Builder - translates edit parameters into FFmpeg stage commands.

Everything in this module is pure: no filesystem access and no subprocesses.
The Stage Pipeline asks the builder which stages a job needs (``plan``) and then
asks it for the exact command of each stage (``build``).

Correction chain order is fixed and must not change, since reordering alters
the rendered pixels:

    1. crop   - visible window (zoom + pan offsets) intersected with the frame
    2. scale  - zoom factor, then fit inside the target canvas
    3. pad    - letterbox/pillarbox to the target aspect ratio
    4. eq     - brightness / contrast / saturation

Filters whose effect is the identity are omitted, and a stage whose whole
chain would be empty is not planned at all.
"""

import logging
import math
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from clipforge.config import (
    AspectRatio,
    OutputFormat,
    Settings,
    SUPPORTED_ASPECT_RATIOS,
    get_format_profile,
    get_settings,
)

logger = logging.getLogger(__name__)


MIN_ZOOM = 0.1
MAX_ZOOM = 10.0

# Image formats that need an explicit loop to outlive a single frame
STATIC_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".webp"}

# lavfi sources used for generated filler footage
FILLER_PATTERNS = {
    "testsrc2": "testsrc2=size={w}x{h}:rate={r}",
    "mandelbrot": "mandelbrot=size={w}x{h}:rate={r}",
    "life": "life=size={w}x{h}:mold=10:rate={r}:ratio=0.1:death_color=#C83232:life_color=#00ff00",
}

FILLER_EFFECT = "hue=h=sin(2*PI*t)*360:s=1+0.5*sin(2*PI*t)"


class StageKind(str, Enum):
    """Kinds of transcode stage, in pipeline order."""

    EXTRACT = "extract"
    CORRECT = "correct"
    WATERMARK = "watermark"
    FILLER = "filler"
    NARRATION_MUX = "narration_mux"


@dataclass(frozen=True)
class FrameSize:
    """Video frame dimensions in pixels."""

    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class EditParameters:
    """
    Edit values requested for a clip.

    Every field defaults to its neutral value; an all-neutral instance turns
    the pipeline into a plain trim-and-transcode.
    """

    zoom: float = 1.0
    crop_x: int = 0
    crop_y: int = 0
    brightness: float = 0.0
    contrast: float = 1.0
    saturation: float = 1.0
    aspect_ratio: str = AspectRatio.NATIVE
    watermark: Optional[str] = None
    filler_footage: bool = False
    narration_script: Optional[str] = None

    def has_color_correction(self) -> bool:
        return self.brightness != 0.0 or self.contrast != 1.0 or self.saturation != 1.0

    def needs_correction(self) -> bool:
        """True when any value feeding the correct stage differs from neutral."""
        return (
            self.zoom != 1.0
            or self.crop_x != 0
            or self.crop_y != 0
            or self.aspect_ratio != AspectRatio.NATIVE
            or self.has_color_correction()
        )

    def is_neutral(self) -> bool:
        return not (
            self.needs_correction()
            or self.watermark
            or self.filler_footage
            or self.narration_script
        )

    def to_dict(self) -> dict:
        return {
            "zoom": self.zoom,
            "crop_x": self.crop_x,
            "crop_y": self.crop_y,
            "brightness": self.brightness,
            "contrast": self.contrast,
            "saturation": self.saturation,
            "aspect_ratio": self.aspect_ratio,
            "watermark": self.watermark,
            "filler_footage": self.filler_footage,
            "narration_script": self.narration_script,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EditParameters":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if values.get("aspect_ratio") is None:
            values["aspect_ratio"] = AspectRatio.NATIVE
        return cls(**values)


@dataclass(frozen=True)
class StageContext:
    """Inputs of one stage invocation beyond the edit parameters."""

    input_path: str
    output_path: str
    duration_seconds: float
    frame: Optional[FrameSize] = None  # frame size of input_path
    output_format: str = OutputFormat.MP4
    start_seconds: float = 0.0  # extract only
    quality_height: Optional[int] = None  # extract only
    secondary_path: Optional[str] = None  # watermark image or narration audio
    filler_pattern: str = "testsrc2"


@dataclass
class TranscodeCommand:
    """A fully resolved FFmpeg invocation for a single stage."""

    stage: StageKind
    argv: list[str]
    output_path: str
    duration_seconds: Optional[float] = None  # expected output duration (progress)
    frame: Optional[FrameSize] = None  # frame size of output_path

    def describe(self) -> str:
        return " ".join(shlex.quote(part) for part in self.argv)


def _even(value: float) -> int:
    """Round down to an even pixel count (minimum 2)."""
    # Tolerance keeps 239.99999999999997 from becoming 238
    return max(2, int(value + 1e-6) // 2 * 2)


def _num(value: float) -> str:
    return f"{value:.4g}"


class FilterGraphBuilder:
    """
    Builds stage commands for the FFmpeg transcoding engine.

    Holds no state beyond settings; the same instance is shared by every job.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Validation and planning
    # ------------------------------------------------------------------

    def validate(self, params: EditParameters, output_format: str = OutputFormat.MP4) -> None:
        """
        Check parameters that can be judged without knowing the frame.

        Raises:
            InvalidParameters: If any value is out of range or unsupported
        """
        for name in ("zoom", "brightness", "contrast", "saturation"):
            if not math.isfinite(getattr(params, name)):
                raise InvalidParameters(f"{name} must be a finite number")

        if params.zoom <= 0:
            raise InvalidParameters(f"zoom must be positive, got {params.zoom}")
        if not MIN_ZOOM <= params.zoom <= MAX_ZOOM:
            raise InvalidParameters(f"zoom must be between {MIN_ZOOM} and {MAX_ZOOM}, got {params.zoom}")
        if not -1.0 <= params.brightness <= 1.0:
            raise InvalidParameters(f"brightness must be between -1 and 1, got {params.brightness}")
        if not 0.0 <= params.contrast <= 3.0:
            raise InvalidParameters(f"contrast must be between 0 and 3, got {params.contrast}")
        if not 0.0 <= params.saturation <= 3.0:
            raise InvalidParameters(f"saturation must be between 0 and 3, got {params.saturation}")

        if params.aspect_ratio != AspectRatio.NATIVE and params.aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
            valid = [AspectRatio.NATIVE, *SUPPORTED_ASPECT_RATIOS]
            raise InvalidParameters(f"Unsupported aspect ratio: {params.aspect_ratio}. Valid ratios: {valid}")

        try:
            profile = get_format_profile(output_format)
        except ValueError as e:
            raise InvalidParameters(str(e)) from e

        if params.narration_script is not None:
            if not params.narration_script.strip():
                raise InvalidParameters("narration_script must not be blank")
            if not profile["has_audio"]:
                raise InvalidParameters(f"Narration requires an audio-capable format, not {output_format}")

    def plan(self, params: EditParameters, frame: FrameSize) -> list[StageKind]:
        """
        Decide which stages a job runs, in order.

        ``frame`` is the frame size produced by the extract stage.
        """
        if params.is_neutral():
            return [StageKind.EXTRACT]

        stages = [StageKind.EXTRACT]
        if params.needs_correction():
            filters, _ = self.correction_filters(params, frame)
            if filters:
                stages.append(StageKind.CORRECT)
            else:
                logger.debug(f"Correction is the identity for {frame}, skipping correct stage")
        if params.watermark:
            stages.append(StageKind.WATERMARK)
        if params.filler_footage:
            stages.append(StageKind.FILLER)
        if params.narration_script:
            stages.append(StageKind.NARRATION_MUX)
        return stages

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def extract_frame(self, source: FrameSize, quality_height: Optional[int], output_format: str) -> FrameSize:
        """Frame size written by the extract stage for a given source."""
        profile = get_format_profile(output_format)
        width, height = float(source.width), float(source.height)

        if quality_height and height > quality_height:
            width = width * quality_height / height
            height = float(quality_height)

        max_width = profile["max_width"]
        if max_width and width > max_width:
            height = height * max_width / width
            width = float(max_width)

        return FrameSize(_even(width), _even(height))

    def correction_filters(self, params: EditParameters, frame: FrameSize) -> tuple[list[str], FrameSize]:
        """
        Build the correct-stage filter chain for a frame.

        Returns:
            Tuple of (filters in crop/scale/pad/eq order, output frame size)

        Raises:
            InvalidParameters: If the crop window misses the frame entirely
        """
        width, height = frame.width, frame.height

        # 1. crop: window of frame/zoom, centred on the (offset) frame centre
        window_w = width / params.zoom
        window_h = height / params.zoom
        center_x = width / 2 + params.crop_x
        center_y = height / 2 + params.crop_y

        left = max(0.0, center_x - window_w / 2)
        right = min(float(width), center_x + window_w / 2)
        top = max(0.0, center_y - window_h / 2)
        bottom = min(float(height), center_y + window_h / 2)

        if right - left < 2 or bottom - top < 2:
            raise InvalidParameters(
                f"Crop offsets ({params.crop_x}, {params.crop_y}) at zoom {params.zoom} "
                f"move the visible window outside the {frame} frame"
            )

        visible_w = right - left
        visible_h = bottom - top
        crop_w = _even(visible_w)
        crop_h = _even(visible_h)
        crop_x = min(int(left + 1e-6), width - crop_w)
        crop_y = min(int(top + 1e-6), height - crop_h)

        filters: list[str] = []
        if (crop_w, crop_h) != (width, height):
            filters.append(f"crop={crop_w}:{crop_h}:{crop_x}:{crop_y}")

        # 2. scale: apply zoom, then fit inside the canvas
        canvas = self._canvas(params.aspect_ratio, frame)
        zoomed_w = visible_w * params.zoom
        zoomed_h = visible_h * params.zoom
        fit = min(1.0, canvas.width / zoomed_w, canvas.height / zoomed_h)
        scaled = FrameSize(
            min(canvas.width, _even(zoomed_w * fit)),
            min(canvas.height, _even(zoomed_h * fit)),
        )
        if (scaled.width, scaled.height) != (crop_w, crop_h):
            filters.append(f"scale={scaled.width}:{scaled.height}")

        # 3. pad: centre the content on the canvas
        if scaled != canvas:
            filters.append(f"pad={canvas.width}:{canvas.height}:(ow-iw)/2:(oh-ih)/2:color=black")

        # 4. eq: colour correction
        color = self._eq_filter(params)
        if color:
            filters.append(color)

        return filters, canvas

    def _canvas(self, aspect_ratio: str, frame: FrameSize) -> FrameSize:
        """Output canvas: the frame itself, or the requested ratio at the frame's height."""
        if aspect_ratio == AspectRatio.NATIVE:
            return frame
        if aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
            raise InvalidParameters(f"Unsupported aspect ratio: {aspect_ratio}")
        ratio_w, ratio_h = SUPPORTED_ASPECT_RATIOS[aspect_ratio]
        if ratio_w * frame.height == ratio_h * frame.width:
            return frame
        return FrameSize(_even(frame.height * ratio_w / ratio_h), frame.height)

    def _eq_filter(self, params: EditParameters) -> Optional[str]:
        parts = []
        if params.brightness != 0.0:
            parts.append(f"brightness={_num(params.brightness)}")
        if params.contrast != 1.0:
            parts.append(f"contrast={_num(params.contrast)}")
        if params.saturation != 1.0:
            parts.append(f"saturation={_num(params.saturation)}")
        if not parts:
            return None
        return "eq=" + ":".join(parts)

    def filler_frame(self, frame: FrameSize) -> FrameSize:
        """Size of the generated filler band for a primary frame."""
        return FrameSize(frame.width, _even(frame.height * self.settings.filler_height_ratio))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def build(self, kind: StageKind, params: EditParameters, context: StageContext) -> TranscodeCommand:
        """
        Build the command for one stage.

        Raises:
            InvalidParameters: If the stage cannot be built from these inputs
        """
        builders = {
            StageKind.EXTRACT: self._build_extract,
            StageKind.CORRECT: self._build_correct,
            StageKind.WATERMARK: self._build_watermark,
            StageKind.FILLER: self._build_filler,
            StageKind.NARRATION_MUX: self._build_narration_mux,
        }
        if context.frame is None and kind in (StageKind.EXTRACT, StageKind.CORRECT, StageKind.FILLER):
            raise InvalidParameters(f"The {kind.value} stage needs the input frame size")
        command = builders[kind](params, context)
        logger.debug(f"Built {kind.value} command: {command.describe()}")
        return command

    def _base_args(self) -> list[str]:
        return [self.settings.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-loglevel", "error"]

    def _tail_args(self, output_path: str) -> list[str]:
        # key=value progress stream on stdout, parsed by the runner
        return ["-progress", "pipe:1", "-nostats", output_path]

    def _video_args(self, profile: dict) -> list[str]:
        args = list(profile["video_codec"])
        if profile["id"] == OutputFormat.MP4:
            args += ["-preset", self.settings.ffmpeg_preset, "-crf", str(self.settings.ffmpeg_crf)]
        elif profile["id"] == OutputFormat.WEBM:
            args += ["-crf", str(self.settings.webm_crf)]
        return args

    def _audio_args(self, profile: dict, bitrate: Optional[str] = None) -> list[str]:
        if not profile["has_audio"]:
            return ["-an"]
        return [*profile["audio_codec"], "-b:a", bitrate or self.settings.audio_bitrate]

    def _audio_copy_args(self, profile: dict, input_index: int = 0) -> list[str]:
        if not profile["has_audio"]:
            return ["-an"]
        return ["-map", f"{input_index}:a?", "-c:a", "copy"]

    def _build_extract(self, params: EditParameters, context: StageContext) -> TranscodeCommand:
        if context.duration_seconds <= 0:
            raise InvalidParameters("Clip duration must be positive")

        profile = get_format_profile(context.output_format)
        out_frame = self.extract_frame(context.frame, context.quality_height, context.output_format)

        filters = []
        if profile["fps"]:
            filters.append(f"fps={profile['fps']}")
        if out_frame != context.frame:
            filters.append(f"scale={out_frame.width}:{out_frame.height}")

        argv = [
            *self._base_args(),
            "-ss", f"{context.start_seconds:.3f}",
            "-i", context.input_path,
            "-t", f"{context.duration_seconds:.3f}",
            "-map", "0:v:0",
        ]
        if profile["has_audio"]:
            argv += ["-map", "0:a:0?"]
        if filters:
            argv += ["-vf", ",".join(filters)]
        argv += [
            *self._video_args(profile),
            *self._audio_args(profile),
            *profile["container"],
            "-avoid_negative_ts", "make_zero",
            *self._tail_args(context.output_path),
        ]

        return TranscodeCommand(
            stage=StageKind.EXTRACT,
            argv=argv,
            output_path=context.output_path,
            duration_seconds=context.duration_seconds,
            frame=out_frame,
        )

    def _build_correct(self, params: EditParameters, context: StageContext) -> TranscodeCommand:
        filters, out_frame = self.correction_filters(params, context.frame)
        if not filters:
            raise InvalidParameters("Correction stage requested with identity parameters")

        profile = get_format_profile(context.output_format)
        argv = [
            *self._base_args(),
            "-i", context.input_path,
            "-map", "0:v:0",
            "-vf", ",".join(filters),
            *self._video_args(profile),
            *self._audio_copy_args(profile),
            *profile["container"],
            *self._tail_args(context.output_path),
        ]
        return TranscodeCommand(
            stage=StageKind.CORRECT,
            argv=argv,
            output_path=context.output_path,
            duration_seconds=context.duration_seconds,
            frame=out_frame,
        )

    def _build_watermark(self, params: EditParameters, context: StageContext) -> TranscodeCommand:
        if not context.secondary_path:
            raise InvalidParameters("Watermark stage requires a resolved watermark image")

        profile = get_format_profile(context.output_format)
        wm_w, wm_h = self.settings.watermark_size
        margin = self.settings.watermark_margin

        # Secondary input repeats forever; overlay ends with the primary stream
        if Path(context.secondary_path).suffix.lower() in STATIC_IMAGE_EXTENSIONS:
            secondary_input = ["-loop", "1", "-i", context.secondary_path]
        else:
            secondary_input = ["-ignore_loop", "0", "-i", context.secondary_path]

        filter_complex = (
            f"[1:v]scale={wm_w}:{wm_h}[wm];"
            f"[0:v][wm]overlay=W-w-{margin}:H-h-{margin}:shortest=1[v]"
        )
        argv = [
            *self._base_args(),
            "-i", context.input_path,
            *secondary_input,
            "-filter_complex", filter_complex,
            "-map", "[v]",
            *self._video_args(profile),
            *self._audio_copy_args(profile),
            *profile["container"],
            *self._tail_args(context.output_path),
        ]
        return TranscodeCommand(
            stage=StageKind.WATERMARK,
            argv=argv,
            output_path=context.output_path,
            duration_seconds=context.duration_seconds,
            frame=context.frame,
        )

    def _build_filler(self, params: EditParameters, context: StageContext) -> TranscodeCommand:
        if context.filler_pattern not in FILLER_PATTERNS:
            raise InvalidParameters(f"Unknown filler pattern: {context.filler_pattern}")

        profile = get_format_profile(context.output_format)
        band = self.filler_frame(context.frame)
        rate = profile["fps"] or self.settings.filler_frame_rate
        source = FILLER_PATTERNS[context.filler_pattern].format(w=band.width, h=band.height, r=rate)

        # Generated source is endless; vstack stops with the primary stream
        filter_complex = (
            "[0:v]format=yuv420p[main];"
            f"[1:v]{FILLER_EFFECT},format=yuv420p[filler];"
            "[main][filler]vstack=inputs=2:shortest=1[v]"
        )
        argv = [
            *self._base_args(),
            "-i", context.input_path,
            "-f", "lavfi", "-i", source,
            "-filter_complex", filter_complex,
            "-map", "[v]",
            *self._video_args(profile),
            *self._audio_copy_args(profile),
            *profile["container"],
            *self._tail_args(context.output_path),
        ]
        return TranscodeCommand(
            stage=StageKind.FILLER,
            argv=argv,
            output_path=context.output_path,
            duration_seconds=context.duration_seconds,
            frame=FrameSize(context.frame.width, context.frame.height + band.height),
        )

    def _build_narration_mux(self, params: EditParameters, context: StageContext) -> TranscodeCommand:
        if not context.secondary_path:
            raise InvalidParameters("Narration mux requires a narration audio file")

        profile = get_format_profile(context.output_format)
        if not profile["has_audio"]:
            raise InvalidParameters(f"Narration requires an audio-capable format, not {context.output_format}")

        # Video is stream-copied; narration is padded with silence and cut at the video's end
        argv = [
            *self._base_args(),
            "-i", context.input_path,
            "-i", context.secondary_path,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-af", "apad",
            *self._audio_args(profile, bitrate=self.settings.narration_audio_bitrate),
            "-shortest",
            *profile["container"],
            *self._tail_args(context.output_path),
        ]
        return TranscodeCommand(
            stage=StageKind.NARRATION_MUX,
            argv=argv,
            output_path=context.output_path,
            duration_seconds=context.duration_seconds,
            frame=context.frame,
        )


class InvalidParameters(ValueError):
    """Exception raised when edit parameters cannot produce a valid command."""
    pass
