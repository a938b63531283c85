"""
Source Fetcher - resolves a source reference to a local, probed media file.

Supported sources:
- YouTube URLs (via yt-dlp, format chosen by the requested quality)
- S3 URLs or keys (via boto3)
- Direct video URLs (via httpx streaming)
- Local files (absolute paths or file:// URLs, used in place)

The orchestrator consumes this through the ``SourceFetcher`` protocol, so
tests and alternative deployments can inject their own implementation.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Literal, Optional, Protocol
from urllib.parse import unquote, urlparse

import boto3
import httpx
import yt_dlp
from botocore.exceptions import BotoCoreError, ClientError

from clipforge.config import Settings, get_quality_height, get_settings

logger = logging.getLogger(__name__)


SourceType = Literal["youtube", "s3", "direct_url", "local"]


@dataclass
class MediaInfo:
    """Probed properties of a media file."""

    duration_seconds: float
    width: int
    height: int
    has_audio: bool
    fps: float = 30.0


@dataclass
class FetchedSource:
    """A source resolved to a local file."""

    path: str
    info: MediaInfo
    source_type: SourceType
    owned: bool  # True when the file was downloaded for this job and may be deleted


class SourceFetcher(Protocol):
    """Capability used by the orchestrator before the first stage."""

    async def fetch(self, source: str, quality: str, destination_dir: str) -> FetchedSource:
        ...


def _parse_frame_rate(value: Optional[str]) -> float:
    if not value:
        return 30.0
    if "/" in value:
        num, den = value.split("/", 1)
        return float(num) / float(den) if float(den) != 0 else 30.0
    return float(value)


async def probe_media(path: str, settings: Optional[Settings] = None) -> MediaInfo:
    """
    Probe a media file with ffprobe.

    Raises:
        SourceUnavailable: If ffprobe fails or the file has no video stream
    """
    settings = settings or get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        path,
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SourceUnavailable(f"Could not run ffprobe: {e}") from e

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise SourceUnavailable(f"ffprobe failed for {path}: {stderr.decode(errors='replace')[:200]}")

    try:
        info = json.loads(stdout.decode())
        streams = info.get("streams", [])
        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video_stream is None:
            raise SourceUnavailable(f"No video stream in {path}")

        format_info = info.get("format", {})
        duration = float(format_info.get("duration") or video_stream.get("duration") or 0)
        return MediaInfo(
            duration_seconds=duration,
            width=int(video_stream["width"]),
            height=int(video_stream["height"]),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
            fps=_parse_frame_rate(video_stream.get("r_frame_rate")),
        )
    except (json.JSONDecodeError, KeyError, ValueError, ZeroDivisionError) as e:
        raise SourceUnavailable(f"Failed to parse ffprobe output for {path}: {e}") from e


class MediaSourceFetcher:
    """Default ``SourceFetcher`` covering YouTube, S3, direct URLs and local files."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._s3_client = None
        logger.info(f"MediaSourceFetcher initialized with yt-dlp {yt_dlp.version.__version__}")

    @property
    def s3_client(self):
        """Lazy-initialize S3 client."""
        if self._s3_client is None:
            config = {"region_name": self.settings.aws_region}
            if self.settings.aws_access_key_id and self.settings.aws_secret_access_key:
                config["aws_access_key_id"] = self.settings.aws_access_key_id
                config["aws_secret_access_key"] = self.settings.aws_secret_access_key
            self._s3_client = boto3.client("s3", **config)
        return self._s3_client

    def detect_source_type(self, reference: str) -> SourceType:
        if reference.startswith("s3://"):
            return "s3"
        if reference.startswith("file://") or os.path.isabs(reference):
            return "local"
        if not reference.startswith("http"):
            return "s3"  # bare key in the default bucket

        hostname = urlparse(reference).hostname or ""
        if ".s3." in hostname or hostname.startswith("s3.") or hostname == "s3.amazonaws.com":
            return "s3"
        if hostname.endswith("youtube.com") or hostname == "youtu.be":
            return "youtube"
        return "direct_url"

    async def fetch(self, source: str, quality: str, destination_dir: str) -> FetchedSource:
        """
        Resolve a source reference to a probed local file.

        Raises:
            SourceUnavailable: If the source cannot be fetched or probed,
                the quality is not available, or it is too long
        """
        source_type = self.detect_source_type(source)
        logger.info(f"Fetching {source_type} source: {source[:100]}")

        if source_type == "local":
            path = self._resolve_local(source)
            owned = False
        else:
            os.makedirs(destination_dir, exist_ok=True)
            output_path = os.path.join(destination_dir, "source.mp4")
            if source_type == "youtube":
                path = await self._download_from_youtube(source, quality, output_path)
            elif source_type == "s3":
                path = await self._download_from_s3(source, output_path)
            else:
                path = await self._download_direct_url(source, output_path)
            owned = True

        info = await probe_media(path, self.settings)
        if info.duration_seconds > self.settings.max_source_duration_seconds:
            raise SourceUnavailable(
                f"Source duration ({info.duration_seconds:.0f}s) exceeds maximum "
                f"allowed duration ({self.settings.max_source_duration_seconds}s)"
            )

        # Extraction only scales down
        required_height = get_quality_height(quality)
        if info.height < required_height:
            raise SourceUnavailable(
                f"Requested quality {quality} is not available: source is {info.width}x{info.height}"
            )

        logger.info(
            f"Source ready: {info.width}x{info.height} @ {info.fps:.2f}fps, "
            f"{info.duration_seconds:.1f}s ({os.path.getsize(path) / 1024 / 1024:.1f} MB)"
        )
        return FetchedSource(path=path, info=info, source_type=source_type, owned=owned)

    def _resolve_local(self, source: str) -> str:
        path = unquote(urlparse(source).path) if source.startswith("file://") else source
        if not os.path.isfile(path):
            raise SourceUnavailable(f"Local source not found: {path}")
        return path

    def _format_selector(self, quality: str) -> str:
        height = get_quality_height(quality)
        return f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"

    async def _download_from_youtube(self, url: str, quality: str, output_path: str) -> str:
        opts = {
            "format": self._format_selector(quality),
            "outtmpl": output_path,
            "merge_output_format": "mp4",
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "retries": 10,
            "fragment_retries": 10,
            "force_overwrites": True,
        }
        if self.settings.ytdlp_proxy:
            opts["proxy"] = self.settings.ytdlp_proxy

        def do_download():
            with yt_dlp.YoutubeDL(opts) as ydl:
                ydl.download([url])

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, do_download)
        except yt_dlp.utils.DownloadError as e:
            raise SourceUnavailable(f"Failed to download {url} at {quality}: {e}") from e

        # yt-dlp may append the merged container extension
        for candidate in (output_path, f"{output_path}.mp4", f"{output_path}.webm", f"{output_path}.mkv"):
            if os.path.isfile(candidate):
                if candidate != output_path:
                    os.rename(candidate, output_path)
                return output_path
        raise SourceUnavailable(f"Download completed but output file not found: {output_path}")

    def _parse_s3_url(self, url_or_key: str) -> tuple[str, str]:
        """
        Parse S3 URL or key into bucket and key.

        Supports formats:
        - s3://bucket/key
        - https://bucket.s3.region.amazonaws.com/key
        - https://s3.region.amazonaws.com/bucket/key
        - just-a-key (uses default bucket)
        """
        if url_or_key.startswith("s3://"):
            parts = url_or_key[5:].split("/", 1)
            if len(parts) != 2 or not parts[1]:
                raise SourceUnavailable(f"Invalid S3 URL: {url_or_key}")
            return parts[0], parts[1]

        if not url_or_key.startswith("http"):
            return self.settings.s3_bucket, url_or_key

        parsed = urlparse(url_or_key)
        if parsed.hostname and ".s3." in parsed.hostname:
            return parsed.hostname.split(".s3.")[0], parsed.path.lstrip("/")

        if parsed.hostname and (parsed.hostname.startswith("s3.") or parsed.hostname == "s3.amazonaws.com"):
            path_parts = parsed.path.lstrip("/").split("/", 1)
            if len(path_parts) != 2:
                raise SourceUnavailable(f"Invalid S3 URL: {url_or_key}")
            return path_parts[0], path_parts[1]

        raise SourceUnavailable(f"Unable to parse S3 URL: {url_or_key}")

    async def _download_from_s3(self, url_or_key: str, output_path: str) -> str:
        bucket, key = self._parse_s3_url(url_or_key)
        logger.info(f"Downloading source from S3: s3://{bucket}/{key}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.s3_client.download_file(bucket, key, output_path),
            )
        except (ClientError, BotoCoreError) as e:
            raise SourceUnavailable(f"Failed to download from S3: {e}") from e

        if not os.path.isfile(output_path):
            raise SourceUnavailable(f"S3 download completed but file not found: {output_path}")
        return output_path

    async def _download_direct_url(self, url: str, output_path: str) -> str:
        logger.info(f"Downloading source from direct URL: {url}")
        try:
            async with httpx.AsyncClient(timeout=300, follow_redirects=True) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(output_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Failed to download {url}: {e}") from e

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise SourceUnavailable(f"Direct download produced no data: {url}")
        return output_path


class SourceUnavailable(Exception):
    """Exception raised when a source reference cannot be resolved."""
    pass
