"""
Speech Synthesizer - turns a narration script into an audio file.

The default implementation calls an OpenAI-compatible ``/audio/speech``
endpoint. Anything with an async ``synthesize(script, output_path)`` method
can be injected instead.
"""

import logging
import os
from typing import Optional, Protocol

import httpx

from clipforge.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SpeechSynthesizer(Protocol):
    output_suffix: str  # audio file extension written by synthesize()

    async def synthesize(self, script: str, output_path: str) -> str:
        """Write narration audio for ``script`` to ``output_path`` and return it."""
        ...


class OpenAISpeechSynthesizer:
    """Text-to-speech over HTTP with an OpenAI-compatible API."""

    def __init__(self, settings: Optional[Settings] = None, timeout_seconds: float = 120.0):
        self.settings = settings or get_settings()
        self.timeout = timeout_seconds

    @property
    def output_suffix(self) -> str:
        return ".mp3"

    async def synthesize(self, script: str, output_path: str) -> str:
        """
        Synthesize narration audio.

        Raises:
            NarrationSynthesisError: If the API is not configured or the request fails
        """
        if not self.settings.tts_api_key:
            raise NarrationSynthesisError("TTS_API_KEY not configured")

        url = f"{self.settings.tts_base_url.rstrip('/')}/audio/speech"
        payload = {
            "model": self.settings.tts_model,
            "voice": self.settings.tts_voice,
            "input": script,
            "response_format": "mp3",
        }
        headers = {"Authorization": f"Bearer {self.settings.tts_api_key}"}

        logger.info(f"Synthesizing narration ({len(script)} chars) with {self.settings.tts_model}/{self.settings.tts_voice}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as response:
                    if response.status_code >= 300:
                        body = (await response.aread()).decode(errors="replace")
                        raise NarrationSynthesisError(f"TTS request failed: HTTP {response.status_code}: {body[:200]}")
                    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
                    with open(output_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise NarrationSynthesisError(f"TTS request failed: {e}") from e

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise NarrationSynthesisError("TTS response contained no audio")
        return output_path


class NarrationSynthesisError(Exception):
    """Exception raised when narration audio cannot be produced."""
    pass
