"""
Watermark library - image files available for the watermark stage.
"""

import logging
import os
import random
from pathlib import Path
from typing import Optional

from clipforge.config import Settings, get_settings
from clipforge.services.filter_graph import InvalidParameters

logger = logging.getLogger(__name__)


WATERMARK_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp"}
RANDOM_WATERMARK = "random"


class WatermarkLibrary:
    """Lists and resolves watermark references against the configured directory."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.directory = Path(self.settings.watermark_directory)

    def list_watermarks(self) -> list[dict]:
        if not self.directory.is_dir():
            return []
        return [
            {"name": p.name, "path": str(p.resolve()), "size_bytes": p.stat().st_size}
            for p in sorted(self.directory.iterdir())
            if p.is_file() and p.suffix.lower() in WATERMARK_EXTENSIONS
        ]

    def resolve(self, reference: str) -> str:
        """
        Resolve a watermark reference to an absolute image path.

        A reference is a file name in the library, an absolute path, or
        ``"random"``.

        Raises:
            InvalidParameters: If the reference does not name a usable image
        """
        if reference == RANDOM_WATERMARK:
            available = self.list_watermarks()
            if not available:
                raise InvalidParameters(f"No watermarks available in {self.directory}")
            choice = random.choice(available)
            logger.info(f"Picked random watermark: {choice['name']}")
            return choice["path"]

        if os.path.isabs(reference):
            path = Path(reference)
        else:
            # Names only; no escaping the library directory
            if Path(reference).name != reference:
                raise InvalidParameters(f"Invalid watermark name: {reference}")
            path = self.directory / reference

        if path.suffix.lower() not in WATERMARK_EXTENSIONS:
            raise InvalidParameters(f"Unsupported watermark type: {path.suffix or reference}")
        if not path.is_file():
            raise InvalidParameters(f"Watermark not found: {reference}")
        return str(path.resolve())
