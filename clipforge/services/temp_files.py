"""
Temp File Manager - owns every intermediate file a job creates.

Each job gets its own directory under the configured temp directory. Paths are
tracked per job so a failed or cancelled job can be cleaned up completely, and
the final artifact is moved out (promoted) before the job directory goes away.
"""

import logging
import os
import shutil
import threading
import uuid
from pathlib import Path
from typing import Optional

from clipforge.config import Settings, get_settings

logger = logging.getLogger(__name__)


class TempFileManager:
    """Allocates, tracks and releases intermediate files per job."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.root = Path(self.settings.temp_directory)
        self._tracked: dict[str, set[Path]] = {}
        self._lock = threading.Lock()

    def job_dir(self, job_id: str) -> Path:
        return self.root / job_id

    def allocate(self, job_id: str, stage: str, suffix: str) -> str:
        """
        Reserve a unique path for a stage output and start tracking it.

        The file itself is not created; the stage writes it.
        """
        directory = self.job_dir(job_id)
        directory.mkdir(parents=True, exist_ok=True)
        if suffix and not suffix.startswith("."):
            suffix = f".{suffix}"
        path = directory / f"{stage}_{uuid.uuid4().hex[:8]}{suffix}"
        self.track(job_id, str(path))
        return str(path)

    def track(self, job_id: str, path: str) -> None:
        """Track a file created elsewhere (e.g. a downloaded source)."""
        with self._lock:
            self._tracked.setdefault(job_id, set()).add(Path(path))

    def tracked(self, job_id: str) -> list[str]:
        with self._lock:
            return sorted(str(p) for p in self._tracked.get(job_id, ()))

    def discard(self, job_id: str, path: str) -> None:
        """Delete one tracked intermediate. Untracked paths are left alone."""
        target = Path(path)
        with self._lock:
            paths = self._tracked.get(job_id)
            if not paths or target not in paths:
                logger.debug(f"Refusing to discard untracked path for job {job_id}: {path}")
                return
            paths.discard(target)
        self._unlink(target)

    def promote(self, job_id: str, path: str, destination: str) -> str:
        """
        Move a tracked file out of the job's temp space.

        Once promoted the file is no longer removed by ``release_all``.
        """
        source = Path(path)
        with self._lock:
            paths = self._tracked.get(job_id)
            if paths is not None:
                paths.discard(source)

        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        logger.info(f"Promoted artifact for job {job_id}: {target}")
        return str(target)

    def release_all(self, job_id: str) -> None:
        """
        Delete every tracked file and the job directory.

        Idempotent; missing files are ignored.
        """
        with self._lock:
            paths = self._tracked.pop(job_id, set())

        for path in paths:
            self._unlink(path)

        directory = self.job_dir(job_id)
        if directory.exists():
            shutil.rmtree(directory, ignore_errors=True)
            logger.debug(f"Removed temp directory for job {job_id}")

    def _unlink(self, path: Path) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temp file {path}: {e}")
