from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path


logger = logging.getLogger(__name__)


class TempArtifacts:
    """Temporary files created while one job is processed.

    Stages call ``track`` after each successful creation; ``cleanup`` runs once on
    every exit path and removes everything tracked plus the job work directory.
    """

    def __init__(self, work_dir: Path | str):
        self.work_dir = Path(work_dir)
        self._paths: list[Path] = []
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "TempArtifacts":
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def track(self, path: Path | str) -> Path:
        target = Path(path)
        with self._lock:
            self._paths.append(target)
        return target

    def tracked(self) -> list[Path]:
        with self._lock:
            return list(self._paths)

    def cleanup(self) -> int:
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
            paths = list(self._paths)
            self._paths.clear()
        removed = 0
        for path in paths:
            try:
                if path.is_file():
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("[DEBUG] temp artifact cleanup failed path=%s error=%s", path, exc)
        shutil.rmtree(self.work_dir, ignore_errors=True)
        logger.debug("[DEBUG] temp artifacts cleaned work_dir=%s removed=%s", self.work_dir, removed)
        return removed
