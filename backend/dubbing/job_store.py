from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from dubbing.background import PeriodicSweeper
from dubbing.errors import JobNotFoundError


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass
class LanguageResult:
    status: str = STATUS_PENDING
    video_url: str = ""
    translated_text: str = ""
    progress: int = 0
    error: str = ""
    processed_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class JobRecord:
    job_id: str
    status: str = STATUS_PROCESSING
    results: dict[str, LanguageResult] = field(default_factory=dict)
    target_languages: list[str] = field(default_factory=list)
    source_language: str = ""
    webhook_url: str = ""
    created_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def first_error(self) -> str:
        for result in self.results.values():
            if result.error:
                return result.error
        return ""


@dataclass
class _StoreEntry:
    record: JobRecord
    created_at: datetime


class JobStore:
    """In-memory job records with TTL expiry.

    All jobs share one lock. ``update_safely`` is the only mutation path: its
    mutator runs while the lock is held, so it must stay short and never do I/O.
    Readers get deep copies, never the live record.
    """

    def __init__(self, ttl_seconds: float = 24 * 3600, *, now_fn: Callable[[], datetime] = utc_now):
        self.ttl_seconds = float(ttl_seconds or 0)
        self._now_fn = now_fn
        self._jobs: dict[str, _StoreEntry] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicSweeper("job-store-sweeper", self.ttl_seconds / 2, self.cleanup_expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _expired_locked(self, entry: _StoreEntry, now: datetime) -> bool:
        if self.ttl_seconds <= 0:
            return False
        return (now - entry.created_at).total_seconds() > self.ttl_seconds

    def create(self, job_id: str, record: JobRecord) -> JobRecord:
        now = self._now_fn()
        stored = copy.deepcopy(record)
        stored.job_id = job_id
        if stored.created_at is None:
            stored.created_at = now
        stored.updated_at = max(now, stored.created_at)
        with self._lock:
            if job_id in self._jobs:
                logger.warning("[DEBUG] job id collision, overwriting job_id=%s", job_id)
            self._jobs[job_id] = _StoreEntry(record=stored, created_at=stored.created_at)
            return copy.deepcopy(stored)

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            entry = self._jobs.get(job_id)
            if entry is None or self._expired_locked(entry, self._now_fn()):
                raise JobNotFoundError(job_id)
            return copy.deepcopy(entry.record)

    def update_safely(self, job_id: str, mutator: Callable[[JobRecord], T]) -> T:
        """Apply ``mutator`` to the live record under the store lock and return its result."""
        with self._lock:
            now = self._now_fn()
            entry = self._jobs.get(job_id)
            if entry is None or self._expired_locked(entry, now):
                raise JobNotFoundError(job_id)
            outcome = mutator(entry.record)
            if now > entry.record.updated_at:
                entry.record.updated_at = now
            return outcome

    def cleanup_expired(self) -> int:
        if self.ttl_seconds <= 0:
            return 0
        with self._lock:
            now = self._now_fn()
            expired = [job_id for job_id, entry in self._jobs.items() if self._expired_locked(entry, now)]
            for job_id in expired:
                self._jobs.pop(job_id, None)
        for job_id in expired:
            logger.info("[DEBUG] removed expired job job_id=%s", job_id)
        return len(expired)

    def start(self) -> bool:
        return self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()


def serialize_result(result: LanguageResult) -> dict[str, Any]:
    return {
        "status": result.status,
        "video_url": result.video_url or None,
        "translated_text": result.translated_text or None,
        "progress": max(0, min(100, int(result.progress or 0))),
        "error": result.error or None,
        "processed_at": _iso(result.processed_at),
    }


def serialize_status(record: JobRecord) -> dict[str, Any]:
    return {
        "job_id": record.job_id,
        "status": record.status,
        "results": {language: serialize_result(result) for language, result in record.results.items()},
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }
