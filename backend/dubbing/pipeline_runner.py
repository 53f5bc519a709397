from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from dubbing import metrics
from dubbing.artifacts import TempArtifacts
from dubbing.config import Settings
from dubbing.errors import CapacityExceededError, JobNotFoundError, PipelineError
from dubbing.job_store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    JobRecord,
    JobStore,
    LanguageResult,
    utc_now,
)
from dubbing.notifier import WebhookNotifier
from dubbing.processing_context import ProcessingContext
from dubbing.schemas import TranslateRequest
from dubbing.storage import output_key


logger = logging.getLogger(__name__)

FATAL_ERROR_KEY = "error"
AUTO_SOURCE_LANGUAGE = "auto"

_PERMIT_POLL_SECONDS = 0.2
_FANIN_POLL_SECONDS = 0.2

PROGRESS_STARTED = 0
PROGRESS_TRANSLATING = 20
PROGRESS_TRANSLATED = 40
PROGRESS_SYNTHESIZED = 60
PROGRESS_REMUXED = 80
PROGRESS_UPLOADED = 100


@dataclass
class PipelineCollaborators:
    storage: Any
    models: Any
    media: Any

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineCollaborators":
        from dubbing.media import FfmpegMedia
        from dubbing.model_client import OpenAIModelClient
        from dubbing.storage import SourceStorage

        return cls(storage=SourceStorage(settings), models=OpenAIModelClient(settings), media=FfmpegMedia())


@dataclass(frozen=True)
class PreparedSource:
    video_path: str
    duration_seconds: float
    text: str
    source_language: str


class _FanInCounter:
    def __init__(self, total: int):
        self._remaining = total
        self._lock = threading.Lock()
        self.done = threading.Event()
        if total <= 0:
            self.done.set()

    def finish_one(self) -> None:
        with self._lock:
            self._remaining -= 1
            if self._remaining <= 0:
                self.done.set()


def describe_failure(stage: str, exc: BaseException, context: ProcessingContext) -> str:
    if isinstance(exc, PipelineError) and (exc.cancelled or context.is_cancelled()):
        return f"{stage} cancelled: {context.reason or exc.message}"
    if isinstance(exc, PipelineError):
        return f"{stage} failed: {exc.message}"
    return f"{stage} failed: {exc}"


class DubbingCoordinator:
    """Drives jobs from acceptance to a terminal status.

    Each job runs on its own thread with a fresh ``ProcessingContext``; its target
    languages fan out onto per-language threads gated by a semaphore of
    ``MAX_CONCURRENT_TRANSLATIONS`` permits. All job state is written through
    ``JobStore.update_safely`` and terminal LanguageResults are never rewritten,
    so a unit abandoned after the grace period cannot change a finalized job.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        collaborators: PipelineCollaborators,
        notifier: WebhookNotifier | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.collaborators = collaborators
        self.notifier = notifier
        self._clock = clock
        self._lock = threading.Lock()
        self._contexts: dict[str, ProcessingContext] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._started_at: dict[str, float] = {}

    @property
    def active_jobs(self) -> int:
        with self._lock:
            return len(self._contexts)

    def submit(self, request: TranslateRequest) -> str:
        job_id = str(uuid.uuid4())
        context = ProcessingContext(self.settings.request_timeout_seconds, clock=self._clock)
        with self._lock:
            if len(self._contexts) >= self.settings.max_concurrent_jobs:
                raise CapacityExceededError(self.settings.max_concurrent_jobs)
            self._contexts[job_id] = context
            self._started_at[job_id] = self._clock()
        try:
            self.store.create(
                job_id,
                JobRecord(
                    job_id=job_id,
                    status=STATUS_PROCESSING,
                    target_languages=list(request.target_languages),
                    source_language=str(request.source_language or ""),
                    webhook_url=str(request.webhook_url or self.settings.webhook_url or ""),
                ),
            )
            thread = threading.Thread(
                target=self.run_job,
                args=(job_id, request, context),
                daemon=True,
                name=f"dubbing-job-{job_id[:8]}",
            )
            with self._lock:
                self._threads[job_id] = thread
            thread.start()
        except BaseException:
            self._release(job_id)
            raise
        logger.info(
            "[DEBUG] job accepted job_id=%s languages=%s source=%s",
            job_id,
            ",".join(request.target_languages),
            request.source_language or "-",
        )
        return job_id

    def cancel(self, job_id: str, reason: str = "cancelled by request") -> bool:
        """Cancel a running job. Raises JobNotFoundError for unknown ids; False if not running."""
        with self._lock:
            context = self._contexts.get(job_id)
        if context is None:
            self.store.get(job_id)
            return False
        cancelled = context.cancel(reason)
        if cancelled:
            logger.info("[DEBUG] job cancel requested job_id=%s reason=%s", job_id, reason)
        return cancelled

    def shutdown(self, reason: str = "server shutting down") -> None:
        with self._lock:
            contexts = list(self._contexts.values())
        for context in contexts:
            context.cancel(reason)

    def join(self, job_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._contexts.pop(job_id, None)
            self._threads.pop(job_id, None)
            self._started_at.pop(job_id, None)

    def run_job(self, job_id: str, request: TranslateRequest, context: ProcessingContext) -> None:
        work_dir = Path(self.settings.runtime_dir) / "jobs" / job_id
        try:
            with TempArtifacts(work_dir) as artifacts:
                try:
                    prepared = self._prepare(job_id, request, context, artifacts)
                except Exception as exc:
                    stage = exc.stage if isinstance(exc, PipelineError) else "preprocess"
                    if not isinstance(exc, PipelineError):
                        logger.exception("[DEBUG] unexpected preprocessing error job_id=%s", job_id)
                    self._fail_job(job_id, describe_failure(stage, exc, context))
                    return
                self._fan_out(job_id, request, prepared, context, artifacts)
        finally:
            self._release(job_id)

    def _prepare(
        self,
        job_id: str,
        request: TranslateRequest,
        context: ProcessingContext,
        artifacts: TempArtifacts,
    ) -> PreparedSource:
        storage = self.collaborators.storage
        media = self.collaborators.media
        models = self.collaborators.models
        should_cancel = context.is_cancelled

        context.raise_if_cancelled("download")
        video_path = storage.download(request.video_url, artifacts.work_dir, should_cancel=should_cancel)
        artifacts.track(video_path)
        size_bytes = Path(video_path).stat().st_size
        if size_bytes > self.settings.max_video_size_bytes:
            raise PipelineError(
                stage="download",
                code="video_too_large",
                message=f"video exceeds maximum size of {self.settings.max_video_size_mb} MB",
                detail=f"size_bytes={size_bytes}",
            )

        context.raise_if_cancelled("probe")
        duration = float(media.probe_duration(video_path, should_cancel=should_cancel))
        if duration > self.settings.max_video_duration_seconds:
            raise PipelineError(
                stage="probe",
                code="video_too_long",
                message=(
                    f"video duration {duration:.1f}s exceeds maximum of "
                    f"{self.settings.max_video_duration_seconds:g}s"
                ),
            )

        context.raise_if_cancelled("extract_audio")
        audio_path = media.extract_audio(video_path, artifacts.work_dir / "source_audio.wav", should_cancel=should_cancel)
        artifacts.track(audio_path)

        context.raise_if_cancelled("transcribe")
        transcription = models.transcribe(audio_path, request.source_language)
        text = str(transcription.text or "").strip()
        if not text:
            raise PipelineError(stage="transcribe", code="empty_transcription", message="transcription produced no text")
        source_language = (
            str(request.source_language or "").strip()
            or str(transcription.language or "").strip()
            or str(self.settings.default_source_language or "").strip()
            or AUTO_SOURCE_LANGUAGE
        )

        def _set_source(record: JobRecord) -> None:
            record.source_language = source_language

        self.store.update_safely(job_id, _set_source)
        logger.info(
            "[DEBUG] preprocessing done job_id=%s duration=%.2fs chars=%s source=%s",
            job_id,
            duration,
            len(text),
            source_language,
        )
        return PreparedSource(video_path=video_path, duration_seconds=duration, text=text, source_language=source_language)

    def _fan_out(
        self,
        job_id: str,
        request: TranslateRequest,
        prepared: PreparedSource,
        context: ProcessingContext,
        artifacts: TempArtifacts,
    ) -> None:
        languages = list(request.target_languages)

        def _seed(record: JobRecord) -> None:
            for language in languages:
                record.results.setdefault(language, LanguageResult())

        self._safe_update(job_id, _seed)

        permits = threading.BoundedSemaphore(self.settings.max_concurrent_translations)
        counter = _FanInCounter(len(languages))
        for language in languages:
            thread = threading.Thread(
                target=self._run_language_unit,
                args=(job_id, language, prepared, context, permits, artifacts, counter),
                daemon=True,
                name=f"dubbing-{job_id[:8]}-{language}",
            )
            thread.start()

        while not counter.done.wait(_FANIN_POLL_SECONDS):
            if context.is_cancelled():
                break
        cause = ""
        if not counter.done.is_set():
            cause = context.reason
            logger.warning(
                "[DEBUG] fan-in cut short job_id=%s reason=%s grace=%.1fs",
                job_id,
                cause,
                self.settings.fanout_grace_seconds,
            )
            if not counter.done.wait(max(0.0, self.settings.fanout_grace_seconds)):
                logger.warning("[DEBUG] abandoning unfinished language units job_id=%s", job_id)
        self._finalize(job_id, languages, cause or context.reason or "unit exited without a result")

    def _run_language_unit(
        self,
        job_id: str,
        language: str,
        prepared: PreparedSource,
        context: ProcessingContext,
        permits: threading.BoundedSemaphore,
        artifacts: TempArtifacts,
        counter: _FanInCounter,
    ) -> None:
        try:
            while not permits.acquire(timeout=_PERMIT_POLL_SECONDS):
                if context.is_cancelled():
                    self._record_failure(job_id, language, f"processing cancelled: {context.reason}")
                    return
            try:
                if context.is_cancelled():
                    self._record_failure(job_id, language, f"processing cancelled: {context.reason}")
                    return
                self._process_language(job_id, language, prepared, context, artifacts)
            finally:
                permits.release()
        finally:
            counter.finish_one()

    def _process_language(
        self,
        job_id: str,
        language: str,
        prepared: PreparedSource,
        context: ProcessingContext,
        artifacts: TempArtifacts,
    ) -> None:
        storage = self.collaborators.storage
        media = self.collaborators.media
        models = self.collaborators.models
        should_cancel = context.is_cancelled
        stage = "translate"
        try:
            self._record_progress(job_id, language, PROGRESS_STARTED)
            context.raise_if_cancelled(stage)
            self._record_progress(job_id, language, PROGRESS_TRANSLATING)
            translated = models.translate(prepared.text, prepared.source_language, language)
            self._record_progress(job_id, language, PROGRESS_TRANSLATED, translated_text=translated)

            stage = "synthesize"
            context.raise_if_cancelled(stage)
            speech_path = models.synthesize(
                translated,
                language,
                prepared.duration_seconds,
                output_path=artifacts.work_dir / f"speech_{language}.mp3",
                should_cancel=should_cancel,
            )
            artifacts.track(speech_path)
            self._record_progress(job_id, language, PROGRESS_SYNTHESIZED)

            stage = "remux"
            context.raise_if_cancelled(stage)
            dubbed_path = media.remux(
                prepared.video_path,
                speech_path,
                artifacts.work_dir / f"dubbed_{language}.mp4",
                should_cancel=should_cancel,
            )
            artifacts.track(dubbed_path)
            self._record_progress(job_id, language, PROGRESS_REMUXED)

            stage = "upload"
            context.raise_if_cancelled(stage)
            video_url = storage.upload(output_key(job_id, language), dubbed_path, should_cancel=should_cancel)
        except Exception as exc:
            if not isinstance(exc, PipelineError):
                logger.exception("[DEBUG] unexpected language error job_id=%s language=%s stage=%s", job_id, language, stage)
            message = describe_failure(stage, exc, context)
            logger.warning("[DEBUG] language failed job_id=%s language=%s error=%s", job_id, language, message)
            self._record_failure(job_id, language, message)
            return
        self._record_success(job_id, language, video_url, translated)

    def _safe_update(self, job_id: str, mutator: Callable[[JobRecord], Any]) -> Any:
        try:
            return self.store.update_safely(job_id, mutator)
        except JobNotFoundError:
            logger.warning("[DEBUG] job vanished before update job_id=%s", job_id)
            return None

    def _update_language(self, job_id: str, language: str, apply: Callable[[LanguageResult], None]) -> bool:
        def _mutate(record: JobRecord) -> bool:
            if record.terminal:
                return False
            result = record.results.setdefault(language, LanguageResult())
            if result.terminal:
                return False
            apply(result)
            return True

        return bool(self._safe_update(job_id, _mutate))

    def _record_progress(self, job_id: str, language: str, progress: int, *, translated_text: str | None = None) -> None:
        def _apply(result: LanguageResult) -> None:
            result.status = STATUS_PROCESSING
            result.progress = progress
            if translated_text is not None:
                result.translated_text = translated_text

        self._update_language(job_id, language, _apply)

    def _record_success(self, job_id: str, language: str, video_url: str, translated_text: str) -> None:
        def _apply(result: LanguageResult) -> None:
            result.status = STATUS_COMPLETED
            result.video_url = video_url
            result.translated_text = translated_text
            result.progress = PROGRESS_UPLOADED
            result.error = ""
            result.processed_at = utc_now()

        if self._update_language(job_id, language, _apply):
            metrics.LANGUAGE_RESULTS_TOTAL.labels(status=STATUS_COMPLETED).inc()
            logger.info("[DEBUG] language completed job_id=%s language=%s url=%s", job_id, language, video_url)

    def _record_failure(self, job_id: str, language: str, message: str) -> None:
        def _apply(result: LanguageResult) -> None:
            result.status = STATUS_FAILED
            result.error = message
            result.progress = 0
            result.video_url = ""
            result.processed_at = utc_now()

        if self._update_language(job_id, language, _apply):
            metrics.LANGUAGE_RESULTS_TOTAL.labels(status=STATUS_FAILED).inc()

    def _fail_job(self, job_id: str, message: str) -> None:
        logger.error("[DEBUG] job failed during preprocessing job_id=%s error=%s", job_id, message)

        def _mutate(record: JobRecord) -> JobRecord | None:
            if record.terminal:
                return None
            now = utc_now()
            if not record.results:
                record.results[FATAL_ERROR_KEY] = LanguageResult(status=STATUS_FAILED, error=message, processed_at=now)
            for result in record.results.values():
                if not result.terminal:
                    result.status = STATUS_FAILED
                    result.error = message
                    result.progress = 0
                    result.processed_at = now
            record.status = STATUS_FAILED
            return copy.deepcopy(record)

        snapshot = self._safe_update(job_id, _mutate)
        if snapshot is not None:
            self._on_terminal(snapshot)

    def _finalize(self, job_id: str, languages: list[str], cause: str) -> None:
        def _mutate(record: JobRecord) -> JobRecord | None:
            if record.terminal:
                return None
            now = utc_now()
            forced = 0
            for language in languages:
                result = record.results.setdefault(language, LanguageResult())
                if not result.terminal:
                    result.status = STATUS_FAILED
                    result.error = f"processing cancelled: {cause}"
                    result.progress = 0
                    result.video_url = ""
                    result.processed_at = now
                    forced += 1
            if forced:
                metrics.LANGUAGE_RESULTS_TOTAL.labels(status=STATUS_FAILED).inc(forced)
            all_completed = all(result.status == STATUS_COMPLETED for result in record.results.values())
            record.status = STATUS_COMPLETED if all_completed else STATUS_FAILED
            return copy.deepcopy(record)

        snapshot = self._safe_update(job_id, _mutate)
        if snapshot is not None:
            self._on_terminal(snapshot)

    def _on_terminal(self, snapshot: JobRecord) -> None:
        metrics.JOBS_TOTAL.labels(status=snapshot.status).inc()
        with self._lock:
            started_at = self._started_at.get(snapshot.job_id)
        if started_at is not None:
            metrics.JOB_DURATION.observe(max(0.0, self._clock() - started_at))
        logger.info(
            "[DEBUG] job finished job_id=%s status=%s languages=%s",
            snapshot.job_id,
            snapshot.status,
            ",".join(f"{language}:{result.status}" for language, result in snapshot.results.items()),
        )
        if self.notifier is not None and snapshot.webhook_url:
            self.notifier.dispatch(snapshot.webhook_url, snapshot)
