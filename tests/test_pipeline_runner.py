import threading
import time
from pathlib import Path

import pytest

from dubbing.config import Settings
from dubbing.errors import CapacityExceededError, JobNotFoundError, PipelineError
from dubbing.job_store import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING
from dubbing.pipeline_runner import FATAL_ERROR_KEY, DubbingCoordinator
from dubbing.schemas import TranslateRequest

from conftest import FakeModels, wait_until


def _request(languages, **kwargs):
    kwargs.setdefault('webhook_url', 'https://hooks.example.com/dub')
    return TranslateRequest(video_url='oss://input/video.mp4', target_languages=languages, **kwargs)


def _run(coordinator, request, timeout=10):
    job_id = coordinator.submit(request)
    assert coordinator.join(job_id, timeout=timeout)
    return job_id


def test_submit_creates_processing_record_immediately(coordinator, collaborators, store):
    collaborators.models.translate_gates['en'] = threading.Event()
    job_id = coordinator.submit(_request(['en']))
    record = store.get(job_id)
    assert record.status == STATUS_PROCESSING
    assert record.target_languages == ['en']
    collaborators.models.translate_gates['en'].set()
    assert coordinator.join(job_id, timeout=10)


def test_all_languages_complete(coordinator, collaborators, store, notifier):
    job_id = _run(coordinator, _request(['en', 'ar', 'de']))
    record = store.get(job_id)
    assert record.status == STATUS_COMPLETED
    assert set(record.results) == {'en', 'ar', 'de'}
    for language, result in record.results.items():
        assert result.status == STATUS_COMPLETED
        assert result.progress == 100
        assert result.video_url == f'https://out.example.com/translations/{job_id}/{language}.mp4'
        assert result.translated_text.startswith(f'[{language}]')
        assert result.processed_at is not None
        assert result.error == ''
    assert len(notifier.calls) == 1
    destination, snapshot = notifier.calls[0]
    assert destination == 'https://hooks.example.com/dub'
    assert snapshot.status == STATUS_COMPLETED


def test_one_language_failure_fails_job_but_keeps_siblings(coordinator, collaborators, store, notifier):
    collaborators.models.translate_errors['ar'] = PipelineError('translate', 'translation_failed', 'upstream 500')
    job_id = _run(coordinator, _request(['en', 'ar']))
    record = store.get(job_id)
    assert record.status == STATUS_FAILED
    assert record.results['en'].status == STATUS_COMPLETED
    assert record.results['en'].video_url
    assert record.results['ar'].status == STATUS_FAILED
    assert record.results['ar'].error == 'translate failed: upstream 500'
    assert record.results['ar'].progress == 0
    assert len(notifier.calls) == 1
    assert notifier.calls[0][1].status == STATUS_FAILED


def test_unexpected_exception_is_localized(coordinator, collaborators, store):
    collaborators.storage.upload_errors['de'] = OSError('disk full')
    job_id = _run(coordinator, _request(['en', 'de']))
    record = store.get(job_id)
    assert record.results['en'].status == STATUS_COMPLETED
    assert record.results['de'].status == STATUS_FAILED
    assert record.results['de'].error == 'upload failed: disk full'


@pytest.mark.parametrize(
    'languages, failing',
    [
        (['en'], set()),
        (['en', 'ar', 'de', 'ru', 'fr'], set()),
        (['en', 'ar', 'de', 'ru', 'fr'], {'ru'}),
        (['ar', 'fr'], {'ar', 'fr'}),
    ],
)
def test_every_language_ends_terminal(coordinator, collaborators, store, languages, failing):
    for language in failing:
        collaborators.models.translate_errors[language] = PipelineError('translate', 'translation_failed', 'nope')
    job_id = _run(coordinator, _request(languages))
    record = store.get(job_id)
    assert len(record.results) == len(languages)
    assert all(result.terminal for result in record.results.values())
    expected = STATUS_FAILED if failing else STATUS_COMPLETED
    assert record.status == expected


def test_download_failure_is_job_fatal(coordinator, collaborators, store, notifier):
    collaborators.storage.download_error = PipelineError('download', 'download_failed', 'connection reset')
    job_id = _run(coordinator, _request(['en', 'ar']))
    record = store.get(job_id)
    assert record.status == STATUS_FAILED
    assert list(record.results) == [FATAL_ERROR_KEY]
    assert record.results[FATAL_ERROR_KEY].status == STATUS_FAILED
    assert record.results[FATAL_ERROR_KEY].error == 'download failed: connection reset'
    assert collaborators.models.translate_calls == []
    assert len(notifier.calls) == 1


def test_empty_transcription_is_job_fatal(coordinator, collaborators, store):
    collaborators.models.text = '   '
    job_id = _run(coordinator, _request(['en']))
    record = store.get(job_id)
    assert record.status == STATUS_FAILED
    assert 'transcription produced no text' in record.results[FATAL_ERROR_KEY].error
    assert collaborators.models.translate_calls == []


def test_video_too_long_is_job_fatal(coordinator, collaborators, store, settings):
    collaborators.media.duration = settings.max_video_duration_seconds + 1
    job_id = _run(coordinator, _request(['en']))
    record = store.get(job_id)
    assert record.status == STATUS_FAILED
    assert record.results[FATAL_ERROR_KEY].error.startswith('probe failed: video duration')


def test_source_language_hint_takes_precedence(coordinator, collaborators, store):
    collaborators.models.language = 'de'
    job_id = _run(coordinator, _request(['en'], source_language='fr'))
    assert store.get(job_id).source_language == 'fr'
    assert collaborators.models.translate_calls == [('fr', 'en')]
    assert collaborators.models.transcribe_hints == ['fr']


def test_detected_language_used_without_hint(coordinator, collaborators, store):
    collaborators.models.language = 'de'
    job_id = _run(coordinator, _request(['en']))
    assert store.get(job_id).source_language == 'de'


def test_source_language_falls_back_to_auto(coordinator, collaborators, store):
    collaborators.models.language = ''
    job_id = _run(coordinator, _request(['en']))
    assert store.get(job_id).source_language == 'auto'


def test_configured_default_source_language(tmp_path, store, collaborators, notifier):
    collaborators.models.language = ''
    settings = Settings(runtime_dir=str(tmp_path / 'runtime'), default_source_language='ru')
    coordinator = DubbingCoordinator(settings, store, collaborators, notifier)
    job_id = _run(coordinator, _request(['en']))
    assert store.get(job_id).source_language == 'ru'


def test_temp_artifacts_removed_after_job(coordinator, store, settings):
    job_id = _run(coordinator, _request(['en', 'ar']))
    assert store.get(job_id).status == STATUS_COMPLETED
    assert not (Path(settings.runtime_dir) / 'jobs' / job_id).exists()


def test_temp_artifacts_removed_after_fatal_error(coordinator, collaborators, settings):
    collaborators.models.text = ''
    job_id = _run(coordinator, _request(['en']))
    assert not (Path(settings.runtime_dir) / 'jobs' / job_id).exists()


def test_cancel_marks_unfinished_languages_failed(tmp_path, store, collaborators, notifier):
    settings = Settings(runtime_dir=str(tmp_path / 'runtime'), max_concurrent_translations=1, fanout_grace_seconds=0.2)
    coordinator = DubbingCoordinator(settings, store, collaborators, notifier)
    gate = threading.Event()
    for language in ('en', 'ar', 'de'):
        collaborators.models.translate_gates[language] = gate
    job_id = coordinator.submit(_request(['en', 'ar', 'de']))
    assert wait_until(lambda: len(collaborators.models.translate_calls) == 1)

    assert coordinator.cancel(job_id) is True
    assert coordinator.join(job_id, timeout=10)

    record = store.get(job_id)
    assert record.status == STATUS_FAILED
    assert len(record.results) == 3
    for result in record.results.values():
        assert result.status == STATUS_FAILED
        assert 'cancelled' in result.error
        assert 'cancelled by request' in result.error
    assert len(collaborators.models.translate_calls) == 1
    assert len(notifier.calls) == 1

    gate.set()
    time.sleep(0.5)
    after = store.get(job_id)
    assert after.status == STATUS_FAILED
    assert all(result.status == STATUS_FAILED for result in after.results.values())
    assert collaborators.storage.uploads == {}
    assert len(notifier.calls) == 1


def test_deadline_cuts_job_short(tmp_path, store, collaborators, notifier):
    settings = Settings(runtime_dir=str(tmp_path / 'runtime'), request_timeout_seconds=0.5, fanout_grace_seconds=0.1)
    coordinator = DubbingCoordinator(settings, store, collaborators, notifier)
    gate = threading.Event()
    collaborators.models.translate_gates['ar'] = gate
    try:
        job_id = _run(coordinator, _request(['en', 'ar']))
        record = store.get(job_id)
        assert record.status == STATUS_FAILED
        assert record.results['en'].status == STATUS_COMPLETED
        assert record.results['ar'].status == STATUS_FAILED
        assert record.results['ar'].error == 'processing cancelled: deadline exceeded'
    finally:
        gate.set()


def test_capacity_limit_rejects_new_jobs(tmp_path, store, collaborators, notifier):
    settings = Settings(runtime_dir=str(tmp_path / 'runtime'), max_concurrent_jobs=1)
    coordinator = DubbingCoordinator(settings, store, collaborators, notifier)
    gate = threading.Event()
    collaborators.models.translate_gates['en'] = gate
    first = coordinator.submit(_request(['en']))
    assert coordinator.active_jobs == 1
    with pytest.raises(CapacityExceededError):
        coordinator.submit(_request(['en']))
    gate.set()
    assert coordinator.join(first, timeout=10)
    assert coordinator.active_jobs == 0
    second = _run(coordinator, _request(['en']))
    assert store.get(second).status == STATUS_COMPLETED


def test_cancel_unknown_or_finished_job(coordinator):
    with pytest.raises(JobNotFoundError):
        coordinator.cancel('missing')
    job_id = _run(coordinator, _request(['en']))
    assert coordinator.cancel(job_id) is False


def test_no_webhook_means_no_notification(coordinator, notifier):
    _run(coordinator, _request(['en'], webhook_url=None))
    assert notifier.calls == []


class CountingModels(FakeModels):
    def __init__(self, hold_seconds=0.15):
        super().__init__()
        self.hold_seconds = hold_seconds
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def translate(self, text, source_language, target_language):
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.hold_seconds)
            return super().translate(text, source_language, target_language)
        finally:
            with self._lock:
                self.in_flight -= 1


def test_fan_out_never_exceeds_translation_permits(tmp_path, store, collaborators, notifier):
    settings = Settings(runtime_dir=str(tmp_path / 'runtime'), max_concurrent_translations=2, request_timeout_seconds=30)
    models = CountingModels()
    collaborators.models = models
    coordinator = DubbingCoordinator(settings, store, collaborators, notifier)
    try:
        job_id = _run(coordinator, _request(['en', 'ar', 'de', 'ru', 'fr']))
    finally:
        coordinator.shutdown()
    record = store.get(job_id)
    assert record.status == STATUS_COMPLETED
    assert len(models.translate_calls) == 5
    assert models.peak == 2
