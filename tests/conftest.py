import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dubbing.config import Settings
from dubbing.job_store import JobStore
from dubbing.model_client import Transcription
from dubbing.pipeline_runner import DubbingCoordinator, PipelineCollaborators


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeStorage:
    def __init__(self):
        self.download_error = None
        self.upload_errors = {}
        self.uploads = {}
        self._lock = threading.Lock()

    def download(self, locator, output_dir, *, should_cancel=None):
        if self.download_error is not None:
            raise self.download_error
        path = Path(output_dir) / 'source.mp4'
        path.write_bytes(b'fake-video')
        return str(path)

    def upload(self, key, local_path, *, should_cancel=None):
        language = Path(key).stem
        if language in self.upload_errors:
            raise self.upload_errors[language]
        with self._lock:
            self.uploads[key] = local_path
        return f'https://out.example.com/{key}'


class FakeMedia:
    def __init__(self):
        self.duration = 30.0

    def probe_duration(self, media_path, *, should_cancel=None):
        return self.duration

    def extract_audio(self, video_path, output_path, *, should_cancel=None):
        Path(output_path).write_bytes(b'fake-audio')
        return str(output_path)

    def remux(self, video_path, audio_path, output_path, *, should_cancel=None):
        Path(output_path).write_bytes(b'fake-dubbed')
        return str(output_path)


class FakeModels:
    def __init__(self):
        self.text = 'hello there general audience'
        self.language = 'en'
        self.translate_errors = {}
        self.translate_gates = {}
        self.translate_calls = []
        self.transcribe_hints = []

    def transcribe(self, audio_path, language_hint=None):
        self.transcribe_hints.append(language_hint)
        return Transcription(text=self.text, language=self.language)

    def translate(self, text, source_language, target_language):
        self.translate_calls.append((source_language, target_language))
        gate = self.translate_gates.get(target_language)
        if gate is not None:
            gate.wait(10)
        if target_language in self.translate_errors:
            raise self.translate_errors[target_language]
        return f'[{target_language}] {text}'

    def synthesize(self, text, target_language, desired_duration_seconds, *, output_path, should_cancel=None):
        Path(output_path).write_bytes(b'fake-speech')
        return str(output_path)


class RecordingNotifier:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def dispatch(self, destination, snapshot):
        with self._lock:
            self.calls.append((destination, snapshot))


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        runtime_dir=str(tmp_path / 'runtime'),
        fanout_grace_seconds=0.2,
        request_timeout_seconds=30,
        max_concurrent_translations=3,
        max_concurrent_jobs=10,
        webhook_url='',
    )


@pytest.fixture
def store():
    return JobStore(ttl_seconds=3600)


@pytest.fixture
def collaborators():
    return PipelineCollaborators(storage=FakeStorage(), models=FakeModels(), media=FakeMedia())


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def coordinator(settings, store, collaborators, notifier):
    instance = DubbingCoordinator(settings, store, collaborators, notifier)
    yield instance
    instance.shutdown()
    for gate in collaborators.models.translate_gates.values():
        gate.set()
