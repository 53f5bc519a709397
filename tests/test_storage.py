import io

import oss2
import pytest
import requests

from dubbing.config import Settings
from dubbing.errors import CANCEL_REQUESTED, PipelineError
from dubbing.storage import SourceStorage, output_key, parse_oss_url


class FakeHttpResponse:
    def __init__(self, chunks, status_code=200):
        self.chunks = chunks
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def iter_content(self, chunk_size=None):
        yield from self.chunks


class FakeHttpSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, stream=False, timeout=None):
        self.calls.append((url, stream))
        if self.error is not None:
            raise self.error
        return self.response


class FakeBucket:
    def __init__(self, content=b'', fail_upload=False):
        self.content = content
        self.fail_upload = fail_upload
        self.put_calls = []
        self.deleted = []

    def get_object(self, key):
        return io.BytesIO(self.content)

    def put_object_from_file(self, key, filename, progress_callback=None):
        self.put_calls.append((key, filename))
        if progress_callback is not None:
            progress_callback(0, 10)
            progress_callback(10, 10)
        if self.fail_upload:
            raise oss2.exceptions.RequestError(requests.ConnectionError('reset'))

    def delete_object(self, key):
        self.deleted.append(key)


@pytest.fixture
def settings():
    return Settings(
        oss_endpoint='https://oss-eu-central-1.aliyuncs.com',
        oss_output_bucket='dubbed-output',
        max_video_size_mb=1,
    )


def test_parse_oss_url():
    assert parse_oss_url('oss://media-in/videos/a%20b.mp4') == ('media-in', 'videos/a b.mp4')
    with pytest.raises(PipelineError):
        parse_oss_url('oss://bucket-only')
    with pytest.raises(PipelineError):
        parse_oss_url('https://example.com/video.mp4')


def test_output_key_layout():
    assert output_key('job-1', 'ar') == 'translations/job-1/ar.mp4'


def test_public_url(settings):
    storage = SourceStorage(settings, session=FakeHttpSession())
    assert storage.public_url('translations/j/en.mp4') == (
        'https://dubbed-output.oss-eu-central-1.aliyuncs.com/translations/j/en.mp4'
    )


def test_https_download_writes_file(settings, tmp_path):
    session = FakeHttpSession(response=FakeHttpResponse([b'abc', b'', b'def']))
    storage = SourceStorage(settings, session=session)
    path = storage.download('https://cdn.example.com/v.mp4', tmp_path)
    with open(path, 'rb') as handle:
        assert handle.read() == b'abcdef'
    assert session.calls == [('https://cdn.example.com/v.mp4', True)]
    assert not list(tmp_path.glob('*.part'))


def test_https_download_http_error(settings, tmp_path):
    storage = SourceStorage(settings, session=FakeHttpSession(response=FakeHttpResponse([], status_code=404)))
    with pytest.raises(PipelineError) as exc_info:
        storage.download('https://cdn.example.com/v.mp4', tmp_path)
    assert exc_info.value.code == 'download_http_error'
    assert list(tmp_path.iterdir()) == []


def test_https_download_network_error(settings, tmp_path):
    storage = SourceStorage(settings, session=FakeHttpSession(error=requests.ConnectionError('refused')))
    with pytest.raises(PipelineError) as exc_info:
        storage.download('https://cdn.example.com/v.mp4', tmp_path)
    assert exc_info.value.code == 'download_failed'


def test_download_too_large_removes_partial(settings, tmp_path):
    chunk = b'x' * (512 * 1024)
    storage = SourceStorage(settings, session=FakeHttpSession(response=FakeHttpResponse([chunk, chunk, chunk])))
    with pytest.raises(PipelineError) as exc_info:
        storage.download('https://cdn.example.com/v.mp4', tmp_path)
    assert exc_info.value.code == 'video_too_large'
    assert list(tmp_path.iterdir()) == []


def test_download_cancel_removes_partial(settings, tmp_path):
    storage = SourceStorage(settings, session=FakeHttpSession(response=FakeHttpResponse([b'a', b'b'])))
    with pytest.raises(PipelineError) as exc_info:
        storage.download('https://cdn.example.com/v.mp4', tmp_path, should_cancel=lambda: True)
    assert exc_info.value.code == CANCEL_REQUESTED
    assert list(tmp_path.iterdir()) == []


def test_oss_download_reads_object(settings, tmp_path):
    requested = []

    def factory(bucket_name):
        requested.append(bucket_name)
        return FakeBucket(content=b'oss-video')

    storage = SourceStorage(settings, session=FakeHttpSession(), bucket_factory=factory)
    path = storage.download('oss://media-in/videos/clip.mp4', tmp_path)
    with open(path, 'rb') as handle:
        assert handle.read() == b'oss-video'
    assert requested == ['media-in']


def test_unsupported_scheme_rejected(settings, tmp_path):
    storage = SourceStorage(settings, session=FakeHttpSession())
    with pytest.raises(PipelineError) as exc_info:
        storage.download('ftp://host/v.mp4', tmp_path)
    assert exc_info.value.code == 'invalid_source_url'


def test_upload_returns_public_url(settings, tmp_path):
    bucket = FakeBucket()
    local = tmp_path / 'en.mp4'
    local.write_bytes(b'dubbed')
    storage = SourceStorage(settings, session=FakeHttpSession(), bucket_factory=lambda name: bucket)
    url = storage.upload('translations/j/en.mp4', str(local))
    assert url.endswith('/translations/j/en.mp4')
    assert bucket.put_calls == [('translations/j/en.mp4', str(local))]
    assert bucket.deleted == []


def test_upload_cancel_deletes_destination(settings, tmp_path):
    bucket = FakeBucket()
    local = tmp_path / 'en.mp4'
    local.write_bytes(b'dubbed')
    checks = {'count': 0}

    def should_cancel():
        checks['count'] += 1
        return checks['count'] > 1

    storage = SourceStorage(settings, session=FakeHttpSession(), bucket_factory=lambda name: bucket)
    with pytest.raises(PipelineError) as exc_info:
        storage.upload('translations/j/en.mp4', str(local), should_cancel=should_cancel)
    assert exc_info.value.cancelled
    assert bucket.deleted == ['translations/j/en.mp4']


def test_upload_failure_is_wrapped(settings, tmp_path):
    bucket = FakeBucket(fail_upload=True)
    local = tmp_path / 'en.mp4'
    local.write_bytes(b'dubbed')
    storage = SourceStorage(settings, session=FakeHttpSession(), bucket_factory=lambda name: bucket)
    with pytest.raises(PipelineError) as exc_info:
        storage.upload('translations/j/en.mp4', str(local))
    assert exc_info.value.code == 'oss_upload_failed'
    assert bucket.deleted == ['translations/j/en.mp4']
