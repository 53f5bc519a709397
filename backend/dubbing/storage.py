from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Callable
from urllib.parse import unquote, urlparse

import oss2
import requests

from dubbing.config import Settings
from dubbing.errors import CANCEL_REQUESTED, PipelineError
from dubbing.processing_context import CancelCheck


logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_CONNECT_TIMEOUT_SECONDS = 10
_READ_TIMEOUT_SECONDS = 60

BucketFactory = Callable[[str], "oss2.Bucket"]


def parse_oss_url(locator: str) -> tuple[str, str]:
    """Split ``oss://bucket/key`` into ``(bucket, key)``."""
    parsed = urlparse(str(locator or "").strip())
    bucket = str(parsed.netloc or "").strip()
    key = unquote(str(parsed.path or "").lstrip("/"))
    if parsed.scheme.lower() != "oss" or not bucket or not key:
        raise PipelineError(
            stage="download",
            code="invalid_source_url",
            message="source locator must look like oss://bucket/key",
            detail=f"url={str(locator)[:200]}",
        )
    return bucket, key


def output_key(job_id: str, language: str) -> str:
    return f"translations/{job_id}/{language}.mp4"


def _normalized_endpoint(endpoint: str) -> str:
    safe = str(endpoint or "").strip()
    if not safe.startswith("http://") and not safe.startswith("https://"):
        safe = f"https://{safe}"
    return safe


def _cancelled(stage: str) -> PipelineError:
    return PipelineError(stage=stage, code=CANCEL_REQUESTED, message=f"{stage} cancelled")


class SourceStorage:
    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        bucket_factory: BucketFactory | None = None,
    ):
        self.settings = settings
        self._session = session or requests.Session()
        self._bucket_factory = bucket_factory or self._build_bucket

    def _build_bucket(self, bucket_name: str) -> oss2.Bucket:
        if not (self.settings.oss_access_key_id and self.settings.oss_access_key_secret and self.settings.oss_endpoint):
            raise PipelineError(stage="storage", code="oss_not_configured", message="object storage credentials are not configured")
        auth = oss2.Auth(self.settings.oss_access_key_id, self.settings.oss_access_key_secret)
        return oss2.Bucket(auth, _normalized_endpoint(self.settings.oss_endpoint), bucket_name)

    def public_url(self, key: str) -> str:
        endpoint = str(self.settings.oss_endpoint or "").replace("https://", "").replace("http://", "").rstrip("/")
        return f"https://{self.settings.oss_output_bucket}.{endpoint}/{key}"

    def download(self, locator: str, output_dir: Path | str, *, should_cancel: CancelCheck | None = None) -> str:
        target_dir = Path(output_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"source_{uuid.uuid4().hex[:8]}.mp4"
        partial = target.with_name(target.name + ".part")
        scheme = urlparse(str(locator or "")).scheme.lower()
        try:
            if scheme == "oss":
                self._download_oss(locator, partial, should_cancel)
            elif scheme == "https":
                self._download_http(locator, partial, should_cancel)
            else:
                raise PipelineError(
                    stage="download",
                    code="invalid_source_url",
                    message="source locator must use oss:// or https://",
                    detail=f"url={str(locator)[:200]}",
                )
            partial.replace(target)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        logger.info("[DEBUG] source downloaded locator=%s size=%s", locator, target.stat().st_size)
        return str(target)

    def _write_chunks(self, chunks, partial: Path, should_cancel: CancelCheck | None) -> None:
        limit = self.settings.max_video_size_bytes
        written = 0
        with partial.open("wb") as handle:
            for chunk in chunks:
                if callable(should_cancel) and should_cancel():
                    raise _cancelled("download")
                if not chunk:
                    continue
                written += len(chunk)
                if written > limit:
                    raise PipelineError(
                        stage="download",
                        code="video_too_large",
                        message=f"video exceeds maximum size of {self.settings.max_video_size_mb} MB",
                    )
                handle.write(chunk)

    def _download_http(self, url: str, partial: Path, should_cancel: CancelCheck | None) -> None:
        try:
            with self._session.get(url, stream=True, timeout=(_CONNECT_TIMEOUT_SECONDS, _READ_TIMEOUT_SECONDS)) as response:
                if response.status_code >= 400:
                    raise PipelineError(
                        stage="download",
                        code="download_http_error",
                        message=f"source download returned status {response.status_code}",
                    )
                self._write_chunks(response.iter_content(chunk_size=_CHUNK_SIZE), partial, should_cancel)
        except requests.RequestException as exc:
            raise PipelineError(stage="download", code="download_failed", message="source download failed", detail=str(exc)[:500]) from exc

    def _download_oss(self, locator: str, partial: Path, should_cancel: CancelCheck | None) -> None:
        bucket_name, key = parse_oss_url(locator)
        bucket = self._bucket_factory(bucket_name)
        try:
            result = bucket.get_object(key)
            chunks = iter(lambda: result.read(_CHUNK_SIZE), b"")
            self._write_chunks(chunks, partial, should_cancel)
        except oss2.exceptions.OssError as exc:
            raise PipelineError(stage="download", code="oss_download_failed", message="object download failed", detail=str(exc)[:500]) from exc

    def upload(self, key: str, local_path: str, *, should_cancel: CancelCheck | None = None) -> str:
        if callable(should_cancel) and should_cancel():
            raise _cancelled("upload")
        bucket = self._bucket_factory(self.settings.oss_output_bucket)

        def _progress(consumed_bytes: int, total_bytes: int | None) -> None:
            if callable(should_cancel) and should_cancel():
                raise _cancelled("upload")

        try:
            bucket.put_object_from_file(key, str(local_path), progress_callback=_progress)
            if callable(should_cancel) and should_cancel():
                raise _cancelled("upload")
        except PipelineError:
            self._delete_quietly(bucket, key)
            raise
        except oss2.exceptions.OssError as exc:
            self._delete_quietly(bucket, key)
            raise PipelineError(stage="upload", code="oss_upload_failed", message="object upload failed", detail=str(exc)[:500]) from exc
        url = self.public_url(key)
        logger.info("[DEBUG] output uploaded key=%s url=%s", key, url)
        return url

    def _delete_quietly(self, bucket: oss2.Bucket, key: str) -> None:
        try:
            bucket.delete_object(key)
        except oss2.exceptions.OssError as exc:
            logger.warning("[DEBUG] partial upload cleanup failed key=%s error=%s", key, exc)
