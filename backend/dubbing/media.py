from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path

from dubbing.errors import CANCEL_REQUESTED, PipelineError
from dubbing.processing_context import CancelCheck


logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.2


def ensure_ffmpeg_available() -> None:
    missing = [name for name in ("ffmpeg", "ffprobe") if shutil.which(name) is None]
    if missing:
        raise PipelineError(
            stage="media",
            code="ffmpeg_missing",
            message="ffmpeg tooling is not installed",
            detail=f"missing={','.join(missing)}",
        )


def _build_failure_detail(stderr: str) -> str:
    text = re.sub(r"\s+", " ", str(stderr or "").strip())
    return text[-900:] if text else "command failed without diagnostic output"


def _terminate_process(process: subprocess.Popen) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=3)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return


def run_command(args: list[str], *, stage: str, should_cancel: CancelCheck | None = None) -> str:
    """Run a media command, polling ``should_cancel`` so a cancelled job stops the subprocess."""
    if callable(should_cancel) and should_cancel():
        raise PipelineError(stage=stage, code=CANCEL_REQUESTED, message=f"{stage} cancelled before start")
    try:
        process = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        raise PipelineError(
            stage=stage,
            code="command_launch_failed",
            message=f"unable to launch {args[0]}",
            detail=str(exc)[:500],
        ) from exc

    # Pipes are drained between cancel checks; ffmpeg stalls on a full stderr pipe.
    while True:
        if callable(should_cancel) and should_cancel():
            _terminate_process(process)
            raise PipelineError(stage=stage, code=CANCEL_REQUESTED, message=f"{stage} cancelled")
        try:
            stdout, stderr = process.communicate(timeout=_POLL_INTERVAL_SECONDS)
        except subprocess.TimeoutExpired:
            continue
        break

    if process.returncode != 0:
        raise PipelineError(
            stage=stage,
            code="command_failed",
            message=f"{args[0]} exited with code {process.returncode}",
            detail=_build_failure_detail(stderr),
        )
    return stdout or ""


def probe_duration(media_path: str, *, should_cancel: CancelCheck | None = None) -> float:
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(media_path),
    ]
    out = run_command(cmd, stage="probe", should_cancel=should_cancel)
    try:
        return max(0.0, float((out or "0").strip() or 0.0))
    except ValueError as exc:
        raise PipelineError(stage="probe", code="duration_unreadable", message="unable to read media duration", detail=out[:200]) from exc


def extract_audio(video_path: str, output_path: Path | str, *, should_cancel: CancelCheck | None = None) -> str:
    audio_path = Path(output_path)
    cmd = ["ffmpeg", "-y", "-i", str(video_path), "-vn", "-ac", "1", "-ar", "16000", str(audio_path)]
    run_command(cmd, stage="extract_audio", should_cancel=should_cancel)
    if not audio_path.exists():
        raise PipelineError(stage="extract_audio", code="audio_extract_failed", message="audio extraction produced no output")
    return str(audio_path)


def remux(video_path: str, audio_path: str, output_path: Path | str, *, should_cancel: CancelCheck | None = None) -> str:
    target = Path(output_path)
    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        str(video_path),
        "-i",
        str(audio_path),
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-shortest",
        str(target),
    ]
    try:
        run_command(cmd, stage="remux", should_cancel=should_cancel)
    except PipelineError:
        target.unlink(missing_ok=True)
        raise
    if not target.exists():
        raise PipelineError(stage="remux", code="remux_failed", message="remux produced no output")
    logger.debug("[DEBUG] remux done output=%s", target)
    return str(target)


class FfmpegMedia:
    """Media operations the pipeline needs, backed by the ffmpeg command line tools."""

    def probe_duration(self, media_path: str, *, should_cancel: CancelCheck | None = None) -> float:
        ensure_ffmpeg_available()
        return probe_duration(media_path, should_cancel=should_cancel)

    def extract_audio(self, video_path: str, output_path: Path | str, *, should_cancel: CancelCheck | None = None) -> str:
        return extract_audio(video_path, output_path, should_cancel=should_cancel)

    def remux(self, video_path: str, audio_path: str, output_path: Path | str, *, should_cancel: CancelCheck | None = None) -> str:
        return remux(video_path, audio_path, output_path, should_cancel=should_cancel)
