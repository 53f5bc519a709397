from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from openai import OpenAI, OpenAIError

from dubbing.config import Settings
from dubbing.errors import CANCEL_REQUESTED, PipelineError
from dubbing.processing_context import CancelCheck
from dubbing.speech import calculate_speed_ratio, get_voice_profile


logger = logging.getLogger(__name__)

_CLIENT_TIMEOUT_SECONDS = 120
_CLIENT_MAX_RETRIES = 2

# verbose_json reports the detected language by name
_LANGUAGE_NAMES = {
    "english": "en",
    "arabic": "ar",
    "german": "de",
    "russian": "ru",
    "french": "fr",
    "spanish": "es",
    "chinese": "zh",
    "japanese": "ja",
    "portuguese": "pt",
    "italian": "it",
}


@dataclass(frozen=True)
class Transcription:
    text: str
    language: str = ""


def normalize_language_tag(value: str | None) -> str:
    safe = str(value or "").strip().lower()
    if not safe:
        return ""
    if safe in _LANGUAGE_NAMES:
        return _LANGUAGE_NAMES[safe]
    return safe


class OpenAIModelClient:
    """Transcription, translation and speech synthesis through the OpenAI SDK."""

    def __init__(self, settings: Settings, *, client: OpenAI | None = None):
        self.settings = settings
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> OpenAI:
        with self._client_lock:
            if self._client is None:
                if not self.settings.openai_api_key:
                    raise PipelineError(stage="model", code="openai_not_configured", message="OPENAI_API_KEY is not configured")
                self._client = OpenAI(
                    api_key=self.settings.openai_api_key,
                    base_url=self.settings.openai_base_url or None,
                    timeout=_CLIENT_TIMEOUT_SECONDS,
                    max_retries=_CLIENT_MAX_RETRIES,
                )
            return self._client

    def transcribe(self, audio_path: str, language_hint: str | None = None) -> Transcription:
        client = self._get_client()
        kwargs = {"model": self.settings.asr_model, "response_format": "verbose_json"}
        hint = normalize_language_tag(language_hint).split("-")[0]
        if hint:
            kwargs["language"] = hint
        try:
            with open(audio_path, "rb") as stream:
                result = client.audio.transcriptions.create(file=stream, **kwargs)
        except OpenAIError as exc:
            raise PipelineError(stage="transcribe", code="asr_failed", message="transcription request failed", detail=str(exc)[:500]) from exc
        text = str(getattr(result, "text", "") or "").strip()
        language = normalize_language_tag(getattr(result, "language", ""))
        logger.info("[DEBUG] transcription done chars=%s language=%s", len(text), language or "-")
        return Transcription(text=text, language=language)

    def translate(self, text: str, source_language: str, target_language: str) -> str:
        client = self._get_client()
        source_label = source_language if source_language and source_language != "auto" else "the detected source language"
        try:
            completion = client.chat.completions.create(
                model=self.settings.translation_model,
                temperature=0,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            f"Translate the user's text from {source_label} into {target_language}. "
                            "Reply with the translation only, suitable for voice-over."
                        ),
                    },
                    {"role": "user", "content": text},
                ],
            )
        except OpenAIError as exc:
            raise PipelineError(stage="translate", code="translation_failed", message="translation request failed", detail=str(exc)[:500]) from exc
        translated = str(completion.choices[0].message.content or "").strip()
        if not translated:
            raise PipelineError(stage="translate", code="translation_empty", message="translation returned empty text")
        return translated

    def synthesize(
        self,
        text: str,
        target_language: str,
        desired_duration_seconds: float,
        *,
        output_path: Path | str,
        should_cancel: CancelCheck | None = None,
    ) -> str:
        profile = get_voice_profile(target_language)
        speed = calculate_speed_ratio(text, target_language, desired_duration_seconds)
        client = self._get_client()
        target = Path(output_path)
        try:
            with client.audio.speech.with_streaming_response.create(
                model=self.settings.tts_model,
                voice=profile.voice,
                input=text,
                speed=speed,
                response_format="mp3",
            ) as response:
                response.stream_to_file(target)
        except OpenAIError as exc:
            target.unlink(missing_ok=True)
            raise PipelineError(stage="synthesize", code="tts_failed", message="speech synthesis request failed", detail=str(exc)[:500]) from exc
        if callable(should_cancel) and should_cancel():
            target.unlink(missing_ok=True)
            raise PipelineError(stage="synthesize", code=CANCEL_REQUESTED, message="synthesize cancelled")
        logger.debug("[DEBUG] speech synthesized language=%s voice=%s speed=%.2f", target_language, profile.voice, speed)
        return str(target)
