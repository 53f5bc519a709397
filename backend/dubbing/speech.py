from __future__ import annotations

from dataclasses import dataclass

from dubbing.errors import PipelineError


MIN_SPEED_RATIO = 0.5
MAX_SPEED_RATIO = 2.0
DEFAULT_WORDS_PER_MINUTE = 150


@dataclass(frozen=True)
class VoiceProfile:
    language: str
    voice: str
    words_per_minute: int


_VOICE_PROFILES = {
    "en": VoiceProfile("en", "alloy", 150),
    "ar": VoiceProfile("ar", "onyx", 140),
    "de": VoiceProfile("de", "echo", 145),
    "ru": VoiceProfile("ru", "fable", 140),
    "fr": VoiceProfile("fr", "nova", 145),
}


def get_voice_profile(language: str) -> VoiceProfile:
    safe = str(language or "").strip().lower()
    profile = _VOICE_PROFILES.get(safe)
    if profile is None:
        raise PipelineError(
            stage="synthesize",
            code="unsupported_language",
            message=f"unsupported target language: {language}",
        )
    return profile


def speaking_rate(language: str) -> int:
    profile = _VOICE_PROFILES.get(str(language or "").strip().lower())
    return profile.words_per_minute if profile else DEFAULT_WORDS_PER_MINUTE


def estimate_speech_seconds(text: str, language: str) -> float:
    words = len(str(text or "").split())
    return words / float(speaking_rate(language)) * 60.0


def calculate_speed_ratio(text: str, language: str, source_duration_seconds: float) -> float:
    """Playback speed that fits ``text`` into the source duration, clamped to a listenable range."""
    estimated = estimate_speech_seconds(text, language)
    source = float(source_duration_seconds or 0.0)
    if estimated <= 0 or source <= 0:
        return 1.0
    ratio = estimated / source
    return max(MIN_SPEED_RATIO, min(MAX_SPEED_RATIO, ratio))
