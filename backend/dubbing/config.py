from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_LOG_LEVELS = {"debug", "info", "warning", "warn", "error"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True)

    app_env: str = Field(default='development', alias='APP_ENV')
    app_name: str = Field(default='dubbing-backend', alias='APP_NAME')
    app_version: str = Field(default='1.0.0', alias='APP_VERSION')
    log_level: str = Field(default='info', alias='LOG_LEVEL')

    supported_languages: str = Field(default='en,ar,de,ru,fr', alias='SUPPORTED_LANGUAGES')
    default_source_language: str = Field(default='', alias='SOURCE_LANGUAGE')
    max_video_duration_seconds: float = Field(default=600, alias='MAX_VIDEO_DURATION_SECONDS')
    max_video_size_mb: int = Field(default=500, alias='MAX_VIDEO_SIZE_MB')
    max_concurrent_jobs: int = Field(default=10, alias='MAX_CONCURRENT_JOBS')
    max_concurrent_translations: int = Field(default=3, alias='MAX_CONCURRENT_TRANSLATIONS')
    request_timeout_seconds: float = Field(default=540, alias='REQUEST_TIMEOUT_SECONDS')
    fanout_grace_seconds: float = Field(default=5, alias='FANOUT_GRACE_SECONDS')
    job_ttl_seconds: float = Field(default=24 * 3600, alias='JOB_TTL_SECONDS')
    max_request_body_size_bytes: int = Field(default=1024 * 1024, alias='MAX_REQUEST_BODY_SIZE_BYTES')

    rate_limit_rpm: int = Field(default=60, alias='RATE_LIMIT_RPM')
    webhook_url: str = Field(default='', alias='WEBHOOK_URL')
    webhook_timeout_seconds: float = Field(default=10, alias='WEBHOOK_TIMEOUT_SECONDS')
    cors_origins: str = Field(default='*', alias='CORS_ORIGINS')

    host: str = Field(default='0.0.0.0', alias='HOST')
    port: int = Field(default=8080, alias='PORT')
    runtime_dir: str = Field(default='./runtime', alias='RUNTIME_DIR')

    openai_api_key: str = Field(default='', alias='OPENAI_API_KEY')
    openai_base_url: str = Field(default='https://api.openai.com/v1', alias='OPENAI_BASE_URL')
    asr_model: str = Field(default='whisper-1', alias='ASR_MODEL')
    translation_model: str = Field(default='gpt-4o-mini', alias='TRANSLATION_MODEL')
    tts_model: str = Field(default='tts-1', alias='TTS_MODEL')

    oss_access_key_id: str = Field(default='', alias='OSS_ACCESS_KEY_ID')
    oss_access_key_secret: str = Field(default='', alias='OSS_ACCESS_KEY_SECRET')
    oss_endpoint: str = Field(default='', alias='OSS_ENDPOINT')
    oss_output_bucket: str = Field(default='', alias='OSS_OUTPUT_BUCKET')

    enable_metrics: bool = Field(default=True, alias='ENABLE_METRICS')

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        safe = str(value or '').strip().lower() or 'info'
        if safe not in _LOG_LEVELS:
            raise ValueError(f'invalid LOG_LEVEL: {value} (must be one of: debug, info, warning, error)')
        return 'warning' if safe == 'warn' else safe

    @model_validator(mode='after')
    def check_limits(self) -> 'Settings':
        if self.max_video_duration_seconds <= 0:
            raise ValueError('MAX_VIDEO_DURATION_SECONDS must be greater than 0')
        if self.max_video_size_mb <= 0:
            raise ValueError('MAX_VIDEO_SIZE_MB must be greater than 0')
        if self.max_concurrent_translations <= 0:
            raise ValueError('MAX_CONCURRENT_TRANSLATIONS must be greater than 0')
        if self.max_concurrent_jobs <= 0:
            raise ValueError('MAX_CONCURRENT_JOBS must be greater than 0')
        if self.rate_limit_rpm <= 0:
            raise ValueError('RATE_LIMIT_RPM must be greater than 0')
        if not self.supported_language_list:
            raise ValueError('at least one supported language must be specified')
        return self

    @property
    def supported_language_list(self) -> list[str]:
        return _split_csv(self.supported_languages, lower=True)

    @property
    def cors_origin_list(self) -> list[str]:
        return _split_csv(self.cors_origins) or ['*']

    @property
    def max_video_size_bytes(self) -> int:
        return int(self.max_video_size_mb) * 1024 * 1024

    def is_language_supported(self, language: str) -> bool:
        safe = str(language or '').strip().lower()
        return bool(safe) and safe in self.supported_language_list


def _split_csv(value: str, *, lower: bool = False) -> list[str]:
    items: list[str] = []
    for part in str(value or '').split(','):
        item = part.strip()
        if not item:
            continue
        items.append(item.lower() if lower else item)
    return items


def configure_logging(level: str = 'info') -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level or 'info').upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
        root.addHandler(handler)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
