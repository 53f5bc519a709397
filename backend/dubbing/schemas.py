from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dubbing.job_store import JobRecord, serialize_status


JobStatus = Literal["processing", "completed", "failed"]
LanguageStatus = Literal["pending", "processing", "completed", "failed"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TranslateRequest(CamelModel):
    video_url: str
    target_languages: list[str] = Field(default_factory=list)
    source_language: Optional[str] = None
    webhook_url: Optional[str] = None


class JobCreateResponse(CamelModel):
    job_id: str
    status: JobStatus = "processing"


class LanguageResultResponse(CamelModel):
    status: LanguageStatus
    video_url: Optional[str] = None
    translated_text: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    processed_at: Optional[str] = None


class JobStatusResponse(CamelModel):
    job_id: str
    status: JobStatus
    results: dict[str, LanguageResultResponse] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        return cls.model_validate(serialize_status(record))


class CancelResponse(CamelModel):
    job_id: str
    status: JobStatus
    cancelled: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
    version: str
