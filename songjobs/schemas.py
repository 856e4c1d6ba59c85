# songjobs/schemas.py
import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RequestStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.ERROR})

# status -> statuses it may move to (staying put is always allowed)
ALLOWED_TRANSITIONS = {
    RequestStatus.QUEUED: {
        RequestStatus.PROCESSING, RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.ERROR,
    },
    RequestStatus.PROCESSING: {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.ERROR},
    RequestStatus.COMPLETED: set(),
    RequestStatus.FAILED: set(),
    RequestStatus.ERROR: set(),
}


def is_terminal(status) -> bool:
    return RequestStatus(status) in TERMINAL_STATUSES


def can_transition(current, new) -> bool:
    current, new = RequestStatus(current), RequestStatus(new)
    return current == new or new in ALLOWED_TRANSITIONS[current]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderErrorInfo(CamelModel):
    type: str
    message: str
    status: Optional[int] = None
    code: Optional[Any] = None
    raw: Optional[Any] = None
    retryable: bool = True


class RequestRecord(CamelModel):
    id: str
    status: RequestStatus = RequestStatus.QUEUED
    provider: Optional[str] = None
    provider_job_id: Optional[str] = None
    provider_record_id: Optional[str] = None
    audio_url: Optional[str] = None
    download_url: Optional[str] = None
    saved_filename: Optional[str] = None
    file_size: Optional[int] = None
    progress: int = Field(default=0, ge=0, le=100)
    provider_error: Optional[ProviderErrorInfo] = None
    prompt: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    dispatch_attempts: int = 0
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def must_be_aware(cls, v: datetime.datetime):
        if v.tzinfo is None:
            return v.replace(tzinfo=datetime.timezone.utc)
        return v

    @model_validator(mode="after")
    def audio_only_when_completed(self):
        if (self.audio_url or self.saved_filename) and self.status != RequestStatus.COMPLETED:
            raise ValueError("audio_url and saved_filename may only be set on a completed record")
        return self

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StatusSnapshot(CamelModel):
    """Client-facing view of a record. Never carries raw provider payloads."""

    id: str
    status: RequestStatus
    progress: int = 0
    audio_url: Optional[str] = None
    download_url: Optional[str] = None
    saved_filename: Optional[str] = None
    file_size: Optional[int] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    retryable: Optional[bool] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @classmethod
    def from_record(cls, record: RequestRecord) -> "StatusSnapshot":
        err = record.provider_error
        progress = record.progress
        if record.status == RequestStatus.COMPLETED:
            progress = 100
        return cls(
            id=record.id,
            status=record.status,
            progress=progress,
            audio_url=record.audio_url,
            download_url=record.download_url,
            saved_filename=record.saved_filename,
            file_size=record.file_size,
            error_type=err.type if err else None,
            error_message=err.message if err else None,
            retryable=err.retryable if err else None,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SongRequest(BaseModel):
    """Intake payload. Either a free-form prompt or a story is required."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = None
    title: Optional[str] = None
    style: Optional[str] = Field(default=None, alias="songStyle")
    occasion: Optional[str] = Field(default=None, alias="specialOccasion")
    mood: Optional[str] = None
    tempo: Optional[str] = None
    names_to_include: Optional[str] = Field(default=None, alias="namesToInclude")
    story: Optional[str] = Field(default=None, alias="yourStory")
    notes: Optional[str] = Field(default=None, alias="additionalNotes")
    instrumental: Optional[bool] = None
    model: Optional[str] = None

    @model_validator(mode="after")
    def prompt_or_story(self):
        if not (self.prompt or "").strip() and not (self.story or "").strip():
            raise ValueError("either prompt or yourStory is required")
        return self


class GenerateResult(BaseModel):
    job_id: str
    record_id: Optional[str] = None
    raw: Optional[Any] = None


class RecordInfo(BaseModel):
    status: RequestStatus = RequestStatus.PROCESSING
    audio_url: Optional[str] = None
    download_url: Optional[str] = None
    progress: Optional[int] = None
    record_id: Optional[str] = None
    error_message: Optional[str] = None
    tried: Optional[str] = None
    raw: Optional[Any] = None


class ProviderHealth(BaseModel):
    ok: bool
    status: int
    message: str = ""
    provider: str = "unknown"
