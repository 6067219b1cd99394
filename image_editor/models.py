from enum import Enum
from typing import NewType, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Assigned by the job platform, never parsed
JobId = NewType("JobId", str)

ALLOWED_MIME_TYPES = ("image/png", "image/jpeg", "image/webp")
PROCESS_EVENT = "image.process"


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class RawJobStatus(str, Enum):
    not_started = "not_started"
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class WireModel(BaseModel):
    """Base for payloads that travel as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EditRequest(WireModel):
    image_data: Optional[str] = None  # base64, no data URL prefix
    mime_type: Optional[str] = None
    prompt: Optional[str] = None


class EditedImage(WireModel):
    image_data: str
    mime_type: str

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.image_data}"


class DispatchResponse(WireModel):
    job_id: JobId
    estimated_seconds: int


class StatusResponse(WireModel):
    status: JobStatus
    result: Optional[EditedImage] = None
    error: Optional[str] = None


class JobEvent(BaseModel):
    name: str = PROCESS_EVENT
    data: EditRequest


class JobOutput(BaseModel):
    event: JobEvent
    body: EditedImage


class JobRecord(BaseModel):
    id: JobId
    raw_status: str = RawJobStatus.queued.value
    event: JobEvent
    output: Optional[JobOutput] = None
    error: Optional[dict] = None  # platform failure shape, e.g. {"name": ..., "message": ...}
    attempts: int = 0


class ErrorKind(str, Enum):
    transient = "transient"
    fatal = "fatal"


class RetryAttempt(BaseModel):
    attempt: int
    delay: float
    kind: ErrorKind
    error: str


class EditorConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = 1.0
    poll_interval_seconds: float = 5.0
    settle_delay_seconds: float = 1.0
    job_retries: int = Field(default=2, ge=0)  # platform-level reruns after a crash
    estimated_seconds: int = 60
