"""Per-stage job payloads.

A job is exactly one variant of ``StageJob``; the ``stage`` field is the tag.
Stage workers receive the variant for their own stage, so a ProcessingCheck
worker cannot read an analysis-only field by accident and the Upload stage
never sees a remote file name it has not created yet.

Ownership moves forward by building the successor variant from the current
one (``UploadJob.from_entry``, ``ProcessingCheckJob.from_upload``,
``AnalysisJob.from_check``); the per-stage ``attempt`` counter restarts at 0
on every hand-off.

Example:
    job = parse_job({"stage": "entry", "transaction_id": "tx_1", **routing})
    assert isinstance(job, EntryJob)
"""
from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from media_pipeline.models import DescriptionMode

MediaKind = Literal["image", "video"]

# Fields that belong to a single stage run and never carry over on hand-off
_PER_RUN_FIELDS = {"stage", "job_id", "attempt", "enqueued_at"}


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str = Field(default_factory=new_job_id)
    transaction_id: str
    submission_id: str
    conversation_id: str
    origin_id: str
    kind: MediaKind
    content_ref: str
    mime_type: str
    user_prompt: str = ""
    # Snapshot at enqueue time; Analysis re-reads the live value
    description_mode: DescriptionMode = "short"
    sender_name: Optional[str] = None
    attempt: int = 0
    enqueued_at: float = Field(default_factory=time.time)

    def with_attempt(self, attempt: int):
        return self.model_copy(update={"attempt": attempt, "enqueued_at": time.time()})

    def _carry(self) -> dict[str, Any]:
        return self.model_dump(exclude=_PER_RUN_FIELDS)


class EntryJob(JobBase):
    stage: Literal["entry"] = "entry"


class UploadJob(JobBase):
    stage: Literal["upload"] = "upload"

    @classmethod
    def from_entry(cls, job: EntryJob) -> "UploadJob":
        return cls(**job._carry())


class ProcessingCheckJob(JobBase):
    stage: Literal["processing_check"] = "processing_check"
    file_name: str
    upload_timestamp: float
    poll_attempt: int = 0
    last_progress_at: Optional[float] = None
    long_notice_sent: bool = False

    @classmethod
    def from_upload(cls, job: UploadJob, file_name: str, upload_timestamp: float) -> "ProcessingCheckJob":
        return cls(**job._carry(), file_name=file_name, upload_timestamp=upload_timestamp)


class AnalysisJob(JobBase):
    stage: Literal["analysis"] = "analysis"
    file_name: str
    file_uri: str
    file_mime_type: str

    @classmethod
    def from_check(cls, job: ProcessingCheckJob, file_uri: str, file_mime_type: str) -> "AnalysisJob":
        data = job.model_dump(
            exclude=_PER_RUN_FIELDS | {"upload_timestamp", "poll_attempt", "last_progress_at", "long_notice_sent"}
        )
        return cls(**data, file_uri=file_uri, file_mime_type=file_mime_type or job.mime_type)


StageJob = Annotated[
    Union[EntryJob, UploadJob, ProcessingCheckJob, AnalysisJob],
    Field(discriminator="stage"),
]

_STAGE_JOB_ADAPTER: TypeAdapter[Any] = TypeAdapter(StageJob)


def parse_job(data: dict[str, Any] | str | bytes) -> JobBase:
    """Validate a raw payload into the matching ``StageJob`` variant.

    Raises ``pydantic.ValidationError`` for unknown stages or missing fields.
    """
    if isinstance(data, (str, bytes)):
        return _STAGE_JOB_ADAPTER.validate_json(data)
    return _STAGE_JOB_ADAPTER.validate_python(data)


def dump_job(job: JobBase) -> dict[str, Any]:
    return job.model_dump(mode="json")
