"""Pydantic models for job records, queue messages and notifications.

This module defines the type-safe models shared by the job record store,
the work queue, the worker pool and the notifier. All models use Pydantic
for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaKind(str, Enum):
    """Closed set of source media kinds; each maps to one generator strategy."""

    IMAGE = "image"
    VIDEO = "video"


class JobState(str, Enum):
    """Job processing states.

    State transitions:
        queued     → processing  (worker leases the queue message; attempt += 1)
        processing → completed   (all variants generated and uploaded)
        processing → failed      (non-retryable error or retries exhausted)
        processing → queued      (lease expired; reconciled by next lease holder)
        failed     → queued      (explicit re-process; variants/error cleared)
        completed  → queued      (explicit re-process)
        queued     → failed      (cancellation before lease only)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class VariantType(str, Enum):
    """The three logical renditions produced for every job, in output order."""

    THUMBNAIL = "thumbnail"
    PREVIEW = "preview"
    HIGH = "high"


VARIANT_ORDER = [VariantType.THUMBNAIL, VariantType.PREVIEW, VariantType.HIGH]


class JobError(BaseModel):
    """Structured failure reason, present only on failed jobs."""

    kind: ErrorKind = Field(..., description="Failure classification")
    message: str = Field(..., description="Human-readable reason shown to polling clients")


class Variant(BaseModel):
    """One stored rendition of a source file. Immutable once written."""

    type: VariantType = Field(..., description="thumbnail, preview or high")
    storage_key: str = Field(..., description="Deterministic key: {job_id}/{type}.{format}")
    url: str = Field(..., description="Opaque reference resolved by the media-serving endpoint")
    format: str = Field(..., description="Output format / file extension (jpeg, png, webp, mp4)")
    width: Optional[int] = Field(default=None, gt=0, description="Pixel width (video may omit)")
    height: Optional[int] = Field(default=None, gt=0, description="Pixel height (video may omit)")
    size_bytes: int = Field(..., ge=0, description="Stored object size")


class MediaJob(BaseModel):
    """Processing record for one uploaded asset.

    Invariants (validated on every construction):
    - ``variants`` is non-empty iff ``state == completed`` and then holds one
      variant of each type
    - ``error`` is set iff ``state == failed``
    """

    job_id: str = Field(..., description="Unique job identifier, assigned at intake")
    owner_id: str = Field(..., description="Opaque owner reference")
    conversation_id: Optional[str] = Field(default=None, description="Opaque conversation reference")
    message_id: Optional[str] = Field(default=None, description="Opaque message reference")
    source_kind: MediaKind = Field(..., description="image or video, fixed at creation")
    source_mime_type: str = Field(..., description="Mime type declared at upload")
    source_size_bytes: int = Field(..., ge=0, description="Raw upload size in bytes")
    source_path: str = Field(..., description="Temporary path of the raw upload")
    state: JobState = Field(default=JobState.QUEUED, description="Current job state")
    attempt: int = Field(default=0, ge=0, description="Lease counter, never decreases")
    retry_base: int = Field(
        default=0, ge=0, description="Attempt value at the last explicit re-process"
    )
    variants: List[Variant] = Field(default_factory=list, description="Stored renditions")
    error: Optional[JobError] = Field(default=None, description="Failure reason")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the job")
    created_at: datetime = Field(default_factory=utcnow, description="Intake time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last state change")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")

    @model_validator(mode="after")
    def _check_invariants(self) -> "MediaJob":
        types = [v.type for v in self.variants]
        if len(types) != len(set(types)):
            raise ValueError("variants must be unique by type")

        if self.state == JobState.COMPLETED:
            if set(types) != set(VARIANT_ORDER):
                raise ValueError("completed job must carry thumbnail, preview and high variants")
        elif self.variants:
            raise ValueError(f"{self.state.value} job cannot carry variants")

        if self.state == JobState.FAILED:
            if self.error is None:
                raise ValueError("failed job must carry an error")
        elif self.error is not None:
            raise ValueError(f"{self.state.value} job cannot carry an error")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def attempts_used(self) -> int:
        """Leases taken since intake or the last explicit re-process."""
        return self.attempt - self.retry_base

    def to_status_dict(self) -> Dict[str, Any]:
        """Record shape exposed to the status-polling API layer."""
        return {
            "jobId": self.job_id,
            "state": self.state.value,
            "attempt": self.attempt,
            "variants": [
                {
                    "type": v.type.value,
                    "url": v.url,
                    "width": v.width,
                    "height": v.height,
                    "format": v.format,
                    "sizeBytes": v.size_bytes,
                }
                for v in self.variants
            ],
            "error": (
                {"kind": self.error.kind.value, "message": self.error.message}
                if self.error
                else None
            ),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class JobPayload(BaseModel):
    """Work-queue message body written by the intake collaborator."""

    job_id: str = Field(..., description="Pre-assigned job identifier")
    owner_id: str = Field(..., description="Opaque owner reference")
    conversation_id: Optional[str] = Field(default=None)
    message_id: Optional[str] = Field(default=None)
    source_path: str = Field(..., description="Temporary path of the raw upload")
    source_kind: MediaKind = Field(..., description="image or video")
    source_mime_type: str = Field(..., description="Declared mime type")
    source_size_bytes: int = Field(..., ge=0, description="Raw upload size in bytes")

    def to_job(self) -> MediaJob:
        return MediaJob(
            job_id=self.job_id,
            owner_id=self.owner_id,
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            source_kind=self.source_kind,
            source_mime_type=self.source_mime_type,
            source_size_bytes=self.source_size_bytes,
            source_path=self.source_path,
        )

    @classmethod
    def from_job(cls, job: MediaJob) -> "JobPayload":
        return cls(
            job_id=job.job_id,
            owner_id=job.owner_id,
            conversation_id=job.conversation_id,
            message_id=job.message_id,
            source_path=job.source_path,
            source_kind=job.source_kind,
            source_mime_type=job.source_mime_type,
            source_size_bytes=job.source_size_bytes,
        )


class QueueMessage(BaseModel):
    """A leased work-queue message.

    The ``lease_token`` identifies this particular delivery; ``ack``,
    ``requeue`` and ``extend_lease`` only succeed while it is still current.
    """

    message_id: str = Field(..., description="Queue message identifier")
    job_id: str = Field(..., description="Job carried by the message")
    payload: JobPayload = Field(..., description="Intake payload")
    lease_token: Optional[str] = Field(default=None, description="Token of the current lease")
    delivery_count: int = Field(default=0, ge=0, description="Times this message was leased")
    enqueued_at: datetime = Field(default_factory=utcnow)
    visible_at: datetime = Field(default_factory=utcnow, description="Lease expiry / redelivery time")


class NotificationEvent(BaseModel):
    """Completion or failure event published once per terminal job."""

    job_id: str
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    status: JobState
    variants: Optional[List[Variant]] = None
    error: Optional[JobError] = None

    @classmethod
    def from_job(cls, job: MediaJob) -> "NotificationEvent":
        if not job.is_terminal:
            raise ValueError(f"job {job.job_id} is not terminal ({job.state.value})")
        return cls(
            job_id=job.job_id,
            message_id=job.message_id,
            conversation_id=job.conversation_id,
            status=job.state,
            variants=job.variants if job.state == JobState.COMPLETED else None,
            error=job.error,
        )


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
