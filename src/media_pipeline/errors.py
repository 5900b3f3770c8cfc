"""Failure taxonomy for the transcoding pipeline.

Every failure that can end a job is expressed as a ``MediaPipelineError``
subclass carrying an ``ErrorKind`` and a ``retryable`` flag. The worker pool
catches everything at its boundary and runs it through ``classify_error`` so
that unknown exceptions still land in the job record with a kind.
"""

from enum import Enum
from typing import Tuple


class ErrorKind(str, Enum):
    """Failure kinds recorded in ``MediaJob.error.kind``."""

    CORRUPT_SOURCE = "CorruptSource"  # unreadable / malformed input
    UNSUPPORTED_FORMAT = "UnsupportedFormat"  # container or codec we cannot decode
    TRANSCODE_FAILURE = "TranscodeFailure"  # encoder crash, OOM, timeout
    STORAGE_UNAVAILABLE = "StorageUnavailable"  # object store unreachable / 5xx
    STORAGE_QUOTA_EXCEEDED = "StorageQuotaExceeded"  # operator alert, never retried
    CANCELLED = "Cancelled"  # terminal, recorded through the same field
    UNKNOWN = "Unknown"  # unclassified, retried


class MediaPipelineError(Exception):
    """Base class for classified pipeline failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = True

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value


class CorruptSource(MediaPipelineError):
    kind = ErrorKind.CORRUPT_SOURCE
    retryable = False


class UnsupportedFormat(MediaPipelineError):
    kind = ErrorKind.UNSUPPORTED_FORMAT
    retryable = False


class TranscodeFailure(MediaPipelineError):
    kind = ErrorKind.TRANSCODE_FAILURE
    retryable = True


class StorageUnavailable(MediaPipelineError):
    kind = ErrorKind.STORAGE_UNAVAILABLE
    retryable = True


class StorageQuotaExceeded(MediaPipelineError):
    kind = ErrorKind.STORAGE_QUOTA_EXCEEDED
    retryable = False


class JobCancelled(MediaPipelineError):
    """Raised at a checkpoint once the job record has been cancelled."""

    kind = ErrorKind.CANCELLED
    retryable = False


class JobNotFound(LookupError):
    """No job record exists for the given id."""


class InvalidTransition(ValueError):
    """A state change the job state machine does not allow."""


class IntakeRejected(ValueError):
    """An enqueue payload failed intake validation (mime type, size)."""


def classify_error(exc: BaseException) -> Tuple[ErrorKind, bool]:
    """Map an exception to ``(kind, retryable)``.

    Pipeline errors classify themselves. ``MemoryError`` is treated as a
    transient encoder failure, a vanished source file as corrupt input, and
    everything else defaults to ``UNKNOWN`` and retryable.
    """
    if isinstance(exc, MediaPipelineError):
        return exc.kind, exc.retryable
    if isinstance(exc, MemoryError):
        return ErrorKind.TRANSCODE_FAILURE, True
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.CORRUPT_SOURCE, False
    return ErrorKind.UNKNOWN, True
