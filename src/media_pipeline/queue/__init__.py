"""Durable job records, work queue and worker pool."""

from .backends import JobRecordStore, WorkQueue
from .models import (
    JobError,
    JobPayload,
    JobState,
    MediaJob,
    MediaKind,
    NotificationEvent,
    QueueMessage,
    StateTransition,
    Variant,
    VariantType,
)
from .sqlite_backend import SQLiteJobStore, SQLiteWorkQueue
from .worker import JobOutcome, JobProcessor, MediaWorkerPool, compute_backoff

__all__ = [
    "JobRecordStore",
    "WorkQueue",
    "JobError",
    "JobPayload",
    "JobState",
    "MediaJob",
    "MediaKind",
    "NotificationEvent",
    "QueueMessage",
    "StateTransition",
    "Variant",
    "VariantType",
    "SQLiteJobStore",
    "SQLiteWorkQueue",
    "JobOutcome",
    "JobProcessor",
    "MediaWorkerPool",
    "compute_backoff",
]
