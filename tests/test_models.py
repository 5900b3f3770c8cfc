"""Unit tests for job record, payload and event models."""

import pytest
from pydantic import ValidationError

from media_pipeline.errors import ErrorKind
from media_pipeline.queue.models import (
    JobError,
    JobPayload,
    JobState,
    MediaJob,
    MediaKind,
    NotificationEvent,
    Variant,
    VariantType,
)


def _variant(variant_type: VariantType, fmt: str = "jpeg") -> Variant:
    return Variant(
        type=variant_type,
        storage_key=f"job-1/{variant_type.value}.{fmt}",
        url=f"media://media/job-1/{variant_type.value}.{fmt}",
        format=fmt,
        width=100,
        height=80,
        size_bytes=1234,
    )


def _job(**overrides) -> MediaJob:
    data = {
        "job_id": "job-1",
        "owner_id": "owner-1",
        "source_kind": MediaKind.IMAGE,
        "source_mime_type": "image/jpeg",
        "source_size_bytes": 2048,
        "source_path": "/tmp/job-1.jpg",
    }
    data.update(overrides)
    return MediaJob(**data)


class TestMediaJobInvariants:
    def test_new_job_defaults(self):
        job = _job()
        assert job.state == JobState.QUEUED
        assert job.attempt == 0
        assert job.variants == []
        assert job.error is None
        assert not job.is_terminal

    def test_completed_requires_all_three_variants(self):
        with pytest.raises(ValidationError):
            _job(state=JobState.COMPLETED, variants=[_variant(VariantType.THUMBNAIL)])

    def test_completed_with_full_set(self):
        job = _job(
            state=JobState.COMPLETED,
            variants=[_variant(t) for t in (VariantType.THUMBNAIL, VariantType.PREVIEW, VariantType.HIGH)],
        )
        assert job.is_terminal
        assert len(job.variants) == 3

    def test_duplicate_variant_types_rejected(self):
        with pytest.raises(ValidationError):
            _job(
                state=JobState.COMPLETED,
                variants=[_variant(VariantType.THUMBNAIL)] * 2 + [_variant(VariantType.HIGH)],
            )

    def test_variants_only_on_completed(self):
        with pytest.raises(ValidationError):
            _job(state=JobState.PROCESSING, variants=[_variant(VariantType.THUMBNAIL)])

    def test_failed_requires_error(self):
        with pytest.raises(ValidationError):
            _job(state=JobState.FAILED)

    def test_error_only_on_failed(self):
        with pytest.raises(ValidationError):
            _job(state=JobState.QUEUED, error=JobError(kind=ErrorKind.UNKNOWN, message="boom"))

    def test_negative_size_rejected(self):
        with pytest.raises(ValidationError):
            _job(source_size_bytes=-1)

    def test_attempts_used_counts_from_retry_base(self):
        job = _job(attempt=5, retry_base=3)
        assert job.attempts_used == 2


class TestStatusDict:
    def test_failed_status_shape(self):
        job = _job(
            state=JobState.FAILED,
            attempt=1,
            error=JobError(kind=ErrorKind.CORRUPT_SOURCE, message="empty file"),
        )
        data = job.to_status_dict()

        assert data["jobId"] == "job-1"
        assert data["state"] == "failed"
        assert data["variants"] == []
        assert data["error"] == {"kind": "CorruptSource", "message": "empty file"}
        assert data["completedAt"] is None

    def test_completed_status_lists_variants(self):
        job = _job(
            state=JobState.COMPLETED,
            variants=[_variant(t) for t in (VariantType.THUMBNAIL, VariantType.PREVIEW, VariantType.HIGH)],
        )
        data = job.to_status_dict()
        assert [v["type"] for v in data["variants"]] == ["thumbnail", "preview", "high"]
        assert data["variants"][0]["sizeBytes"] == 1234
        assert data["error"] is None


class TestPayload:
    def test_payload_round_trips_through_job(self):
        payload = JobPayload(
            job_id="job-9",
            owner_id="o",
            conversation_id="c",
            message_id="m",
            source_path="/tmp/x.mp4",
            source_kind=MediaKind.VIDEO,
            source_mime_type="video/mp4",
            source_size_bytes=10,
        )
        job = payload.to_job()
        assert job.state == JobState.QUEUED
        assert JobPayload.from_job(job) == payload

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            JobPayload(
                job_id="j",
                owner_id="o",
                source_path="/tmp/x",
                source_kind="audio",
                source_mime_type="audio/mpeg",
                source_size_bytes=1,
            )


class TestNotificationEvent:
    def test_completed_event_carries_variants(self):
        job = _job(
            state=JobState.COMPLETED,
            message_id="msg-1",
            variants=[_variant(t) for t in (VariantType.THUMBNAIL, VariantType.PREVIEW, VariantType.HIGH)],
        )
        event = NotificationEvent.from_job(job)
        assert event.status == JobState.COMPLETED
        assert event.message_id == "msg-1"
        assert len(event.variants) == 3
        assert event.error is None

    def test_failed_event_carries_error(self):
        job = _job(state=JobState.FAILED, error=JobError(kind=ErrorKind.CANCELLED, message="user"))
        event = NotificationEvent.from_job(job)
        assert event.variants is None
        assert event.error.kind == ErrorKind.CANCELLED

    def test_non_terminal_job_has_no_event(self):
        with pytest.raises(ValueError):
            NotificationEvent.from_job(_job(state=JobState.PROCESSING))
