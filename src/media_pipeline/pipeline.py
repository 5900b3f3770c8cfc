"""Service facade shared by the CLI and the status API.

Usage:
    services = pipeline.build_services(config)

    # Intake: copy an upload into the intake area, create the record, enqueue
    job = pipeline.ingest_file(services, "photo.jpg", owner_id="user-1")

    # Process the queue
    pipeline.run_workers(services, drain=True)

    # Check status
    stats = pipeline.get_queue_stats(services)
"""

import logging
import mimetypes
import shutil
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import IntakeRejected, InvalidTransition, JobNotFound
from .models import IntakeConfig, MediaPipelineConfig
from .notifier import Notifier, build_notifier
from .queue import (
    JobPayload,
    JobProcessor,
    JobRecordStore,
    JobState,
    MediaJob,
    MediaKind,
    MediaWorkerPool,
    NotificationEvent,
    SQLiteJobStore,
    SQLiteWorkQueue,
    WorkQueue,
)
from .storage import StorageUploader
from .variants import VariantGenerator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Explicitly wired dependencies; nothing here is a process-wide singleton."""
    config: MediaPipelineConfig
    store: JobRecordStore
    queue: WorkQueue
    uploader: StorageUploader
    notifier: Notifier
    generator: VariantGenerator

    def processor(self) -> JobProcessor:
        return JobProcessor(
            self.store,
            self.queue,
            self.generator,
            self.uploader,
            self.notifier,
            retry=self.config.retry,
            queue_config=self.config.queue,
            scratch_root=self.config.worker.scratch_dir,
            video_slots=self.config.worker.video_workers,
        )

    def close(self) -> None:
        for backend in (self.store, self.queue):
            close = getattr(backend, "close", None)
            if close:
                close()


def build_services(config: Optional[MediaPipelineConfig] = None, **overrides: Any) -> Services:
    """Wire the SQLite store/queue, storage, notifier and generator from config.

    Keyword overrides replace individual components (tests pass fakes).
    """
    config = config or MediaPipelineConfig()
    db_path = config.queue.db_path

    components = {
        "store": overrides.get("store") or SQLiteJobStore(db_path),
        "queue": overrides.get("queue") or SQLiteWorkQueue(db_path, poll_interval_s=config.queue.poll_interval_s),
        "uploader": overrides.get("uploader") or StorageUploader.from_config(config.storage),
        "notifier": overrides.get("notifier") or build_notifier(config.notifier),
        "generator": overrides.get("generator") or VariantGenerator.from_config(config),
    }
    return Services(config=config, **components)


def new_job_id() -> str:
    return str(uuid.uuid4())


def kind_for_mime(mime_type: str, intake: IntakeConfig) -> MediaKind:
    """Map a declared mime type to a media kind, rejecting anything not allowed."""
    mime_type = (mime_type or "").lower()
    if mime_type in intake.image_mime_types:
        return MediaKind.IMAGE
    if mime_type in intake.video_mime_types:
        return MediaKind.VIDEO
    raise IntakeRejected(f"Unsupported file type: {mime_type or 'unknown'}")


def validate_payload(payload: JobPayload, intake: IntakeConfig) -> None:
    """Intake checks: size limit, allowed mime type matching the kind, source present.

    Raises:
        IntakeRejected: payload must not be enqueued
    """
    if payload.source_size_bytes > intake.max_source_bytes:
        raise IntakeRejected(
            f"File too large: {payload.source_size_bytes} bytes (limit {intake.max_source_bytes})"
        )
    if kind_for_mime(payload.source_mime_type, intake) != payload.source_kind:
        raise IntakeRejected(
            f"Mime type {payload.source_mime_type} does not match kind {payload.source_kind.value}"
        )
    if not Path(payload.source_path).is_file():
        raise IntakeRejected(f"Source not found: {payload.source_path}")


def submit_job(services: Services, payload: JobPayload) -> MediaJob:
    """Create the job record (state=queued) and enqueue its message.

    Idempotent per job_id: resubmitting an existing queued job only
    re-enqueues it when the queue has lost its message.
    """
    validate_payload(payload, services.config.intake)

    job = services.store.create(payload.to_job())
    if job.state == JobState.QUEUED and not services.queue.has_message(job.job_id):
        services.queue.enqueue(JobPayload.from_job(job))
        logger.info("Enqueued job %s (%s, %d bytes)", job.job_id, job.source_kind.value, job.source_size_bytes)
    else:
        logger.info("Job %s already known (%s); not enqueued again", job.job_id, job.state.value)
    return job


def _stage_upload(services: Services, source: Path, job_id: str) -> Path:
    """Copy a file into the intake area; the worker deletes the copy when done."""
    upload_dir = Path(services.config.intake.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    staged = upload_dir / f"{job_id}{source.suffix.lower()}"
    shutil.copyfile(source, staged)
    return staged


def ingest_file(
    services: Services,
    path: str,
    owner_id: str,
    conversation_id: Optional[str] = None,
    message_id: Optional[str] = None,
    mime_type: Optional[str] = None,
    job_id: Optional[str] = None,
) -> MediaJob:
    """Intake helper: stage a local file and submit it as a new job."""
    source = Path(path)
    if not source.is_file():
        raise IntakeRejected(f"File not found: {path}")

    mime_type = mime_type or mimetypes.guess_type(source.name)[0] or "application/octet-stream"
    kind = kind_for_mime(mime_type, services.config.intake)
    size = source.stat().st_size
    if size > services.config.intake.max_source_bytes:
        raise IntakeRejected(f"File too large: {size} bytes (limit {services.config.intake.max_source_bytes})")

    job_id = job_id or new_job_id()
    staged = _stage_upload(services, source, job_id)

    payload = JobPayload(
        job_id=job_id,
        owner_id=owner_id,
        conversation_id=conversation_id,
        message_id=message_id,
        source_path=str(staged),
        source_kind=kind,
        source_mime_type=mime_type,
        source_size_bytes=size,
    )
    try:
        return submit_job(services, payload)
    except IntakeRejected:
        staged.unlink(missing_ok=True)
        raise


def reprocess_job(services: Services, job_id: str, source_path: Optional[str] = None) -> MediaJob:
    """Explicit re-process: reset a terminal job to queued and enqueue it.

    The original upload is deleted when a job ends, so a new copy of the
    source must be supplied unless the old file is still present.

    Raises:
        JobNotFound, InvalidTransition, IntakeRejected
    """
    job = services.store.get(job_id)
    if job is None:
        raise JobNotFound(job_id)
    if not job.is_terminal:
        raise InvalidTransition(f"Job {job_id} is {job.state.value}; only completed or failed jobs can be re-processed")

    new_source = None
    if source_path:
        new_source = str(_stage_upload(services, Path(source_path), job_id))
    elif not Path(job.source_path).is_file():
        raise IntakeRejected(f"Source for job {job_id} is gone; supply the file again to re-process")

    job = services.store.requeue(job_id, source_path=new_source)
    services.queue.enqueue(JobPayload.from_job(job))
    logger.info("Re-queued job %s (attempt counter stays at %d)", job_id, job.attempt)
    return job


def cancel_job(services: Services, job_id: str, reason: str = "Cancelled by request") -> MediaJob:
    """Cancel a queued or processing job.

    Before a worker leases the job, its queue message is deleted and the
    source removed here. After a lease, the record is marked failed and the
    worker stops at its next checkpoint (and removes the source itself).
    The cancellation event is published once, from here.
    """
    job = services.store.get(job_id)
    if job is None:
        raise JobNotFound(job_id)
    if job.is_terminal:
        raise InvalidTransition(f"Job {job_id} is already {job.state.value}")

    removed = services.queue.delete_pending(job_id)
    job = services.store.cancel(job_id, reason)

    if not services.queue.is_leased(job_id):
        Path(job.source_path).unlink(missing_ok=True)

    logger.info("Cancelled job %s (%s)", job_id, "before lease" if removed else "in flight")
    services.notifier.publish(NotificationEvent.from_job(job))
    return job


def reconcile(store: JobRecordStore, queue: WorkQueue, limit: int = 1000) -> Dict[str, str]:
    """Periodic reconciler: repair records whose queue message is gone or expired.

    - processing, lease expired → reset to queued (the message is redelivered)
    - processing or queued, no message at all → reset to queued and re-enqueue
    - leased, delayed (retry backoff) or visible messages are left alone

    Returns:
        ``{job_id: action}`` for every job touched
    """
    actions = {}
    for state in (JobState.PROCESSING, JobState.QUEUED):
        for job in store.list_jobs(state=state, limit=limit):
            message_state = queue.message_state(job.job_id)

            if message_state is None:
                if job.state == JobState.PROCESSING:
                    if not store.reset_to_queued(job.job_id):
                        continue
                else:
                    current = store.get(job.job_id)
                    if current is None or current.state != JobState.QUEUED:
                        continue
                queue.enqueue(JobPayload.from_job(job))
                actions[job.job_id] = "re-enqueued"
                logger.warning("Job %s had no queue message; re-enqueued", job.job_id)
            elif message_state == "expired" and job.state == JobState.PROCESSING:
                if store.reset_to_queued(job.job_id):
                    actions[job.job_id] = "reset"
                    logger.info("Job %s lease expired; reset to queued", job.job_id)
    return actions


def get_queue_stats(services: Services) -> Dict[str, Any]:
    """Job counts per state plus queue depth."""
    return {
        "jobs": services.store.count_by_state(),
        "queue": services.queue.depth(),
    }


def run_workers(
    services: Services,
    n_workers: Optional[int] = None,
    drain: bool = False,
    show_progress: bool = True,
    stop_event=None,
) -> Dict[str, int]:
    """Run the worker pool.

    With ``drain`` the pool stops once the queue is empty; otherwise it runs
    until ``stop_event`` is set (or KeyboardInterrupt).
    """
    n_workers = n_workers or services.config.worker.resolved_workers()
    pool = MediaWorkerPool(
        services.queue,
        services.processor(),
        n_workers=n_workers,
        lease_wait_timeout_s=services.config.queue.lease_wait_timeout_s,
    )

    if drain:
        return pool.run_until_empty(show_progress=show_progress)

    logger.info("Worker pool running with %d workers; Ctrl+C to stop", n_workers)
    stop_event = stop_event or threading.Event()
    with pool:
        try:
            while not stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted; finishing in-flight jobs")
    return dict(pool.outcomes)
