"""Worker pool: leases queue messages and drives jobs through the state machine.

This module provides:
- JobProcessor: processes one leased message end to end
- MediaWorkerPool: a fixed set of worker threads, each single-job-at-a-time
- Heartbeat threads that extend the lease while a transform runs
- Error classification (retryable vs not) with exponential backoff

Threads give real parallelism here: video transforms run in ffmpeg
subprocesses and Pillow releases the GIL while resampling and encoding.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tqdm import tqdm

from ..errors import ErrorKind, JobCancelled, classify_error
from ..models import QueueConfig, RetryConfig
from .backends import JobRecordStore, WorkQueue
from .models import (
    JobError,
    JobState,
    MediaJob,
    MediaKind,
    NotificationEvent,
    QueueMessage,
    Variant,
)

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    """What happened to one leased message."""

    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"        # requeued with backoff, record stays processing
    CANCELLED = "cancelled"
    DUPLICATE = "duplicate"      # record already terminal; message discarded
    LEASE_LOST = "lease_lost"    # another worker took the job over
    ERROR = "error"              # unhandled failure outside the job boundary


class LeaseLost(Exception):
    """Raised at a checkpoint when another worker now owns the job."""


def compute_backoff(attempts_used: int, retry: RetryConfig) -> float:
    """Delay before the next delivery after ``attempts_used`` failed attempts.

    base * factor^(attempts_used - 1), capped. With the defaults:
    5s, 10s, 20s, ... up to 300s.
    """
    if attempts_used < 1:
        return 0.0
    delay = retry.backoff_base_s * (retry.backoff_factor ** (attempts_used - 1))
    return min(retry.backoff_cap_s, delay)


class JobProcessor:
    """Processes one leased message.

    Flow: load record → skip if terminal → begin_processing → generate →
    upload each variant → complete → ack → notify → clean up. Every failure
    is caught here and either requeued with backoff or recorded as Failed.

    Dependencies are passed in explicitly; ``generator`` needs
    ``generate(source_path, kind, scratch_dir, checkpoint)``, ``uploader``
    needs ``upload(job_id, generated_variant)`` and ``notifier`` needs
    ``publish(event)``.
    """

    def __init__(
        self,
        store: JobRecordStore,
        queue: WorkQueue,
        generator: Any,
        uploader: Any,
        notifier: Any,
        retry: Optional[RetryConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        scratch_root: Optional[str] = None,
        video_slots: Optional[int] = None,
    ):
        self.store = store
        self.queue = queue
        self.generator = generator
        self.uploader = uploader
        self.notifier = notifier
        self.retry = retry or RetryConfig()
        self.queue_config = queue_config or QueueConfig()
        self.scratch_root = Path(scratch_root or Path(tempfile.gettempdir()) / "media_pipeline")
        # Shared by all workers using this processor; None means uncapped.
        self._video_slots = threading.BoundedSemaphore(video_slots) if video_slots else None

    @property
    def initial_visibility_timeout_s(self) -> float:
        """Lease length before the media kind is known."""
        return self.queue_config.image_visibility_timeout_s

    def visibility_timeout_for(self, kind: MediaKind) -> float:
        if MediaKind(kind) == MediaKind.VIDEO:
            return self.queue_config.video_visibility_timeout_s
        return self.queue_config.image_visibility_timeout_s

    def run_once(self, worker_id: str, wait_timeout_s: float = 0.0) -> Optional[JobOutcome]:
        """Lease and process a single message; None if the queue was empty."""
        message = self.queue.lease(worker_id, self.initial_visibility_timeout_s, wait_timeout_s)
        if message is None:
            return None
        return self.process(message, worker_id)

    def process(self, message: QueueMessage, worker_id: str) -> JobOutcome:
        job = self.store.get(message.job_id)
        if job is None:
            logger.warning("Discarding message %s: no record for job %s", message.message_id, message.job_id)
            self.queue.ack(message)
            return JobOutcome.DUPLICATE

        if job.is_terminal:
            logger.info("Job %s already %s; discarding duplicate delivery", job.job_id, job.state.value)
            self.queue.ack(message)
            _remove_file(job.source_path)
            return JobOutcome.DUPLICATE

        visibility = self.visibility_timeout_for(job.source_kind)
        if not self.queue.extend_lease(message, visibility):
            logger.warning("Lease on job %s expired before processing started", job.job_id)
            return JobOutcome.LEASE_LOST

        source_path = job.source_path
        job = self.store.begin_processing(job.job_id, worker_id)
        if job is None:
            self.queue.ack(message)
            _remove_file(source_path)
            return JobOutcome.DUPLICATE

        logger.info(
            "Processing job %s (%s, attempt %d, delivery %d)",
            job.job_id, job.source_kind.value, job.attempt, message.delivery_count,
        )

        start_time = time.time()
        scratch_dir = Path(tempfile.mkdtemp(prefix=f"{job.job_id}-", dir=self._ensure_scratch_root()))
        heartbeat = _start_heartbeat(
            self.queue, message, visibility, self.queue_config.heartbeat_interval_s
        )

        try:
            try:
                variants = self._transform(job, worker_id, scratch_dir)
            finally:
                _stop_heartbeat(heartbeat)
        except Exception as exc:
            _remove_tree(scratch_dir)
            return self._handle_failure(job, message, exc, worker_id)

        _remove_tree(scratch_dir)

        if not self.store.complete(job.job_id, variants, worker_id=worker_id):
            return self._resolve_lost_write(job, message)

        self.queue.ack(message)
        logger.info("Job %s completed in %.1fs", job.job_id, time.time() - start_time)
        self._notify(job.job_id)
        _remove_file(job.source_path)
        return JobOutcome.COMPLETED

    def _transform(self, job: MediaJob, worker_id: str, scratch_dir: Path) -> List[Variant]:
        def checkpoint():
            self._checkpoint(job.job_id, worker_id)

        if self._video_slots is not None and MediaKind(job.source_kind) == MediaKind.VIDEO:
            with self._video_slots:
                checkpoint()
                generated = self.generator.generate(Path(job.source_path), job.source_kind, scratch_dir, checkpoint)
        else:
            generated = self.generator.generate(Path(job.source_path), job.source_kind, scratch_dir, checkpoint)

        variants = []
        for item in generated:
            checkpoint()
            result = self.uploader.upload(job.job_id, item)
            variants.append(
                Variant(
                    type=item.type,
                    storage_key=result.storage_key,
                    url=result.url,
                    format=item.format,
                    width=item.width,
                    height=item.height,
                    size_bytes=result.size_bytes,
                )
            )
        return variants

    def _checkpoint(self, job_id: str, worker_id: str) -> None:
        current = self.store.get(job_id)
        if current is None:
            raise LeaseLost(f"Job {job_id} record disappeared")
        if current.state == JobState.FAILED and current.error and current.error.kind == ErrorKind.CANCELLED:
            raise JobCancelled(current.error.message)
        if current.state != JobState.PROCESSING or current.worker_id != worker_id:
            raise LeaseLost(f"Job {job_id} is now {current.state.value} under {current.worker_id}")

    def _handle_failure(self, job: MediaJob, message: QueueMessage, exc: Exception, worker_id: str) -> JobOutcome:
        if isinstance(exc, JobCancelled):
            logger.info("Job %s cancelled; stopping at checkpoint", job.job_id)
            self.queue.ack(message)
            _remove_file(job.source_path)
            return JobOutcome.CANCELLED

        if isinstance(exc, LeaseLost):
            logger.warning("Abandoning job %s: %s", job.job_id, exc)
            return JobOutcome.LEASE_LOST

        kind, retryable = classify_error(exc)
        if retryable and job.attempts_used < self.retry.max_attempts:
            delay = compute_backoff(job.attempts_used, self.retry)
            logger.warning(
                "Job %s attempt %d/%d failed (%s: %s); retrying in %.0fs",
                job.job_id, job.attempts_used, self.retry.max_attempts, kind.value, exc, delay,
            )
            if not self.queue.requeue(message, delay):
                logger.warning("Lease on job %s already expired; redelivery will retry it", job.job_id)
            return JobOutcome.RETRYING

        if kind == ErrorKind.UNKNOWN:
            logger.error("Job %s failed with unclassified error", job.job_id, exc_info=exc)
        else:
            logger.error("Job %s failed: %s: %s", job.job_id, kind.value, exc)

        error = JobError(kind=kind, message=_error_message(exc))
        if not self.store.fail(job.job_id, error, worker_id=worker_id):
            return self._resolve_lost_write(job, message)

        self.queue.ack(message)
        self._notify(job.job_id)
        _remove_file(job.source_path)
        return JobOutcome.FAILED

    def _resolve_lost_write(self, job: MediaJob, message: QueueMessage) -> JobOutcome:
        """A terminal write matched no row: cancelled meanwhile, or taken over."""
        current = self.store.get(job.job_id)
        if current is not None and current.state == JobState.FAILED and current.error.kind == ErrorKind.CANCELLED:
            logger.info("Job %s was cancelled during processing", job.job_id)
            self.queue.ack(message)
            _remove_file(job.source_path)
            return JobOutcome.CANCELLED

        logger.warning(
            "Job %s terminal write was a no-op (now %s)",
            job.job_id, current.state.value if current else "missing",
        )
        return JobOutcome.LEASE_LOST

    def _notify(self, job_id: str) -> None:
        job = self.store.get(job_id)
        if job is None or not job.is_terminal:
            return
        try:
            self.notifier.publish(NotificationEvent.from_job(job))
        except Exception:
            logger.exception("Notifier raised for job %s", job_id)

    def _ensure_scratch_root(self) -> str:
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        return str(self.scratch_root)


def _error_message(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
    return message[:500]


def _remove_file(path: str) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Failed to remove source %s", path)


def _remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def _start_heartbeat(
    queue: WorkQueue,
    message: QueueMessage,
    visibility_timeout_s: float,
    interval_s: float,
):
    """Start background thread that extends the lease every ``interval_s``.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    The thread stops on its own once an extension fails (lease lost); the
    next checkpoint then notices the takeover.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                if not queue.extend_lease(message, visibility_timeout_s):
                    logger.warning("Lease lost for job %s; heartbeat stopping", message.job_id)
                    return
            except Exception:
                logger.exception("Heartbeat failed for job %s", message.job_id)

    thread = threading.Thread(
        target=heartbeat_loop, name=f"heartbeat-{message.job_id[:8]}", daemon=True
    )
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signal the heartbeat thread to stop and wait up to 5s."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)


class MediaWorkerPool:
    """Fixed-size pool of worker threads sharing one store and one queue.

    Features:
    - Each worker is single-job-at-a-time: lease → process → lease
    - Context manager for graceful shutdown (in-flight jobs finish)
    - Drain mode with tqdm progress for batch runs
    - Outcome counters for operator output

    Example:
        >>> with MediaWorkerPool(queue, processor, n_workers=4):
        ...     signal.pause()
    """

    def __init__(
        self,
        queue: WorkQueue,
        processor: JobProcessor,
        n_workers: Optional[int] = None,
        lease_wait_timeout_s: float = 2.0,
        on_outcome: Optional[Callable[[JobOutcome], None]] = None,
    ):
        """Initialize worker pool.

        Args:
            queue: Work queue to lease from
            processor: JobProcessor shared by all workers
            n_workers: Number of worker threads (default: CPU count)
            lease_wait_timeout_s: How long an idle worker blocks on lease
            on_outcome: Optional callback invoked after every processed message
        """
        self.queue = queue
        self.processor = processor
        self.n_workers = n_workers or os.cpu_count() or 1
        self.lease_wait_timeout_s = lease_wait_timeout_s
        self.on_outcome = on_outcome

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._busy = 0
        self._lock = threading.Lock()
        self.outcomes: Dict[str, int] = {o.value: 0 for o in JobOutcome}

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop(wait=True)

    @property
    def busy_workers(self) -> int:
        with self._lock:
            return self._busy

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()
        for i in range(self.n_workers):
            worker_id = f"worker-{os.getpid()}-{i}"
            thread = threading.Thread(target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d workers", self.n_workers)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop leasing new work. With ``wait``, block until in-flight jobs finish."""
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        self._threads = []

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                message = self.queue.lease(
                    worker_id,
                    self.processor.initial_visibility_timeout_s,
                    wait_timeout_s=self.lease_wait_timeout_s,
                )
            except Exception:
                logger.exception("Lease failed on %s", worker_id)
                self._stop.wait(1.0)
                continue

            if message is None:
                continue

            with self._lock:
                self._busy += 1
            try:
                outcome = self.processor.process(message, worker_id)
            except Exception:
                # Store/queue failure outside the job boundary; the lease
                # expires and the message is redelivered.
                logger.exception("Unhandled error processing job %s", message.job_id)
                outcome = JobOutcome.ERROR
            finally:
                with self._lock:
                    self._busy -= 1

            with self._lock:
                self.outcomes[outcome.value] += 1
            if self.on_outcome:
                self.on_outcome(outcome)

    def run_until_empty(self, show_progress: bool = True, poll_interval_s: float = 0.2) -> Dict[str, int]:
        """Drain mode: process until the queue (including delayed retries) is empty.

        Returns:
            Outcome counters for this run
        """
        depth = self.queue.depth()
        total = depth["visible"] + depth["delayed"] + depth["leased"]

        with tqdm(total=total, desc="Processing media", unit="job", disable=not show_progress) as bar:
            previous = self.on_outcome

            def _tick(outcome: JobOutcome):
                if outcome != JobOutcome.RETRYING:
                    bar.update(1)
                if previous:
                    previous(outcome)

            self.on_outcome = _tick
            self.start()
            try:
                while True:
                    time.sleep(poll_interval_s)
                    depth = self.queue.depth()
                    if not any(depth.values()) and self.busy_workers == 0:
                        break
            finally:
                self.stop(wait=True)
                self.on_outcome = previous

        return dict(self.outcomes)
