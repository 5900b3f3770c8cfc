from __future__ import annotations

"""Abstract base classes for the job record store and the work queue.

The worker pool receives both as explicit constructor dependencies. The
SQLite implementations in ``sqlite_backend`` are the durable defaults; tests
and alternative deployments can swap in any implementation of these
interfaces.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .models import (
        JobError,
        JobPayload,
        JobState,
        MediaJob,
        QueueMessage,
        StateTransition,
        Variant,
    )


class JobRecordStore(ABC):
    """Durable metadata store keyed by job id.

    Implementations must provide:
    - Atomic single-write terminal transitions (no reader may observe a
      completed job with a partial variant list)
    - Rejection of transitions the state machine does not allow
    - No-op semantics for a second terminal write on the same job
    """

    @abstractmethod
    def create(self, job: "MediaJob") -> "MediaJob":
        """Insert a new record in state ``queued``.

        Implementation notes:
        - Idempotent for the same job_id: returns the existing record
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional["MediaJob"]:
        """Return the record or None."""

    @abstractmethod
    def begin_processing(self, job_id: str, worker_id: str) -> Optional["MediaJob"]:
        """Transition to ``processing`` and increment ``attempt``.

        Returns:
            The updated record, or None when the job is terminal (duplicate
            delivery) or unknown.

        Implementation notes:
        - A record still in ``processing`` (expired lease of a crashed
          worker) is first reconciled back to ``queued``
        - MUST be atomic against concurrent callers
        """

    @abstractmethod
    def complete(self, job_id: str, variants: List["Variant"], worker_id: Optional[str] = None) -> bool:
        """Transition ``processing → completed`` with the full variant set.

        With ``worker_id`` the write only applies while that worker owns the
        job, so a worker whose lease was taken over cannot finish it.

        Returns:
            True if this call performed the transition, False if the job was
            no longer processing (the write is a no-op).
        """

    @abstractmethod
    def fail(self, job_id: str, error: "JobError", worker_id: Optional[str] = None) -> bool:
        """Transition ``processing → failed``. Same no-op contract as complete."""

    @abstractmethod
    def cancel(self, job_id: str, message: str = "Cancelled") -> "MediaJob":
        """Mark a queued or processing job failed with kind ``Cancelled``.

        Raises:
            JobNotFound: unknown job
            InvalidTransition: job already terminal
        """

    @abstractmethod
    def requeue(self, job_id: str, source_path: Optional[str] = None) -> "MediaJob":
        """Explicit external re-process: terminal → ``queued``.

        Clears variants and error, keeps ``attempt``. A new ``source_path``
        replaces the original upload, which is deleted once a job ends.

        Raises:
            JobNotFound: unknown job
            InvalidTransition: job is not terminal
        """

    @abstractmethod
    def reset_to_queued(self, job_id: str) -> bool:
        """Reconciler hook: ``processing → queued`` after a lost lease."""

    @abstractmethod
    def list_jobs(self, state: Optional["JobState"] = None, limit: int = 100) -> List["MediaJob"]:
        """Query records, newest first."""

    @abstractmethod
    def count_by_state(self) -> Dict[str, int]:
        """Return ``{state: count}`` for every state."""

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Return the audit trail for one job, oldest first."""


class WorkQueue(ABC):
    """Durable at-least-once queue with per-message leases.

    A leased message is invisible to other workers until its visibility
    timeout passes; after that it is redelivered. The queue is a transport,
    not a source of truth for job state.
    """

    @abstractmethod
    def enqueue(self, payload: "JobPayload", delay_s: float = 0.0) -> str:
        """Add a message and return its message id."""

    @abstractmethod
    def lease(
        self,
        worker_id: str,
        visibility_timeout_s: float,
        wait_timeout_s: float = 0.0,
    ) -> Optional["QueueMessage"]:
        """Lease the next visible message.

        Blocks up to ``wait_timeout_s`` polling for a message. Returns None
        when nothing became visible in time.

        Implementation notes:
        - MUST be atomic: two workers never hold the same message
        - Increments ``delivery_count`` and issues a fresh lease token
        """

    @abstractmethod
    def ack(self, message: "QueueMessage") -> bool:
        """Delete the message if the caller's lease is still current."""

    @abstractmethod
    def requeue(self, message: "QueueMessage", delay_s: float) -> bool:
        """Release the lease and make the message visible after ``delay_s``."""

    @abstractmethod
    def extend_lease(self, message: "QueueMessage", visibility_timeout_s: float) -> bool:
        """Push the visibility deadline out (heartbeat for long transforms)."""

    @abstractmethod
    def delete_pending(self, job_id: str) -> int:
        """Delete messages for a job that are not currently leased.

        Used for cancellation before a worker picks the job up.
        """

    @abstractmethod
    def has_message(self, job_id: str) -> bool:
        """True if any message (leased or not) exists for the job."""

    @abstractmethod
    def is_leased(self, job_id: str) -> bool:
        """True if a message for the job is held under an unexpired lease."""

    @abstractmethod
    def message_state(self, job_id: str) -> Optional[str]:
        """Where the job's message is, for the reconciler.

        Returns one of ``"visible"``, ``"delayed"`` (retry backoff),
        ``"leased"``, ``"expired"`` (lease ran out, awaiting redelivery) or
        None when the queue holds no message for the job.
        """

    @abstractmethod
    def depth(self) -> Dict[str, int]:
        """Return ``{"visible": n, "leased": n, "delayed": n}``."""
