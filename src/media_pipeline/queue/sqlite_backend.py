"""SQLite implementations of JobRecordStore and WorkQueue.

This module provides the local-first, crash-safe durable layer using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic leases and transitions
- Exponential backoff retry for database lock handling
- A state transition audit table

Both classes may point at the same database file. Each instance owns one
connection guarded by a lock, so an instance can be shared by the worker
threads of a pool; separate processes coordinate through SQLite file locking.
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlite_utils import Database

from ..errors import ErrorKind, InvalidTransition, JobNotFound
from .backends import JobRecordStore, WorkQueue
from .models import (
    VARIANT_ORDER,
    JobError,
    JobPayload,
    JobState,
    MediaJob,
    QueueMessage,
    StateTransition,
    Variant,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

JOB_SCHEMA_SQL = """
-- Job records
CREATE TABLE IF NOT EXISTS media_jobs (
    job_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    conversation_id TEXT,
    message_id TEXT,
    source_kind TEXT NOT NULL,
    source_mime_type TEXT NOT NULL,
    source_size_bytes INTEGER NOT NULL,
    source_path TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt INTEGER DEFAULT 0,
    retry_base INTEGER DEFAULT 0,
    variants TEXT,
    error TEXT,
    worker_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state ON media_jobs(state);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON media_jobs(created_at DESC);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES media_jobs(job_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

QUEUE_SCHEMA_SQL = """
-- Work queue messages; visible_at doubles as the lease deadline
CREATE TABLE IF NOT EXISTS queue_messages (
    message_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at REAL NOT NULL,
    visible_at REAL NOT NULL,
    lease_token TEXT,
    worker_id TEXT,
    delivery_count INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_queue_visible ON queue_messages(visible_at, enqueued_at);
CREATE INDEX IF NOT EXISTS idx_queue_job ON queue_messages(job_id);
"""


class _SQLiteBackend:
    """Shared connection handling for the SQLite store and queue."""

    schema_sql = ""

    def __init__(self, db_path: str, busy_retries: int = 5):
        """Open (and create if needed) the database.

        Args:
            db_path: Path to SQLite database file
            busy_retries: Attempts to take the write lock under contention
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_retries = busy_retries
        self._lock = threading.RLock()

        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        self.db = Database(conn)

        # Enable WAL mode for better concurrent performance
        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self.db.executescript(self.schema_sql)

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    def _write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` inside a BEGIN IMMEDIATE transaction.

        BEGIN IMMEDIATE takes the write lock at transaction start, so a
        select-then-update inside ``fn`` cannot race another writer.
        Lock contention is retried with exponential backoff: 100ms, 200ms, ...
        """
        for attempt in range(self.busy_retries):
            with self._lock:
                conn = self.db.conn
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    if "database is locked" not in str(e).lower() or attempt == self.busy_retries - 1:
                        raise
                    locked = True
                else:
                    locked = False
                    try:
                        result = fn(conn)
                    except Exception:
                        conn.rollback()
                        raise
                    conn.commit()
                    return result

            if locked:
                time.sleep(0.1 * (2 ** attempt))

        raise sqlite3.OperationalError("database is locked")

    def _read(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self.db.execute(sql, params)
            columns = [c[0] for c in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _fetch_one(conn: sqlite3.Connection, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
    cursor = conn.execute(sql, params)
    row = cursor.fetchone()
    if row is None:
        return None
    return dict(zip([c[0] for c in cursor.description], row))


class SQLiteJobStore(_SQLiteBackend, JobRecordStore):
    """SQLite-based job record store with atomic state transitions.

    Terminal transitions are single ``UPDATE ... WHERE state = 'processing'``
    statements: the variant list and the state flip land in one write, and a
    second writer (duplicate delivery) matches zero rows.
    """

    schema_sql = JOB_SCHEMA_SQL

    def create(self, job: MediaJob) -> MediaJob:
        def _create(conn):
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO media_jobs (
                    job_id, owner_id, conversation_id, message_id, source_kind,
                    source_mime_type, source_size_bytes, source_path, state,
                    attempt, retry_base, variants, error, worker_id,
                    created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.owner_id,
                    job.conversation_id,
                    job.message_id,
                    job.source_kind.value,
                    job.source_mime_type,
                    job.source_size_bytes,
                    job.source_path,
                    JobState.QUEUED.value,
                    job.attempt,
                    job.retry_base,
                    "[]",
                    None,
                    None,
                    job.created_at.isoformat(),
                    job.updated_at.isoformat(),
                    None,
                ),
            )
            if cursor.rowcount == 1:
                self._log_transition(conn, job.job_id, None, JobState.QUEUED.value)
            return self._get(conn, job.job_id)

        return _row_to_job(self._write(_create))

    def get(self, job_id: str) -> Optional[MediaJob]:
        rows = self._read("SELECT * FROM media_jobs WHERE job_id = ?", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    def begin_processing(self, job_id: str, worker_id: str) -> Optional[MediaJob]:
        """Lease holder takes the job: ``queued → processing``, attempt += 1.

        A record left in ``processing`` by a worker whose lease expired is
        reconciled back to ``queued`` first (logged in the audit trail).
        """

        def _begin(conn):
            row = self._get(conn, job_id)
            if row is None or JobState(row["state"]).is_terminal:
                return None

            now = utcnow().isoformat()
            if row["state"] == JobState.PROCESSING.value:
                self._log_transition(
                    conn,
                    job_id,
                    JobState.PROCESSING.value,
                    JobState.QUEUED.value,
                    worker_id=worker_id,
                    error=f"Redelivered (retry or expired lease); previous holder {row['worker_id']}",
                )

            conn.execute(
                """
                UPDATE media_jobs
                SET state = ?,
                    attempt = attempt + 1,
                    worker_id = ?,
                    updated_at = ?
                WHERE job_id = ? AND state IN (?, ?)
                """,
                (
                    JobState.PROCESSING.value,
                    worker_id,
                    now,
                    job_id,
                    JobState.QUEUED.value,
                    JobState.PROCESSING.value,
                ),
            )
            self._log_transition(
                conn, job_id, JobState.QUEUED.value, JobState.PROCESSING.value, worker_id=worker_id
            )
            return self._get(conn, job_id)

        row = self._write(_begin)
        return _row_to_job(row) if row else None

    def complete(self, job_id: str, variants: List[Variant], worker_id: Optional[str] = None) -> bool:
        types = {v.type for v in variants}
        if types != set(VARIANT_ORDER) or len(variants) != len(VARIANT_ORDER):
            raise ValueError(f"Refusing partial variant set for {job_id}: {sorted(t.value for t in types)}")

        ordered = sorted(variants, key=lambda v: VARIANT_ORDER.index(v.type))
        variants_json = json.dumps([v.model_dump(mode="json") for v in ordered])

        owner_clause, owner_args = _owner_guard(worker_id)

        def _complete(conn):
            now = utcnow().isoformat()
            cursor = conn.execute(
                """
                UPDATE media_jobs
                SET state = ?,
                    variants = ?,
                    error = NULL,
                    completed_at = ?,
                    updated_at = ?,
                    worker_id = NULL
                WHERE job_id = ? AND state = ?
                """ + owner_clause,
                (
                    JobState.COMPLETED.value,
                    variants_json,
                    now,
                    now,
                    job_id,
                    JobState.PROCESSING.value,
                ) + owner_args,
            )
            if cursor.rowcount != 1:
                return False
            self._log_transition(conn, job_id, JobState.PROCESSING.value, JobState.COMPLETED.value)
            return True

        return self._write(_complete)

    def fail(self, job_id: str, error: JobError, worker_id: Optional[str] = None) -> bool:
        owner_clause, owner_args = _owner_guard(worker_id)

        def _fail(conn):
            now = utcnow().isoformat()
            cursor = conn.execute(
                """
                UPDATE media_jobs
                SET state = ?,
                    variants = '[]',
                    error = ?,
                    completed_at = ?,
                    updated_at = ?,
                    worker_id = NULL
                WHERE job_id = ? AND state = ?
                """ + owner_clause,
                (
                    JobState.FAILED.value,
                    error.model_dump_json(),
                    now,
                    now,
                    job_id,
                    JobState.PROCESSING.value,
                ) + owner_args,
            )
            if cursor.rowcount != 1:
                return False
            self._log_transition(
                conn,
                job_id,
                JobState.PROCESSING.value,
                JobState.FAILED.value,
                error=f"{error.kind.value}: {error.message}",
            )
            return True

        return self._write(_fail)

    def cancel(self, job_id: str, message: str = "Cancelled") -> MediaJob:
        error = JobError(kind=ErrorKind.CANCELLED, message=message)

        def _cancel(conn):
            row = self._get(conn, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if JobState(row["state"]).is_terminal:
                raise InvalidTransition(f"Job {job_id} is already {row['state']}")

            now = utcnow().isoformat()
            conn.execute(
                """
                UPDATE media_jobs
                SET state = ?, variants = '[]', error = ?, completed_at = ?, updated_at = ?
                WHERE job_id = ?
                """,
                (JobState.FAILED.value, error.model_dump_json(), now, now, job_id),
            )
            self._log_transition(
                conn, job_id, row["state"], JobState.FAILED.value, error=f"Cancelled: {message}"
            )
            return self._get(conn, job_id)

        return _row_to_job(self._write(_cancel))

    def requeue(self, job_id: str, source_path: Optional[str] = None) -> MediaJob:
        def _requeue(conn):
            row = self._get(conn, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if not JobState(row["state"]).is_terminal:
                raise InvalidTransition(
                    f"Job {job_id} is {row['state']}; only completed or failed jobs can be re-processed"
                )

            conn.execute(
                """
                UPDATE media_jobs
                SET state = ?,
                    variants = '[]',
                    error = NULL,
                    completed_at = NULL,
                    worker_id = NULL,
                    retry_base = attempt,
                    source_path = COALESCE(?, source_path),
                    updated_at = ?
                WHERE job_id = ?
                """,
                (JobState.QUEUED.value, source_path, utcnow().isoformat(), job_id),
            )
            self._log_transition(conn, job_id, row["state"], JobState.QUEUED.value, error="Re-process requested")
            return self._get(conn, job_id)

        return _row_to_job(self._write(_requeue))

    def reset_to_queued(self, job_id: str) -> bool:
        def _reset(conn):
            cursor = conn.execute(
                """
                UPDATE media_jobs
                SET state = ?, worker_id = NULL, updated_at = ?
                WHERE job_id = ? AND state = ?
                """,
                (JobState.QUEUED.value, utcnow().isoformat(), job_id, JobState.PROCESSING.value),
            )
            if cursor.rowcount != 1:
                return False
            self._log_transition(
                conn,
                job_id,
                JobState.PROCESSING.value,
                JobState.QUEUED.value,
                error="Reset stale job (lease expired)",
            )
            return True

        return self._write(_reset)

    def list_jobs(self, state: Optional[JobState] = None, limit: int = 100) -> List[MediaJob]:
        if state is not None:
            rows = self._read(
                "SELECT * FROM media_jobs WHERE state = ? ORDER BY created_at DESC LIMIT ?",
                (JobState(state).value, limit),
            )
        else:
            rows = self._read("SELECT * FROM media_jobs ORDER BY created_at DESC LIMIT ?", (limit,))
        return [_row_to_job(r) for r in rows]

    def count_by_state(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobState}
        for row in self._read("SELECT state, COUNT(*) AS n FROM media_jobs GROUP BY state"):
            counts[row["state"]] = row["n"]
        return counts

    def transitions(self, job_id: str) -> List[StateTransition]:
        rows = self._read(
            "SELECT * FROM state_transitions WHERE job_id = ? ORDER BY id ASC", (job_id,)
        )
        return [StateTransition(**r) for r in rows]

    @staticmethod
    def _get(conn: sqlite3.Connection, job_id: str) -> Optional[Dict[str, Any]]:
        return _fetch_one(conn, "SELECT * FROM media_jobs WHERE job_id = ?", (job_id,))

    @staticmethod
    def _log_transition(
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, utcnow().isoformat(), worker_id, error[:200] if error else None),
        )


def _owner_guard(worker_id: Optional[str]):
    """Extra WHERE clause tying a terminal write to the worker that owns the job."""
    if worker_id is None:
        return "", ()
    return " AND worker_id = ?", (worker_id,)


def _row_to_job(row: Dict[str, Any]) -> MediaJob:
    """Convert a media_jobs row to a MediaJob model."""
    return MediaJob(
        job_id=row["job_id"],
        owner_id=row["owner_id"],
        conversation_id=row["conversation_id"],
        message_id=row["message_id"],
        source_kind=row["source_kind"],
        source_mime_type=row["source_mime_type"],
        source_size_bytes=row["source_size_bytes"],
        source_path=row["source_path"],
        state=row["state"],
        attempt=row["attempt"],
        retry_base=row["retry_base"],
        variants=json.loads(row["variants"]) if row["variants"] else [],
        error=json.loads(row["error"]) if row["error"] else None,
        worker_id=row["worker_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )


class SQLiteWorkQueue(_SQLiteBackend, WorkQueue):
    """SQLite-based work queue with visibility-timeout leases.

    Features:
    - Atomic lease via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Lease tokens: a stale holder cannot ack or requeue a redelivered message
    - Delayed visibility for retry backoff
    - Lease extension (heartbeat) for long transforms

    Redelivery needs no explicit action: once ``visible_at`` passes, a leased
    message is eligible again.
    """

    schema_sql = QUEUE_SCHEMA_SQL

    def __init__(
        self,
        db_path: str,
        poll_interval_s: float = 0.5,
        clock: Callable[[], float] = time.time,
        busy_retries: int = 5,
    ):
        """Initialize queue backend.

        Args:
            db_path: Path to SQLite database file (may be shared with the store)
            poll_interval_s: Sleep between polls while a lease call blocks
            clock: Epoch-seconds source, injectable for tests
            busy_retries: Attempts to take the write lock under contention
        """
        super().__init__(db_path, busy_retries=busy_retries)
        self.poll_interval_s = poll_interval_s
        self._clock = clock

    def enqueue(self, payload: JobPayload, delay_s: float = 0.0) -> str:
        message_id = uuid.uuid4().hex
        now = self._clock()

        def _enqueue(conn):
            conn.execute(
                """
                INSERT INTO queue_messages (message_id, job_id, payload, enqueued_at, visible_at, delivery_count)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (message_id, payload.job_id, payload.model_dump_json(), now, now + delay_s),
            )

        self._write(_enqueue)
        logger.debug("Enqueued job %s as message %s (delay %.1fs)", payload.job_id, message_id, delay_s)
        return message_id

    def lease(
        self,
        worker_id: str,
        visibility_timeout_s: float,
        wait_timeout_s: float = 0.0,
    ) -> Optional[QueueMessage]:
        deadline = self._clock() + wait_timeout_s
        while True:
            message = self._lease_once(worker_id, visibility_timeout_s)
            if message is not None:
                return message
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_s, remaining))

    def _lease_once(self, worker_id: str, visibility_timeout_s: float) -> Optional[QueueMessage]:
        token = uuid.uuid4().hex

        def _lease(conn):
            now = self._clock()
            cursor = conn.execute(
                """
                UPDATE queue_messages
                SET lease_token = ?,
                    worker_id = ?,
                    visible_at = ?,
                    delivery_count = delivery_count + 1
                WHERE message_id = (
                    SELECT message_id FROM queue_messages
                    WHERE visible_at <= ?
                    ORDER BY visible_at ASC, enqueued_at ASC
                    LIMIT 1
                )
                RETURNING message_id, job_id, payload, enqueued_at, visible_at, lease_token, delivery_count
                """,
                (token, worker_id, now + visibility_timeout_s, now),
            )
            return cursor.fetchone()

        row = self._write(_lease)
        if row is None:
            return None

        message_id, job_id, payload, enqueued_at, visible_at, lease_token, delivery_count = row
        return QueueMessage(
            message_id=message_id,
            job_id=job_id,
            payload=JobPayload.model_validate_json(payload),
            lease_token=lease_token,
            delivery_count=delivery_count,
            enqueued_at=_from_epoch(enqueued_at),
            visible_at=_from_epoch(visible_at),
        )

    def ack(self, message: QueueMessage) -> bool:
        def _ack(conn):
            cursor = conn.execute(
                "DELETE FROM queue_messages WHERE message_id = ? AND lease_token = ?",
                (message.message_id, message.lease_token),
            )
            return cursor.rowcount == 1

        acked = self._write(_ack)
        if not acked:
            logger.warning(
                "Ack for message %s (job %s) ignored: lease no longer held", message.message_id, message.job_id
            )
        return acked

    def requeue(self, message: QueueMessage, delay_s: float) -> bool:
        def _requeue(conn):
            cursor = conn.execute(
                """
                UPDATE queue_messages
                SET lease_token = NULL, worker_id = NULL, visible_at = ?
                WHERE message_id = ? AND lease_token = ?
                """,
                (self._clock() + delay_s, message.message_id, message.lease_token),
            )
            return cursor.rowcount == 1

        return self._write(_requeue)

    def extend_lease(self, message: QueueMessage, visibility_timeout_s: float) -> bool:
        def _extend(conn):
            deadline = self._clock() + visibility_timeout_s
            cursor = conn.execute(
                "UPDATE queue_messages SET visible_at = ? WHERE message_id = ? AND lease_token = ?",
                (deadline, message.message_id, message.lease_token),
            )
            return cursor.rowcount == 1, deadline

        extended, deadline = self._write(_extend)
        if extended:
            message.visible_at = _from_epoch(deadline)
        return extended

    def delete_pending(self, job_id: str) -> int:
        def _delete(conn):
            cursor = conn.execute(
                """
                DELETE FROM queue_messages
                WHERE job_id = ? AND (lease_token IS NULL OR visible_at <= ?)
                """,
                (job_id, self._clock()),
            )
            return cursor.rowcount

        return self._write(_delete)

    def has_message(self, job_id: str) -> bool:
        rows = self._read("SELECT 1 FROM queue_messages WHERE job_id = ? LIMIT 1", (job_id,))
        return bool(rows)

    def is_leased(self, job_id: str) -> bool:
        rows = self._read(
            """
            SELECT 1 FROM queue_messages
            WHERE job_id = ? AND lease_token IS NOT NULL AND visible_at > ?
            LIMIT 1
            """,
            (job_id, self._clock()),
        )
        return bool(rows)

    def message_state(self, job_id: str) -> Optional[str]:
        rows = self._read(
            "SELECT lease_token, visible_at FROM queue_messages WHERE job_id = ? ORDER BY visible_at DESC LIMIT 1",
            (job_id,),
        )
        if not rows:
            return None
        leased = rows[0]["lease_token"] is not None
        pending = rows[0]["visible_at"] > self._clock()
        if leased:
            return "leased" if pending else "expired"
        return "delayed" if pending else "visible"

    def depth(self) -> Dict[str, int]:
        now = self._clock()
        rows = self._read(
            """
            SELECT
                SUM(CASE WHEN visible_at <= ? THEN 1 ELSE 0 END) AS visible,
                SUM(CASE WHEN visible_at > ? AND lease_token IS NOT NULL THEN 1 ELSE 0 END) AS leased,
                SUM(CASE WHEN visible_at > ? AND lease_token IS NULL THEN 1 ELSE 0 END) AS delayed
            FROM queue_messages
            """,
            (now, now, now),
        )
        row = rows[0] if rows else {}
        return {key: int(row.get(key) or 0) for key in ("visible", "leased", "delayed")}


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc)
