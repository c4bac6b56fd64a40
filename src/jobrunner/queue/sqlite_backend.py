"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for schema management and read queries
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claim and state transitions
- Exponential backoff retry for database lock handling

Several worker processes may share one database file; each process keeps a
single connection guarded by a lock so its worker threads can share it.
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager, suppress
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlite_utils import Database

from .backends import QueueBackend
from .errors import InvalidJobState, JobNotFound, QueueUnavailable
from .models import Job, JobStatus, QueueStats, StateTransition, utcnow

# SQLite schema SQL
SCHEMA_SQL = """
-- Job records
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    type TEXT NOT NULL,
    payload TEXT,
    priority INTEGER DEFAULT 5,
    status TEXT NOT NULL,
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    last_error TEXT,
    result TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim
    ON jobs(queue, status, priority DESC, available_at ASC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_jobs_heartbeat ON jobs(queue, status, last_heartbeat);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);
"""

JOB_COLUMNS = (
    "id",
    "queue",
    "type",
    "payload",
    "priority",
    "status",
    "attempts",
    "max_attempts",
    "created_at",
    "updated_at",
    "available_at",
    "started_at",
    "completed_at",
    "last_heartbeat",
    "worker_id",
    "last_error",
    "result",
    "metadata",
)
JSON_FIELDS = ("payload", "result", "metadata")
DATETIME_FIELDS = (
    "created_at",
    "updated_at",
    "available_at",
    "started_at",
    "completed_at",
    "last_heartbeat",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so text comparison orders chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    columns = [c[0] for c in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic claim operations.

    Features:
    - Atomic claim via BEGIN IMMEDIATE (write lock taken before the SELECT)
    - Exponential backoff retry for database lock contention
    - Heartbeat-based visibility timeout
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Prevents race where multiple workers claim same job
    - One connection per instance, serialized by an in-process lock
    """

    def __init__(
        self,
        db_path: str,
        queue_name: str = "default",
        busy_timeout_s: float = 5.0,
        lock_retries: int = 3,
        **kwargs,
    ):
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            queue_name: Logical queue; several queues can share one file
            busy_timeout_s: How long SQLite waits on a locked database
            lock_retries: BEGIN IMMEDIATE attempts before giving up
            **kwargs: Retry/visibility settings for QueueBackend
        """
        super().__init__(queue_name=queue_name, **kwargs)
        self.db_path = str(db_path)
        self.lock_retries = max(lock_retries, 1)
        self._lock = threading.RLock()

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(
                self.db_path,
                timeout=busy_timeout_s,
                isolation_level=None,  # explicit BEGIN/COMMIT only
                check_same_thread=False,
            )
            self.db = Database(conn)

            if self.db_path != ":memory:":
                # Enable WAL mode for better concurrent performance
                self.db.execute("PRAGMA journal_mode=WAL")
                self.db.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe

            self.db.executescript(SCHEMA_SQL)
        except (sqlite3.Error, OSError) as e:
            raise QueueUnavailable(f"cannot open queue database {self.db_path}: {e}") from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _read(self) -> Iterator[Database]:
        with self._lock:
            try:
                yield self.db
            except sqlite3.Error as e:
                raise QueueUnavailable(f"queue database error: {e}") from e

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

        Store errors surface as QueueUnavailable; queue errors raised by the
        body (JobNotFound, InvalidJobState) pass through after rollback.
        """
        with self._lock:
            conn = self.db.conn
            try:
                self._begin_immediate(conn)
            except sqlite3.Error as e:
                raise QueueUnavailable(f"queue database error: {e}") from e

            try:
                yield conn
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise QueueUnavailable(f"queue database error: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                # Leave the shared connection usable for the next BEGIN IMMEDIATE
                with suppress(sqlite3.Error):
                    conn.execute("ROLLBACK")
                raise QueueUnavailable(f"queue database error: {e}") from e

    def _begin_immediate(self, conn: sqlite3.Connection) -> None:
        """BEGIN IMMEDIATE with exponential backoff on SQLITE_BUSY.

        Exponential backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(self.lock_retries):
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        data = dict(row)
        for field in JSON_FIELDS:
            data[field] = json.loads(data[field]) if data.get(field) else None
        if data["payload"] is None:
            data["payload"] = {}
        if data["metadata"] is None:
            data["metadata"] = {}
        return Job.model_validate(data)

    def _job_to_row(self, job: Job) -> Dict[str, Any]:
        row = job.model_dump(exclude=set(JSON_FIELDS))
        row["status"] = JobStatus(job.status).value
        for field in DATETIME_FIELDS:
            row[field] = _ts(row[field])

        json_data = job.model_dump(mode="json", include=set(JSON_FIELDS))
        for field in JSON_FIELDS:
            value = json_data[field]
            row[field] = json.dumps(value) if value is not None else None
        return row

    def _select_job(self, conn: sqlite3.Connection, job_id: str) -> Job:
        rows = _dicts(
            conn.execute(
                "SELECT * FROM jobs WHERE id = ? AND queue = ?", (job_id, self.queue_name)
            )
        )
        if not rows:
            raise JobNotFound(job_id)
        return self._row_to_job(rows[0])

    def _insert(self, conn: sqlite3.Connection, job: Job) -> None:
        row = self._job_to_row(job)
        placeholders = ", ".join("?" for _ in JOB_COLUMNS)
        conn.execute(
            f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
            [row[c] for c in JOB_COLUMNS],
        )

    def _update(self, conn: sqlite3.Connection, job: Job) -> None:
        row = self._job_to_row(job)
        columns = [c for c in JOB_COLUMNS if c != "id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        conn.execute(
            f"UPDATE jobs SET {assignments} WHERE id = ?",
            [row[c] for c in columns] + [job.id],
        )

    def _log_transition(self, conn: sqlite3.Connection, transition: StateTransition) -> None:
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                transition.job_id,
                transition.from_state,
                transition.to_state,
                _ts(transition.timestamp),
                transition.worker_id,
                transition.error_snippet,
            ),
        )

    # ------------------------------------------------------------------
    # QueueBackend
    # ------------------------------------------------------------------

    def enqueue(self, job: Job) -> Job:
        with self._write_transaction() as conn:
            try:
                return self._select_job(conn, job.id)
            except JobNotFound:
                pass

            exists_elsewhere = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job.id,)).fetchone()
            if exists_elsewhere:
                raise InvalidJobState(f"job id {job.id} already belongs to another queue")

            stored = self._prepare_new(job, utcnow())
            self._insert(conn, stored)
            self._log_transition(conn, self._transition(stored, None))
            return stored

    def dequeue(self, worker_id: Optional[str] = None) -> Optional[Job]:
        with self._write_transaction() as conn:
            now = utcnow()

            # CRITICAL: the write lock is held from BEGIN IMMEDIATE, so no other
            # connection can claim the row between this SELECT and the UPDATE
            self._requeue_stale_locked(conn, now)

            rows = _dicts(
                conn.execute(
                    """
                    SELECT * FROM jobs
                    WHERE queue = ? AND status = ? AND available_at <= ?
                    ORDER BY priority DESC, available_at ASC, created_at ASC
                    LIMIT 1
                    """,
                    (self.queue_name, JobStatus.PENDING.value, _ts(now)),
                )
            )
            if not rows:
                return None

            job = self._row_to_job(rows[0])
            claimed = self._claimed(job, worker_id, now)
            self._update(conn, claimed)
            self._log_transition(conn, self._transition(claimed, job.status, worker_id))
            return claimed

    def complete_job(
        self, job_id: str, result: Optional[Dict[str, Any]] = None, worker_id: Optional[str] = None
    ) -> Job:
        with self._write_transaction() as conn:
            job = self._select_job(conn, job_id)
            completed = self._completed(job, result, worker_id, utcnow())
            if completed is None:
                return job

            self._update(conn, completed)
            self._log_transition(conn, self._transition(completed, job.status, worker_id))
            return completed

    def fail_job(
        self, job_id: str, reason: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> Job:
        with self._write_transaction() as conn:
            job = self._select_job(conn, job_id)
            failed = self._failed(job, reason, retry, worker_id, utcnow())

            self._update(conn, failed)
            self._log_transition(
                conn, self._transition(failed, job.status, worker_id, error=failed.last_error)
            )
            return failed

    def get_queue_stats(self) -> QueueStats:
        with self._read() as db:
            counts = dict(
                db.execute(
                    "SELECT status, COUNT(*) FROM jobs WHERE queue = ? GROUP BY status",
                    [self.queue_name],
                ).fetchall()
            )

        return QueueStats(
            queue_name=self.queue_name,
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            total=sum(counts.values()),
        )

    def get_job(self, job_id: str) -> Job:
        with self._read() as db:
            rows = list(
                db["jobs"].rows_where("id = ? AND queue = ?", [job_id, self.queue_name])
            )
        if not rows:
            raise JobNotFound(job_id)
        return self._row_to_job(rows[0])

    def list_jobs(
        self, status: Optional[str] = None, page: int = 1, limit: int = 50
    ) -> Tuple[List[Job], int]:
        where = "queue = ?"
        args: List[Any] = [self.queue_name]
        if status:
            where += " AND status = ?"
            args.append(JobStatus(status).value)

        page = max(page, 1)
        with self._read() as db:
            total = db["jobs"].count_where(where, args)
            rows = list(
                db["jobs"].rows_where(
                    where,
                    args,
                    order_by="created_at, id",
                    limit=limit,
                    offset=(page - 1) * limit,
                )
            )
        return [self._row_to_job(row) for row in rows], total

    def delete_job(self, job_id: str) -> None:
        with self._write_transaction() as conn:
            job = self._select_job(conn, job_id)
            if not job.is_terminal:
                raise InvalidJobState(
                    f"cannot delete job with status: {JobStatus(job.status).value}"
                )
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            conn.execute("DELETE FROM state_transitions WHERE job_id = ?", (job_id,))

    def cleanup_old_jobs(self, older_than_s: float) -> int:
        cutoff = utcnow() - timedelta(seconds=older_than_s)

        with self._write_transaction() as conn:
            ids = [
                row[0]
                for row in conn.execute(
                    """
                    SELECT id FROM jobs
                    WHERE queue = ? AND status IN (?, ?) AND completed_at < ?
                    """,
                    (
                        self.queue_name,
                        JobStatus.COMPLETED.value,
                        JobStatus.FAILED.value,
                        _ts(cutoff),
                    ),
                ).fetchall()
            ]
            for job_id in ids:
                conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                conn.execute("DELETE FROM state_transitions WHERE job_id = ?", (job_id,))
            return len(ids)

    def update_heartbeat(self, job_id: str) -> None:
        with self._write_transaction() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET last_heartbeat = ?
                WHERE id = ? AND queue = ? AND status = ?
                """,
                (_ts(utcnow()), job_id, self.queue_name, JobStatus.PROCESSING.value),
            )

    def requeue_stale(self) -> int:
        with self._write_transaction() as conn:
            return self._requeue_stale_locked(conn, utcnow())

    def _requeue_stale_locked(self, conn: sqlite3.Connection, now: datetime) -> int:
        """Reclaim processing jobs whose heartbeat is older than the visibility timeout.

        Must run inside a write transaction. Jobs with retry budget left go back
        to 'pending'; exhausted ones are dead-lettered so a lost worker never
        pushes a job past max_attempts.
        """
        cutoff = now - timedelta(seconds=self.visibility_timeout_s)
        rows = _dicts(
            conn.execute(
                "SELECT * FROM jobs WHERE queue = ? AND status = ? AND last_heartbeat < ?",
                (self.queue_name, JobStatus.PROCESSING.value, _ts(cutoff)),
            )
        )

        for row in rows:
            job = self._row_to_job(row)
            reclaimed = self._reclaimed(job, now)
            self._update(conn, reclaimed)
            self._log_transition(
                conn,
                self._transition(reclaimed, job.status, job.worker_id, error=reclaimed.last_error),
            )

        return len(rows)

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        with self._read() as db:
            rows = list(
                db["state_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
            )
        return [
            StateTransition(
                job_id=row["job_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                timestamp=row["timestamp"],
                worker_id=row["worker_id"],
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()
