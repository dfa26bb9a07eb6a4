"""
SQLite job store for sttqueue.

Every worker instance opens its own Database. Within one instance the
connection is shared across threads (check_same_thread=False) and guarded
by a re-entrant lock.

Exclusive claiming: SQLite has no row-level SKIP LOCKED, so the claim runs
in a BEGIN IMMEDIATE transaction (the database write lock, held only for
the handful of statements of the claim) and the status flip is guarded by
``status = 'pending'``. A row can therefore be flipped by exactly one
claimant; everybody else sees it as no longer pending.
"""

import sqlite3
import threading
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from sttqueue.core.constants import DEFAULT_DB_PATH, JobStatus, TERMINAL_STATUSES
from sttqueue.core.error_codes import PersistenceError
from sttqueue.core.models_sqlite import Job

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    source_type TEXT NOT NULL CHECK (source_type IN ('upload', 'url')),
    source_url TEXT,
    original_name TEXT,
    file_path TEXT NOT NULL DEFAULT '',
    wav_path TEXT,
    language TEXT,
    result_text TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL CHECK (max_attempts >= 1),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);
"""

# Columns a caller may change through update_job()
_UPDATABLE_COLUMNS = {
    'status', 'file_path', 'original_name', 'wav_path',
    'result_text', 'error', 'attempts',
}

# SQLite's historical limit on bound parameters is 999
_BATCH_SIZE = 500


def to_timestamp(moment: datetime) -> str:
    """Format a datetime the way it is stored: UTC ISO-8601, microseconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec='microseconds')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """SQLite database wrapper holding the jobs table."""

    def __init__(self, db_path: Path | None = None, busy_timeout_sec: float = 30.0):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)
        self._lock = threading.RLock()
        self._ensure_dirs()
        try:
            self.conn = sqlite3.connect(
                str(self.db_path),
                timeout=busy_timeout_sec,
                check_same_thread=False,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._migrate()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open job store {self.db_path}: {e}") from e

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return to_timestamp(utcnow())

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(**dict(row))

    @contextmanager
    def _guard(self, action: str):
        """Serialise access to the connection and map sqlite errors."""
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                try:
                    if self.conn.in_transaction:
                        self.conn.rollback()
                except sqlite3.Error as rollback_error:
                    logger.warning("Rollback after failed %s also failed: %s",
                                   action, rollback_error)
                raise PersistenceError(f"{action} failed: {e}") from e

    def ping(self) -> bool:
        with self._guard("ping") as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, source_type: str, max_attempts: int,
                   file_path: str = "", source_url: str | None = None,
                   original_name: str | None = None, language: str | None = None,
                   job_id: str | None = None) -> Job:
        now = self._now()
        job = Job(
            id=job_id or str(uuid.uuid4()),
            source_type=source_type,
            max_attempts=max_attempts,
            file_path=file_path,
            source_url=source_url,
            original_name=original_name,
            language=language,
            created_at=now,
            updated_at=now,
        )
        with self._guard("create job") as conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, status, source_type, source_url, original_name,
                    file_path, language, attempts, max_attempts,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.status, job.source_type, job.source_url,
                 job.original_name, job.file_path, job.language,
                 job.attempts, job.max_attempts, job.created_at, job.updated_at),
            )
            conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._guard("get job") as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def get_jobs_by_status(self, status: str) -> list[Job]:
        with self._guard("list jobs") as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC",
                (status,),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_job(self, job_id: str, **kwargs):
        unknown = set(kwargs) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update job columns: {sorted(unknown)}")
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id]
        with self._guard("update job") as conn:
            cur = conn.execute(f"UPDATE jobs SET {sets} WHERE id = ?", vals)
            conn.commit()
        if cur.rowcount == 0:
            raise PersistenceError(f"update job failed: job {job_id} no longer exists")

    def delete_job(self, job_id: str):
        with self._guard("delete job") as conn:
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            conn.commit()

    def delete_jobs(self, job_ids: Iterable[str],
                    statuses: Iterable[str] = TERMINAL_STATUSES) -> list[str]:
        """
        Delete a batch of jobs in a single transaction, but only rows whose
        status is still one of ``statuses``. Returns the ids actually deleted.
        """
        ids = list(job_ids)
        if not ids:
            return []
        statuses = sorted(statuses)
        status_marks = ', '.join('?' for _ in statuses)
        deleted = []
        with self._guard("delete jobs") as conn:
            conn.execute("BEGIN IMMEDIATE")
            for start in range(0, len(ids), _BATCH_SIZE):
                batch = ids[start:start + _BATCH_SIZE]
                marks = ', '.join('?' for _ in batch)
                where = f"id IN ({marks}) AND status IN ({status_marks})"
                rows = conn.execute(f"SELECT id FROM jobs WHERE {where}",
                                    batch + statuses).fetchall()
                conn.execute(f"DELETE FROM jobs WHERE {where}", batch + statuses)
                deleted.extend(r['id'] for r in rows)
            conn.commit()
        return deleted

    def list_jobs_older_than(self, cutoff: datetime,
                             statuses: Iterable[str] = TERMINAL_STATUSES) -> list[Job]:
        """Jobs created before ``cutoff``; by default only finished ones."""
        statuses = sorted(statuses)
        status_marks = ', '.join('?' for _ in statuses)
        with self._guard("list expired jobs") as conn:
            rows = conn.execute(
                f"""SELECT * FROM jobs WHERE created_at < ? AND status IN ({status_marks})
                    ORDER BY created_at ASC""",
                [to_timestamp(cutoff)] + statuses,
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def list_all_job_ids(self) -> set[str]:
        with self._guard("list job ids") as conn:
            rows = conn.execute("SELECT id FROM jobs").fetchall()
        return {r['id'] for r in rows}

    # ── Queue operations ──────────────────────────────────────────────

    def claim_next_job(self) -> Job | None:
        """
        Atomically claim the oldest pending job.
        Sets status=processing and attempts+=1; returns the updated row,
        or None when nothing is claimable.
        """
        with self._guard("claim job") as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """SELECT id FROM jobs WHERE status = ?
                   ORDER BY created_at ASC, rowid ASC LIMIT 1""",
                (JobStatus.PENDING,),
            ).fetchone()
            if row is None:
                conn.commit()
                return None

            cur = conn.execute(
                """UPDATE jobs SET status = ?, attempts = attempts + 1, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (JobStatus.PROCESSING, self._now(), row['id'], JobStatus.PENDING),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None

            claimed = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (row['id'],)
            ).fetchone()
            conn.commit()
        return self._row_to_job(claimed)

    def requeue_stale_jobs(self, threshold: datetime) -> list[str]:
        """
        Reset processing jobs not touched since ``threshold`` to pending.
        Clears error; attempts is left as it is. Returns the requeued ids.
        """
        stamp = to_timestamp(threshold)
        with self._guard("requeue stale jobs") as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                "SELECT id FROM jobs WHERE status = ? AND updated_at < ?",
                (JobStatus.PROCESSING, stamp),
            ).fetchall()
            ids = [r['id'] for r in rows]
            if ids:
                conn.execute(
                    """UPDATE jobs SET status = ?, error = NULL, updated_at = ?
                       WHERE status = ? AND updated_at < ?""",
                    (JobStatus.PENDING, self._now(), JobStatus.PROCESSING, stamp),
                )
            conn.commit()
        return ids

    def requeue_failed_job(self, job_id: str) -> bool:
        """Move a failed job with attempts left back to pending."""
        with self._guard("retry job") as conn:
            cur = conn.execute(
                """UPDATE jobs SET status = ?, error = NULL, updated_at = ?
                   WHERE id = ? AND status = ? AND attempts < max_attempts""",
                (JobStatus.PENDING, self._now(), job_id, JobStatus.FAILED),
            )
            conn.commit()
        return cur.rowcount == 1
