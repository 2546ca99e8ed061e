#!/usr/bin/env python3
"""
Job Store — Durable Queue State

SQLite-backed table of every job the queue has accepted. The queue writes
here before scheduling anything, so after a crash the table still shows
which jobs were queued, which were running, and how each finished.

Design principles:
- A job row exists before any remote work starts
- Status transitions are single UPDATE statements guarded by the old status
- Terminal rows are never modified again
- WAL journal so status reads don't block the workers
"""

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Optional, Dict, Any, List

from core.errors import PersistenceError

from .models import Job, JobStatus

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.expanduser("~/.orchestrator/jobs.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    server_id TEXT NOT NULL,
    payload TEXT NOT NULL,          -- JSON: input, ssh snapshot, prior state
    status TEXT NOT NULL,           -- queued, running, succeeded, failed, succeeded-with-sync-error
    created_at REAL NOT NULL,
    started_at REAL DEFAULT NULL,
    completed_at REAL DEFAULT NULL,
    error TEXT DEFAULT NULL,        -- JSON error detail
    result TEXT DEFAULT NULL,       -- JSON result
    owner TEXT DEFAULT NULL,        -- worker id holding a running job
    heartbeat_at REAL DEFAULT NULL  -- last liveness mark from that worker
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_server ON jobs(server_id);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);
"""


class JobStore:
    """Persistent job table shared by the submit path and the workers."""

    def __init__(self, db_path: str = None):
        self.db_path = str(db_path or os.environ.get("ORCH_DB_PATH", DEFAULT_DB_PATH))

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._migrate()
        self._conn.commit()

        logger.info(f"JobStore initialized (db={self.db_path})")

    def _migrate(self):
        """Add claim columns to tables created before they existed."""
        columns = {r["name"] for r in self._conn.execute("PRAGMA table_info(jobs)")}
        for name, ddl in (("owner", "TEXT DEFAULT NULL"), ("heartbeat_at", "REAL DEFAULT NULL")):
            if name not in columns:
                self._conn.execute(f"ALTER TABLE jobs ADD COLUMN {name} {ddl}")

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _write(self, sql: str, params) -> sqlite3.Cursor:
        try:
            with self._lock, self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Job store write failed: {e}") from e

    def _read(self, sql: str, params=()) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Job store read failed: {e}") from e

    # ── Writes ───────────────────────────────────────────────────

    def insert(self, job: Job) -> Job:
        self._write(
            """INSERT INTO jobs (id, kind, server_id, payload, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (job.id, job.kind, job.server_id, json.dumps(job.payload),
             job.status, job.created_at),
        )
        return job

    def mark_running(self, job_id: str, owner: str = None) -> bool:
        """
        Claim a queued job: queued -> running.

        The claim is a single UPDATE, so when several processes share the
        table exactly one wins. It also fails while the same server has a
        running job or an older queued job, which keeps per-server order
        across processes. False means the job was not claimed.
        """
        now = time.time()
        cursor = self._write(
            """UPDATE jobs SET status = ?, started_at = ?, owner = ?, heartbeat_at = ?
               WHERE id = ? AND status = ?
                 AND NOT EXISTS (
                     SELECT 1 FROM jobs AS other
                     WHERE other.server_id = jobs.server_id AND other.status = ?)
                 AND NOT EXISTS (
                     SELECT 1 FROM jobs AS other
                     WHERE other.server_id = jobs.server_id AND other.status = ?
                       AND (other.created_at < jobs.created_at
                            OR (other.created_at = jobs.created_at
                                AND other.rowid < jobs.rowid)))""",
            (JobStatus.RUNNING.value, now, owner, now, job_id, JobStatus.QUEUED.value,
             JobStatus.RUNNING.value, JobStatus.QUEUED.value),
        )
        return cursor.rowcount == 1

    def heartbeat(self, owner: str) -> int:
        """Refresh the liveness mark on every running job held by ``owner``."""
        cursor = self._write(
            "UPDATE jobs SET heartbeat_at = ? WHERE owner = ? AND status = ?",
            (time.time(), owner, JobStatus.RUNNING.value),
        )
        return cursor.rowcount

    def mark_terminal(self, job_id: str, status: JobStatus,
                      result: Any = None, error: Dict[str, Any] = None,
                      stale_before: float = None) -> bool:
        """
        running/queued -> terminal. Terminal rows are left untouched.

        With ``stale_before`` the update only applies when the holder's
        heartbeat is older than that time, or when no worker owns the row
        (crash recovery).
        """
        if not status.terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        sql = """UPDATE jobs SET status = ?, completed_at = ?, result = ?, error = ?
                 WHERE id = ? AND status IN (?, ?)"""
        params = [status.value, time.time(),
                  json.dumps(result) if result is not None else None,
                  json.dumps(error) if error is not None else None,
                  job_id, JobStatus.QUEUED.value, JobStatus.RUNNING.value]
        if stale_before is not None:
            sql += self._STALE_CLAUSE
            params.append(stale_before)
        return self._write(sql, params).rowcount == 1

    def requeue(self, job_id: str, stale_before: float = None) -> bool:
        """running -> queued, used by crash recovery."""
        sql = """UPDATE jobs SET status = ?, started_at = NULL, owner = NULL, heartbeat_at = NULL
                 WHERE id = ? AND status = ?"""
        params = [JobStatus.QUEUED.value, job_id, JobStatus.RUNNING.value]
        if stale_before is not None:
            sql += self._STALE_CLAUSE
            params.append(stale_before)
        return self._write(sql, params).rowcount == 1

    _STALE_CLAUSE = " AND (owner IS NULL OR heartbeat_at IS NULL OR heartbeat_at < ?)"

    # ── Reads ────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[Job]:
        rows = self._read("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def list_jobs(self, server_id: str = None, status: str = None, limit: int = 50) -> List[Job]:
        """Query jobs with optional filters, newest first."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params = []

        if server_id:
            query += " AND server_id = ?"
            params.append(server_id)
        if status:
            query += " AND status = ?"
            params.append(status)

        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_job(r) for r in self._read(query, params)]

    def list_by_status(self, status: JobStatus) -> List[Job]:
        """All jobs in a status, oldest first (recovery order)."""
        rows = self._read(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC",
            (status.value,),
        )
        return [self._row_to_job(r) for r in rows]

    def list_stale_running(self, before: float, exclude_owner: str = None) -> List[Job]:
        """Running jobs with no live holder: unowned, or no heartbeat since ``before``."""
        rows = self._read(
            """SELECT * FROM jobs
               WHERE status = ? AND (owner IS NULL OR heartbeat_at IS NULL OR heartbeat_at < ?)
                 AND (owner IS NULL OR owner != ?)
               ORDER BY created_at ASC, rowid ASC""",
            (JobStatus.RUNNING.value, before, exclude_owner or ""),
        )
        return [self._row_to_job(r) for r in rows]

    def get_stats(self) -> Dict[str, Any]:
        rows = self._read("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        counts = {r["status"]: r["n"] for r in rows}
        return {
            "db_path": self.db_path,
            "total": sum(counts.values()),
            "by_status": counts,
        }

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _loads(raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return {"raw": raw}

    def _row_to_job(self, row) -> Job:
        return Job(
            id=row["id"],
            kind=row["kind"],
            server_id=row["server_id"],
            payload=self._loads(row["payload"]) or {},
            status=row["status"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error=self._loads(row["error"]),
            result=self._loads(row["result"]),
            owner=row["owner"],
            heartbeat_at=row["heartbeat_at"],
        )

    def __repr__(self) -> str:
        return f"JobStore({self.db_path})"
