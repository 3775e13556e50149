from __future__ import annotations

import copy
import itertools
import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional


JOB_STATUSES = ("pending", "processing", "completed", "failed")
UPDATABLE_FIELDS = (
    "status",
    "progress",
    "current_step",
    "site_info",
    "backup_file_path",
    "backup_file_size",
    "error_message",
    "completed_at",
)
JSON_FIELDS = ("site_info", "options", "credentials")


@dataclass
class BackupJob:
    id: int
    website_url: str
    backup_type: str
    options: Dict[str, Any] = field(default_factory=dict)
    credentials: Optional[Dict[str, str]] = None
    status: str = "pending"
    progress: int = 0
    current_step: Optional[str] = None
    site_info: Optional[Dict[str, Any]] = None
    backup_file_path: Optional[str] = None
    backup_file_size: Optional[int] = None
    error_message: Optional[str] = None
    created_at: int = 0
    completed_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "failed"}

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        creds = payload.pop("credentials", None) or {}
        payload["credentials"] = {"username": creds.get("username")} if creds.get("username") else None
        return payload


def _check_updates(updates: Dict[str, Any]) -> None:
    unknown = sorted(set(updates) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValueError(f"Unknown backup job fields: {', '.join(unknown)}")
    status = updates.get("status")
    if status is not None and status not in JOB_STATUSES:
        raise ValueError(f"Invalid backup job status: {status}")


class SQLiteStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    website_url TEXT NOT NULL,
                    backup_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    progress INTEGER NOT NULL DEFAULT 0,
                    current_step TEXT,
                    site_info TEXT,
                    options TEXT,
                    credentials TEXT,
                    backup_file_path TEXT,
                    backup_file_size INTEGER,
                    error_message TEXT,
                    created_at INTEGER NOT NULL,
                    completed_at INTEGER
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_backup_jobs_created ON backup_jobs(created_at DESC)")

    def _row_to_job(self, row: Optional[sqlite3.Row]) -> Optional[BackupJob]:
        if row is None:
            return None
        data = dict(row)
        for key in JSON_FIELDS:
            raw = data.get(key)
            data[key] = json.loads(raw) if raw else None
        data["options"] = data.get("options") or {}
        return BackupJob(**data)

    def create_job(
        self,
        website_url: str,
        backup_type: str,
        options: Optional[Dict[str, Any]] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> BackupJob:
        now = int(time.time())
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO backup_jobs(website_url, backup_type, status, progress, options, credentials, created_at)
                VALUES(?, ?, 'pending', 0, ?, ?, ?)
                """,
                (
                    website_url,
                    backup_type,
                    json.dumps(options or {}),
                    json.dumps(credentials) if credentials else None,
                    now,
                ),
            )
            job_id = int(cur.lastrowid)
            row = conn.execute("SELECT * FROM backup_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row)

    def get_job(self, job_id: int) -> Optional[BackupJob]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM backup_jobs WHERE id = ?", (int(job_id),)).fetchone()
        return self._row_to_job(row)

    def update_job(
        self,
        job_id: int,
        updates: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[BackupJob]:
        """Apply ``updates`` and return the new record.

        With ``expected_status`` the write only happens while the stored
        status still matches; otherwise nothing changes and None is returned.
        """
        _check_updates(updates)
        if not updates:
            return self.get_job(job_id)

        columns = []
        params: List[Any] = []
        for key, value in updates.items():
            columns.append(f"{key} = ?")
            params.append(json.dumps(value) if key in JSON_FIELDS and value is not None else value)
        where = "id = ?"
        params.append(int(job_id))
        if expected_status is not None:
            where += " AND status = ?"
            params.append(expected_status)

        with self._lock, self._connect() as conn:
            cur = conn.execute(f"UPDATE backup_jobs SET {', '.join(columns)} WHERE {where}", params)
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM backup_jobs WHERE id = ?", (int(job_id),)).fetchone()
        return self._row_to_job(row)

    def list_jobs(self) -> List[BackupJob]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM backup_jobs ORDER BY created_at DESC, id DESC").fetchall()
        return [self._row_to_job(r) for r in rows]

    def list_recent_jobs(self, limit: int = 10) -> List[BackupJob]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM backup_jobs ORDER BY created_at DESC, id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]


class MemoryStore:
    """In-process store with the same interface as ``SQLiteStore``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._jobs: Dict[int, BackupJob] = {}

    def create_job(
        self,
        website_url: str,
        backup_type: str,
        options: Optional[Dict[str, Any]] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> BackupJob:
        with self._lock:
            job = BackupJob(
                id=next(self._ids),
                website_url=website_url,
                backup_type=backup_type,
                options=dict(options or {}),
                credentials=dict(credentials) if credentials else None,
                created_at=int(time.time()),
            )
            self._jobs[job.id] = job
            return copy.deepcopy(job)

    def get_job(self, job_id: int) -> Optional[BackupJob]:
        with self._lock:
            job = self._jobs.get(int(job_id))
            return copy.deepcopy(job) if job else None

    def update_job(
        self,
        job_id: int,
        updates: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[BackupJob]:
        _check_updates(updates)
        with self._lock:
            job = self._jobs.get(int(job_id))
            if job is None:
                return None
            if expected_status is not None and job.status != expected_status:
                return None
            job = replace(job, **copy.deepcopy(updates))
            self._jobs[job.id] = job
            return copy.deepcopy(job)

    def list_jobs(self) -> List[BackupJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: (j.created_at, j.id), reverse=True)
            return [copy.deepcopy(j) for j in jobs]

    def list_recent_jobs(self, limit: int = 10) -> List[BackupJob]:
        return self.list_jobs()[: max(1, int(limit))]
