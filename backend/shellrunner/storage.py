from __future__ import annotations
import sqlite3
import threading
from pathlib import Path

from .errors import AuditWriteFailure
from .models import AuditRecord, AuditStatus, utcnow_iso

SCHEMA = """
CREATE TABLE IF NOT EXISTS audits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT NOT NULL,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audits_timestamp ON audits(timestamp);
CREATE INDEX IF NOT EXISTS idx_audits_job_id ON audits(job_id);
"""


def _row_to_record(row: sqlite3.Row) -> AuditRecord:
    return AuditRecord(
        id=row["id"],
        job_id=row["job_id"],
        action=row["action"],
        status=AuditStatus(row["status"]),
        details=row["details"],
        timestamp=row["timestamp"],
    )


class AuditStore:
    """Append-only job lifecycle log.

    Rows are only ever inserted. Inline requests and the worker thread share one
    connection, so every statement runs under ``_lock``.
    """

    def __init__(self, path: Path | str = ":memory:"):
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = str(path)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def append(self, job_id: str, action: str, status: AuditStatus, details: str = "") -> AuditRecord:
        """Record one lifecycle transition. Raises AuditWriteFailure if the sink rejects it."""
        try:
            with self._lock:
                timestamp = utcnow_iso()
                cur = self._conn.execute(
                    "INSERT INTO audits(job_id, action, status, details, timestamp) VALUES (?, ?, ?, ?, ?)",
                    (job_id, action, status.value, details, timestamp),
                )
                self._conn.commit()
                row_id = cur.lastrowid
        except sqlite3.Error as e:
            raise AuditWriteFailure(f"audit write failed for job {job_id} ({status.value}): {e}") from e
        return AuditRecord(job_id=job_id, action=action, status=status, details=details, timestamp=timestamp, id=row_id)

    def list_audits(self, limit: int = 50) -> list[AuditRecord]:
        """Most recent first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM audits ORDER BY timestamp DESC, id DESC LIMIT ?",
                (max(0, int(limit)),),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_for_job(self, job_id: str) -> list[AuditRecord]:
        """All records of one job, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM audits WHERE job_id = ? ORDER BY timestamp, id",
                (job_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM audits").fetchone()[0])

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
