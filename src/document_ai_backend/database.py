"""
SQLite database for persistent job storage.

The jobs table is the single source of truth for job state. Every status
change is one conditional UPDATE keyed by id whose WHERE clause also pins
the set of statuses the transition may start from, so two writers racing
on the same job cannot both succeed and a terminal job can never move.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .lifecycle import JobUpdate, allowed_sources


# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat(timespec="microseconds") if dt else None


def _deserialize_datetime(s: str) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class JobDatabase:
    """
    SQLite database for job persistence.

    Thread-safe: each call opens its own connection and SQLite serializes
    writers (WAL mode).
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    input_ref TEXT NOT NULL,
                    input_kind TEXT NOT NULL,
                    document_category TEXT NOT NULL,
                    status TEXT NOT NULL,
                    output_ref TEXT,
                    failure_detail TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_updated_at
                ON jobs(status, updated_at)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_owner_id
                ON jobs(owner_id)
            """)

    def insert_job(self, job_data: Dict[str, Any]) -> None:
        """
        Persist a newly created job.

        Args:
            job_data: Dictionary with job fields

        Raises:
            sqlite3.IntegrityError: If the id already exists
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    id, owner_id, input_ref, input_kind, document_category,
                    status, output_ref, failure_detail, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_data["id"],
                job_data["owner_id"],
                job_data["input_ref"],
                job_data["input_kind"],
                job_data["document_category"],
                job_data["status"],
                None,
                None,
                _serialize_datetime(job_data["created_at"]),
                _serialize_datetime(job_data["updated_at"]),
            ))

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Args:
            job_id: The job ID

        Returns:
            Job data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

        return self._row_to_dict(row) if row else None

    def apply_update(self, job_id: str, update: JobUpdate) -> bool:
        """
        Atomically move a job to the update's target status.

        Args:
            job_id: The job ID
            update: One of the lifecycle update variants

        Returns:
            True if the row changed, False if the job is missing or its
            current status does not allow the transition
        """
        sources = sorted(status.value for status in allowed_sources(update.target))
        assignments = ["status = ?", "updated_at = ?"]
        values: List[Any] = [update.target.value, _serialize_datetime(utcnow())]
        for column, value in update.fields().items():
            assignments.append(f"{column} = ?")
            values.append(value)

        placeholders = ", ".join("?" for _ in sources)
        values.append(job_id)
        values.extend(sources)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                values,
            )
            return cursor.rowcount == 1

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        """
        List PENDING jobs not touched since ``older_than`` (oldest first).
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = 'PENDING' AND updated_at < ? "
                "ORDER BY updated_at ASC LIMIT ?",
                (_serialize_datetime(older_than), limit),
            ).fetchall()

        return [self._row_to_dict(row) for row in rows]

    def touch_pending(self, job_id: str) -> bool:
        """Refresh updated_at of a job that is still PENDING."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET updated_at = ? WHERE id = ? AND status = 'PENDING'",
                (_serialize_datetime(utcnow()), job_id),
            )
            return cursor.rowcount == 1

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        return {
            "id": row["id"],
            "owner_id": row["owner_id"],
            "input_ref": row["input_ref"],
            "input_kind": row["input_kind"],
            "document_category": row["document_category"],
            "status": row["status"],
            "output_ref": row["output_ref"],
            "failure_detail": row["failure_detail"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
        }
