"""
SQLite storage layer for generation history.

Provides thread-safe, durable persistence of history records and job logs.
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any

from ..errors import wrap_storage_error
from .models import HistoryRecord, HistoryFilter, JobID

_FILTER_CLAUSES = {
    HistoryFilter.ALL: ("", ()),
    HistoryFilter.KIND_SINGLE: (" WHERE kind = ?", ("single",)),
    HistoryFilter.KIND_BATCH: (" WHERE kind = ?", ("batch",)),
    HistoryFilter.STATUS_COMPLETED: (" WHERE status = ?", ("completed",)),
    HistoryFilter.STATUS_PROCESSING: (" WHERE status = ?", ("processing",)),
}


class HistoryStore:
    """
    SQLite-based store for history records.

    Features:
    - Thread-local connections
    - WAL mode with synchronous commits
    - Writes serialised by a lock so concurrent appends never lose records
    - Failed writes surface as PersistenceError
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize storage.

        Args:
            db_path: Path to SQLite database file. Defaults to ~/.voiceforge/history.db
        """
        if db_path is None:
            db_path = str(Path.home() / ".voiceforge" / "history.db")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._local = threading.local()
        self._lock = threading.Lock()

        self._initialize_database()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.

        Each thread gets its own connection for thread safety.
        """
        if not hasattr(self._local, 'connection'):
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row

            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")

            self._local.connection = conn

        return self._local.connection

    @contextmanager
    def _transaction(self, operation: str):
        """
        Serialised write transaction.

        Commits on success, rolls back on error. SQLite errors are re-raised
        as PersistenceError.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise wrap_storage_error(e, operation) from e
            except Exception:
                conn.rollback()
                raise

    def _initialize_database(self):
        """Initialize database schema from schema.sql."""
        schema_path = Path(__file__).parent / "schema.sql"

        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        conn = self._get_connection()
        conn.executescript(schema_sql)
        conn.commit()

    # History Operations

    def append(self, record: HistoryRecord):
        """
        Persist a history record.

        The record is committed when this returns.

        Raises:
            PersistenceError: If the record cannot be written (including a
                duplicate job id)
        """
        with self._transaction("append") as conn:
            conn.execute("""
                INSERT INTO history (
                    job_id, kind, status, created_at, completed_at, sort_ts,
                    item_count, succeeded_count, failed_count,
                    output, size_bytes, execution_policy
                ) VALUES (
                    :job_id, :kind, :status, :created_at, :completed_at, :sort_ts,
                    :item_count, :succeeded_count, :failed_count,
                    :output, :size_bytes, :execution_policy
                )
            """, record.to_dict())

    def get(self, job_id: JobID) -> Optional[HistoryRecord]:
        """
        Retrieve a record by job ID.

        Returns:
            HistoryRecord or None if not found
        """
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM history WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return HistoryRecord.from_dict(dict(row))

    def list(
        self,
        filter: HistoryFilter = HistoryFilter.ALL,
        limit: Optional[int] = None
    ) -> List[HistoryRecord]:
        """
        List records, most recent first.

        Args:
            filter: Kind or status filter
            limit: Maximum number of records to return

        Returns:
            List of HistoryRecord instances
        """
        clause, params = _FILTER_CLAUSES[HistoryFilter(filter)]
        query = "SELECT * FROM history" + clause + " ORDER BY sort_ts DESC, rowid DESC"
        params = list(params)

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._get_connection()
        rows = conn.execute(query, params).fetchall()
        return [HistoryRecord.from_dict(dict(row)) for row in rows]

    def remove(self, job_id: JobID):
        """
        Delete a record and its logs. Removing an unknown job is not an error.

        Raises:
            PersistenceError: If the delete cannot be committed
        """
        with self._transaction("remove") as conn:
            conn.execute("DELETE FROM history WHERE job_id = ?", (job_id,))
            conn.execute("DELETE FROM job_logs WHERE job_id = ?", (job_id,))

    def count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) FROM history").fetchone()[0]

    # Job Log Operations

    def add_log(
        self,
        job_id: JobID,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """
        Add a log entry for a job.

        Args:
            job_id: Job ID
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Log message
            metadata: Optional additional context
        """
        metadata_json = json.dumps(metadata, default=str) if metadata else None

        with self._transaction("log") as conn:
            conn.execute("""
                INSERT INTO job_logs (job_id, timestamp, level, message, metadata)
                VALUES (?, ?, ?, ?, ?)
            """, (job_id, time.time(), level, message, metadata_json))

    def get_logs(
        self,
        job_id: JobID,
        level: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get log entries for a job, newest first.

        Args:
            job_id: Job ID
            level: Filter by log level (None for all)
            limit: Maximum number of entries to return

        Returns:
            List of log entry dictionaries
        """
        conn = self._get_connection()

        query = "SELECT * FROM job_logs WHERE job_id = ?"
        params: List[Any] = [job_id]

        if level is not None:
            query += " AND level = ?"
            params.append(level)

        query += " ORDER BY timestamp DESC, id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        logs = []
        for row in conn.execute(query, params).fetchall():
            log_dict = dict(row)
            if log_dict.get('metadata'):
                log_dict['metadata'] = json.loads(log_dict['metadata'])
            logs.append(log_dict)

        return logs

    def close(self):
        """Close this thread's database connection."""
        if hasattr(self._local, 'connection'):
            self._local.connection.close()
            delattr(self._local, 'connection')
