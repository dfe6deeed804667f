"""
Call log persistence.

One row per call session, written twice: once when the call enters the app
and once when the channel ends. SQLite access is serialized by a lock and run
in the default executor so the event loop never blocks on disk.
"""

import asyncio
import os
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..logging_config import get_logger
from .models import utcnow

logger = get_logger(__name__)

_DATETIME_FIELDS = ("start_time", "end_time", "created_at", "updated_at")


@dataclass
class CallLogRecord:
    """Persisted call record."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    call_id: str = ""
    caller: str = "unknown"
    callee: str = "unknown"
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None          # whole seconds
    recording_file: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        for key in _DATETIME_FIELDS:
            if isinstance(data[key], datetime):
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CallLogRecord":
        data = dict(row)
        for key in _DATETIME_FIELDS:
            value = data.get(key)
            if value and isinstance(value, str):
                try:
                    data[key] = datetime.fromisoformat(value)
                except ValueError:
                    data[key] = None
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class CallLogStore:
    """SQLite-based call log storage."""

    _CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS call_logs (
        id TEXT PRIMARY KEY,
        call_id TEXT NOT NULL,
        caller TEXT,
        callee TEXT,
        start_time TEXT NOT NULL,
        end_time TEXT,
        duration INTEGER,
        recording_file TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """

    _CREATE_INDEXES_SQL = [
        "CREATE INDEX IF NOT EXISTS idx_call_logs_start_time ON call_logs(start_time)",
        "CREATE INDEX IF NOT EXISTS idx_call_logs_call_id ON call_logs(call_id)",
    ]

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _init_db(self) -> None:
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            Path(db_dir).mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            try:
                cursor = conn.cursor()
                cursor.execute(self._CREATE_TABLE_SQL)
                for idx_sql in self._CREATE_INDEXES_SQL:
                    cursor.execute(idx_sql)
                conn.commit()
            finally:
                conn.close()
        logger.info("Call log database initialized", db_path=self._db_path)

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def create(self, call_id: str, caller: str, callee: str, start_time: datetime) -> CallLogRecord:
        """Insert the initial record for a call."""
        now = utcnow()
        record = CallLogRecord(
            call_id=call_id,
            caller=caller,
            callee=callee,
            start_time=start_time,
            created_at=now,
            updated_at=now,
        )

        def _create_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    conn.execute(
                        """
                        INSERT INTO call_logs (
                            id, call_id, caller, callee, start_time,
                            end_time, duration, recording_file, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, NULL, NULL, NULL, ?, ?)
                        """,
                        (
                            record.id,
                            record.call_id,
                            record.caller,
                            record.callee,
                            record.start_time.isoformat(),
                            record.created_at.isoformat(),
                            record.updated_at.isoformat(),
                        ),
                    )
                    conn.commit()
                finally:
                    conn.close()

        await self._run(_create_sync)
        logger.debug("Call log record created", record_id=record.id, call_id=call_id)
        return record

    async def finalize(self, record_id: str, end_time: datetime, duration: int, recording_file: Optional[str]) -> bool:
        """Write end time, duration and recording file. Returns False if the record is unknown."""
        updated_at = utcnow()

        def _finalize_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    cursor = conn.execute(
                        """
                        UPDATE call_logs
                        SET end_time = ?, duration = ?, recording_file = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (end_time.isoformat(), int(duration), recording_file, updated_at.isoformat(), record_id),
                    )
                    conn.commit()
                    return cursor.rowcount > 0
                finally:
                    conn.close()

        updated = await self._run(_finalize_sync)
        if not updated:
            logger.warning("Call log record not found for finalize", record_id=record_id)
        return updated

    async def get(self, record_id: str) -> Optional[CallLogRecord]:
        def _get_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    row = conn.execute("SELECT * FROM call_logs WHERE id = ?", (record_id,)).fetchone()
                    return CallLogRecord.from_row(row) if row else None
                finally:
                    conn.close()

        return await self._run(_get_sync)

    async def list(self, limit: int = 100, offset: int = 0) -> List[CallLogRecord]:
        """Most recent calls first."""
        def _list_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    rows = conn.execute(
                        "SELECT * FROM call_logs ORDER BY start_time DESC, created_at DESC LIMIT ? OFFSET ?",
                        (int(limit), int(offset)),
                    ).fetchall()
                    return [CallLogRecord.from_row(row) for row in rows]
                finally:
                    conn.close()

        return await self._run(_list_sync)
