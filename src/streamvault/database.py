"""SQLite store for recording sessions."""

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .process import ProcessToken


@dataclass
class SessionRecord:
    name: str
    pid: int
    create_time: float
    output_path: str
    trace_id: str = ''
    source_url: str = ''
    started_at: str = ''

    @property
    def token(self) -> ProcessToken:
        return ProcessToken(pid=self.pid, create_time=self.create_time)


class SessionDatabase:
    """One row per stream name.

    Writers go through ``transaction()``, which takes SQLite's write lock up
    front (BEGIN IMMEDIATE). That lock is shared by every process using the
    same file, so check-then-insert sequences cannot interleave.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self.db_path, timeout=timeout,
            isolation_level=None, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute('PRAGMA journal_mode=WAL')
        self._depth = 0
        self._init_db()

    def _init_db(self):
        self._conn.execute('''
            CREATE TABLE IF NOT EXISTS sessions (
                name TEXT PRIMARY KEY,
                pid INTEGER NOT NULL,
                create_time REAL NOT NULL,
                output_path TEXT NOT NULL,
                trace_id TEXT DEFAULT '',
                source_url TEXT DEFAULT '',
                started_at TEXT DEFAULT ''
            )
        ''')

    @contextmanager
    def transaction(self):
        """Exclusive write transaction. Re-entrant within one thread."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._conn.execute('BEGIN IMMEDIATE')
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute('ROLLBACK')
                raise
            else:
                self._conn.execute('COMMIT')
            finally:
                self._depth = 0

    def get(self, name: str) -> SessionRecord | None:
        with self._lock:
            row = self._conn.execute(
                'SELECT * FROM sessions WHERE name=?', (name,)
            ).fetchone()
        return SessionRecord(**dict(row)) if row else None

    def insert(self, record: SessionRecord):
        """Insert a record. Raises sqlite3.IntegrityError if the name is taken."""
        with self.transaction():
            self._conn.execute(
                'INSERT INTO sessions (name, pid, create_time, output_path, '
                'trace_id, source_url, started_at) VALUES (?, ?, ?, ?, ?, ?, ?)',
                (record.name, record.pid, record.create_time, record.output_path,
                 record.trace_id, record.source_url, record.started_at)
            )

    def delete(self, name: str) -> bool:
        with self.transaction():
            cursor = self._conn.execute('DELETE FROM sessions WHERE name=?', (name,))
        return cursor.rowcount > 0

    def all(self) -> list[SessionRecord]:
        with self._lock:
            rows = self._conn.execute(
                'SELECT * FROM sessions ORDER BY name'
            ).fetchall()
        return [SessionRecord(**dict(row)) for row in rows]

    def clear(self) -> int:
        with self.transaction():
            cursor = self._conn.execute('DELETE FROM sessions')
        return cursor.rowcount

    def close(self):
        self._conn.close()
