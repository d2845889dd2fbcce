import errno
import fcntl
import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional, Protocol

from .config import settings

logger = logging.getLogger(__name__)


class StorageQuotaError(OSError):
    """The storage medium refused a write for lack of space."""
    pass


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process store; quota_bytes simulates a size-limited medium."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self.data.items() if k != key)
            if used + len(value) > self.quota_bytes:
                raise StorageQuotaError(errno.ENOSPC, "Storage quota exceeded")
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore:
    """All keys in one JSON file, rewritten atomically on every change."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.data: Dict[str, str] = {}
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No storage file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                self.data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load storage file: {e}. Starting fresh.", exc_info=True)
            self.data = {}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix('.tmp')
        try:
            # Atomic write pattern with locking
            with open(tmp_path, 'w') as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                try:
                    json.dump(self.data, f)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            # Atomic rename
            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save storage file {self.path}: {e}")
            if e.errno in (errno.ENOSPC, errno.EDQUOT):
                raise StorageQuotaError(e.errno, str(e)) from e
            raise

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        previous = self.data.get(key)
        self.data[key] = value
        try:
            self._save()
        except OSError:
            # Keep memory consistent with disk
            if previous is None:
                self.data.pop(key, None)
            else:
                self.data[key] = previous
            raise

    def delete(self, key: str) -> None:
        if key in self.data:
            del self.data[key]
            self._save()


class SqliteStore:
    """SQLite-backed key/value table."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at REAL NOT NULL
    );
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise
        try:
            yield conn
        finally:
            if conn:
                conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, time.time()),
                )
                conn.commit()
        except sqlite3.OperationalError as e:
            if "database or disk is full" in str(e):
                raise StorageQuotaError(errno.ENOSPC, str(e)) from e
            raise

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()


def open_store(backend: Optional[str] = None, path: Optional[str] = None) -> KeyValueStore:
    backend = (backend or settings.STORAGE_BACKEND).lower()
    path = path or settings.STORAGE_PATH
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return SqliteStore(path)
    if backend == "file":
        return JsonFileStore(path)
    raise ValueError(f"Unknown storage backend: {backend}")
