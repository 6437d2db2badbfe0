"""Key/value blob storage scoped per signed-in user by key naming."""
from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Dict, Optional, Protocol

SESSIONS_PREFIX = "tutorSessions"
LEGACY_SESSIONS_PREFIX = "tutorSessionHistory"
ASSISTANT_PREFIX = "chatbotHistory"


def user_key(prefix: str, user: str) -> str:
    return f"{prefix}_{user}"


class BlobStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, blob: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryBlobStore:
    def __init__(self) -> None:
        self._blobs: Dict[str, str] = {}
        self.writes = 0

    async def get(self, key: str) -> Optional[str]:
        return self._blobs.get(key)

    async def set(self, key: str, blob: str) -> None:
        self.writes += 1
        self._blobs[key] = blob

    async def remove(self, key: str) -> None:
        self._blobs.pop(key, None)


class SQLiteBlobStore:
    """One ``blobs`` table; every call opens its own connection in a worker thread."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._conn()
        conn.execute("CREATE TABLE IF NOT EXISTS blobs (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        conn.commit()
        conn.close()

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def _get(self, key: str) -> Optional[str]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT value FROM blobs WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def _set(self, key: str, blob: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO blobs (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, blob),
            )
            conn.commit()
        finally:
            conn.close()

    def _remove(self, key: str) -> None:
        conn = self._conn()
        try:
            conn.execute("DELETE FROM blobs WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, blob: str) -> None:
        await asyncio.to_thread(self._set, key, blob)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)
