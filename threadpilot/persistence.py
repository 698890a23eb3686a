"""Thread storage with SQLite."""

import json
import sqlite3
from pathlib import Path
from typing import Iterable, Protocol

import aiosqlite

from threadpilot.config import get_config
from threadpilot.exceptions import PersistenceError
from threadpilot.logging import get_logger
from threadpilot.store import Thread

log = get_logger(__name__)


class ThreadPersistence(Protocol):
    """Loads and saves the full set of threads."""

    async def load(self) -> list[Thread]: ...

    async def save(self, threads: Iterable[Thread]) -> None: ...


class ThreadRepository:
    """Stores threads in one SQLite table, one row per thread."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the repository.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().persistence.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS threads (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    last_modified TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    files_with_user_changes TEXT NOT NULL DEFAULT '[]',
                    state TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_threads_last_modified ON threads(last_modified)"
            )
            await self._db.commit()
        return self._db

    async def load(self) -> list[Thread]:
        """Load every stored thread, oldest first.

        Rows that cannot be decoded are skipped and logged.
        """
        db = await self._ensure_db()

        async with db.execute("""
            SELECT id, created_at, last_modified, messages, files_with_user_changes, state
            FROM threads
            ORDER BY created_at
        """) as cursor:
            rows = await cursor.fetchall()

        threads = []
        for row in rows:
            try:
                threads.append(Thread.from_dict({
                    "id": row[0],
                    "created_at": row[1],
                    "last_modified": row[2],
                    "messages": json.loads(row[3]),
                    "files_with_user_changes": json.loads(row[4]),
                    "state": json.loads(row[5]),
                }))
            except (ValueError, KeyError, TypeError) as e:
                log.warning("Skipping unreadable thread", thread_id=row[0], error=str(e))
        return threads

    async def save_thread(self, thread: Thread) -> None:
        db = await self._ensure_db()
        await self._write(db, thread)
        await db.commit()

    async def save(self, threads: Iterable[Thread]) -> None:
        """Replace the stored set of threads with ``threads``."""
        db = await self._ensure_db()
        threads = list(threads)
        try:
            for thread in threads:
                await self._write(db, thread)
            keep = [t.id for t in threads]
            if keep:
                placeholders = ", ".join("?" for _ in keep)
                await db.execute(f"DELETE FROM threads WHERE id NOT IN ({placeholders})", keep)
            else:
                await db.execute("DELETE FROM threads")
            await db.commit()
        except sqlite3.Error as e:
            await db.rollback()
            raise PersistenceError(f"Failed to save threads: {e}") from e
        log.debug("Saved threads", count=len(threads))

    @staticmethod
    async def _write(db: aiosqlite.Connection, thread: Thread) -> None:
        data = thread.to_dict()
        await db.execute("""
            INSERT OR REPLACE INTO threads
                (id, created_at, last_modified, messages, files_with_user_changes, state)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            data["id"],
            data["created_at"],
            data["last_modified"],
            json.dumps(data["messages"]),
            json.dumps(data["files_with_user_changes"]),
            json.dumps(data["state"]),
        ))

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()

        cursor = await db.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        await db.commit()

        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
