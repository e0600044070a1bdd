"""
Memory Store — Namespaced Key/Value Entries with Expiry

Keeps the outcome of previous orchestration cycles so later invocations of
the same request can build on them.

- put() is last-writer-wins per (namespace, key)
- get() never returns an expired entry; expired entries found on read are
  deleted (lazy expiration)
- run_sweeper() purges expired entries periodically until stopped;
  sweeping() runs it in the background for the lifetime of a block
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import aiosqlite

from ultrawork.config import DEFAULT_DATA_DIR

logger = logging.getLogger(__name__)


@dataclass
class MemoryEntry:
    """One stored value."""

    namespace: str
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float] = None
    tags: List[str] = field(default_factory=list)

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class MemoryStore:
    """
    Persistent memory store backed by aiosqlite.

    Usage:
        async with MemoryStore(":memory:") as memory:
            await memory.put("k", "attempts", {"status": "failed"}, ttl=3600)
            value = await memory.get("k", "attempts")
    """

    DB_PATH = DEFAULT_DATA_DIR / "data" / "memory.db"

    def __init__(
        self,
        db_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path or str(self.DB_PATH)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "MemoryStore":
        await self._init_db()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_entries (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at REAL NOT NULL,
                expires_at REAL,
                PRIMARY KEY (namespace, key)
            )
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_memory_expiry
            ON memory_entries(expires_at)
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("MemoryStore is not open; use 'async with MemoryStore(...)'")
        return self._db

    async def put(
        self,
        key: str,
        namespace: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> MemoryEntry:
        """Store a value, replacing any previous value under (namespace, key)."""
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")

        db = self._conn()
        now = self.clock()
        entry = MemoryEntry(
            namespace=namespace,
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl if ttl is not None else None,
            tags=sorted(set(tags)),
        )
        async with self._lock:
            await db.execute(
                """
                INSERT INTO memory_entries (namespace, key, value, tags, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value = excluded.value,
                    tags = excluded.tags,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (
                    namespace,
                    key,
                    json.dumps(value, default=str),
                    json.dumps(entry.tags),
                    entry.created_at,
                    entry.expires_at,
                ),
            )
            await db.commit()
        return entry

    async def get_entry(self, key: str, namespace: str) -> Optional[MemoryEntry]:
        """Fetch a live entry; an expired one is deleted and reported missing."""
        db = self._conn()
        cursor = await db.execute(
            "SELECT namespace, key, value, tags, created_at, expires_at "
            "FROM memory_entries WHERE namespace = ? AND key = ?",
            (namespace, key),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        entry = self._row_to_entry(row)
        if entry.expired(self.clock()):
            async with self._lock:
                await db.execute(
                    "DELETE FROM memory_entries WHERE namespace = ? AND key = ? AND expires_at <= ?",
                    (namespace, key, self.clock()),
                )
                await db.commit()
            logger.debug("Expired memory entry %s/%s removed on read", namespace, key)
            return None
        return entry

    async def get(self, key: str, namespace: str, default: Any = None) -> Any:
        entry = await self.get_entry(key, namespace)
        return entry.value if entry else default

    async def delete(self, key: str, namespace: str) -> bool:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "DELETE FROM memory_entries WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            await db.commit()
        return cursor.rowcount > 0

    async def by_tag(self, tag: str, namespace: Optional[str] = None) -> List[MemoryEntry]:
        """Live entries carrying a tag, newest first."""
        db = self._conn()
        now = self.clock()
        if namespace is None:
            cursor = await db.execute(
                "SELECT namespace, key, value, tags, created_at, expires_at "
                "FROM memory_entries ORDER BY created_at DESC"
            )
        else:
            cursor = await db.execute(
                "SELECT namespace, key, value, tags, created_at, expires_at "
                "FROM memory_entries WHERE namespace = ? ORDER BY created_at DESC",
                (namespace,),
            )
        rows = await cursor.fetchall()
        entries = [self._row_to_entry(row) for row in rows]
        return [e for e in entries if tag in e.tags and not e.expired(now)]

    async def purge_expired(self) -> int:
        """Delete every expired entry. Returns the number removed."""
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "DELETE FROM memory_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self.clock(),),
            )
            await db.commit()
        if cursor.rowcount:
            logger.info("Purged %d expired memory entries", cursor.rowcount)
        return cursor.rowcount

    async def run_sweeper(self, interval: float, stop: asyncio.Event) -> int:
        """Purge expired entries every interval seconds until stop is set."""
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        total = 0
        while not stop.is_set():
            total += await self.purge_expired()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        return total

    @asynccontextmanager
    async def sweeping(self, interval: float) -> AsyncIterator["asyncio.Task[int]"]:
        """Run the sweeper in the background for the duration of the block."""
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        stop = asyncio.Event()
        sweeper = asyncio.create_task(self.run_sweeper(interval, stop))
        try:
            yield sweeper
        finally:
            stop.set()
            await sweeper

    async def get_stats(self) -> Dict[str, Any]:
        db = self._conn()
        cursor = await db.execute(
            "SELECT namespace, COUNT(*) FROM memory_entries GROUP BY namespace"
        )
        rows = await cursor.fetchall()
        by_namespace = {row[0]: row[1] for row in rows}
        return {"total_entries": sum(by_namespace.values()), "by_namespace": by_namespace}

    @staticmethod
    def _row_to_entry(row: Any) -> MemoryEntry:
        return MemoryEntry(
            namespace=row[0],
            key=row[1],
            value=json.loads(row[2]),
            tags=json.loads(row[3]),
            created_at=row[4],
            expires_at=row[5],
        )
