"""
Database Adapter

Async SQLite access for the relay store.

Features:
- PostgreSQL-style $1, $2 placeholders translated to SQLite ?1, ?2
- WAL journal with synchronous=FULL for crash durability
- Explicit BEGIN IMMEDIATE transactions for multi-row state changes
- A single connection whose statements are serialised by an asyncio.Lock
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_PLACEHOLDER = re.compile(r"\$(\d+)")


def _convert_to_sqlite(query: str) -> str:
    """Rewrite $n parameters as SQLite ?n, so a reused $n binds the same value."""
    return _PLACEHOLDER.sub(r"?\1", query)


class DatabaseConfig:
    """Store location and lock timeout, overridable from the environment."""

    def __init__(self, sqlite_path: Optional[str] = None):
        self.sqlite_path = sqlite_path or os.getenv("RELAY_DB_PATH", "./data/relay.db")
        self.busy_timeout_ms = int(os.getenv("RELAY_DB_BUSY_TIMEOUT_MS", "5000"))

    @property
    def is_memory(self) -> bool:
        return self.sqlite_path == MEMORY_PATH

    def __repr__(self) -> str:
        return f"DatabaseConfig(sqlite_path={self.sqlite_path})"


class Connection:
    """
    Statement helpers bound to a live connection.

    Used directly inside `DatabaseAdapter.transaction()`; the adapter itself
    wraps the same helpers with its lock for standalone statements.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """All rows as dicts. Parameters bind to $1, $2, ... in order."""
        async with self._conn.execute(_convert_to_sqlite(query), args) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row."""
        rows = await self.fetch(query, *args)
        return rows[0] if rows else None

    async def fetchval(self, query: str, *args) -> Any:
        """Fetch a single value from the first column of the first row."""
        row = await self.fetchrow(query, *args)
        if row:
            return list(row.values())[0]
        return None

    async def execute(self, query: str, *args) -> int:
        """Execute a statement and return the affected row count."""
        async with self._conn.execute(_convert_to_sqlite(query), args) as cursor:
            return cursor.rowcount

    async def insert(self, query: str, *args) -> int:
        """Execute an INSERT and return the new row id."""
        async with self._conn.execute(_convert_to_sqlite(query), args) as cursor:
            return cursor.lastrowid


class DatabaseAdapter:
    """
    Async SQLite adapter.

    Usage:
        db = DatabaseAdapter()
        await db.connect()

        rows = await db.fetch("SELECT * FROM batches WHERE user_id = $1", user_id)

        async with db.transaction() as conn:
            await conn.execute("UPDATE batches SET state = $1 WHERE id = $2", state, batch_id)
            await conn.insert("INSERT INTO outbox (...) VALUES (...)", ...)

        await db.disconnect()

    Standalone statements autocommit. Statements issued through the
    transaction handle commit together or not at all.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._conn: Optional[aiosqlite.Connection] = None
        self._session: Optional[Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        """Open the SQLite connection and apply connection pragmas."""
        if self._conn is not None:
            return

        logger.info(f"Connecting to database: {self.config}")

        if not self.config.is_memory:
            Path(self.config.sqlite_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        self._conn = await aiosqlite.connect(
            str(Path(self.config.sqlite_path).expanduser()) if not self.config.is_memory else MEMORY_PATH,
            isolation_level=None,
        )
        self._conn.row_factory = aiosqlite.Row
        self._session = Connection(self._conn)

        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute(f"PRAGMA busy_timeout={self.config.busy_timeout_ms}")
        if not self.config.is_memory:
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=FULL")

        logger.info(f"Connected to SQLite: {self.config.sqlite_path}")

    async def disconnect(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            self._session = None
            logger.info("Disconnected from SQLite")

    async def _ensure_connected(self) -> Connection:
        if self._session is None:
            await self.connect()
        return self._session

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        session = await self._ensure_connected()
        async with self._lock:
            return await session.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        session = await self._ensure_connected()
        async with self._lock:
            return await session.fetchrow(query, *args)

    async def fetchval(self, query: str, *args) -> Any:
        session = await self._ensure_connected()
        async with self._lock:
            return await session.fetchval(query, *args)

    async def execute(self, query: str, *args) -> int:
        session = await self._ensure_connected()
        async with self._lock:
            return await session.execute(query, *args)

    async def insert(self, query: str, *args) -> int:
        session = await self._ensure_connected()
        async with self._lock:
            return await session.insert(query, *args)

    async def executescript(self, script: str) -> None:
        """Run a multi-statement script (migrations)."""
        await self._ensure_connected()
        async with self._lock:
            try:
                await self._conn.executescript(script)
            except Exception:
                # A failing script can leave its own BEGIN open
                if self._conn.in_transaction:
                    await self._conn.execute("ROLLBACK")
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Connection]:
        """
        Context manager for transactions.

        Usage:
            async with db.transaction() as conn:
                await conn.execute("INSERT ...")
                await conn.execute("UPDATE ...")

        Do not call adapter methods inside the block; use `conn`.
        """
        session = await self._ensure_connected()
        async with self._lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield session
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            else:
                await self._conn.execute("COMMIT")


_db: Optional[DatabaseAdapter] = None


async def get_database() -> DatabaseAdapter:
    """Process-wide adapter, connected on first use."""
    global _db
    if _db is None:
        _db = DatabaseAdapter()
        await _db.connect()
    return _db


def set_database(db: Optional[DatabaseAdapter]) -> None:
    """Install a specific adapter as the global instance (tests, app startup)."""
    global _db
    _db = db


async def close_database() -> None:
    """Disconnect and forget the process-wide adapter."""
    global _db
    if _db:
        await _db.disconnect()
        _db = None
