"""
SQLite datastore shared by the job queue and the chapter/outline stores.

One aiosqlite connection per process. Writes go through `transaction()`,
which serializes them behind a lock so that a multi-statement unit (cancel
old jobs, reset a chapter, insert a new chain) commits or rolls back as one.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional
import asyncio

import aiosqlite


SchemaHook = Callable[[aiosqlite.Connection], Awaitable[None]]


class DatabaseNotConnectedError(Exception):
    """Raised when a store is used before `Database.connect()`."""
    pass


class Database:
    """Owns the SQLite connection and the write lock."""

    def __init__(self, db_path: str = "novelforge.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._schema_hooks: List[SchemaHook] = []

    def register_schema(self, hook: SchemaHook):
        """Register a coroutine that creates a store's tables on connect."""
        self._schema_hooks.append(hook)

    async def connect(self):
        """Connect to database and create tables if needed"""
        if self._conn is not None:
            return

        db_file = Path(self.db_path)
        db_dir = db_file.parent
        if db_dir and str(db_dir) != "." and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")

        for hook in self._schema_hooks:
            await hook(self._conn)
        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise DatabaseNotConnectedError(
                f"Database {self.db_path} is not connected. Call connect() first."
            )
        return self._conn

    @asynccontextmanager
    async def transaction(
        self,
        conn: Optional[aiosqlite.Connection] = None
    ) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block of writes atomically.

        Passing the connection yielded by an outer `transaction()` joins that
        transaction instead of opening a new one (the lock is not re-entrant).
        """
        if conn is not None:
            yield conn
            return

        async with self._lock:
            connection = self.conn
            try:
                yield connection
            except BaseException:
                await connection.rollback()
                raise
            else:
                await connection.commit()

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None
