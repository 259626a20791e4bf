# quarry/data/sqlite/manager.py  (aiosqlite + dict rows + ContextVar transaction reuse)

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from quarry.config import DatabaseConfig
from quarry.errors import ConstraintViolation

logger = logging.getLogger(__name__)


@dataclass
class StatementResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    changes: int = 0
    last_id: Optional[int] = None


class DatabaseManager:
    """
    Async aiosqlite manager with:
      - one connection per manager (SQLite has a single writer anyway)
      - ContextVar-based transaction reuse across nested calls
      - dict rows so fetches are Dict[str, Any]
      - BEGIN/COMMIT/ROLLBACK only at the outermost transaction
      - a lock so top-level units of work from different tasks never interleave
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, *, path: Optional[str] = None):
        if config is None:
            config = DatabaseConfig(path=path) if path is not None else DatabaseConfig()
        self.config = config
        self._conn: Optional[aiosqlite.Connection] = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

        # Per-instance ContextVar so multiple databases don't clash
        self._depth: ContextVar[int] = ContextVar(
            f"sqlite_tx_depth_{id(self)}",
            default=0,
        )

    async def connect(self) -> aiosqlite.Connection:
        async with self._connect_lock:
            if self._conn is None:
                # isolation_level=None: transactions are issued explicitly below.
                conn = await aiosqlite.connect(self.config.path, isolation_level=None)
                conn.row_factory = aiosqlite.Row
                await conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
                await conn.execute(
                    f"PRAGMA foreign_keys = {'ON' if self.config.foreign_keys else 'OFF'}"
                )
                self._conn = conn
                logger.debug("Opened SQLite database %s", self.config.path)
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "DatabaseManager":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def in_transaction(self) -> bool:
        return self._depth.get() > 0

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None) -> AsyncIterator["DatabaseManager"]:
        """
        Open a transaction, or join the one already open in this context.

        Only the outermost level issues BEGIN and COMMIT; an exception escaping any level
        rolls the whole unit back once it reaches the outermost level.
        """
        depth = self._depth.get()
        if depth > 0:
            token = self._depth.set(depth + 1)
            try:
                yield self
            finally:
                self._depth.reset(token)
            return

        conn = await self.connect()
        async with self._write_lock:
            token = self._depth.set(1)
            try:
                await conn.execute(f"BEGIN {isolation or self.config.isolation}")
                try:
                    yield self
                except BaseException:
                    if conn.in_transaction:
                        await conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back")
                    raise
                else:
                    await conn.execute("COMMIT")
            finally:
                self._depth.reset(token)

    @asynccontextmanager
    async def get_cursor(
        self,
        *,
        cursor: Optional[aiosqlite.Cursor] = None,
    ) -> AsyncIterator[aiosqlite.Cursor]:
        """
        Yield an async cursor.

        - If 'cursor' is provided, we do not open/lock/close anything.
        - Inside a transaction the cursor shares it; outside one the statement
          autocommits while holding the write lock.
        """
        if cursor is not None:
            yield cursor
            return

        conn = await self.connect()
        if self._depth.get() > 0:
            async with conn.cursor() as cur:
                yield cur
            return

        async with self._write_lock:
            async with conn.cursor() as cur:
                yield cur

    async def _run(
        self, cur: aiosqlite.Cursor, query: str, params: Optional[Sequence[Any]]
    ) -> StatementResult:
        conn = await self.connect()
        before = conn.total_changes
        logger.debug("SQL: %s | params=%s", query, params)
        try:
            await cur.execute(query, tuple(params or ()))
            rows = await cur.fetchall() if cur.description is not None else []
        except aiosqlite.IntegrityError as e:
            raise ConstraintViolation(str(e)) from e
        last_id = cur.lastrowid
        changes = conn.total_changes - before
        if changes:
            # total_changes also counts rows touched by triggers and foreign-key actions.
            await cur.execute("SELECT changes()")
            changes = (await cur.fetchone())[0]
        return StatementResult(
            rows=[dict(row) for row in rows],
            changes=changes,
            last_id=last_id,
        )

    async def execute(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        *,
        cursor: Optional[aiosqlite.Cursor] = None,
    ) -> StatementResult:
        async with self.get_cursor(cursor=cursor) as cur:
            return await self._run(cur, query, params)

    async def execute_query(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        *,
        cursor: Optional[aiosqlite.Cursor] = None,
    ) -> List[Dict[str, Any]]:
        """
        SELECT / RETURNING -> list of dict rows
        DML without RETURNING -> []
        """
        result = await self.execute(query, params, cursor=cursor)
        return result.rows

    async def execute_and_fetch_one(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        *,
        cursor: Optional[aiosqlite.Cursor] = None,
    ) -> Optional[Dict[str, Any]]:
        rows = await self.execute_query(query, params, cursor=cursor)
        return rows[0] if rows else None

    async def executescript(self, script: str) -> None:
        conn = await self.connect()
        if self._depth.get() > 0:
            raise RuntimeError("executescript cannot run inside a transaction")
        async with self._write_lock:
            await conn.executescript(script)
