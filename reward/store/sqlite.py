"""
SQLite ledger store.

Each leaf of the value tree is one row keyed by its full path, with the value
JSON-encoded. Subtree reads select the path itself plus every row under
``path/``. A single connection is shared; operations are serialized by an
``asyncio.Lock`` and every write runs inside ``BEGIN IMMEDIATE``.
"""

import asyncio
import json
import os
import sqlite3
from typing import Any, Iterable, List, Optional, Tuple

import aiosqlite

from ..exceptions import StoreUnavailable
from ..logger import get_logger
from .base import ABORT, LedgerStore, TransactionResult, UpdateFn, normalize_path, prune

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_nodes (
    path TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def flatten(path: str, value: Any) -> List[Tuple[str, str]]:
    """Leaf rows for *value* written at *path*."""
    value = prune(value)
    if value is None:
        return []
    if isinstance(value, dict):
        rows = []
        for key, child in value.items():
            rows.extend(flatten(f"{path}/{key}", child))
        return rows
    return [(path, json.dumps(value))]


def inflate(path: str, rows: Iterable[Tuple[str, str]]) -> Any:
    """Rebuild the subtree at *path* from its leaf rows."""
    tree: dict = {}
    prefix_len = len(path) + 1
    for row_path, raw in rows:
        value = json.loads(raw)
        if row_path == path:
            return value
        parts = row_path[prefix_len:].split("/")
        node = tree
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return tree or None


def ancestors(path: str) -> List[str]:
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


class SQLiteStore(LedgerStore):
    """Durable single-file ledger store for one node"""

    def __init__(self, db_path: str):
        super().__init__()
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @staticmethod
    async def create(db_path: str) -> "SQLiteStore":
        """Open (creating if needed) the database and its schema"""
        self = SQLiteStore(db_path)

        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly
        self.connection = await aiosqlite.connect(db_path, isolation_level=None)

        await self.connection.execute("PRAGMA journal_mode=WAL")
        await self.connection.execute("PRAGMA synchronous=NORMAL")
        await self.connection.executescript(SCHEMA)

        logger.info(f"SQLite ledger store initialized: {db_path}")
        return self

    async def close(self):
        """Close database connection"""
        self._hub.close_all()
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info(f"SQLite ledger store closed: {self.db_path}")

    # ------------------------------------------------------------------
    # Row access, caller holds the lock
    # ------------------------------------------------------------------

    def _conn(self) -> aiosqlite.Connection:
        if self.connection is None:
            raise StoreUnavailable("SQLite ledger store is closed")
        return self.connection

    async def _read(self, key: str) -> Any:
        cursor = await self._conn().execute(
            "SELECT path, value FROM ledger_nodes "
            "WHERE path = ? OR substr(path, 1, ?) = ? ORDER BY path",
            (key, len(key) + 1, key + "/"),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return inflate(key, [(row[0], row[1]) for row in rows])

    async def _write(self, key: str, value: Any) -> None:
        conn = self._conn()
        await conn.execute(
            "DELETE FROM ledger_nodes WHERE path = ? OR substr(path, 1, ?) = ?",
            (key, len(key) + 1, key + "/"),
        )
        rows = flatten(key, value)
        if rows:
            # A leaf cannot sit above a subtree
            for parent in ancestors(key):
                await conn.execute("DELETE FROM ledger_nodes WHERE path = ?", (parent,))
            await conn.executemany(
                "INSERT INTO ledger_nodes (path, value) VALUES (?, ?)", rows
            )

    # ------------------------------------------------------------------
    # LedgerStore
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        key = normalize_path(path)
        async with self._lock:
            try:
                return await self._read(key)
            except sqlite3.Error as e:
                raise StoreUnavailable(f"read {key} failed: {e}") from e

    async def set(self, path: str, value: Any) -> None:
        async def overwrite(_current):
            return value
        await self._run(normalize_path(path), overwrite)

    async def transaction(self, path: str, update: UpdateFn) -> TransactionResult:
        key = normalize_path(path)

        async def apply(current):
            return update(current)

        return await self._run(key, apply)

    async def _run(self, key: str, compute) -> TransactionResult:
        async with self._lock:
            conn = self._conn()
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailable(f"begin on {key} failed: {e}") from e
            try:
                current = await self._read(key)
                new = await compute(current)
                if new is ABORT:
                    await conn.execute("ROLLBACK")
                    return TransactionResult(committed=False, value=current)
                await self._write(key, new)
                committed = await self._read(key)
                await conn.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback(key)
                raise StoreUnavailable(f"write {key} failed: {e}") from e
            except BaseException:
                await self._rollback(key)
                raise
            self._publish(key, committed)
            return TransactionResult(committed=True, value=committed)

    async def _rollback(self, key: str) -> None:
        try:
            await self._conn().execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback on {key} failed: {e}")
