"""
In-process ledger store.

Holds the tree in nested dicts. Each key path has its own ``asyncio.Lock``;
every operation yields to the event loop at least once while holding it, the
way a remote round trip would, so concurrent callers really do interleave.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Tuple

from .base import ABORT, LedgerStore, TransactionResult, UpdateFn, normalize_path, prune

logger = logging.getLogger(__name__)


@dataclass
class _KeyLock:
    lock: asyncio.Lock
    users: int = 0


class MemoryStore(LedgerStore):

    def __init__(self, latency: float = 0.0):
        super().__init__()
        self.latency = latency
        self._root: Dict[str, Any] = {}
        self._locks: Dict[str, _KeyLock] = {}
        self.closed = False

    # ------------------------------------------------------------------
    # Tree helpers
    # ------------------------------------------------------------------

    def _read(self, parts: Tuple[str, ...]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _write(self, parts: Tuple[str, ...], value: Any) -> None:
        value = prune(copy.deepcopy(value))
        if value is None:
            self._remove(parts)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def _remove(self, parts: Tuple[str, ...]) -> None:
        trail = []
        node: Any = self._root
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)
        # Drop parents left empty
        for parent, part in reversed(trail):
            if parent[part]:
                break
            del parent[part]

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the lock of *key*; it is dropped once nobody holds or awaits it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    # ------------------------------------------------------------------
    # LedgerStore
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        key = normalize_path(path)
        await self._round_trip()
        return self._read(tuple(key.split("/")))

    async def set(self, path: str, value: Any) -> None:
        key = normalize_path(path)
        async with self._locked(key):
            await self._round_trip()
            parts = tuple(key.split("/"))
            self._write(parts, value)
            self._publish(key, self._read(parts))

    async def transaction(self, path: str, update: UpdateFn) -> TransactionResult:
        key = normalize_path(path)
        parts = tuple(key.split("/"))
        async with self._locked(key):
            current = self._read(parts)
            await self._round_trip()
            new = update(copy.deepcopy(current))
            if new is ABORT:
                return TransactionResult(committed=False, value=current)
            self._write(parts, new)
            committed = self._read(parts)
            self._publish(key, committed)
            return TransactionResult(committed=True, value=committed)

    async def close(self) -> None:
        self.closed = True
        self._hub.close_all()
        logger.debug("Memory store closed")

    def dump(self) -> Dict[str, Any]:
        """Deep copy of the whole tree."""
        return copy.deepcopy(self._root)
