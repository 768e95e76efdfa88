"""
Ledger store interface.

The store is a tree of JSON values addressed by slash-separated paths
(``accounts/42/balance``). Reading a path returns the whole subtree under it
as nested dicts; writing ``None`` (or an empty dict) deletes it.

``transaction(path, update)`` is the only read-modify-write primitive: the
update function runs atomically with respect to every other operation on the
same path. Nothing spans more than one path.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .pubsub import Subscription, SubscriptionHub, split_path


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


#: Returned from a transaction update function to leave the key unchanged.
ABORT = _Abort()

UpdateFn = Callable[[Any], Any]


def normalize_path(path: str) -> str:
    parts = split_path(path)
    if not parts:
        raise ValueError("Store path must not be empty")
    return "/".join(parts)


def prune(value: Any) -> Any:
    """Empty dicts are stored as absence."""
    if isinstance(value, dict):
        cleaned = {k: prune(v) for k, v in value.items()}
        cleaned = {k: v for k, v in cleaned.items() if v is not None}
        return cleaned or None
    return value


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of ``transaction``: *value* is the key's value afterwards."""
    committed: bool
    value: Any


@dataclass(frozen=True)
class IncrementResult:
    committed: bool
    value: int
    applied: int = 0


class LedgerStore(ABC):
    """Keyed storage with per-key atomic transactions and change feeds."""

    def __init__(self) -> None:
        self._hub = SubscriptionHub()

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Value (or subtree) at *path*, ``None`` if absent."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Overwrite *path*. ``None`` deletes."""

    @abstractmethod
    async def transaction(self, path: str, update: UpdateFn) -> TransactionResult:
        """
        Atomically replace the value at *path* with ``update(current)``.

        *update* receives a private copy of the current value (``None`` when
        absent) and must be a plain function. Returning ``ABORT`` leaves the
        key untouched and yields ``committed=False``.
        """

    @abstractmethod
    async def close(self) -> None:
        ...

    # ------------------------------------------------------------------
    # Derived operations
    # ------------------------------------------------------------------

    async def delete(self, path: str) -> None:
        await self.set(path, None)

    async def children(self, path: str) -> Dict[str, Any]:
        """Immediate children of *path* keyed by name."""
        value = await self.get(path)
        if not isinstance(value, dict):
            return {}
        return value

    async def increment(
        self,
        path: str,
        delta: int,
        floor: Optional[int] = None,
        clamp: bool = False,
    ) -> IncrementResult:
        """
        Atomically add *delta* to an integer counter (absent counts as 0).

        With *floor* set, a result below it is refused (``committed=False``)
        or, when *clamp* is true, pinned to the floor. ``applied`` is the
        change actually made.
        """
        seen = {}

        def update(current):
            base = int(current or 0)
            seen["base"] = base
            new = base + delta
            if floor is not None and new < floor:
                if not clamp:
                    return ABORT
                # Never raise a counter that already sits below the floor
                new = min(base, floor) if delta < 0 else floor
            return new

        result = await self.transaction(path, update)
        value = int(result.value or 0)
        if not result.committed:
            return IncrementResult(committed=False, value=value, applied=0)
        return IncrementResult(committed=True, value=value, applied=value - seen["base"])

    async def set_if_absent(self, path: str, value: Any) -> bool:
        """Compare-and-set against absence. True if *value* was written."""
        result = await self.transaction(
            path, lambda current: copy.deepcopy(value) if current is None else ABORT
        )
        return result.committed

    async def compare_and_delete(self, path: str, expected: Any) -> bool:
        """Delete *path* only if it still holds *expected*."""
        result = await self.transaction(
            path, lambda current: None if current == expected else ABORT
        )
        return result.committed

    # ------------------------------------------------------------------
    # Change feeds
    # ------------------------------------------------------------------

    def subscribe(self, path: str) -> Subscription:
        """Live feed of writes at, above or below *path*."""
        return self._hub.subscribe(normalize_path(path))

    def _publish(self, path: str, value: Any) -> None:
        self._hub.publish(path, value)

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub
