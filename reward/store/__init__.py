"""
Ledger storage backends.

Usage:
    from reward.store import open_store

    store = await open_store("sqlite", "data/reward.db")
"""

from .base import (
    ABORT,
    IncrementResult,
    LedgerStore,
    TransactionResult,
)
from .memory import MemoryStore
from .pubsub import StoreEvent, Subscription, SubscriptionHub
from .sqlite import SQLiteStore


async def open_store(backend: str = "memory", path: str = "") -> LedgerStore:
    """Create a store for the configured backend name."""
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return await SQLiteStore.create(path)
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    "ABORT",
    "IncrementResult",
    "LedgerStore",
    "MemoryStore",
    "SQLiteStore",
    "StoreEvent",
    "Subscription",
    "SubscriptionHub",
    "TransactionResult",
    "open_store",
]
