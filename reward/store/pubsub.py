"""
Per-key publish/subscribe channels for the ledger store.

Every committed write is published once, in commit order, to every
subscription whose path is the written path, one of its ancestors or one of
its descendants. Each subscription owns an unbounded ``asyncio.Queue``, so
delivery for a given key is FIFO relative to that key's writes. There is no
ordering guarantee across unrelated keys.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def split_path(path: str) -> tuple:
    return tuple(p for p in path.strip("/").split("/") if p)


def paths_overlap(a: str, b: str) -> bool:
    """True if one path is a (segment-wise) prefix of the other."""
    pa, pb = split_path(a), split_path(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


@dataclass(frozen=True)
class StoreEvent:
    """A committed write: *value* is None when the path was deleted."""
    path: str
    value: Any
    sequence: int
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """
    Live stream of store events under a path.

    Iterate with ``async for`` or pull with ``get()``; ``cancel()`` detaches
    the subscription and ends iteration.
    """

    _CLOSED = object()

    def __init__(self, hub: "SubscriptionHub", path: str):
        self.id = uuid.uuid4().hex[:16]
        self.path = path
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue()
        self.cancelled = False

    def _deliver(self, event: StoreEvent) -> None:
        if not self.cancelled:
            self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[StoreEvent]:
        """Next event, or None once cancelled."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is self._CLOSED:
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._hub.unsubscribe(self.id)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StoreEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class SubscriptionHub:
    """Routes committed writes to interested subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}
        self._sequence = itertools.count(1)
        self.total_events_published: int = 0

    def subscribe(self, path: str) -> Subscription:
        sub = Subscription(self, path)
        self._subscriptions[sub.id] = sub
        logger.debug("Store subscribe: sub=%s path=%s", sub.id, path)
        return sub

    def unsubscribe(self, sub_id: str) -> bool:
        sub = self._subscriptions.pop(sub_id, None)
        if sub is None:
            return False
        logger.debug("Store unsubscribe: sub=%s path=%s", sub_id, sub.path)
        return True

    def publish(self, path: str, value: Any) -> int:
        """Deliver a write to every overlapping subscription. Returns fan-out."""
        event = StoreEvent(path=path, value=value, sequence=next(self._sequence))
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if paths_overlap(sub.path, path):
                sub._deliver(event)
                delivered += 1
        self.total_events_published += 1
        return delivered

    def close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.cancel()

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)
