"""
Reward WebSocket transport with per-user subscriptions

Frames are JSON-RPC 2.0. Two methods are handled here rather than by the
RPC server, because they bind state to the connection:

  ledger_subscribe(userId)           -> subscription id
  ledger_unsubscribe(subscription)   -> bool

A user subscription listens on ``accounts/{uid}`` (balance and profile) and
``ordersByUser/{uid}`` (live order index) and pushes every store event as a
``ledger_subscription`` notification. Events of one store key keep their
write order; the two keys are not ordered against each other.

Limits: ``max_connections`` per node, ``max_subscriptions_per_conn`` per
connection. A failed send drops the connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models import account_path, user_orders_path
from ..store import LedgerStore, StoreEvent, Subscription
from .server import RPCError, RPCErrorCode, RPCResponse, RPCServer

logger = logging.getLogger(__name__)

NOTIFICATION_METHOD = "ledger_subscription"

SendFn = Callable[[str], Awaitable[Any]]


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class UserSubscription:
    id: str
    user_id: int
    feeds: List[Subscription] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def cancel(self) -> None:
        for feed in self.feeds:
            feed.cancel()
        for task in self.tasks:
            task.cancel()


@dataclass
class WSConnection:
    id: str
    send_fn: Optional[SendFn] = None
    subscriptions: Dict[str, UserSubscription] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    closed: bool = False

    @property
    def subscription_count(self) -> int:
        return len(self.subscriptions)


def notification(sub_id: str, event: StoreEvent) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "method": NOTIFICATION_METHOD,
        "params": {
            "subscription": sub_id,
            "result": {
                "path": event.path,
                "value": event.value,
                "sequence": event.sequence,
            },
        },
    }


def _first_param(params: Any, name: str) -> Any:
    """``params`` as ``[value]`` or ``{name: value}``."""
    if isinstance(params, dict):
        return params.get(name)
    if isinstance(params, list) and params:
        return params[0]
    return None


class SubscriptionManager:
    """
    Connection registry and event fan-out for the ``/ws`` route.

    The route supplies ``send_fn`` on connect and passes each incoming text
    frame to ``handle_rpc_message``; everything that is not a subscription
    call goes to the shared RPC server.
    """

    def __init__(
        self,
        store: LedgerStore,
        rpc_server: Optional[RPCServer] = None,
        max_connections: int = 100,
        max_subscriptions_per_conn: int = 10,
    ):
        self.store = store
        self.rpc_server = rpc_server
        self.max_connections = max_connections
        self.max_subscriptions_per_conn = max_subscriptions_per_conn
        self._connections: Dict[str, WSConnection] = {}

        self.total_connections_served = 0
        self.total_subscriptions_created = 0
        self.total_events_dispatched = 0

    # -- Connections ----------------------------------------------------------

    def connect(self, send_fn: Optional[SendFn] = None) -> WSConnection:
        """Raises RPCError(LIMIT_EXCEEDED) when the node is full."""
        if len(self._connections) >= self.max_connections:
            raise RPCError(
                RPCErrorCode.LIMIT_EXCEEDED,
                f"Connection limit reached ({self.max_connections})",
            )
        conn = WSConnection(id=_new_id(), send_fn=send_fn)
        self._connections[conn.id] = conn
        self.total_connections_served += 1
        logger.info("WS %s connected (%d open)", conn.id, len(self._connections))
        return conn

    def disconnect(self, conn_id: str) -> None:
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return
        conn.closed = True
        while conn.subscriptions:
            _, sub = conn.subscriptions.popitem()
            sub.cancel()
        logger.info("WS %s disconnected (%d open)", conn_id, len(self._connections))

    def close_all(self) -> None:
        for conn_id in list(self._connections):
            self.disconnect(conn_id)

    # -- Subscriptions --------------------------------------------------------

    def subscribe(self, conn_id: str, user_id: Any) -> str:
        """Start streaming *user_id*'s account and order index to a connection."""
        conn = self._connections.get(conn_id)
        if conn is None:
            raise RPCError(RPCErrorCode.INTERNAL_ERROR, f"Unknown connection {conn_id}")
        if isinstance(user_id, bool) or user_id is None:
            raise RPCError(RPCErrorCode.INVALID_PARAMS, f"Invalid user id: {user_id!r}")
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            raise RPCError(RPCErrorCode.INVALID_PARAMS, f"Invalid user id: {user_id!r}")
        if conn.subscription_count >= self.max_subscriptions_per_conn:
            raise RPCError(
                RPCErrorCode.LIMIT_EXCEEDED,
                f"Subscription limit reached ({self.max_subscriptions_per_conn})",
            )

        sub = UserSubscription(id=_new_id(), user_id=uid)
        for path in (account_path(uid), user_orders_path(uid)):
            feed = self.store.subscribe(path)
            sub.feeds.append(feed)
            sub.tasks.append(asyncio.create_task(self._forward(conn, sub.id, feed)))
        conn.subscriptions[sub.id] = sub
        self.total_subscriptions_created += 1
        logger.debug("WS %s subscribed to user=%s as %s", conn_id, uid, sub.id)
        return sub.id

    def unsubscribe(self, conn_id: str, sub_id: str) -> bool:
        conn = self._connections.get(conn_id)
        sub = conn.subscriptions.pop(sub_id, None) if conn else None
        if sub is None:
            return False
        sub.cancel()
        logger.debug("WS %s dropped subscription %s", conn_id, sub_id)
        return True

    async def _forward(self, conn: WSConnection, sub_id: str, feed: Subscription) -> None:
        async for event in feed:
            if conn.closed:
                return
            if conn.send_fn is not None:
                try:
                    await conn.send_fn(json.dumps(notification(sub_id, event)))
                except Exception as e:
                    logger.warning("WS %s send failed (%s), dropping connection", conn.id, e)
                    self.disconnect(conn.id)
                    return
            self.total_events_dispatched += 1

    # -- Incoming frames ------------------------------------------------------

    async def handle_rpc_message(self, conn_id: str, raw_data: str) -> Optional[str]:
        try:
            parsed = json.loads(raw_data)
        except json.JSONDecodeError:
            return RPCResponse.failure(
                None, RPCError(RPCErrorCode.PARSE_ERROR, "Parse error")
            ).to_json()

        # Subscription calls are never batched
        if not isinstance(parsed, dict):
            return await self._delegate(parsed)

        method = parsed.get("method", "")
        req_id = parsed.get("id")
        params = parsed.get("params")

        if method == "ledger_subscribe":
            try:
                sub_id = self.subscribe(conn_id, _first_param(params, "userId"))
            except RPCError as e:
                return RPCResponse.failure(req_id, e).to_json()
            return RPCResponse(id=req_id, result=sub_id).to_json()

        if method == "ledger_unsubscribe":
            removed = self.unsubscribe(conn_id, _first_param(params, "subscription") or "")
            return RPCResponse(id=req_id, result=removed).to_json()

        return await self._delegate(parsed)

    async def _delegate(self, parsed: Any) -> Optional[str]:
        if self.rpc_server is None:
            return RPCResponse.failure(
                None, RPCError(RPCErrorCode.INTERNAL_ERROR, "No RPC server")
            ).to_json()
        return await self.rpc_server.handle_request(parsed)

    # -- Diagnostics ----------------------------------------------------------

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    @property
    def active_subscriptions(self) -> int:
        return sum(conn.subscription_count for conn in self._connections.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_connections": self.active_connections,
            "active_subscriptions": self.active_subscriptions,
            "total_connections_served": self.total_connections_served,
            "total_subscriptions_created": self.total_subscriptions_created,
            "total_events_dispatched": self.total_events_dispatched,
        }
