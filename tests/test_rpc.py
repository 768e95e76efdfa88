"""
Test suite for the JSON-RPC layer

Covers:
  - ledger_* methods over RPCServer (positional and named params)
  - Engine rejections mapped onto server error codes
  - Batch handling and limits
  - Websocket subscriptions: account and order events forwarded in order
  - FastAPI node endpoints
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from reward.config import LedgerConfig
from reward.engine import OrderEngine
from reward.exceptions import OracleUnavailable
from reward.node import main
from reward.oracle import StaticPriceOracle
from reward.rpc.config import RPCConfig
from reward.rpc.modules import LedgerContext, LedgerModule
from reward.rpc.server import RPCError, RPCErrorCode, RPCServer
from reward.rpc.websocket import NOTIFICATION_METHOD, SubscriptionManager
from reward.store import MemoryStore


def build_server(max_batch_size=50):
    store = MemoryStore()
    oracle = StaticPriceOracle("3500")
    engine = OrderEngine(store, oracle)
    server = RPCServer(max_batch_size=max_batch_size)
    server.register_module(LedgerModule(LedgerContext(
        engine=engine, stats=engine.stats, oracle=oracle, config=RPCConfig(),
    )))
    return server, engine


async def call(server, method, params=None, req_id=1):
    request = {"jsonrpc": "2.0", "id": req_id, "method": method}
    if params is not None:
        request["params"] = params
    return json.loads(await server.handle_request(json.dumps(request)))


# ---------------------------------------------------------------------------
# ledger_* methods
# ---------------------------------------------------------------------------

class TestLedgerMethods:

    @pytest.mark.asyncio
    async def test_methods_registered(self):
        server, _ = build_server()
        assert set(server.get_methods()) == {
            "ledger_openPosition",
            "ledger_closePosition",
            "ledger_getUserOrders",
            "ledger_getLeaderboard",
            "ledger_getGlobalStats",
            "ledger_recordVisitor",
            "ledger_getPrice",
        }

    @pytest.mark.asyncio
    async def test_visit_open_close(self):
        server, _ = build_server()

        visit = await call(server, "ledger_recordVisitor", {"userId": 7, "displayName": "ann"})
        assert visit["result"] == 1_000_000

        opened = await call(server, "ledger_openPosition", [7, "long", 10, 1000, "3500"])
        order_id = opened["result"]["orderId"]
        assert order_id

        orders = await call(server, "ledger_getUserOrders", [7])
        assert [o["id"] for o in orders["result"]] == [order_id]
        assert orders["result"][0]["status"] == "open"
        assert orders["result"][0]["liquidationPrice"] == "3150.00000000"

        closed = await call(server, "ledger_closePosition", {"userId": 7, "orderId": order_id})
        assert closed["result"] == {
            "ok": True,
            "orderId": order_id,
            "status": "closed",
            "returnAmount": 1000,
            "networkFee": 0,
            "pnl": 0,
        }
        assert (await call(server, "ledger_getUserOrders", [7]))["result"] == []

    @pytest.mark.asyncio
    async def test_rejection_maps_to_transaction_rejected(self):
        server, _ = build_server()
        await call(server, "ledger_recordVisitor", [1])

        response = await call(server, "ledger_openPosition", [1, "long", 10, 1000, "3700"])

        assert response["error"]["code"] == RPCErrorCode.TRANSACTION_REJECTED
        assert response["error"]["data"] == {"kind": "PriceDeviation", "retryable": False}

    @pytest.mark.asyncio
    async def test_duplicate_open_kind(self):
        server, _ = build_server()
        await call(server, "ledger_recordVisitor", [1])
        await call(server, "ledger_openPosition", [1, "long", 10, 1000, "3500"])

        response = await call(server, "ledger_openPosition", [1, "long", 10, 1000, "3500"])

        assert response["error"]["data"]["kind"] == "DuplicateOpenOrder"

    @pytest.mark.asyncio
    async def test_oracle_down_maps_to_resource_unavailable(self):
        server, engine = build_server()
        with patch.object(engine.oracle, "current_price", AsyncMock(side_effect=OracleUnavailable("down"))):
            response = await call(server, "ledger_getPrice")

        assert response["error"]["code"] == RPCErrorCode.RESOURCE_UNAVAILABLE
        assert response["error"]["data"] == {"kind": "StoreUnavailable", "retryable": True}

    @pytest.mark.asyncio
    async def test_get_price(self):
        server, _ = build_server()
        response = await call(server, "ledger_getPrice")
        assert response["result"]["price"] == "3500"

    @pytest.mark.asyncio
    async def test_leaderboard_and_stats(self):
        server, engine = build_server()
        for uid in (1, 2, 3):
            await call(server, "ledger_recordVisitor", [uid, f"user{uid}"])
        await call(server, "ledger_openPosition", [2, "long", 10, 1000, "3500"])

        board = await call(server, "ledger_getLeaderboard", [2])
        assert [e["userId"] for e in board["result"]] == [1, 3]

        stats = await call(server, "ledger_getGlobalStats")
        assert stats["result"]["totalUsers"] == 3
        assert stats["result"]["totalVolume"] == 1000
        assert stats["result"]["totalTransactions"] == 1
        assert stats["result"]["vault"] == {"fees": 10, "debt": 0, "deposits": 1000, "credit": 0}

    @pytest.mark.asyncio
    async def test_leaderboard_rejects_bad_limit(self):
        server, _ = build_server()
        response = await call(server, "ledger_getLeaderboard", [-1])
        assert response["error"]["code"] == RPCErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_invalid_user_id_rejected(self):
        server, _ = build_server()
        response = await call(server, "ledger_recordVisitor", ["nobody"])
        assert response["error"]["code"] == RPCErrorCode.TRANSACTION_REJECTED
        assert response["error"]["data"]["kind"] == "InvalidOrder"


# ---------------------------------------------------------------------------
# Protocol handling
# ---------------------------------------------------------------------------

class TestRPCServer:

    @pytest.mark.asyncio
    async def test_method_not_found(self):
        server, _ = build_server()
        response = await call(server, "ledger_mint", [])
        assert response["error"]["code"] == RPCErrorCode.METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_params(self):
        server, _ = build_server()
        response = await call(server, "ledger_openPosition", [1])
        assert response["error"]["code"] == RPCErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_unknown_named_param(self):
        server, _ = build_server()
        response = await call(server, "ledger_getUserOrders", {"user": 1})
        assert response["error"]["code"] == RPCErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_parse_error(self):
        server, _ = build_server()
        response = json.loads(await server.handle_request("{not json"))
        assert response["error"]["code"] == RPCErrorCode.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_invalid_request_object(self):
        server, _ = build_server()
        response = json.loads(await server.handle_request("[1]"))
        assert response[0]["error"]["code"] == RPCErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_notification_has_no_response(self):
        server, _ = build_server()
        request = {"jsonrpc": "2.0", "method": "ledger_getPrice"}
        assert await server.handle_request(json.dumps(request)) is None

    @pytest.mark.asyncio
    async def test_batch(self):
        server, _ = build_server()
        batch = [
            {"jsonrpc": "2.0", "id": 1, "method": "ledger_recordVisitor", "params": [1]},
            {"jsonrpc": "2.0", "id": 2, "method": "ledger_getPrice"},
            {"jsonrpc": "2.0", "method": "ledger_getPrice"},
        ]
        responses = json.loads(await server.handle_request(json.dumps(batch)))
        assert sorted(r["id"] for r in responses) == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        server, _ = build_server()
        response = json.loads(await server.handle_request("[]"))
        assert response["error"]["code"] == RPCErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_batch_limit(self):
        server, _ = build_server(max_batch_size=2)
        batch = [{"jsonrpc": "2.0", "id": i, "method": "ledger_getPrice"} for i in range(3)]
        response = json.loads(await server.handle_request(json.dumps(batch)))
        assert response["error"]["code"] == RPCErrorCode.LIMIT_EXCEEDED


# ---------------------------------------------------------------------------
# Websocket subscriptions
# ---------------------------------------------------------------------------

async def next_message(queue):
    return json.loads(await asyncio.wait_for(queue.get(), timeout=1))


def ws_request(method, params=None, req_id=1):
    return json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or []})


class TestSubscriptionManager:

    @pytest.mark.asyncio
    async def test_account_events_forwarded_in_order(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        outbox = asyncio.Queue()
        conn = manager.connect(send_fn=outbox.put)

        response = json.loads(await manager.handle_rpc_message(conn.id, ws_request("ledger_subscribe", [5])))
        sub_id = response["result"]

        await engine.record_visitor(5, "eve")

        messages = [await next_message(outbox) for _ in range(3)]
        assert all(m["method"] == NOTIFICATION_METHOD for m in messages)
        assert all(m["params"]["subscription"] == sub_id for m in messages)
        results = [m["params"]["result"] for m in messages]
        assert [r["path"] for r in results] == [
            "accounts/5/balance",
            "accounts/5/displayName",
            "accounts/5/avatarRef",
        ]
        assert results[0]["value"] == 1_000_000
        assert results[0]["sequence"] < results[1]["sequence"] < results[2]["sequence"]
        manager.close_all()

    @pytest.mark.asyncio
    async def test_order_index_and_balance_events(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        outbox = asyncio.Queue()
        conn = manager.connect(send_fn=outbox.put)
        await engine.record_visitor(5)
        manager.subscribe(conn.id, 5)

        opened = await engine.open_position(5, "long", 10, 1000, "3500")

        seen = {}
        for _ in range(2):
            result = (await next_message(outbox))["params"]["result"]
            seen[result["path"]] = result["value"]
        assert seen["accounts/5/balance"] == 1_000_000 - 1010
        assert f"ordersByUser/5/{opened.order_id}" in seen
        manager.close_all()

    @pytest.mark.asyncio
    async def test_other_users_not_forwarded(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        outbox = asyncio.Queue()
        conn = manager.connect(send_fn=outbox.put)
        manager.subscribe(conn.id, 1)

        await engine.record_visitor(2)
        await asyncio.sleep(0.05)

        assert outbox.empty()
        manager.close_all()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_events(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        outbox = asyncio.Queue()
        conn = manager.connect(send_fn=outbox.put)
        sub_id = manager.subscribe(conn.id, 1)

        response = json.loads(await manager.handle_rpc_message(
            conn.id, ws_request("ledger_unsubscribe", {"subscription": sub_id})
        ))
        assert response["result"] is True
        assert manager.active_subscriptions == 0

        await engine.record_visitor(1)
        await asyncio.sleep(0.05)
        assert outbox.empty()
        assert engine.store.hub.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_limits(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server, max_connections=1, max_subscriptions_per_conn=1)
        conn = manager.connect()
        with pytest.raises(RPCError) as exc:
            manager.connect()
        assert exc.value.code == RPCErrorCode.LIMIT_EXCEEDED

        manager.subscribe(conn.id, 1)
        response = json.loads(await manager.handle_rpc_message(conn.id, ws_request("ledger_subscribe", [2])))
        assert response["error"]["code"] == RPCErrorCode.LIMIT_EXCEEDED
        manager.close_all()

    @pytest.mark.asyncio
    async def test_bad_user_id(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        conn = manager.connect()
        response = json.loads(await manager.handle_rpc_message(conn.id, ws_request("ledger_subscribe", ["x"])))
        assert response["error"]["code"] == RPCErrorCode.INVALID_PARAMS
        manager.close_all()

    @pytest.mark.asyncio
    async def test_other_methods_delegated(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        conn = manager.connect()
        response = json.loads(await manager.handle_rpc_message(conn.id, ws_request("ledger_getPrice")))
        assert response["result"]["price"] == "3500"

        response = json.loads(await manager.handle_rpc_message(conn.id, "{oops"))
        assert response["error"]["code"] == RPCErrorCode.PARSE_ERROR
        manager.close_all()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_subscriptions(self):
        server, engine = build_server()
        manager = SubscriptionManager(engine.store, server)
        conn = manager.connect(send_fn=AsyncMock())
        manager.subscribe(conn.id, 1)
        manager.subscribe(conn.id, 2)
        assert manager.active_subscriptions == 2

        manager.disconnect(conn.id)

        assert manager.active_connections == 0
        assert engine.store.hub.active_subscriptions == 0


# ---------------------------------------------------------------------------
# Node endpoints
# ---------------------------------------------------------------------------

@pytest.fixture
def node_config(monkeypatch):
    cfg = LedgerConfig()
    cfg.database.type = "memory"
    cfg.oracle.type = "static"
    cfg.oracle.static_price = "3500"
    cfg.workers.liquidation_enabled = False
    cfg.workers.request_queue_enabled = False
    monkeypatch.setattr(main, "config", cfg)
    return cfg


def rpc_body(method, params=None, req_id=1):
    body = {"jsonrpc": "2.0", "method": method, "params": params or []}
    if req_id is not None:
        body["id"] = req_id
    return body


class TestNode:

    def test_health(self, node_config):
        with TestClient(main.app) as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["store"] == "memory"

    def test_rpc_round_trip(self, node_config):
        with TestClient(main.app) as client:
            visit = client.post("/rpc", json=rpc_body("ledger_recordVisitor", [3, "cat"]))
            opened = client.post("/rpc", json=rpc_body("ledger_openPosition", [3, "short", 5, 2000, "3500"]))
            orders = client.post("/rpc", json=rpc_body("ledger_getUserOrders", [3]))

        assert visit.json()["result"] == 1_000_000
        order_id = opened.json()["result"]["orderId"]
        assert [o["id"] for o in orders.json()["result"]] == [order_id]

    def test_rpc_notification_no_content(self, node_config):
        with TestClient(main.app) as client:
            response = client.post("/rpc", json=rpc_body("ledger_getPrice", req_id=None))
        assert response.status_code == 204

    def test_rpc_disabled(self, node_config):
        node_config.rpc.enabled = False
        with TestClient(main.app) as client:
            response = client.post("/rpc", json=rpc_body("ledger_getPrice"))
        assert response.status_code == 404

    def test_websocket_rpc(self, node_config):
        with TestClient(main.app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps(rpc_body("ledger_getPrice")))
                response = ws.receive_json()
        assert response["result"]["price"] == "3500"

    def test_websocket_subscription(self, node_config):
        with TestClient(main.app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps(rpc_body("ledger_subscribe", [9])))
                sub_id = ws.receive_json()["result"]

                ws.send_text(json.dumps(rpc_body("ledger_recordVisitor", [9], req_id=2)))
                messages = [ws.receive_json() for _ in range(4)]

        notifications = [m for m in messages if m.get("method") == NOTIFICATION_METHOD]
        assert len(notifications) == 3
        assert all(n["params"]["subscription"] == sub_id for n in notifications)
        replies = [m for m in messages if m.get("id") == 2]
        assert replies[0]["result"] == 1_000_000
