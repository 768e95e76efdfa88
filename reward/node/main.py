"""
Reward Ledger Node

FastAPI application exposing the order engine:
  POST /rpc   JSON-RPC 2.0 (single and batch)
  WS   /ws    JSON-RPC 2.0 plus ledger_subscribe / ledger_unsubscribe
  GET  /health

Background workers (liquidation sweep, order request queue) are started on
startup and cancelled on shutdown.
"""

import asyncio
import time
from decimal import Decimal
from typing import List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from starlette.middleware.cors import CORSMiddleware

from ..config import LedgerConfig, OracleConfig, load_config
from ..engine import OrderEngine
from ..exceptions import LedgerError
from ..logger import get_logger, set_level
from ..oracle import HttpPriceOracle, PriceOracle, StaticPriceOracle
from ..requests import OrderRequestQueue
from ..rpc.modules import LedgerContext, LedgerModule
from ..rpc.server import RPCError, RPCResponse, RPCServer
from ..rpc.websocket import SubscriptionManager
from ..stats import StatsAggregator
from ..store import LedgerStore, open_store
from ..vault import VaultAccountant

logger = get_logger(__name__)

NODE_VERSION = "1.0.0"

# ============================================================================
# NODE STATE
# ============================================================================

config: LedgerConfig = load_config()

store: Optional[LedgerStore] = None
oracle: Optional[PriceOracle] = None
engine: Optional[OrderEngine] = None
stats: Optional[StatsAggregator] = None
request_queue: Optional[OrderRequestQueue] = None
ws_manager: Optional[SubscriptionManager] = None
rpc_server: Optional[RPCServer] = None
background_tasks: List[asyncio.Task] = []

startup_time = time.time()

app = FastAPI(title="Reward Ledger Node", description="Order lifecycle and vault accounting for the reward game.", version=NODE_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.rpc.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def build_oracle(cfg: OracleConfig) -> PriceOracle:
    if cfg.type == "static":
        quote_oracle = StaticPriceOracle(Decimal(cfg.static_price))
        quote_oracle.staleness_seconds = cfg.staleness_seconds
        return quote_oracle
    return HttpPriceOracle(
        cfg.url,
        price_field=cfg.price_field,
        timeout=cfg.timeout,
        staleness_seconds=cfg.staleness_seconds,
    )


async def _run_liquidation_sweeps(interval: float) -> None:
    logger.info(f"Liquidation sweeper started (interval {interval}s)")
    while True:
        try:
            await engine.sweep_liquidations()
        except LedgerError as e:
            logger.warning(f"Liquidation sweep failed: {e}")
        await asyncio.sleep(interval)


# ============================================================================
# LIFECYCLE
# ============================================================================

@app.on_event("startup")
async def startup():
    global store, oracle, engine, stats, request_queue, ws_manager, rpc_server

    logger.info("Starting Reward Ledger Node...")
    config.validate()
    set_level(config.node.log_level)

    store = await open_store(config.database.type, config.database.path)
    logger.info(f"Using {config.database.type} ledger store")

    oracle = build_oracle(config.oracle)

    vault = VaultAccountant(store)
    stats = StatsAggregator(store, vault)
    engine = OrderEngine(
        store,
        oracle,
        vault=vault,
        stats=stats,
        fee_rate=config.trading.fee_rate,
        price_tolerance=config.trading.price_tolerance,
        allowed_leverages=config.trading.allowed_leverages,
        initial_balance=config.trading.initial_balance,
    )
    request_queue = OrderRequestQueue(engine, retention=config.workers.request_retention)

    rpc_server = RPCServer(max_batch_size=config.rpc.max_batch_size)
    rpc_server.register_module(LedgerModule(LedgerContext(
        engine=engine, stats=stats, oracle=oracle, config=config.rpc,
    )))
    ws_manager = SubscriptionManager(
        store,
        rpc_server=rpc_server,
        max_connections=config.rpc.max_connections,
        max_subscriptions_per_conn=config.rpc.max_subscriptions,
    )

    if config.workers.liquidation_enabled:
        background_tasks.append(asyncio.create_task(
            _run_liquidation_sweeps(config.workers.liquidation_interval)
        ))
    if config.workers.request_queue_enabled:
        background_tasks.append(asyncio.create_task(
            request_queue.run(config.workers.request_poll_interval)
        ))

    logger.info(f"Reward ledger node started on http://{config.node.host}:{config.node.port}")
    logger.info("Application startup complete.")


@app.on_event("shutdown")
async def shutdown():
    """Clean shutdown"""
    for task in background_tasks:
        task.cancel()
    if background_tasks:
        await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()

    if ws_manager:
        ws_manager.close_all()
    if oracle:
        await oracle.close()
    if store:
        await store.close()
    logger.info("Reward ledger node stopped.")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"ok": False, "error": "Internal Server Error"})


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.post("/rpc")
async def rpc_endpoint(request: Request):
    """JSON-RPC 2.0 endpoint"""
    if not config.rpc.enabled:
        return JSONResponse(status_code=404, content={"ok": False, "error": "RPC disabled"})
    result = await rpc_server.handle_request(await request.body())
    if result is None:
        return Response(status_code=204)
    # handle_request returns a JSON string; send it raw to avoid double-encoding
    return Response(content=result, media_type="application/json")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """JSON-RPC 2.0 over websocket with ledger subscriptions"""
    await websocket.accept()
    if not config.rpc.websocket_enabled:
        await websocket.close(code=1008)
        return

    try:
        conn = ws_manager.connect(send_fn=websocket.send_text)
    except RPCError as e:
        await websocket.send_text(RPCResponse(error=e.to_dict()).to_json())
        await websocket.close(code=1013)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            response = await ws_manager.handle_rpc_message(conn.id, raw)
            if response is not None:
                await websocket.send_text(response)
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(conn.id)


@app.get("/health")
async def health():
    return {
        "ok": True,
        "version": NODE_VERSION,
        "uptime": round(time.time() - startup_time, 3),
        "store": config.database.type,
        "websocket": ws_manager.get_stats() if ws_manager else None,
        "requests_processed": request_queue.processed_count if request_queue else 0,
    }
