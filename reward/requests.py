"""
Order request queue.

Clients that cannot call the engine directly drop requests into the store
under ``orderRequests/open/{rid}`` and ``orderRequests/close/{rid}``. A
worker picks pending requests up in id (time) order, runs them through the
order engine and writes the outcome back onto the request record:

    pending → processing → done | failed

Finished requests are deleted once they are older than the retention
window, so the pending scan only ever walks recent history.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

from .engine import EngineResult, OrderEngine
from .constants import REQUEST_RETENTION_SECONDS
from .exceptions import LedgerError
from .logger import get_logger
from .models import ORDER_REQUESTS, new_order_id
from .store import ABORT

logger = get_logger(__name__)

OPEN = "open"
CLOSE = "close"

PENDING = "pending"
PROCESSING = "processing"
DONE = "done"
FAILED = "failed"


def request_path(kind: str, request_id: str) -> str:
    return f"{ORDER_REQUESTS}/{kind}/{request_id}"


class OrderRequestQueue:

    def __init__(self, engine: OrderEngine, retention: float = REQUEST_RETENTION_SECONDS):
        self.engine = engine
        self.store = engine.store
        self.retention = retention
        self.processed_count: int = 0
        self.purged_count: int = 0

    async def submit_open(
        self,
        user_id: int,
        side: str,
        leverage: int,
        collateral: int,
        client_price,
    ) -> str:
        return await self._submit(OPEN, {
            "userId": user_id,
            "side": side,
            "leverage": leverage,
            "collateral": collateral,
            "clientPrice": str(client_price),
        })

    async def submit_close(self, user_id: int, order_id: str, network_fee: Optional[int] = None) -> str:
        payload: Dict[str, Any] = {"userId": user_id, "orderId": order_id}
        if network_fee is not None:
            payload["networkFee"] = network_fee
        return await self._submit(CLOSE, payload)

    async def _submit(self, kind: str, payload: Dict[str, Any]) -> str:
        request_id = new_order_id()
        payload.update({"status": PENDING, "submittedAt": time.time()})
        await self.store.set(request_path(kind, request_id), payload)
        logger.debug(f"Queued {kind} request {request_id} user={payload['userId']}")
        return request_id

    async def get_request(self, kind: str, request_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(request_path(kind, request_id))

    async def pending(self) -> List[Tuple[str, str]]:
        """(request_id, kind) of every pending request, oldest first."""
        found = []
        for kind in (OPEN, CLOSE):
            requests = await self.store.children(f"{ORDER_REQUESTS}/{kind}")
            for request_id, data in requests.items():
                if isinstance(data, dict) and data.get("status") == PENDING:
                    found.append((request_id, kind))
        found.sort()
        return found

    async def process_pending(self) -> int:
        """Execute every pending request once. Returns how many ran."""
        ran = 0
        for request_id, kind in await self.pending():
            request = await self._claim(kind, request_id)
            if request is None:
                continue
            result = await self._execute(kind, request)
            await self._finish(kind, request_id, result)
            ran += 1
        self.processed_count += ran
        return ran

    async def purge_finished(self, now: Optional[float] = None) -> int:
        """Delete done and failed requests processed more than ``retention`` ago."""
        cutoff = (now if now is not None else time.time()) - self.retention
        purged = 0
        for kind in (OPEN, CLOSE):
            requests = await self.store.children(f"{ORDER_REQUESTS}/{kind}")
            for request_id, data in requests.items():
                if not isinstance(data, dict) or data.get("status") not in (DONE, FAILED):
                    continue
                if float(data.get("processedAt", 0)) > cutoff:
                    continue
                if await self.store.compare_and_delete(request_path(kind, request_id), data):
                    purged += 1
        if purged:
            self.purged_count += purged
            logger.debug(f"Purged {purged} finished order request(s)")
        return purged

    async def run(self, interval: float) -> None:
        """Poll for pending requests until cancelled."""
        logger.info(f"Order request worker started (interval {interval}s)")
        while True:
            try:
                await self.process_pending()
                await self.purge_finished()
            except LedgerError as e:
                logger.warning(f"Order request poll failed: {e}")
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------

    async def _claim(self, kind: str, request_id: str) -> Optional[Dict[str, Any]]:
        def take(current):
            if not isinstance(current, dict) or current.get("status") != PENDING:
                return ABORT
            current["status"] = PROCESSING
            return current

        result = await self.store.transaction(request_path(kind, request_id), take)
        return result.value if result.committed else None

    async def _execute(self, kind: str, request: Dict[str, Any]) -> EngineResult:
        if kind == OPEN:
            return await self.engine.open_position(
                request.get("userId"),
                request.get("side"),
                request.get("leverage"),
                request.get("collateral"),
                request.get("clientPrice"),
            )
        return await self.engine.close_position(
            request.get("userId"),
            request.get("orderId"),
            request.get("networkFee"),
        )

    async def _finish(self, kind: str, request_id: str, result: EngineResult) -> None:
        def record(current):
            if not isinstance(current, dict):
                return ABORT
            current["status"] = DONE if result.success else FAILED
            current["processedAt"] = time.time()
            if result.success:
                current["result"] = result.to_dict()
            else:
                current["error"] = result.error
                current["errorKind"] = result.kind.value if result.kind else None
            return current

        await self.store.transaction(request_path(kind, request_id), record)
        if not result.success:
            logger.info(f"{kind} request {request_id} rejected: {result.error}")
