"""
Reward ledger_* RPC Methods

Order lifecycle and read views for the presentation layer.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ...engine import EngineResult, OrderEngine
from ...oracle import PriceOracle
from ...stats import StatsAggregator
from ..config import RPCConfig
from ..server import RPCError, RPCErrorCode, RPCModule, rpc_method


@dataclass
class LedgerContext:
    """Services the ledger RPC methods run against."""
    engine: OrderEngine
    stats: StatsAggregator
    oracle: PriceOracle
    config: RPCConfig


def _unwrap(result: EngineResult) -> Dict[str, Any]:
    if not result.success:
        raise RPCError.from_ledger(result.kind, result.error)
    return result.to_dict()


class LedgerModule(RPCModule):
    """
    Ledger RPC methods (ledger_* namespace).
    """

    namespace = "ledger"
    context: LedgerContext

    @rpc_method
    async def openPosition(
        self,
        userId: int,
        side: str,
        leverage: int,
        collateral: int,
        clientPrice: Any,
    ) -> Dict[str, Any]:
        """
        Open a leveraged position.

        Returns:
            {"orderId": ...}
        """
        result = await self.context.engine.open_position(
            userId, side, leverage, collateral, clientPrice
        )
        return _unwrap(result)

    @rpc_method
    async def closePosition(
        self,
        userId: int,
        orderId: str,
        networkFee: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Close an open position at the current oracle price.

        Returns:
            {"ok": true, "orderId", "status", "returnAmount", "networkFee", "pnl"}
        """
        result = await self.context.engine.close_position(userId, orderId, networkFee)
        return _unwrap(result)

    @rpc_method
    async def getUserOrders(self, userId: int) -> List[Dict[str, Any]]:
        orders = await self.context.engine.get_user_orders(userId)
        return [order.to_dict() for order in orders]

    @rpc_method
    async def getLeaderboard(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Accounts by balance, highest first."""
        if limit is None:
            limit = self.context.config.leaderboard_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise RPCError(RPCErrorCode.INVALID_PARAMS, f"Invalid limit: {limit!r}")
        entries = await self.context.stats.get_leaderboard(limit)
        return [entry.to_dict() for entry in entries]

    @rpc_method
    async def getGlobalStats(self) -> Dict[str, Any]:
        stats = await self.context.stats.get_global_stats()
        return stats.to_dict()

    @rpc_method
    async def recordVisitor(
        self,
        userId: int,
        displayName: Optional[str] = None,
        avatarRef: Optional[str] = None,
        walletAddress: Optional[str] = None,
    ) -> int:
        """
        Register a visit, creating the account on first contact.

        Returns:
            Current balance
        """
        return await self.context.engine.record_visitor(
            userId, displayName, avatarRef, walletAddress
        )

    @rpc_method
    async def getPrice(self) -> Dict[str, Any]:
        quote = await self.context.oracle.current_price()
        return quote.to_dict()
