"""
Reward Ledger Records

Plain dataclasses for everything the ledger store persists. Token amounts
are ``int``; prices are ``Decimal`` and travel through the store as strings
so that every backend round-trips them exactly.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .constants import DEFAULT_AVATAR_REF, DEFAULT_DISPLAY_NAME, INITIAL_BALANCE

ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Store key layout
# ---------------------------------------------------------------------------

ACCOUNTS = "accounts"
ORDERS = "orders"
ORDERS_BY_USER = "ordersByUser"
OPEN_SLOTS = "openSlots"
VAULT = "vault"
STATS = "stats"
ORDER_REQUESTS = "orderRequests"


def account_path(user_id: int) -> str:
    return f"{ACCOUNTS}/{user_id}"


def balance_path(user_id: int) -> str:
    return f"{ACCOUNTS}/{user_id}/balance"


def order_path(order_id: str) -> str:
    return f"{ORDERS}/{order_id}"


def user_orders_path(user_id: int) -> str:
    return f"{ORDERS_BY_USER}/{user_id}"


def user_order_path(user_id: int, order_id: str) -> str:
    return f"{ORDERS_BY_USER}/{user_id}/{order_id}"


def open_slot_path(user_id: int) -> str:
    return f"{OPEN_SLOTS}/{user_id}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrderSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class OrderStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"


def new_order_id() -> str:
    """Time-derived id: millisecond timestamp plus a short random suffix."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def order_id_time(order_id: str) -> Optional[float]:
    """Creation time encoded in an order id, None if it carries none."""
    prefix, _, _ = str(order_id).partition("-")
    if not prefix.isdigit():
        return None
    return int(prefix) / 1000


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class UserAccount:
    """A player account. Balance is only ever changed by the order engine."""
    id: int
    display_name: str = DEFAULT_DISPLAY_NAME
    avatar_ref: str = DEFAULT_AVATAR_REF
    wallet_address: Optional[str] = None
    balance: int = INITIAL_BALANCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "avatarRef": self.avatar_ref,
            "walletAddress": self.wallet_address,
            "balance": self.balance,
        }

    @classmethod
    def from_dict(cls, user_id: int, data: Dict[str, Any]) -> "UserAccount":
        return cls(
            id=int(user_id),
            display_name=data.get("displayName", DEFAULT_DISPLAY_NAME),
            avatar_ref=data.get("avatarRef", DEFAULT_AVATAR_REF),
            wallet_address=data.get("walletAddress"),
            balance=int(data.get("balance", 0)),
        )


@dataclass
class Order:
    """A single leveraged position."""
    id: str
    user_id: int
    side: OrderSide
    leverage: int
    collateral: int
    entry_price: Decimal
    liquidation_price: Decimal
    fee: int = 0
    opened_at: float = field(default_factory=time.time)
    status: OrderStatus = OrderStatus.OPEN
    pending_close: bool = False
    # Settlement
    closed_at: Optional[float] = None
    exit_price: Optional[Decimal] = None
    return_amount: Optional[int] = None
    pnl: Optional[int] = None
    network_fee: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == OrderStatus.OPEN

    def pnl_percent(self, price: Decimal) -> Decimal:
        if self.side == OrderSide.LONG:
            return (price - self.entry_price) / self.entry_price
        return (self.entry_price - price) / self.entry_price

    def pnl_amount(self, price: Decimal) -> Decimal:
        """Unrealized PnL in tokens, linear in price, scaled by leverage."""
        return Decimal(self.collateral) * self.pnl_percent(price) * self.leverage

    def is_liquidatable(self, price: Decimal) -> bool:
        if self.side == OrderSide.LONG:
            return price <= self.liquidation_price
        return price >= self.liquidation_price

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "side": self.side.value,
            "leverage": self.leverage,
            "collateral": self.collateral,
            "fee": self.fee,
            "entryPrice": str(self.entry_price),
            "liquidationPrice": str(self.liquidation_price),
            "openedAt": self.opened_at,
            "status": self.status.value,
            "pendingClose": self.pending_close,
        }
        if self.closed_at is not None:
            data.update({
                "closedAt": self.closed_at,
                "exitPrice": str(self.exit_price),
                "returnAmount": self.return_amount,
                "pnl": self.pnl,
                "networkFee": self.network_fee,
            })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        exit_price = data.get("exitPrice")
        return cls(
            id=data["id"],
            user_id=int(data["userId"]),
            side=OrderSide(data["side"]),
            leverage=int(data["leverage"]),
            collateral=int(data["collateral"]),
            fee=int(data.get("fee", 0)),
            entry_price=Decimal(data["entryPrice"]),
            liquidation_price=Decimal(data["liquidationPrice"]),
            opened_at=float(data["openedAt"]),
            status=OrderStatus(data.get("status", OrderStatus.OPEN.value)),
            pending_close=bool(data.get("pendingClose", False)),
            closed_at=data.get("closedAt"),
            exit_price=Decimal(exit_price) if exit_price is not None else None,
            return_amount=data.get("returnAmount"),
            pnl=data.get("pnl"),
            network_fee=data.get("networkFee"),
        )


@dataclass
class VaultState:
    """Snapshot of the shared solvency pool."""
    fees: int = 0
    debt: int = 0
    deposits: int = 0
    credit: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "fees": self.fees,
            "debt": self.debt,
            "deposits": self.deposits,
            "credit": self.credit,
        }


@dataclass
class GlobalStats:
    total_users: int = 0
    total_volume: int = 0
    total_transactions: int = 0
    vault: VaultState = field(default_factory=VaultState)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalUsers": self.total_users,
            "totalVolume": self.total_volume,
            "totalTransactions": self.total_transactions,
            "vault": self.vault.to_dict(),
        }


@dataclass
class LeaderboardEntry:
    user_id: int
    display_name: str
    balance: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "balance": self.balance,
        }
