"""
Reward Order Engine

Owns the order state machine and every balance mutation:

    open ──close_position──▶ closed
      └───liquidation sweep──▶ liquidated

Each step is a single-key store transaction; nothing spans two keys. The
per-user open slot (``openSlots/{uid}``) is claimed by compare-and-set before
any funds move, so concurrent opens by one user cannot both succeed. Closes
and liquidations claim the order through its ``pendingClose`` flag, so an
order is settled at most once.

All preconditions are checked before the first write. If a later write
fails, the writes already made are undone in reverse order and the caller
gets ``StoreUnavailable``.

Trading operations never raise ledger errors; they return ``OpenResult`` /
``CloseResult`` carrying the ``ErrorKind``. ``record_visitor`` and the
reads raise them for the RPC layer to map.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .constants import (
    ALLOWED_LEVERAGES,
    DEFAULT_AVATAR_REF,
    DEFAULT_DISPLAY_NAME,
    FEE_RATE,
    INITIAL_BALANCE,
    OPEN_SLOT_CLAIM_GRACE,
    PRICE_DEVIATION_TOLERANCE,
    PRICE_PRECISION,
)
from .exceptions import (
    AlreadyPending,
    DuplicateOpenOrder,
    ErrorKind,
    InsufficientBalance,
    InvalidOrder,
    LedgerError,
    NotFound,
    PriceDeviation,
    StoreUnavailable,
)
from .models import (
    ORDERS_BY_USER,
    Order,
    OrderSide,
    OrderStatus,
    UserAccount,
    account_path,
    balance_path,
    new_order_id,
    open_slot_path,
    order_id_time,
    order_path,
    user_order_path,
    user_orders_path,
)
from .oracle import PriceOracle, PriceQuote
from .stats import StatsAggregator
from .store import ABORT, LedgerStore
from .vault import ProfitSplit, VaultAccountant

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")

Undo = List[Callable[[], Awaitable[Any]]]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def ceil_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def compute_fee(amount: int, rate: Decimal = FEE_RATE) -> int:
    """``ceil(amount * rate)``, zero for non-positive amounts."""
    if amount <= 0:
        return 0
    return ceil_int(Decimal(amount) * rate)


def compute_liquidation_price(entry_price: Decimal, side: OrderSide, leverage: int) -> Decimal:
    """Price at which the whole collateral is lost under linear PnL."""
    step = ONE / Decimal(leverage)
    if side == OrderSide.LONG:
        price = entry_price * (ONE - step)
    else:
        price = entry_price * (ONE + step)
    return price.quantize(PRICE_PRECISION, rounding=ROUND_HALF_UP)


def compute_return_amount(order: Order, price: Decimal) -> int:
    """Collateral plus PnL, rounded up and never below zero."""
    return max(0, ceil_int(Decimal(order.collateral) + order.pnl_amount(price)))


def price_deviation(client_price: Decimal, server_price: Decimal) -> Decimal:
    return abs(client_price - server_price) / server_price


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class EngineResult:
    success: bool = True
    order: Optional[Order] = None
    error: str = ""
    kind: Optional[ErrorKind] = None

    @property
    def retryable(self) -> bool:
        return self.kind is not None and self.kind.retryable

    @classmethod
    def failed(cls, exc: LedgerError):
        return cls(success=False, error=str(exc), kind=exc.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.success}


@dataclass
class OpenResult(EngineResult):

    @property
    def order_id(self) -> Optional[str]:
        return self.order.id if self.order else None

    def to_dict(self) -> Dict[str, Any]:
        return {"orderId": self.order_id}


@dataclass
class CloseResult(EngineResult):

    @property
    def credited(self) -> int:
        """Tokens actually paid to the user."""
        if self.order is None or self.order.return_amount is None:
            return 0
        return self.order.return_amount - (self.order.network_fee or 0)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.success}
        if self.order is not None:
            data.update({
                "orderId": self.order.id,
                "status": self.order.status.value,
                "returnAmount": self.order.return_amount,
                "networkFee": self.order.network_fee,
                "pnl": self.order.pnl,
            })
        return data


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class OrderEngine:
    """
    Order lifecycle and settlement against the vault.

    Usage:
        engine = OrderEngine(store, oracle)
        result = await engine.open_position(7, "long", 10, 1000, "3500")
    """

    def __init__(
        self,
        store: LedgerStore,
        oracle: PriceOracle,
        vault: Optional[VaultAccountant] = None,
        stats: Optional[StatsAggregator] = None,
        fee_rate: Decimal = FEE_RATE,
        price_tolerance: Decimal = PRICE_DEVIATION_TOLERANCE,
        allowed_leverages: Sequence[int] = ALLOWED_LEVERAGES,
        initial_balance: int = INITIAL_BALANCE,
    ):
        self.store = store
        self.oracle = oracle
        self.vault = vault or VaultAccountant(store)
        self.stats = stats or StatsAggregator(store, self.vault)
        self.fee_rate = Decimal(fee_rate)
        self.price_tolerance = Decimal(price_tolerance)
        self.allowed_leverages = tuple(allowed_leverages)
        self.initial_balance = initial_balance

    # -- Accounts -----------------------------------------------------------

    async def record_visitor(
        self,
        user_id: int,
        display_name: Optional[str] = None,
        avatar_ref: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> int:
        """
        Upsert a visiting user's profile and return their balance.

        First contact creates the account with the initial balance; later
        visits refresh the profile but never touch the balance.
        """
        user_id = self._parse_user_id(user_id)
        created = await self.store.set_if_absent(balance_path(user_id), self.initial_balance)
        base = account_path(user_id)

        if created or display_name:
            await self.store.set(f"{base}/displayName", display_name or DEFAULT_DISPLAY_NAME)
        if created or avatar_ref:
            await self.store.set(f"{base}/avatarRef", avatar_ref or DEFAULT_AVATAR_REF)
        if wallet_address:
            await self.store.set(f"{base}/walletAddress", wallet_address)

        if created:
            logger.info(f"New account user={user_id} balance={self.initial_balance}")
        balance = await self.store.get(balance_path(user_id))
        return int(balance or 0)

    async def get_account(self, user_id: int) -> Optional[UserAccount]:
        data = await self.store.get(account_path(user_id))
        if not isinstance(data, dict):
            return None
        return UserAccount.from_dict(user_id, data)

    # -- Reads --------------------------------------------------------------

    async def get_order(self, order_id: str) -> Optional[Order]:
        data = await self.store.get(order_path(order_id))
        if not isinstance(data, dict):
            return None
        return Order.from_dict(data)

    async def get_user_orders(self, user_id: int) -> List[Order]:
        """Live orders of *user_id*, newest first."""
        index = await self.store.children(user_orders_path(user_id))
        orders = []
        for order_id in index:
            order = await self.get_order(order_id)
            if order is not None and order.is_open:
                orders.append(order)
        orders.sort(key=lambda o: (o.opened_at, o.id), reverse=True)
        return orders

    async def live_orders(self) -> List[Order]:
        index = await self.store.children(ORDERS_BY_USER)
        orders = []
        for user_orders in index.values():
            if not isinstance(user_orders, dict):
                continue
            for order_id in user_orders:
                order = await self.get_order(order_id)
                if order is not None and order.is_open:
                    orders.append(order)
        return orders

    # -- Open ---------------------------------------------------------------

    async def open_position(
        self,
        user_id: int,
        side,
        leverage: int,
        collateral: int,
        client_price,
    ) -> OpenResult:
        try:
            order = await self._open(user_id, side, leverage, collateral, client_price)
        except LedgerError as e:
            logger.info(f"Open rejected: user={user_id} [{e.kind.value}] {e}")
            return OpenResult.failed(e)
        except Exception as e:
            logger.exception(f"Open failed unexpectedly: user={user_id}")
            return OpenResult.failed(StoreUnavailable(str(e)))
        return OpenResult(success=True, order=order)

    async def _open(self, user_id, side, leverage, collateral, client_price) -> Order:
        user_id = self._parse_user_id(user_id)
        side = self._parse_side(side)
        leverage = self._parse_leverage(leverage)
        collateral = self._parse_amount(collateral, "Collateral", allow_zero=False)
        client_price = self._parse_price(client_price)

        quote = await self.oracle.current_price()
        self._check_deviation(client_price, quote.price)

        fee = compute_fee(collateral, self.fee_rate)
        total_debit = collateral + fee

        balance = await self.store.get(balance_path(user_id))
        if balance is None:
            raise NotFound(f"Account {user_id} not found")
        if int(balance) < total_debit:
            raise InsufficientBalance(
                f"Balance {balance} does not cover collateral {collateral} + fee {fee}"
            )

        order = Order(
            id=new_order_id(),
            user_id=user_id,
            side=side,
            leverage=leverage,
            collateral=collateral,
            fee=fee,
            entry_price=quote.price,
            liquidation_price=compute_liquidation_price(quote.price, side, leverage),
            opened_at=time.time(),
        )

        # --- Claim the open slot ---
        slot = open_slot_path(user_id)
        await self._claim_slot(slot, user_id, order.id)

        # --- Debit, refusing to go negative ---
        debit = await self.store.increment(balance_path(user_id), -total_debit, floor=0)
        if not debit.committed:
            await self.store.compare_and_delete(slot, order.id)
            raise InsufficientBalance(
                f"Balance {debit.value} does not cover collateral {collateral} + fee {fee}"
            )

        undo: Undo = [
            lambda: self.store.compare_and_delete(slot, order.id),
            lambda: self.store.increment(balance_path(user_id), total_debit),
        ]
        try:
            await self.store.set(order_path(order.id), order.to_dict())
            undo.append(lambda: self.store.delete(order_path(order.id)))

            await self.store.set(user_order_path(user_id, order.id), order.opened_at)
            undo.append(lambda: self.store.delete(user_order_path(user_id, order.id)))

            await self.vault.add_fee(fee)
            undo.append(lambda: self.vault.revert_fee(fee))

            applied = await self.vault.adjust_deposits(collateral)
            undo.append(lambda: self.vault.adjust_deposits(-applied))

            await self.stats.increment_transactions()
            undo.append(lambda: self.stats.revert(transactions=1))

            await self.stats.record_volume(collateral)
        except Exception as e:
            await self._compensate(undo, f"open order={order.id}")
            if isinstance(e, StoreUnavailable):
                raise
            raise StoreUnavailable(f"Open of order {order.id} failed: {e}") from e

        logger.info(
            f"Opened order={order.id} user={user_id} {side.value} x{leverage} "
            f"collateral={collateral} fee={fee} entry={order.entry_price} "
            f"liq={order.liquidation_price}"
        )
        return order

    # -- Close --------------------------------------------------------------

    async def close_position(
        self,
        user_id: int,
        order_id: str,
        network_fee: Optional[int] = None,
    ) -> CloseResult:
        try:
            order = await self._close(user_id, order_id, network_fee)
        except LedgerError as e:
            logger.info(f"Close rejected: user={user_id} order={order_id} [{e.kind.value}] {e}")
            return CloseResult.failed(e)
        except Exception as e:
            logger.exception(f"Close failed unexpectedly: order={order_id}")
            return CloseResult.failed(StoreUnavailable(str(e)))
        return CloseResult(success=True, order=order)

    async def _close(self, user_id, order_id, network_fee) -> Order:
        user_id = self._parse_user_id(user_id)
        if network_fee is not None:
            network_fee = self._parse_amount(network_fee, "Network fee", allow_zero=True)

        order = await self._claim(order_id, owner=user_id)
        try:
            quote = await self.oracle.current_price()
        except Exception as e:
            await self._release(order.id)
            if isinstance(e, StoreUnavailable):
                raise
            raise StoreUnavailable(f"Price unavailable: {e}") from e

        return await self._settle(order, quote.price, OrderStatus.CLOSED, network_fee)

    # -- Liquidation --------------------------------------------------------

    async def liquidate(self, order_id: str, quote: Optional[PriceQuote] = None) -> Optional[CloseResult]:
        """
        Liquidate *order_id* if the mark price has crossed its liquidation
        price.

        Returns:
            CloseResult if the order was liquidated (or the attempt failed),
            None if it is healthy, already settled or being closed
        """
        try:
            order = await self.get_order(order_id)
            if order is None or not order.is_open or order.pending_close:
                return None
            if quote is None:
                quote = await self.oracle.current_price()
            if not order.is_liquidatable(quote.price):
                return None
            order = await self._claim(order_id, mark_price=quote.price)
            settled = await self._settle(order, quote.price, OrderStatus.LIQUIDATED, None)
        except (NotFound, AlreadyPending):
            # Closed or claimed by someone else in the meantime
            return None
        except LedgerError as e:
            logger.warning(f"Liquidation of order={order_id} failed: {e}")
            return CloseResult.failed(e)
        return CloseResult(success=True, order=settled)

    async def sweep_liquidations(self) -> List[CloseResult]:
        """Check every live order against one price quote."""
        try:
            quote = await self.oracle.current_price()
        except LedgerError as e:
            logger.warning(f"Liquidation sweep skipped: {e}")
            return []

        try:
            live = await self.live_orders()
        except LedgerError as e:
            logger.warning(f"Liquidation sweep skipped: {e}")
            return []

        results = []
        for order in live:
            if not order.is_liquidatable(quote.price):
                continue
            result = await self.liquidate(order.id, quote)
            if result is not None:
                results.append(result)
        if results:
            logger.info(f"Liquidation sweep at {quote.price}: {len(results)} order(s) settled")
        return results

    # -- Settlement ---------------------------------------------------------

    async def _claim(
        self,
        order_id: str,
        owner: Optional[int] = None,
        mark_price: Optional[Decimal] = None,
    ) -> Order:
        """Set ``pendingClose`` on an open order in one transaction."""
        outcome: Dict[str, Any] = {}

        def mark_pending(current):
            if not isinstance(current, dict):
                outcome["error"] = NotFound(f"Order {order_id} not found")
                return ABORT
            order = Order.from_dict(current)
            if owner is not None and order.user_id != owner:
                outcome["error"] = NotFound(f"Order {order_id} not found")
                return ABORT
            if not order.is_open:
                outcome["error"] = NotFound(f"Order {order_id} is {order.status.value}")
                return ABORT
            if order.pending_close:
                outcome["error"] = AlreadyPending(f"Order {order_id} is already closing")
                return ABORT
            if mark_price is not None and not order.is_liquidatable(mark_price):
                outcome["error"] = NotFound(f"Order {order_id} is no longer liquidatable")
                return ABORT
            current["pendingClose"] = True
            return current

        result = await self.store.transaction(order_path(order_id), mark_pending)
        if not result.committed:
            raise outcome["error"]
        return Order.from_dict(result.value)

    async def _release(self, order_id: str) -> None:
        def clear(current):
            if not isinstance(current, dict):
                return ABORT
            current["pendingClose"] = False
            return current
        await self.store.transaction(order_path(order_id), clear)

    async def _settle(
        self,
        order: Order,
        price: Decimal,
        status: OrderStatus,
        network_fee: Optional[int],
    ) -> Order:
        collateral = order.collateral
        if status == OrderStatus.LIQUIDATED:
            return_amount = 0
        else:
            return_amount = compute_return_amount(order, price)
        profit = max(return_amount - collateral, 0)

        if network_fee is None:
            network_fee = compute_fee(profit, self.fee_rate)
        network_fee = min(network_fee, return_amount)
        payout = return_amount - network_fee

        undo: Undo = [lambda: self._release(order.id)]
        try:
            applied = await self.vault.adjust_deposits(-collateral)
            undo.append(lambda: self.vault.adjust_deposits(-applied))

            shortfall = collateral + applied
            if shortfall:
                await self.vault.add_debt(shortfall)
                undo.append(lambda: self.vault.revert_debt(shortfall))

            if return_amount > collateral:
                split: ProfitSplit = await self.vault.absorb_profit(return_amount - collateral)
                undo.append(lambda: self.vault.revert_profit(split))
            elif return_amount < collateral:
                kept = collateral - return_amount
                await self.vault.add_credit(kept)
                undo.append(lambda: self.vault.revert_credit(kept))

            if payout:
                await self.store.increment(balance_path(order.user_id), payout)
                undo.append(lambda: self.store.increment(balance_path(order.user_id), -payout))

            await self.vault.add_fee(network_fee)
            undo.append(lambda: self.vault.revert_fee(network_fee))

            order.status = status
            order.pending_close = False
            order.closed_at = time.time()
            order.exit_price = price
            order.return_amount = return_amount
            order.network_fee = network_fee
            order.pnl = return_amount - collateral
            await self.store.set(order_path(order.id), order.to_dict())
        except Exception as e:
            await self._compensate(undo, f"settle order={order.id}")
            if isinstance(e, StoreUnavailable):
                raise
            raise StoreUnavailable(f"Settlement of order {order.id} failed: {e}") from e

        # The order is settled from here on; bookkeeping failures are logged
        steps = [
            ("slot release", lambda: self.store.compare_and_delete(
                open_slot_path(order.user_id), order.id)),
            ("index delete", lambda: self.store.delete(user_order_path(order.user_id, order.id))),
            ("transaction count", self.stats.increment_transactions),
        ]
        if status == OrderStatus.CLOSED:
            steps.append(("volume", lambda: self.stats.record_volume(collateral)))
        for what, step in steps:
            try:
                await step()
            except LedgerError as e:
                logger.error(f"Post-settlement {what} for order={order.id} failed: {e}")

        logger.info(
            f"Settled order={order.id} user={order.user_id} {status.value} at {price} "
            f"return={return_amount} network_fee={network_fee} pnl={order.pnl}"
        )
        return order

    async def _claim_slot(self, slot: str, user_id: int, order_id: str) -> None:
        """
        Claim the user's open slot for *order_id*.

        A slot held by a settled order, or by a claim older than
        ``OPEN_SLOT_CLAIM_GRACE`` whose order was never written, is stale:
        it is cleared and the claim retried once.
        """
        if await self.store.set_if_absent(slot, order_id):
            return
        holder = await self.store.get(slot)
        if holder is not None and await self._slot_is_stale(holder):
            if await self.store.compare_and_delete(slot, holder):
                logger.warning(f"Cleared stale open slot of user={user_id} held by order={holder}")
            if await self.store.set_if_absent(slot, order_id):
                return
        raise DuplicateOpenOrder(f"User {user_id} already has an open order")

    async def _slot_is_stale(self, holder: Any) -> bool:
        order = await self.get_order(str(holder))
        if order is not None:
            return not order.is_open
        claimed_at = order_id_time(str(holder))
        # An open in flight claims the slot before writing its order
        return claimed_at is not None and time.time() - claimed_at > OPEN_SLOT_CLAIM_GRACE

    async def _compensate(self, undo: Undo, what: str) -> None:
        logger.warning(f"Rolling back {what} ({len(undo)} step(s))")
        for step in reversed(undo):
            try:
                await step()
            except Exception:
                logger.exception(f"Rollback step failed during {what}")

    # -- Validation ---------------------------------------------------------

    def _check_deviation(self, client_price: Decimal, server_price: Decimal) -> None:
        deviation = price_deviation(client_price, server_price)
        if deviation > self.price_tolerance:
            raise PriceDeviation(
                f"Client price {client_price} deviates {deviation:.4%} from "
                f"oracle price {server_price} (max {self.price_tolerance:.2%})"
            )

    @staticmethod
    def _parse_user_id(user_id) -> int:
        if isinstance(user_id, bool):
            raise InvalidOrder(f"Invalid user id: {user_id!r}")
        try:
            value = int(user_id)
        except (TypeError, ValueError):
            raise InvalidOrder(f"Invalid user id: {user_id!r}")
        if value < 0:
            raise InvalidOrder(f"Invalid user id: {user_id!r}")
        return value

    @staticmethod
    def _parse_side(side) -> OrderSide:
        try:
            return OrderSide(str(side).lower())
        except ValueError:
            raise InvalidOrder(f"Side must be 'long' or 'short', got {side!r}")

    def _parse_leverage(self, leverage) -> int:
        if isinstance(leverage, bool) or not isinstance(leverage, int):
            raise InvalidOrder(f"Leverage must be an integer, got {leverage!r}")
        if leverage not in self.allowed_leverages:
            raise InvalidOrder(
                f"Leverage {leverage} not allowed (choose from {list(self.allowed_leverages)})"
            )
        return leverage

    @staticmethod
    def _parse_amount(amount, what: str, allow_zero: bool) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidOrder(f"{what} must be an integer token amount, got {amount!r}")
        if amount < 0 or (amount == 0 and not allow_zero):
            raise InvalidOrder(f"{what} must be {'non-negative' if allow_zero else 'positive'}")
        return amount

    @staticmethod
    def _parse_price(price) -> Decimal:
        if isinstance(price, bool):
            raise InvalidOrder(f"Invalid client price: {price!r}")
        try:
            value = Decimal(str(price))
        except (InvalidOperation, ValueError):
            raise InvalidOrder(f"Invalid client price: {price!r}")
        if not value.is_finite() or value <= ZERO:
            raise InvalidOrder("Client price must be positive")
        return value
