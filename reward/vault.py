"""
Vault accounting.

The vault is the shared counterparty for every position. It tracks four
counters, each stored under its own key and only ever changed through a
single-key store transaction:

  fees      cumulative fee income (open fees and network fees)
  deposits  collateral currently backing open positions, never negative
  debt      tokens minted when a payout exceeded the available deposits
  credit    collateral kept from positions that settled at a loss

fees, debt and credit only grow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import VAULT, VaultState
from .store import ABORT, LedgerStore

logger = logging.getLogger(__name__)

FEES = f"{VAULT}/fees"
DEBT = f"{VAULT}/debt"
DEPOSITS = f"{VAULT}/deposits"
CREDIT = f"{VAULT}/credit"


@dataclass(frozen=True)
class ProfitSplit:
    """How a payout was funded."""
    from_deposits: int
    from_debt: int

    @property
    def total(self) -> int:
        return self.from_deposits + self.from_debt


def split_profit(available_deposits: int, amount: int) -> ProfitSplit:
    """Fund *amount* from deposits first, the shortfall from new debt."""
    if amount < 0:
        raise ValueError("Profit amount must be non-negative")
    from_deposits = min(max(available_deposits, 0), amount)
    return ProfitSplit(from_deposits=from_deposits, from_debt=amount - from_deposits)


def _require_non_negative(amount: int, what: str) -> None:
    if amount < 0:
        raise ValueError(f"{what} must be non-negative, got {amount}")


class VaultAccountant:
    """Store-backed vault bookkeeping used by the order engine."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def add_fee(self, amount: int) -> int:
        _require_non_negative(amount, "Fee")
        if amount == 0:
            return 0
        result = await self.store.increment(FEES, amount)
        return result.value

    async def adjust_deposits(self, delta: int) -> int:
        """Move deposits by *delta*, clamped at zero. Returns the applied delta."""
        if delta == 0:
            return 0
        result = await self.store.increment(DEPOSITS, delta, floor=0, clamp=True)
        if result.applied != delta:
            logger.warning(
                f"Vault deposits clamped: requested {delta}, applied {result.applied}"
            )
        return result.applied

    async def absorb_profit(self, amount: int) -> ProfitSplit:
        """
        Pay out *amount* of trader profit.

        Deposits are drawn down first in one transaction; whatever they could
        not cover is added to debt in a second.
        """
        _require_non_negative(amount, "Profit")
        if amount == 0:
            return ProfitSplit(0, 0)

        split = {}

        def draw(current):
            available = int(current or 0)
            split["value"] = split_profit(available, amount)
            if split["value"].from_deposits == 0:
                return ABORT
            return available - split["value"].from_deposits

        await self.store.transaction(DEPOSITS, draw)
        result: ProfitSplit = split["value"]
        if result.from_debt:
            await self.store.increment(DEBT, result.from_debt)
            logger.info(
                f"Vault shortfall: profit {amount} exceeded deposits, debt +{result.from_debt}"
            )
        return result

    async def add_debt(self, amount: int) -> int:
        """
        Mint *amount* as debt. Used when released collateral is no longer
        backed by deposits because earlier payouts already consumed it.
        """
        _require_non_negative(amount, "Debt")
        if amount == 0:
            return 0
        result = await self.store.increment(DEBT, amount)
        logger.info(f"Vault shortfall: {amount} of released collateral unbacked, debt +{amount}")
        return result.value

    async def add_credit(self, amount: int) -> int:
        _require_non_negative(amount, "Credit")
        if amount == 0:
            return 0
        result = await self.store.increment(CREDIT, amount)
        return result.value

    # -- Compensation ---------------------------------------------------------

    async def revert_fee(self, amount: int) -> None:
        """Undo an ``add_fee`` that belonged to an operation being rolled back."""
        await self.store.increment(FEES, -amount)

    async def revert_debt(self, amount: int) -> None:
        await self.store.increment(DEBT, -amount)

    async def revert_credit(self, amount: int) -> None:
        await self.store.increment(CREDIT, -amount)

    async def revert_profit(self, split: ProfitSplit) -> None:
        if split.from_deposits:
            await self.store.increment(DEPOSITS, split.from_deposits)
        if split.from_debt:
            await self.store.increment(DEBT, -split.from_debt)

    async def snapshot(self) -> VaultState:
        data = await self.store.children(VAULT)
        return VaultState(
            fees=int(data.get("fees", 0)),
            debt=int(data.get("debt", 0)),
            deposits=int(data.get("deposits", 0)),
            credit=int(data.get("credit", 0)),
        )
