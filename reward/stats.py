"""
Global counters and read views.

Volume and transaction counts are atomic increments on their own keys. The
user count is derived by enumerating accounts so repeat visits are never
double counted.
"""

import logging
from typing import List, Optional

from .models import ACCOUNTS, STATS, GlobalStats, LeaderboardEntry, UserAccount
from .store import LedgerStore
from .vault import VaultAccountant

logger = logging.getLogger(__name__)

TOTAL_VOLUME = f"{STATS}/totalVolume"
TOTAL_TRANSACTIONS = f"{STATS}/totalTransactions"


class StatsAggregator:

    def __init__(self, store: LedgerStore, vault: Optional[VaultAccountant] = None):
        self.store = store
        self.vault = vault or VaultAccountant(store)

    async def record_volume(self, amount: int) -> int:
        if amount < 0:
            raise ValueError("Volume must be non-negative")
        result = await self.store.increment(TOTAL_VOLUME, amount)
        return result.value

    async def increment_transactions(self, count: int = 1) -> int:
        if count < 0:
            raise ValueError("Transaction count must be non-negative")
        result = await self.store.increment(TOTAL_TRANSACTIONS, count)
        return result.value

    async def revert(self, volume: int = 0, transactions: int = 0) -> None:
        """Take back counts recorded by an operation that is being rolled back."""
        if volume:
            await self.store.increment(TOTAL_VOLUME, -volume)
        if transactions:
            await self.store.increment(TOTAL_TRANSACTIONS, -transactions)

    async def count_users(self) -> int:
        return len(await self.store.children(ACCOUNTS))

    async def get_global_stats(self) -> GlobalStats:
        stats = await self.store.children(STATS)
        return GlobalStats(
            total_users=await self.count_users(),
            total_volume=int(stats.get("totalVolume", 0)),
            total_transactions=int(stats.get("totalTransactions", 0)),
            vault=await self.vault.snapshot(),
        )

    async def get_leaderboard(self, limit: Optional[int] = None) -> List[LeaderboardEntry]:
        """Accounts by balance, highest first; equal balances by user id."""
        accounts = await self.store.children(ACCOUNTS)
        entries = []
        for user_id, data in accounts.items():
            if not isinstance(data, dict):
                continue
            try:
                account = UserAccount.from_dict(int(user_id), data)
            except ValueError:
                logger.warning(f"Skipping malformed account record: {user_id}")
                continue
            entries.append(LeaderboardEntry(
                user_id=account.id,
                display_name=account.display_name,
                balance=account.balance,
            ))
        entries.sort(key=lambda e: (-e.balance, e.user_id))
        if limit is not None:
            entries = entries[:max(limit, 0)]
        return entries
