"""
Reward RPC Modules
"""

from .ledger import LedgerContext, LedgerModule

__all__ = [
    "LedgerContext",
    "LedgerModule",
]
