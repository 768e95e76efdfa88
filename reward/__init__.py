"""
Reward Ledger Package

Core imports are lazily loaded so that importing the package does not pull
in the web stack. For direct module access, import from submodules:

    from reward.engine import OrderEngine
    from reward.store import MemoryStore
    from reward.exceptions import InsufficientBalance
"""

# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'OrderEngine':
        from .engine import OrderEngine
        return OrderEngine
    elif name == 'main':
        from .node import main
        return main
    elif name == 'LedgerError':
        from .exceptions import LedgerError
        return LedgerError
    raise AttributeError(f"module 'reward' has no attribute {name!r}")

__all__ = ['OrderEngine', 'main', 'LedgerError']
