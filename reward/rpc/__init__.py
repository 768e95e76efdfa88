"""
Reward RPC Module

Provides JSON-RPC 2.0 interfaces for the reward ledger:
- HTTP JSON-RPC server
- WebSocket transport with per-user subscriptions
"""

from .server import RPCServer
from .config import RPCConfig

__all__ = [
    "RPCServer",
    "RPCConfig",
]
