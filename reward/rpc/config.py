"""
Reward RPC Configuration
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class RPCConfig:
    """[rpc] section: JSON-RPC over HTTP plus websocket subscriptions."""

    # Serve POST /rpc
    enabled: bool = True

    # Serve WS /ws
    websocket_enabled: bool = True

    # CORS allowed origins
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Maximum requests in one JSON-RPC batch
    max_batch_size: int = 50

    # Maximum concurrent websocket connections
    max_connections: int = 100

    # Maximum subscriptions per connection
    max_subscriptions: int = 10

    # Default leaderboard page size when no limit is given
    leaderboard_limit: int = 100

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RPCConfig":
        return cls(
            enabled=data.get("enabled", True),
            websocket_enabled=data.get("websocket_enabled", True),
            cors_origins=data.get("cors_origins", ["*"]),
            max_batch_size=data.get("max_batch_size", 50),
            max_connections=data.get("max_connections", 100),
            max_subscriptions=data.get("max_subscriptions", 10),
            leaderboard_limit=data.get("leaderboard_limit", 100),
        )
