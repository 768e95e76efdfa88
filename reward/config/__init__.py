"""
Reward Ledger Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    LedgerConfig,
    NodeSectionConfig,
    TradingConfig,
    DatabaseConfig,
    OracleConfig,
    WorkersConfig,
    load_config,
)

__all__ = [
    "LedgerConfig",
    "NodeSectionConfig",
    "TradingConfig",
    "DatabaseConfig",
    "OracleConfig",
    "WorkersConfig",
    "load_config",
]
