"""
Reward Ledger TOML Configuration Loader

Loads all sections of config.toml at startup with environment variable
overrides.

Environment variable mapping:
    [node] host              → REWARD_NODE_HOST
    [node] port              → REWARD_NODE_PORT
    [database] type          → REWARD_DATABASE_TYPE
    [database] path          → REWARD_DATABASE_PATH
    [oracle] url             → REWARD_PRICE_FEED_URL
    ...
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..constants import (
    ALLOWED_LEVERAGES,
    FEE_RATE,
    INITIAL_BALANCE,
    LIQUIDATION_SWEEP_INTERVAL,
    ORACLE_PRICE_FIELD,
    ORACLE_STALENESS_SECONDS,
    ORACLE_TIMEOUT,
    PRICE_DEVIATION_TOLERANCE,
    REQUEST_POLL_INTERVAL,
    REQUEST_RETENTION_SECONDS,
    REWARD_DATABASE_PATH,
    REWARD_NODE_HOST,
    REWARD_NODE_PORT,
    REWARD_PRICE_FEED_URL,
)
from ..exceptions import ConfigurationError
from ..rpc.config import RPCConfig

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class NodeSectionConfig:
    """[node] section."""
    host: str = str(REWARD_NODE_HOST)
    port: int = int(REWARD_NODE_PORT)
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeSectionConfig":
        return cls(
            host=data.get("host", str(REWARD_NODE_HOST)),
            port=data.get("port", int(REWARD_NODE_PORT)),
            log_level=data.get("log_level", "INFO"),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("REWARD_NODE_HOST"):
            self.host = v
        if v := os.environ.get("REWARD_NODE_PORT"):
            self.port = int(v)
        if v := os.environ.get("REWARD_LOG_LEVEL"):
            self.log_level = v


@dataclass
class TradingConfig:
    """[trading] section. Rates are decimal strings in TOML."""
    fee_rate: Decimal = FEE_RATE
    price_tolerance: Decimal = PRICE_DEVIATION_TOLERANCE
    allowed_leverages: List[int] = field(default_factory=lambda: list(ALLOWED_LEVERAGES))
    initial_balance: int = INITIAL_BALANCE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingConfig":
        return cls(
            fee_rate=_decimal(data.get("fee_rate", FEE_RATE), "trading.fee_rate"),
            price_tolerance=_decimal(
                data.get("price_tolerance", PRICE_DEVIATION_TOLERANCE), "trading.price_tolerance"
            ),
            allowed_leverages=list(data.get("allowed_leverages", ALLOWED_LEVERAGES)),
            initial_balance=data.get("initial_balance", INITIAL_BALANCE),
        )

    def validate(self) -> None:
        if not (Decimal("0") <= self.fee_rate < Decimal("1")):
            raise ConfigurationError(f"fee_rate must be in [0, 1): {self.fee_rate}")
        if self.price_tolerance <= 0:
            raise ConfigurationError("price_tolerance must be positive")
        if not self.allowed_leverages:
            raise ConfigurationError("allowed_leverages must not be empty")
        for leverage in self.allowed_leverages:
            if isinstance(leverage, bool) or not isinstance(leverage, int) or leverage < 1:
                raise ConfigurationError(f"Invalid leverage in allowed_leverages: {leverage!r}")
        if self.initial_balance < 0:
            raise ConfigurationError("initial_balance must be >= 0")


@dataclass
class DatabaseConfig:
    """[database] section."""
    type: str = "sqlite"
    path: str = str(REWARD_DATABASE_PATH)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(
            type=data.get("type", "sqlite"),
            path=data.get("path", str(REWARD_DATABASE_PATH)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("REWARD_DATABASE_TYPE"):
            self.type = v
        if v := os.environ.get("REWARD_DATABASE_PATH"):
            self.path = v


@dataclass
class OracleConfig:
    """[oracle] section."""
    # "http" polls url, "static" serves static_price
    type: str = "http"
    url: str = str(REWARD_PRICE_FEED_URL)
    price_field: str = ORACLE_PRICE_FIELD
    timeout: float = ORACLE_TIMEOUT
    staleness_seconds: float = ORACLE_STALENESS_SECONDS
    static_price: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OracleConfig":
        static_price = data.get("static_price")
        return cls(
            type=data.get("type", "http"),
            url=data.get("url", str(REWARD_PRICE_FEED_URL)),
            price_field=data.get("price_field", ORACLE_PRICE_FIELD),
            timeout=data.get("timeout", ORACLE_TIMEOUT),
            staleness_seconds=data.get("staleness_seconds", ORACLE_STALENESS_SECONDS),
            static_price=str(static_price) if static_price is not None else None,
        )

    def apply_env(self) -> None:
        if v := os.environ.get("REWARD_ORACLE_TYPE"):
            self.type = v
        if v := os.environ.get("REWARD_PRICE_FEED_URL"):
            self.url = v
        if v := os.environ.get("REWARD_ORACLE_STATIC_PRICE"):
            self.static_price = v

    def validate(self) -> None:
        if self.type == "http":
            if not self.url:
                raise ConfigurationError("oracle.url must be set for the http oracle")
        elif self.type == "static":
            if self.static_price is None:
                raise ConfigurationError("oracle.static_price must be set for the static oracle")
            if _decimal(self.static_price, "oracle.static_price") <= 0:
                raise ConfigurationError("oracle.static_price must be positive")
        else:
            raise ConfigurationError(f"Unknown oracle type: {self.type}")
        if self.staleness_seconds <= 0:
            raise ConfigurationError("oracle.staleness_seconds must be positive")


@dataclass
class WorkersConfig:
    """[workers] section: background loops started with the node."""
    liquidation_enabled: bool = True
    liquidation_interval: float = LIQUIDATION_SWEEP_INTERVAL
    request_queue_enabled: bool = True
    request_poll_interval: float = REQUEST_POLL_INTERVAL
    request_retention: float = REQUEST_RETENTION_SECONDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkersConfig":
        return cls(
            liquidation_enabled=data.get("liquidation_enabled", True),
            liquidation_interval=data.get("liquidation_interval", LIQUIDATION_SWEEP_INTERVAL),
            request_queue_enabled=data.get("request_queue_enabled", True),
            request_poll_interval=data.get("request_poll_interval", REQUEST_POLL_INTERVAL),
            request_retention=data.get("request_retention", REQUEST_RETENTION_SECONDS),
        )


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(f"{name} is not a decimal: {value!r}") from e


# -----------------------------------------------------------------------
# Top-level config
# -----------------------------------------------------------------------

@dataclass
class LedgerConfig:
    """
    Unified ledger node configuration.

    Loads every section of config.toml and applies environment variable
    overrides.  This is the single source of truth at runtime.
    """
    node: NodeSectionConfig = field(default_factory=NodeSectionConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(
            node=NodeSectionConfig.from_dict(data.get("node", {})),
            trading=TradingConfig.from_dict(data.get("trading", {})),
            database=DatabaseConfig.from_dict(data.get("database", {})),
            oracle=OracleConfig.from_dict(data.get("oracle", {})),
            rpc=RPCConfig.from_dict(data.get("rpc", {})),
            workers=WorkersConfig.from_dict(data.get("workers", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "LedgerConfig":
        """
        Load configuration from a TOML file.

        Args:
            config_path: Path to config.toml

        Returns:
            LedgerConfig instance
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.node.apply_env()
        self.database.apply_env()
        self.oracle.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Returns:
            True if all valid

        Raises:
            ConfigurationError: on invalid config
        """
        if self.node.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log_level: {self.node.log_level}")
        if not (0 < self.node.port < 65536):
            raise ConfigurationError(f"Invalid port: {self.node.port}")
        if self.database.type not in ("memory", "sqlite"):
            raise ConfigurationError("database.type must be 'memory' or 'sqlite'")
        if self.database.type == "sqlite" and not self.database.path:
            raise ConfigurationError("database.path must be set for sqlite")
        if min(
            self.workers.liquidation_interval,
            self.workers.request_poll_interval,
            self.workers.request_retention,
        ) <= 0:
            raise ConfigurationError("Worker intervals must be positive")
        self.trading.validate()
        self.oracle.validate()
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "node": {
                "host": self.node.host,
                "port": self.node.port,
                "log_level": self.node.log_level,
            },
            "trading": {
                "fee_rate": str(self.trading.fee_rate),
                "price_tolerance": str(self.trading.price_tolerance),
                "allowed_leverages": list(self.trading.allowed_leverages),
                "initial_balance": self.trading.initial_balance,
            },
            "database": {
                "type": self.database.type,
                "path": self.database.path,
            },
            "oracle": {
                "type": self.oracle.type,
                "url": self.oracle.url,
                "price_field": self.oracle.price_field,
                "staleness_seconds": self.oracle.staleness_seconds,
            },
            "rpc": {
                "enabled": self.rpc.enabled,
                "websocket_enabled": self.rpc.websocket_enabled,
                "max_subscriptions": self.rpc.max_subscriptions,
            },
            "workers": {
                "liquidation_enabled": self.workers.liquidation_enabled,
                "liquidation_interval": self.workers.liquidation_interval,
                "request_queue_enabled": self.workers.request_queue_enabled,
                "request_poll_interval": self.workers.request_poll_interval,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> LedgerConfig:
    """
    Load ledger configuration.

    Resolution order:
        1. Explicit *path* argument
        2. REWARD_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("REWARD_CONFIG", "config.toml")

    return LedgerConfig.from_file(path)
