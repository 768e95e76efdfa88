"""
Reference price oracle clients.

The ledger never publishes prices; it reads the current reference price from
an external feed. ``HttpPriceOracle`` polls a JSON endpoint, ``StaticPriceOracle``
serves a settable price for tests and local development.

Security features:
  - Staleness guard (quotes older than ORACLE_STALENESS_SECONDS are refused)
  - Non-positive and non-numeric prices rejected
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from .constants import ORACLE_PRICE_FIELD, ORACLE_STALENESS_SECONDS, ORACLE_TIMEOUT
from .exceptions import OracleUnavailable

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceQuote:
    """A reference price and the time (unix seconds) it was observed."""
    price: Decimal
    timestamp: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {"price": str(self.price), "timestamp": self.timestamp}


def parse_price(raw: Any) -> Decimal:
    """Decimal from a feed value; floats go through ``str`` to stay exact."""
    if isinstance(raw, bool) or raw is None:
        raise OracleUnavailable(f"Price feed returned no usable price: {raw!r}")
    try:
        price = Decimal(str(raw))
    except (InvalidOperation, ValueError) as e:
        raise OracleUnavailable(f"Price feed returned malformed price: {raw!r}") from e
    if not price.is_finite() or price <= ZERO:
        raise OracleUnavailable(f"Price feed returned non-positive price: {raw!r}")
    return price


# ---------------------------------------------------------------------------
# Oracles
# ---------------------------------------------------------------------------

class PriceOracle(ABC):
    """Read-only view of the current reference price."""

    staleness_seconds: float = ORACLE_STALENESS_SECONDS

    @abstractmethod
    async def fetch(self) -> PriceQuote:
        ...

    async def current_price(self) -> PriceQuote:
        """Latest quote, refused if older than the staleness window."""
        quote = await self.fetch()
        self._check_staleness(quote)
        return quote

    def _check_staleness(self, quote: PriceQuote) -> None:
        age = quote.age()
        if age > self.staleness_seconds:
            raise OracleUnavailable(
                f"Oracle data stale: {age:.0f}s old (max {self.staleness_seconds:.0f}s)"
            )

    async def close(self) -> None:
        pass


class StaticPriceOracle(PriceOracle):
    """Fixed price, optionally moved by ``set_price``."""

    def __init__(self, price, timestamp: Optional[float] = None):
        self._price = parse_price(price)
        self._timestamp = timestamp

    def set_price(self, price, timestamp: Optional[float] = None) -> None:
        self._price = parse_price(price)
        self._timestamp = timestamp

    async def fetch(self) -> PriceQuote:
        ts = self._timestamp if self._timestamp is not None else time.time()
        return PriceQuote(price=self._price, timestamp=ts)


class HttpPriceOracle(PriceOracle):
    """
    Polls a JSON price feed.

    The response must be an object holding the price under ``price_field``.
    An optional ``timestamp`` (seconds, or milliseconds when larger than
    1e12) marks when the feed observed the price; without it the fetch time
    is used.
    """

    def __init__(
        self,
        url: str,
        price_field: str = ORACLE_PRICE_FIELD,
        timeout: float = ORACLE_TIMEOUT,
        staleness_seconds: float = ORACLE_STALENESS_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise ValueError("Price feed URL must be set")
        self.url = url
        self.price_field = price_field
        self.staleness_seconds = staleness_seconds
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.last_quote: Optional[PriceQuote] = None

    async def fetch(self) -> PriceQuote:
        try:
            response = await self._client.get(self.url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Price feed {self.url} unreachable: {e}")
            raise OracleUnavailable(f"Price feed unreachable: {e}") from e
        except ValueError as e:
            raise OracleUnavailable(f"Price feed returned invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise OracleUnavailable("Price feed returned a non-object payload")

        price = parse_price(payload.get(self.price_field))
        ts = payload.get("timestamp")
        if isinstance(ts, (int, float)) and not isinstance(ts, bool):
            timestamp = ts / 1000.0 if ts > 1e12 else float(ts)
        else:
            timestamp = time.time()

        quote = PriceQuote(price=price, timestamp=timestamp)
        self.last_quote = quote
        return quote

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
