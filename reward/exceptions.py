"""
Reward Exceptions

Custom exception classes for the reward ledger.

Every ledger rejection carries an ``ErrorKind`` so the order engine can turn
it into a typed failure at its boundary. Only ``STORE_UNAVAILABLE`` is worth
retrying; all other kinds need new user input.
"""

from enum import Enum


class ErrorKind(str, Enum):
    PRICE_DEVIATION = "PriceDeviation"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    DUPLICATE_OPEN_ORDER = "DuplicateOpenOrder"
    NOT_FOUND = "NotFound"
    ALREADY_PENDING = "AlreadyPending"
    STORE_UNAVAILABLE = "StoreUnavailable"
    INVALID_ORDER = "InvalidOrder"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.STORE_UNAVAILABLE


class RewardException(Exception):
    """Base exception for the reward ledger."""
    pass


class LedgerError(RewardException):
    """Base class for rejections raised by the order engine and the store."""
    kind: ErrorKind = ErrorKind.STORE_UNAVAILABLE


class PriceDeviation(LedgerError):
    """Client quote diverges from the oracle price beyond tolerance."""
    kind = ErrorKind.PRICE_DEVIATION


class InsufficientBalance(LedgerError):
    """Balance does not cover collateral plus fee."""
    kind = ErrorKind.INSUFFICIENT_BALANCE


class DuplicateOpenOrder(LedgerError):
    """User already holds an open order."""
    kind = ErrorKind.DUPLICATE_OPEN_ORDER


class NotFound(LedgerError):
    """Order or account missing, or not owned by the caller."""
    kind = ErrorKind.NOT_FOUND


class AlreadyPending(LedgerError):
    """A close for this order is already in flight."""
    kind = ErrorKind.ALREADY_PENDING


class InvalidOrder(LedgerError):
    """Request parameters are malformed (side, leverage, collateral, fee)."""
    kind = ErrorKind.INVALID_ORDER


class StoreUnavailable(LedgerError):
    """Transient storage or feed failure."""
    kind = ErrorKind.STORE_UNAVAILABLE


class OracleUnavailable(StoreUnavailable):
    """Price feed unreachable, malformed or stale."""
    pass


class ConfigurationError(RewardException):
    """Configuration error."""
    pass
