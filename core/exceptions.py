"""Shared exception types for the risk monitor."""

from typing import Optional


class ExchangeDataUnavailable(RuntimeError):
    """Raised when required account data cannot be fetched from the exchange."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class BalanceUnavailable(ExchangeDataUnavailable):
    """Balance fetch failed (transport or authentication error)."""


class CloseFailed(RuntimeError):
    """A reduce-only close order was rejected or could not be sent."""

    def __init__(self, symbol: str, side: str, original: Optional[Exception] = None):
        super().__init__(f"Failed to close {symbol} ({side}): {original}")
        self.symbol = symbol
        self.side = side
        self.original = original


class AccountConfigurationError(ValueError):
    """Account cannot be activated (unsupported exchange, bad credentials, bad baseline)."""

    def __init__(self, account_id: str, reason: str):
        super().__init__(f"[{account_id}] {reason}")
        self.account_id = account_id
        self.reason = reason
