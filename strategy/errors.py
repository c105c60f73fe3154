from typing import Optional

from config import ConfigurationError


class CascadeError(Exception):
    """Base class for failures inside the cascade/execution core."""


class InstrumentNotFound(CascadeError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Instrument {symbol} not found on exchange")


class PriceUnavailable(CascadeError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No price quote available for {symbol}")


class OrderRejected(CascadeError):
    def __init__(self, reason: str, code: Optional[int] = None):
        self.reason = reason
        self.code = code
        super().__init__(f"Order rejected (code={code}): {reason}")


class ConflictingPosition(CascadeError):
    """Benign skip: a same-side position is already open."""

    def __init__(self, symbol: str, side: str, size: float):
        self.symbol = symbol
        self.side = side
        self.size = size
        super().__init__(f"Conflicting {side} position open on {symbol} (size {size})")


class TransientQueryFailure(CascadeError):
    def __init__(self, operation: str, symbol: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.symbol = symbol
        self.cause = cause
        super().__init__(f"{operation} for {symbol} failed: {cause}")


class InvalidProtectionLevels(CascadeError, ConfigurationError):
    """TP/SL bracket is inverted or collapsed after tick adjustment."""

    def __init__(self, side: str, entry: float, take_profit: float, stop_loss: float):
        self.side = side
        self.entry = entry
        self.take_profit = take_profit
        self.stop_loss = stop_loss
        super().__init__(
            f"Inverted {side} bracket: entry={entry} take_profit={take_profit} stop_loss={stop_loss}"
        )
