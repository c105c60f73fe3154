import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Side(str, Enum):
    BUY = "Buy"
    SELL = "Sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @property
    def label(self) -> str:
        return "Long" if self is Side.BUY else "Short"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        if isinstance(value, Side):
            return value
        text = str(value or "").strip().lower()
        if text in ("buy", "long"):
            return cls.BUY
        if text in ("sell", "short"):
            return cls.SELL
        raise ValueError(f"Unknown side: {value!r}")


class ClosedType(str, Enum):
    TAKE_PROFIT = "TakeProfit"
    STOP_LOSS = "StopLoss"
    MANUAL = "Manual"


class OutcomeStatus(str, Enum):
    SUBMITTED = "submitted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class LiquidationObservation:
    symbol: str
    side: Side
    price: float
    volume: float
    exchange_ts: Optional[int] = None

    @property
    def notional(self) -> float:
        return self.price * self.volume


@dataclass(frozen=True)
class LiquidationEvent:
    timestamp: int
    observations: List[LiquidationObservation] = field(default_factory=list)


@dataclass(frozen=True)
class InstrumentRules:
    qty_step: float
    min_qty: float
    price_tick: float


@dataclass(frozen=True)
class PositionSnapshot:
    """Remote position for a symbol; ``side`` is None when flat."""

    symbol: str
    side: Optional[Side]
    size: float

    @property
    def is_open(self) -> bool:
        return self.side is not None and self.size > 0


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    qty: float
    take_profit: float
    stop_loss: float
    order_type: str = "Market"
    time_in_force: str = "GTC"
    trigger_by: str = "MarkPrice"


@dataclass(frozen=True)
class OrderAck:
    success: bool
    order_id: Optional[str] = None
    reason: Optional[str] = None
    code: Optional[int] = None


@dataclass(frozen=True)
class TrackedPosition:
    symbol: str
    side: Side
    entry_price: float
    take_profit: float
    stop_loss: float
    size: float
    opened_at: float = field(default_factory=time.time)
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data


@dataclass(frozen=True)
class ClosedTrade:
    symbol: str
    side: Side
    entry_price: float
    exit_price: float
    pnl: float
    timestamp: float
    closed_type: ClosedType

    @property
    def is_profitable(self) -> bool:
        return self.pnl >= 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["closed_type"] = self.closed_type.value
        return data


@dataclass(frozen=True)
class ExecutionOutcome:
    """Terminal result of one execution-gate call."""

    status: OutcomeStatus
    symbol: str
    side: Side
    reason: Optional[str] = None
    position: Optional[TrackedPosition] = None
    order_id: Optional[str] = None

    @property
    def submitted(self) -> bool:
        return self.status is OutcomeStatus.SUBMITTED
