import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from strategy.execution_types import ClosedTrade, ClosedType


logger = logging.getLogger(__name__)

_CLOSE_LABELS = {
    ClosedType.TAKE_PROFIT: ('💰', 'Take profit'),
    ClosedType.STOP_LOSS: ('⚠️', 'Stop loss'),
    ClosedType.MANUAL: ('✋', 'Closed manually'),
}


@dataclass
class DailySummary:
    date: str
    total_orders: int = 0
    profitable_count: int = 0
    loss_count: int = 0
    total_pnl: float = 0.0
    positions: List[ClosedTrade] = field(default_factory=list)

    @property
    def win_rate(self) -> float:
        if self.total_orders == 0:
            return 0.0
        return self.profitable_count / self.total_orders * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date,
            'total_orders': self.total_orders,
            'profitable_count': self.profitable_count,
            'loss_count': self.loss_count,
            'win_rate_pct': round(self.win_rate, 2),
            'total_pnl': round(self.total_pnl, 2),
            'positions': [trade.to_dict() for trade in self.positions],
        }


class TradingAnalytics:
    """Running daily summary of closed trades.

    ``record`` is additive: recording the same trade twice counts it twice.
    """

    def __init__(
        self,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        notifier=None,
        recipient_id: Optional[str] = None,
        today: Callable[[], date] = date.today,
    ):
        cfg = dict(cfg or {})
        self.notifier = notifier
        self.recipient_id = recipient_id
        self.daily_rollover = bool(cfg.get('daily_rollover', False))
        self._today = today
        self.summary = self._new_summary()

    def _new_summary(self) -> DailySummary:
        return DailySummary(date=self._today().isoformat())

    async def record(self, trade: ClosedTrade) -> None:
        if self.daily_rollover:
            self._maybe_rollover(trade)

        summary = self.summary
        summary.total_orders += 1
        if trade.pnl >= 0:
            summary.profitable_count += 1
        else:
            summary.loss_count += 1
        summary.total_pnl += trade.pnl
        summary.positions.append(trade)

        logger.info(
            "Recorded %s %s pnl=%.2f (orders=%s, total pnl=%.2f)",
            trade.symbol,
            trade.closed_type.value,
            trade.pnl,
            summary.total_orders,
            summary.total_pnl,
        )
        if self.notifier is not None:
            await self.notifier.send(self.recipient_id, self.format_trade(trade))

    def _maybe_rollover(self, trade: ClosedTrade) -> None:
        trade_day = datetime.fromtimestamp(trade.timestamp).date().isoformat()
        if trade_day > self.summary.date:
            logger.info("Daily summary rollover %s -> %s\n%s", self.summary.date, trade_day, self.report())
            self.summary = DailySummary(date=trade_day)

    def report(self) -> str:
        s = self.summary
        return (
            f"<b>📊 Stats for {s.date}</b>\n"
            f"▸ Orders: <b>{s.total_orders}</b>\n"
            f"▸ Profitable: <b>{s.profitable_count}</b>\n"
            f"▸ Losing: <b>{s.loss_count}</b>\n"
            f"▸ Win rate: <b>{s.win_rate:.2f}%</b>\n"
            f"▸ Total PnL: <b>{s.total_pnl:.2f} $</b>"
        )

    def format_trade(self, trade: ClosedTrade) -> str:
        emoji, label = _CLOSE_LABELS.get(trade.closed_type, _CLOSE_LABELS[ClosedType.MANUAL])
        marker = '🟢' if trade.is_profitable else '🔴'
        return (
            f"<b>{emoji} {label}</b>\n"
            f"▸ Symbol: <b>{trade.symbol}</b>\n"
            f"▸ Side: <b>{trade.side.label}</b>\n"
            f"▸ Entry: <b>{trade.entry_price:.2f}</b>\n"
            f"▸ Exit: <b>{trade.exit_price:.2f}</b>\n"
            f"▸ PnL: <b>{trade.pnl:.2f} $</b> {marker}\n\n"
            f"{self.report()}"
        )

    def snapshot(self) -> Dict[str, Any]:
        return self.summary.to_dict()
