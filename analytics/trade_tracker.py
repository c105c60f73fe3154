import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from api.metrics import metrics
from config import ConfigurationError
from strategy.execution_types import ClosedTrade, ClosedType, PositionSnapshot, Side, TrackedPosition


logger = logging.getLogger(__name__)


def classify_close(position: TrackedPosition, exit_price: float) -> ClosedType:
    if position.side is Side.BUY:
        if exit_price >= position.take_profit:
            return ClosedType.TAKE_PROFIT
        if exit_price <= position.stop_loss:
            return ClosedType.STOP_LOSS
        return ClosedType.MANUAL
    if exit_price <= position.take_profit:
        return ClosedType.TAKE_PROFIT
    if exit_price >= position.stop_loss:
        return ClosedType.STOP_LOSS
    return ClosedType.MANUAL


def calculate_pnl(position: TrackedPosition, exit_price: float) -> float:
    diff = exit_price - position.entry_price
    if position.side is Side.SELL:
        diff = -diff
    return diff * position.size


class PositionTracker:
    """Poll tracked positions until the exchange reports them flat."""

    def __init__(
        self,
        transport,
        analytics,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        notifier=None,
        recipient_id: Optional[str] = None,
        clock=time.time,
    ):
        cfg = dict(cfg or {})
        self.transport = transport
        self.analytics = analytics
        self.notifier = notifier
        self.recipient_id = recipient_id
        self.clock = clock
        self.poll_interval_s = float(cfg.get('poll_interval_s', 15))
        if self.poll_interval_s <= 0:
            raise ConfigurationError("tracker.poll_interval_s must be positive")

        self.running = False
        self._positions: List[TrackedPosition] = []
        # id(position) -> consecutive failed checks
        self._failures: Dict[int, int] = {}

    @property
    def positions(self) -> List[TrackedPosition]:
        return list(self._positions)

    def track(self, position: TrackedPosition) -> None:
        self._positions.append(position)
        metrics.update_tracked_positions(len(self._positions))
        logger.info("Tracking new position: %s %s size=%s", position.symbol, position.side.value, position.size)

    def _untrack(self, position: TrackedPosition) -> None:
        self._positions = [p for p in self._positions if p is not position]
        self._failures.pop(id(position), None)
        metrics.update_tracked_positions(len(self._positions))

    async def run(self) -> None:
        self.running = True
        logger.info("Position tracker started (every %.0fs)", self.poll_interval_s)
        try:
            while self.running:
                await asyncio.sleep(self.poll_interval_s)
                if not self.running:
                    break
                try:
                    await self.check_positions()
                except Exception as exc:
                    logger.error("Position check tick failed: %s", exc, exc_info=True)
        except asyncio.CancelledError:
            logger.info("Position tracker cancelled")

    def stop(self) -> None:
        self.running = False

    async def check_positions(self) -> List[ClosedTrade]:
        closed: List[ClosedTrade] = []
        for position in list(self._positions):
            try:
                trade = await self._check_position(position)
            except Exception as exc:
                await self._record_failure(position, exc)
                continue
            self._failures.pop(id(position), None)
            if trade is not None:
                closed.append(trade)
        return closed

    async def _check_position(self, position: TrackedPosition) -> Optional[ClosedTrade]:
        remote = await self.transport.fetch_position(position.symbol)
        if self._still_open(position, remote):
            return None

        exit_price = await self.transport.fetch_mark_price(position.symbol)
        if exit_price is None:
            # Keep tracking; next tick retries the price lookup
            raise LookupError(f"no mark price for closed {position.symbol} position")

        trade = ClosedTrade(
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=calculate_pnl(position, exit_price),
            timestamp=self.clock(),
            closed_type=classify_close(position, exit_price),
        )
        self._untrack(position)
        logger.info(
            "Position closed %s %s (%s) exit=%s pnl=%.2f",
            trade.symbol,
            trade.side.value,
            trade.closed_type.value,
            trade.exit_price,
            trade.pnl,
        )
        metrics.record_position_closed(trade.closed_type.value, trade.pnl)
        try:
            await self.analytics.record(trade)
        except Exception as exc:
            logger.error("Recording closed %s trade failed: %s", trade.symbol, exc, exc_info=True)
        return trade

    @staticmethod
    def _still_open(position: TrackedPosition, remote: Optional[PositionSnapshot]) -> bool:
        # A netting fill that flipped the side closes the tracked position
        return remote is not None and remote.is_open and remote.side is position.side

    async def _record_failure(self, position: TrackedPosition, exc: Exception) -> None:
        key = id(position)
        count = self._failures.get(key, 0) + 1
        self._failures[key] = count
        metrics.record_poll_failure(position.symbol)
        logger.warning("Position check for %s failed (%s in a row): %s", position.symbol, count, exc)
        if count == 1 and self.notifier is not None:
            await self.notifier.send(
                self.recipient_id,
                f"<b>⚠️ Position check failed</b>\n▸ Symbol: {position.symbol}\n▸ Reason: {exc}",
            )
