import logging
import time
from typing import Any, Mapping, Optional

from api.metrics import metrics
from risk.position_sizer import OrderSizer
from strategy.errors import (
    CascadeError,
    ConflictingPosition,
    InvalidProtectionLevels,
    OrderRejected,
    PriceUnavailable,
    TransientQueryFailure,
)
from strategy.execution_types import (
    ExecutionOutcome,
    OrderRequest,
    OutcomeStatus,
    PositionSnapshot,
    Side,
    TrackedPosition,
)


logger = logging.getLogger(__name__)


class ExecutionGate:
    """Open a bracketed market position unless one is already open on that side.

    Every call ends in exactly one outcome (submitted, skipped or failed), one
    notification, and at most one order submission. Failures are reported,
    never raised, and rejected orders are not retried.
    """

    def __init__(
        self,
        transport,
        rules_resolver,
        tracker,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        sizer: Optional[OrderSizer] = None,
        notifier=None,
        recipient_id: Optional[str] = None,
        clock=time.time,
    ):
        cfg = dict(cfg or {})
        self.transport = transport
        self.rules_resolver = rules_resolver
        self.tracker = tracker
        self.notifier = notifier
        self.recipient_id = recipient_id
        self.clock = clock
        self.sizer = sizer or OrderSizer(
            take_profit_pct=cfg.get('take_profit_pct', 0.5),
            stop_loss_pct=cfg.get('stop_loss_pct', 0.2),
        )
        self.trigger_by = cfg.get('trigger_by', 'MarkPrice')
        self.time_in_force = cfg.get('time_in_force', 'GTC')

    async def execute(self, symbol: str, side: Side, usd_notional: float) -> ExecutionOutcome:
        try:
            position = await self._submit(symbol, side, usd_notional)
        except ConflictingPosition as exc:
            logger.warning("Skipping %s %s: %s", symbol, side.value, exc)
            metrics.record_order_outcome('skipped', 'conflicting_position')
            await self._notify(
                f"<b>⚠️ Order skipped</b>\n"
                f"{side.label} position already open on {symbol}\n"
                f"Current size: {exc.size}"
            )
            return ExecutionOutcome(OutcomeStatus.SKIPPED, symbol, side, reason='conflicting position')
        except CascadeError as exc:
            return await self._fail(symbol, side, exc)
        except Exception as exc:
            logger.error("Unexpected error executing %s %s", symbol, side.value, exc_info=True)
            return await self._fail(symbol, side, exc)

        metrics.record_order_outcome('submitted', 'ok')
        await self._notify(self._format_submitted(position, usd_notional))
        return ExecutionOutcome(
            OutcomeStatus.SUBMITTED,
            symbol,
            side,
            position=position,
            order_id=position.order_id,
        )

    async def _submit(self, symbol: str, side: Side, usd_notional: float) -> TrackedPosition:
        current = await self._query('position', symbol, self.transport.fetch_position(symbol))
        if isinstance(current, PositionSnapshot) and current.is_open and current.side is side:
            raise ConflictingPosition(symbol, side.value, current.size)

        price = await self._query('ticker', symbol, self.transport.fetch_last_price(symbol))
        if price is None:
            raise PriceUnavailable(symbol)

        rules = await self.rules_resolver.rules(symbol)
        qty = self.sizer.size(symbol, price, usd_notional, rules)
        take_profit, stop_loss = self.sizer.compute_protection_levels(side, price, rules.price_tick)

        order = OrderRequest(
            symbol=symbol,
            side=side,
            qty=qty,
            take_profit=take_profit,
            stop_loss=stop_loss,
            time_in_force=self.time_in_force,
            trigger_by=self.trigger_by,
        )
        started = time.monotonic()
        ack = await self.transport.submit_order(order)
        metrics.record_order_send_latency(time.monotonic() - started)
        if not ack.success:
            raise OrderRejected(ack.reason or 'unknown', ack.code)

        logger.info(
            "Order placed %s %s qty=%s entry=%s tp=%s sl=%s id=%s",
            symbol,
            side.value,
            qty,
            price,
            take_profit,
            stop_loss,
            ack.order_id,
        )
        position = TrackedPosition(
            symbol=symbol,
            side=side,
            entry_price=price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            size=qty,
            opened_at=self.clock(),
            order_id=ack.order_id,
        )
        self.tracker.track(position)
        return position

    @staticmethod
    async def _query(operation: str, symbol: str, awaitable):
        try:
            return await awaitable
        except CascadeError:
            raise
        except Exception as exc:
            raise TransientQueryFailure(operation, symbol, exc) from exc

    async def _fail(self, symbol: str, side: Side, error: Exception) -> ExecutionOutcome:
        if isinstance(error, InvalidProtectionLevels):
            logger.critical("Refusing to submit %s %s: %s", symbol, side.value, error)
            reason_label = 'invalid_bracket'
        elif isinstance(error, OrderRejected):
            logger.error("Order rejected for %s %s: %s", symbol, side.value, error.reason)
            reason_label = 'rejected'
        else:
            logger.error("Order for %s %s failed: %s", symbol, side.value, error)
            reason_label = type(error).__name__
        metrics.record_order_outcome('failed', reason_label)
        reason = error.reason if isinstance(error, OrderRejected) else str(error)
        await self._notify(
            f"<b>❌ Order error</b>\n"
            f"▸ Symbol: {symbol}\n"
            f"▸ Side: {side.label}\n"
            f"▸ Reason: {reason}"
        )
        return ExecutionOutcome(OutcomeStatus.FAILED, symbol, side, reason=reason)

    async def _notify(self, text: str) -> None:
        if self.notifier is None:
            return
        await self.notifier.send(self.recipient_id, text)

    def _format_submitted(self, position: TrackedPosition, usd_notional: float) -> str:
        base_asset = position.symbol.replace('USDT', '')
        return (
            f"<b>⚡ Order placed</b>\n"
            f"▸ Symbol: <b>{position.symbol}</b>\n"
            f"▸ Side: <b>{position.side.label}</b>\n"
            f"▸ Size: <b>{position.size} {base_asset}</b>\n"
            f"▸ Notional: <b>{usd_notional:g}$</b>\n"
            f"▸ Entry: <b>{position.entry_price:.2f}</b>\n"
            f"▸ Take profit: <b>{position.take_profit} (+{self.sizer.take_profit_pct:g}%)</b>\n"
            f"▸ Stop loss: <b>{position.stop_loss} (-{self.sizer.stop_loss_pct:g}%)</b>"
        )
