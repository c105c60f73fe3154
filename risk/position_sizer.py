import logging
import math
from decimal import Decimal
from typing import Tuple

from config import ConfigurationError
from strategy.errors import InvalidProtectionLevels
from strategy.execution_types import InstrumentRules, Side


logger = logging.getLogger(__name__)


def _decimals(step: float) -> int:
    exponent = Decimal(repr(step)).normalize().as_tuple().exponent
    return max(0, -exponent)


def _validate_pct(name: str, value: float) -> float:
    value = float(value)
    if not 0 < value < 100:
        raise ConfigurationError(f"{name} must be within (0, 100), got {value}")
    return value


def round_to_step(value: float, step: float) -> float:
    """Nearest multiple of ``step``, rounded to the step's own precision."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    return round(round(value / step) * step, _decimals(step))


def adjust_to_tick(price: float, tick: float) -> float:
    return round_to_step(price, tick)


class OrderSizer:
    """Turn a USD notional into an exchange-valid quantity and TP/SL bracket."""

    def __init__(self, take_profit_pct: float, stop_loss_pct: float):
        self.take_profit_pct = _validate_pct('take_profit_pct', take_profit_pct)
        self.stop_loss_pct = _validate_pct('stop_loss_pct', stop_loss_pct)

    def size(self, symbol: str, price: float, usd_notional: float, rules: InstrumentRules) -> float:
        if price <= 0 or not math.isfinite(price):
            raise ValueError(f"{symbol}: price must be positive, got {price}")
        if usd_notional <= 0:
            raise ValueError(f"{symbol}: notional must be positive, got {usd_notional}")
        qty = round_to_step(usd_notional / price, rules.qty_step)
        min_qty = round_to_step(rules.min_qty, rules.qty_step)
        if rules.min_qty - min_qty > rules.qty_step * 1e-9:
            # min_qty off the step grid; use the next step up
            min_qty = round_to_step(min_qty + rules.qty_step, rules.qty_step)
        if qty < min_qty:
            logger.debug("%s: qty %s below minimum, using %s", symbol, qty, min_qty)
            qty = min_qty
        return qty

    def compute_protection_levels(self, side: Side, entry_price: float, tick: float) -> Tuple[float, float]:
        return compute_protection_levels(side, entry_price, self.take_profit_pct, self.stop_loss_pct, tick)


def compute_protection_levels(
    side: Side,
    entry_price: float,
    tp_pct: float,
    stop_pct: float,
    tick: float,
) -> Tuple[float, float]:
    """Return tick-aligned ``(take_profit, stop_loss)`` for a position.

    Raises InvalidProtectionLevels if tick rounding collapses or inverts the
    bracket; such an order must never be submitted.
    """
    tp_frac = _validate_pct('take_profit_pct', tp_pct) / 100.0
    sl_frac = _validate_pct('stop_loss_pct', stop_pct) / 100.0
    if side is Side.BUY:
        take_profit = entry_price * (1 + tp_frac)
        stop_loss = entry_price * (1 - sl_frac)
    else:
        take_profit = entry_price * (1 - tp_frac)
        stop_loss = entry_price * (1 + sl_frac)

    take_profit = adjust_to_tick(take_profit, tick)
    stop_loss = adjust_to_tick(stop_loss, tick)
    validate_bracket(side, entry_price, take_profit, stop_loss)
    return take_profit, stop_loss


def validate_bracket(side: Side, entry_price: float, take_profit: float, stop_loss: float) -> None:
    if side is Side.BUY:
        ok = take_profit > entry_price > stop_loss
    else:
        ok = take_profit < entry_price < stop_loss
    if not ok or stop_loss <= 0:
        raise InvalidProtectionLevels(side.value, entry_price, take_profit, stop_loss)
