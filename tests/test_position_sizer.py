import sys

sys.path.insert(0, '.')

import pytest

from config import ConfigurationError
from risk.position_sizer import OrderSizer, adjust_to_tick, compute_protection_levels, round_to_step
from strategy.errors import InvalidProtectionLevels
from strategy.execution_types import InstrumentRules, Side


def _is_multiple(value, step):
    ratio = value / step
    return abs(ratio - round(ratio)) < 1e-6


def test_size_rounds_notional_to_quantity_step():
    sizer = OrderSizer(take_profit_pct=0.5, stop_loss_pct=0.2)
    rules = InstrumentRules(qty_step=0.001, min_qty=0.001, price_tick=0.1)
    qty = sizer.size('BTCUSDT', 43_000.0, 1000.0, rules)
    assert qty == 0.023
    assert _is_multiple(qty, rules.qty_step)


def test_size_floors_at_min_qty():
    sizer = OrderSizer(take_profit_pct=0.5, stop_loss_pct=0.2)
    rules = InstrumentRules(qty_step=0.001, min_qty=0.005, price_tick=0.1)
    assert sizer.size('BTCUSDT', 100_000.0, 10.0, rules) == 0.005


def test_size_output_is_step_multiple_and_above_minimum():
    sizer = OrderSizer(take_profit_pct=0.5, stop_loss_pct=0.2)
    steps = [0.001, 0.01, 0.1, 1.0, 10.0]
    prices = [0.0123, 1.5, 27.3, 2_450.55, 61_234.7]
    for step in steps:
        rules = InstrumentRules(qty_step=step, min_qty=step * 3, price_tick=0.01)
        for price in prices:
            for notional in (5.0, 250.0, 1000.0, 12_345.0):
                qty = sizer.size('X', price, notional, rules)
                assert _is_multiple(qty, step), (step, price, notional, qty)
                assert qty >= rules.min_qty - 1e-12


def test_size_rejects_non_positive_price():
    sizer = OrderSizer(take_profit_pct=0.5, stop_loss_pct=0.2)
    rules = InstrumentRules(qty_step=0.001, min_qty=0.001, price_tick=0.1)
    with pytest.raises(ValueError):
        sizer.size('BTCUSDT', 0.0, 1000.0, rules)


def test_adjust_to_tick_rounds_to_nearest():
    assert adjust_to_tick(100.26, 0.1) == 100.3
    assert adjust_to_tick(100.24, 0.1) == 100.2
    assert adjust_to_tick(0.123456, 0.0001) == 0.1235
    assert round_to_step(17, 5) == 15


def test_protection_levels_long_and_short():
    tp, sl = compute_protection_levels(Side.BUY, 100.0, 1.0, 0.35, 0.01)
    assert (tp, sl) == (101.0, 99.65)

    tp, sl = compute_protection_levels(Side.SELL, 100.0, 1.0, 0.35, 0.01)
    assert (tp, sl) == (99.0, 100.35)


def test_protection_levels_bracket_holds_across_inputs():
    for entry in (0.5, 3.21, 100.0, 2_500.0, 65_000.0):
        for tp_pct in (0.5, 1.0, 5.0, 50.0, 99.0):
            for sl_pct in (0.5, 2.0, 30.0, 99.0):
                tick = entry / 100_000
                tp, sl = compute_protection_levels(Side.BUY, entry, tp_pct, sl_pct, tick)
                assert tp > entry > sl
                tp, sl = compute_protection_levels(Side.SELL, entry, tp_pct, sl_pct, tick)
                assert tp < entry < sl


def test_tick_collapsing_bracket_is_refused():
    # 0.2% of 100 is less than half a tick of 1.0, so SL rounds back to entry
    with pytest.raises(InvalidProtectionLevels):
        compute_protection_levels(Side.BUY, 100.0, 0.5, 0.2, 1.0)
    with pytest.raises(InvalidProtectionLevels):
        compute_protection_levels(Side.SELL, 100.0, 0.2, 0.5, 1.0)


@pytest.mark.parametrize('tp_pct,sl_pct', [(0, 0.2), (0.5, 0), (100, 0.2), (0.5, 150), (-1, 1)])
def test_percentages_outside_open_interval_are_configuration_errors(tp_pct, sl_pct):
    with pytest.raises(ConfigurationError):
        OrderSizer(take_profit_pct=tp_pct, stop_loss_pct=sl_pct)
