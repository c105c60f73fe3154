import sys

sys.path.insert(0, '.')

import asyncio

from risk.instrument_rules import ExchangeInstrumentRules, StaticInstrumentRules
from strategy.execution import ExecutionGate
from strategy.execution_types import InstrumentRules, OrderAck, OutcomeStatus, Side
from tests.fakes import FakeTransport, RecordingNotifier, RecordingTracker


EXECUTION_CFG = {'take_profit_pct': 0.5, 'stop_loss_pct': 0.2}


def _build(transport=None, overrides=None):
    transport = transport or FakeTransport()
    transport.last_prices.setdefault('BTCUSDT', 43_000.0)
    tracker = RecordingTracker()
    notifier = RecordingNotifier()
    gate = ExecutionGate(
        transport,
        ExchangeInstrumentRules(transport, StaticInstrumentRules(overrides)),
        tracker,
        EXECUTION_CFG,
        notifier=notifier,
        recipient_id='42',
        clock=lambda: 1_700_000_000.0,
    )
    return gate, transport, tracker, notifier


def test_submits_bracketed_order_and_tracks_position():
    async def scenario():
        gate, transport, tracker, notifier = _build()
        outcome = await gate.execute('BTCUSDT', Side.BUY, 1000)

        assert outcome.status is OutcomeStatus.SUBMITTED
        assert outcome.order_id == 'order-1'
        assert len(transport.orders) == 1
        order = transport.orders[0]
        assert order.side is Side.BUY
        assert order.qty == 0.023
        assert order.take_profit == 43_215.0
        assert order.stop_loss == 42_914.0
        assert order.order_type == 'Market'
        assert order.trigger_by == 'MarkPrice'

        assert len(tracker.tracked) == 1
        position = tracker.tracked[0]
        assert position.entry_price == 43_000.0
        assert position.take_profit == order.take_profit
        assert position.stop_loss == order.stop_loss
        assert position.opened_at == 1_700_000_000.0

        assert len(notifier.messages) == 1
        assert 'Order placed' in notifier.texts()[0]

    asyncio.run(scenario())


def test_short_bracket_is_mirrored():
    async def scenario():
        gate, transport, _, _ = _build()
        outcome = await gate.execute('BTCUSDT', Side.SELL, 1000)
        assert outcome.submitted
        order = transport.orders[0]
        assert order.take_profit == 42_785.0
        assert order.stop_loss == 43_086.0

    asyncio.run(scenario())


def test_same_side_position_skips_without_submitting():
    async def scenario():
        gate, transport, tracker, notifier = _build()
        transport.open_position('BTCUSDT', Side.BUY, 0.05)
        outcome = await gate.execute('BTCUSDT', Side.BUY, 1000)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert transport.orders == []
        assert tracker.tracked == []
        assert len(notifier.messages) == 1
        assert 'Order skipped' in notifier.texts()[0]

    asyncio.run(scenario())


def test_opposite_side_position_does_not_block():
    async def scenario():
        gate, transport, _, _ = _build()
        transport.open_position('BTCUSDT', Side.SELL, 0.05)
        outcome = await gate.execute('BTCUSDT', Side.BUY, 1000)
        assert outcome.submitted

    asyncio.run(scenario())


def test_second_call_while_position_open_is_skipped():
    async def scenario():
        gate, transport, _, notifier = _build()
        first = await gate.execute('BTCUSDT', Side.BUY, 1000)
        second = await gate.execute('BTCUSDT', Side.BUY, 1000)
        assert first.submitted
        assert second.status is OutcomeStatus.SKIPPED
        assert len(transport.orders) == 1
        assert len(notifier.messages) == 2

    asyncio.run(scenario())


def test_missing_price_fails_without_submitting():
    async def scenario():
        gate, transport, tracker, notifier = _build()
        transport.last_prices['BTCUSDT'] = None
        outcome = await gate.execute('BTCUSDT', Side.BUY, 1000)
        assert outcome.status is OutcomeStatus.FAILED
        assert 'No price quote' in outcome.reason
        assert transport.orders == []
        assert tracker.tracked == []
        assert len(notifier.messages) == 1
        assert 'Order error' in notifier.texts()[0]

    asyncio.run(scenario())


def test_unknown_instrument_fails():
    async def scenario():
        gate, transport, _, notifier = _build()
        transport.last_prices['NOPEUSDT'] = 1.0
        outcome = await gate.execute('NOPEUSDT', Side.SELL, 1000)
        assert outcome.status is OutcomeStatus.FAILED
        assert 'NOPEUSDT' in outcome.reason
        assert transport.orders == []
        assert len(notifier.messages) == 1

    asyncio.run(scenario())


def test_position_query_failure_is_reported_not_raised():
    async def scenario():
        gate, transport, _, notifier = _build()
        transport.position_errors['BTCUSDT'] = ConnectionError('socket closed')
        outcome = await gate.execute('BTCUSDT', Side.BUY, 1000)
        assert outcome.status is OutcomeStatus.FAILED
        assert 'socket closed' in outcome.reason
        assert transport.orders == []
        assert len(notifier.messages) == 1

    asyncio.run(scenario())


def test_rejected_order_is_not_retried_or_tracked():
    async def scenario():
        gate, transport, tracker, notifier = _build()
        transport.next_ack = OrderAck(success=False, reason='insufficient margin', code=110007)
        outcome = await gate.execute('BTCUSDT', Side.BUY, 1000)
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.reason == 'insufficient margin'
        assert len(transport.orders) == 1
        assert tracker.tracked == []
        assert 'insufficient margin' in notifier.texts()[0]

    asyncio.run(scenario())


def test_collapsed_bracket_is_never_submitted():
    async def scenario():
        overrides = {'TINYUSDT': InstrumentRules(qty_step=0.1, min_qty=0.1, price_tick=1.0)}
        gate, transport, tracker, notifier = _build(overrides=overrides)
        transport.last_prices['TINYUSDT'] = 100.0
        outcome = await gate.execute('TINYUSDT', Side.BUY, 1000)
        assert outcome.status is OutcomeStatus.FAILED
        assert transport.orders == []
        assert tracker.tracked == []
        assert len(notifier.messages) == 1

    asyncio.run(scenario())


def test_static_overrides_win_over_exchange():
    async def scenario():
        overrides = {'BTCUSDT': {'qty_step': 0.01, 'min_qty': 0.01, 'price_tick': 0.5}}
        gate, transport, _, _ = _build(overrides=overrides)
        await gate.execute('BTCUSDT', Side.BUY, 1000)
        order = transport.orders[0]
        assert order.qty == 0.02
        assert order.take_profit == 43_215.0
        assert order.stop_loss == 42_914.0

    asyncio.run(scenario())
