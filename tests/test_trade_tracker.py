import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from analytics.trade_tracker import PositionTracker, calculate_pnl, classify_close
from config import ConfigurationError
from strategy.execution_types import ClosedType, Side, TrackedPosition
from tests.fakes import FakeTransport, RecordingNotifier


def _long(symbol='BTCUSDT'):
    return TrackedPosition(symbol=symbol, side=Side.BUY, entry_price=100.0, take_profit=101.0, stop_loss=99.65, size=2.0)


def _short(symbol='ETHUSDT'):
    return TrackedPosition(symbol=symbol, side=Side.SELL, entry_price=100.0, take_profit=99.0, stop_loss=100.35, size=2.0)


class RecordingAnalytics:
    def __init__(self, fail=False):
        self.trades = []
        self.fail = fail

    async def record(self, trade):
        self.trades.append(trade)
        if self.fail:
            raise RuntimeError('analytics store down')


def _build(analytics=None):
    transport = FakeTransport()
    notifier = RecordingNotifier()
    analytics = analytics or RecordingAnalytics()
    tracker = PositionTracker(
        transport,
        analytics,
        {'poll_interval_s': 15},
        notifier=notifier,
        recipient_id='42',
        clock=lambda: 1_700_000_000.0,
    )
    return tracker, transport, analytics, notifier


def test_classify_long_close():
    position = _long()
    assert classify_close(position, 101.0) is ClosedType.TAKE_PROFIT
    assert classify_close(position, 101.5) is ClosedType.TAKE_PROFIT
    assert classify_close(position, 99.0) is ClosedType.STOP_LOSS
    assert classify_close(position, 99.65) is ClosedType.STOP_LOSS
    assert classify_close(position, 100.2) is ClosedType.MANUAL


def test_classify_short_close():
    position = _short()
    assert classify_close(position, 98.5) is ClosedType.TAKE_PROFIT
    assert classify_close(position, 100.5) is ClosedType.STOP_LOSS
    assert classify_close(position, 99.9) is ClosedType.MANUAL


def test_pnl_sign_follows_side():
    assert calculate_pnl(_long(), 101.0) == pytest.approx(2.0)
    assert calculate_pnl(_long(), 99.0) == pytest.approx(-2.0)
    assert calculate_pnl(_short(), 99.0) == pytest.approx(2.0)
    assert calculate_pnl(_short(), 100.35) == pytest.approx(-0.7)


def test_open_positions_stay_tracked():
    async def scenario():
        tracker, transport, analytics, _ = _build()
        tracker.track(_long())
        transport.open_position('BTCUSDT', Side.BUY, 2.0)
        assert await tracker.check_positions() == []
        assert len(tracker.positions) == 1
        assert analytics.trades == []

    asyncio.run(scenario())


def test_flipped_remote_side_closes_tracked_position():
    async def scenario():
        tracker, transport, analytics, _ = _build()
        tracker.track(_long())
        # Opposite-side fill netted the long away and left a small short
        transport.open_position('BTCUSDT', Side.SELL, 0.001)
        transport.mark_prices['BTCUSDT'] = 101.2

        closed = await tracker.check_positions()
        assert [trade.closed_type for trade in closed] == [ClosedType.TAKE_PROFIT]
        assert tracker.positions == []
        assert len(analytics.trades) == 1

        for _ in range(3):
            assert await tracker.check_positions() == []
        assert len(analytics.trades) == 1

    asyncio.run(scenario())


def test_flat_position_is_closed_and_recorded():
    async def scenario():
        tracker, transport, analytics, _ = _build()
        tracker.track(_long())
        transport.flatten('BTCUSDT')
        transport.mark_prices['BTCUSDT'] = 99.0

        closed = await tracker.check_positions()
        assert len(closed) == 1
        trade = closed[0]
        assert trade.closed_type is ClosedType.STOP_LOSS
        assert trade.exit_price == 99.0
        assert trade.pnl == pytest.approx(-2.0)
        assert trade.timestamp == 1_700_000_000.0
        assert tracker.positions == []
        assert analytics.trades == [trade]

        assert await tracker.check_positions() == []
        assert len(analytics.trades) == 1

    asyncio.run(scenario())


def test_one_failing_symbol_does_not_block_the_others():
    async def scenario():
        tracker, transport, analytics, notifier = _build()
        tracker.track(_long('BTCUSDT'))
        tracker.track(_short('ETHUSDT'))
        transport.position_errors['BTCUSDT'] = ConnectionError('timeout')
        transport.flatten('ETHUSDT')
        transport.mark_prices['ETHUSDT'] = 99.0

        closed = await tracker.check_positions()
        assert [trade.symbol for trade in closed] == ['ETHUSDT']
        assert [p.symbol for p in tracker.positions] == ['BTCUSDT']
        assert len(notifier.messages) == 1
        assert 'Position check failed' in notifier.texts()[0]

    asyncio.run(scenario())


def test_failure_is_notified_once_per_streak():
    async def scenario():
        tracker, transport, _, notifier = _build()
        tracker.track(_long())
        transport.position_errors['BTCUSDT'] = ConnectionError('timeout')
        for _ in range(3):
            await tracker.check_positions()
        assert len(notifier.messages) == 1

        del transport.position_errors['BTCUSDT']
        transport.open_position('BTCUSDT', Side.BUY, 2.0)
        await tracker.check_positions()
        transport.position_errors['BTCUSDT'] = ConnectionError('timeout')
        await tracker.check_positions()
        assert len(notifier.messages) == 2

    asyncio.run(scenario())


def test_missing_exit_price_keeps_position_for_next_tick():
    async def scenario():
        tracker, transport, analytics, _ = _build()
        tracker.track(_long())
        transport.flatten('BTCUSDT')

        assert await tracker.check_positions() == []
        assert len(tracker.positions) == 1

        transport.mark_prices['BTCUSDT'] = 101.0
        closed = await tracker.check_positions()
        assert closed[0].closed_type is ClosedType.TAKE_PROFIT
        assert tracker.positions == []

    asyncio.run(scenario())


def test_analytics_failure_does_not_resurrect_position():
    async def scenario():
        tracker, transport, analytics, notifier = _build(RecordingAnalytics(fail=True))
        tracker.track(_long())
        transport.flatten('BTCUSDT')
        transport.mark_prices['BTCUSDT'] = 100.2

        closed = await tracker.check_positions()
        assert closed[0].closed_type is ClosedType.MANUAL
        assert tracker.positions == []
        assert notifier.messages == []

    asyncio.run(scenario())


def test_run_loop_stops_on_request():
    async def scenario():
        tracker, transport, analytics, _ = _build()
        tracker.poll_interval_s = 0.01
        tracker.track(_long())
        transport.flatten('BTCUSDT')
        transport.mark_prices['BTCUSDT'] = 101.0
        task = asyncio.create_task(tracker.run())
        for _ in range(100):
            await asyncio.sleep(0.01)
            if not tracker.positions:
                break
        tracker.stop()
        await asyncio.wait_for(task, timeout=1)
        assert len(analytics.trades) == 1

    asyncio.run(scenario())


def test_poll_interval_must_be_positive():
    with pytest.raises(ConfigurationError):
        PositionTracker(FakeTransport(), RecordingAnalytics(), {'poll_interval_s': 0})
