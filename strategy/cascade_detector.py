import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from api.metrics import metrics
from config import ConfigurationError
from monitoring.async_utils import LoopScheduler, ScheduledCall
from strategy.execution_types import LiquidationEvent, LiquidationObservation, Side


logger = logging.getLogger(__name__)

CascadeKey = Tuple[str, Side]


class CascadeState(Enum):
    IDLE = "idle"
    ARMED = "armed"


@dataclass
class LiquidationCacheEntry:
    last_buy_seen_at: Optional[float] = None
    last_sell_seen_at: Optional[float] = None

    def seen_at(self, side: Side) -> Optional[float]:
        return self.last_buy_seen_at if side is Side.BUY else self.last_sell_seen_at

    def mark(self, side: Side, ts: float) -> float:
        current = self.seen_at(side)
        if current is not None and ts < current:
            ts = current
        if side is Side.BUY:
            self.last_buy_seen_at = ts
        else:
            self.last_sell_seen_at = ts
        return ts

    @property
    def last_seen(self) -> Optional[float]:
        stamps = [ts for ts in (self.last_buy_seen_at, self.last_sell_seen_at) if ts is not None]
        return max(stamps) if stamps else None


@dataclass
class PendingDecision:
    symbol: str
    side: Side
    baseline_seen_at: float
    armed_at: float
    resets: int = 0
    handle: Optional[ScheduledCall] = None

    @property
    def key(self) -> CascadeKey:
        return (self.symbol, self.side)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'liquidated_side': self.side.value,
            'baseline_seen_at': self.baseline_seen_at,
            'armed_at': self.armed_at,
            'fires_at': self.handle.when if self.handle else None,
            'resets': self.resets,
        }


class CascadeDetector:
    """Debounce same-side liquidation bursts into one contrarian order.

    Per (symbol, side) key a qualifying liquidation arms a quiescence timer;
    every further qualifying liquidation on that key cancels and re-arms it.
    When a timer elapses and no newer liquidation was seen for its key, the
    cascade is considered exhausted and the gate is asked to open the
    opposite side.
    """

    def __init__(
        self,
        gate,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        order_notional_usd: float,
        notifier=None,
        recipient_id: Optional[str] = None,
        scheduler: Optional[LoopScheduler] = None,
    ):
        cfg = dict(cfg or {})
        self.gate = gate
        self.notifier = notifier
        self.recipient_id = recipient_id
        self.scheduler = scheduler or LoopScheduler()

        self.min_notional = float(cfg.get('min_notional_usd', 1000))
        alert = cfg.get('alert_notional_usd')
        self.alert_notional = float(alert) if alert else None
        self.quiescence_s = float(cfg.get('quiescence_s', 10))
        self.cache_ttl_s = float(cfg.get('cache_ttl_s', 30))
        self.opposite_side_cooldown_s = float(cfg.get('opposite_side_cooldown_s') or 0)
        self.order_notional = float(order_notional_usd)
        self._validate()

        self.cache: Dict[str, LiquidationCacheEntry] = {}
        self._pending: Dict[CascadeKey, PendingDecision] = {}
        self._evictions: Dict[str, ScheduledCall] = {}
        # Alerts go out on the scheduler so a slow notifier never stalls intake
        self._alerts: Dict[int, ScheduledCall] = {}
        self._alert_seq = itertools.count()

    def _validate(self) -> None:
        if self.min_notional <= 0:
            raise ConfigurationError("detector.min_notional_usd must be positive")
        if self.quiescence_s <= 0:
            raise ConfigurationError("detector.quiescence_s must be positive")
        if self.cache_ttl_s <= self.quiescence_s:
            raise ConfigurationError("detector.cache_ttl_s must exceed detector.quiescence_s")
        if self.order_notional <= 0:
            raise ConfigurationError("execution.order_notional_usd must be positive")

    # ------------------------------------------------------------------ intake

    async def on_event(self, event: LiquidationEvent) -> None:
        for observation in event.observations:
            try:
                await self.observe(observation, event.timestamp)
            except Exception as exc:
                logger.error("Failed to process liquidation %s: %s", observation, exc, exc_info=True)

    async def observe(self, obs: LiquidationObservation, event_ts: Optional[int] = None) -> bool:
        """Feed one liquidation; return True when it armed or re-armed a timer."""
        notional = obs.notional
        metrics.record_liquidation(obs.symbol, obs.side.value, notional)
        logger.debug(
            "Liquidation %s side=%s price=%s volume=%s notional=%.2f",
            obs.symbol,
            obs.side.value,
            obs.price,
            obs.volume,
            notional,
        )

        qualifying = notional >= self.min_notional
        if qualifying:
            seen_at = self.cache.setdefault(obs.symbol, LiquidationCacheEntry()).mark(obs.side, self.scheduler.now())
            self._arm(obs.symbol, obs.side, seen_at)
            self._schedule_eviction(obs.symbol)
            metrics.record_qualifying(obs.symbol, obs.side.value)

        if self.alert_notional is not None and notional >= self.alert_notional:
            self._queue_alert(obs, event_ts)
        return qualifying

    # ------------------------------------------------------------ state machine

    def state(self, symbol: str, side: Side) -> CascadeState:
        return CascadeState.ARMED if (symbol, side) in self._pending else CascadeState.IDLE

    def pending(self, symbol: str, side: Side) -> Optional[PendingDecision]:
        return self._pending.get((symbol, side))

    def armed(self) -> List[Dict[str, Any]]:
        return [decision.to_dict() for decision in self._pending.values()]

    def cache_snapshot(self) -> Dict[str, Dict[str, Optional[float]]]:
        return {
            symbol: {'last_buy_seen_at': entry.last_buy_seen_at, 'last_sell_seen_at': entry.last_sell_seen_at}
            for symbol, entry in self.cache.items()
        }

    def _arm(self, symbol: str, side: Side, seen_at: float) -> PendingDecision:
        key = (symbol, side)
        previous = self._pending.pop(key, None)
        resets = 0
        if previous is not None:
            if previous.handle is not None:
                previous.handle.cancel()
            resets = previous.resets + 1
        decision = PendingDecision(
            symbol=symbol,
            side=side,
            baseline_seen_at=seen_at,
            armed_at=self.scheduler.now(),
            resets=resets,
        )
        decision.handle = self.scheduler.call_later(self.quiescence_s, self._on_quiescence_elapsed, decision)
        self._pending[key] = decision
        metrics.record_timer_armed(reset=previous is not None)
        if previous is None:
            logger.info("Armed %s %s cascade (window %.1fs)", symbol, side.value, self.quiescence_s)
        return decision

    async def _on_quiescence_elapsed(self, decision: PendingDecision) -> None:
        key = decision.key
        if self._pending.get(key) is not decision:
            self._mark_superseded(decision, "replaced")
            return
        del self._pending[key]

        # Re-read the cache: a newer liquidation may have landed after capture
        entry = self.cache.get(decision.symbol)
        current = entry.seen_at(decision.side) if entry else None
        if current != decision.baseline_seen_at:
            self._mark_superseded(decision, "newer liquidation")
            return

        order_side = decision.side.opposite
        if self._opposite_side_active(entry, decision.side):
            logger.warning(
                "Skipping %s %s: opposite-side liquidations within %.1fs",
                decision.symbol,
                order_side.value,
                self.opposite_side_cooldown_s,
            )
            metrics.record_cascade('cooldown')
            await self._notify(
                f"<b>⏳ Order skipped</b>\n"
                f"Too much two-sided activity on {decision.symbol}\n"
                f"Opposite liquidation less than {self.opposite_side_cooldown_s:g}s ago"
            )
            return

        logger.info(
            "%s %s cascade exhausted after %s resets; opening %s for %.2f USD",
            decision.symbol,
            decision.side.value,
            decision.resets,
            order_side.value,
            self.order_notional,
        )
        metrics.record_cascade('fired')
        await self.gate.execute(decision.symbol, order_side, self.order_notional)

    def _mark_superseded(self, decision: PendingDecision, reason: str) -> None:
        logger.debug("Ignoring stale %s %s timer (%s)", decision.symbol, decision.side.value, reason)
        metrics.record_cascade('superseded')

    def _opposite_side_active(self, entry: Optional[LiquidationCacheEntry], side: Side) -> bool:
        if self.opposite_side_cooldown_s <= 0 or entry is None:
            return False
        opposite_seen = entry.seen_at(side.opposite)
        if opposite_seen is None:
            return False
        return self.scheduler.now() - opposite_seen < self.opposite_side_cooldown_s

    # ---------------------------------------------------------------- eviction

    def _schedule_eviction(self, symbol: str, delay: Optional[float] = None) -> None:
        previous = self._evictions.pop(symbol, None)
        if previous is not None:
            previous.cancel()
        self._evictions[symbol] = self.scheduler.call_later(
            self.cache_ttl_s if delay is None else delay,
            self._evict_if_stale,
            symbol,
        )

    async def _evict_if_stale(self, symbol: str) -> None:
        entry = self.cache.get(symbol)
        if entry is None or entry.last_seen is None:
            self._evictions.pop(symbol, None)
            return
        idle_for = self.scheduler.now() - entry.last_seen
        if idle_for >= self.cache_ttl_s:
            del self.cache[symbol]
            self._evictions.pop(symbol, None)
            logger.debug("Evicted %s liquidation cache after %.1fs idle", symbol, idle_for)
            return
        self._schedule_eviction(symbol, self.cache_ttl_s - idle_for)

    # ----------------------------------------------------------- notifications

    def _queue_alert(self, obs: LiquidationObservation, event_ts: Optional[int]) -> None:
        alert_id = next(self._alert_seq)
        self._alerts[alert_id] = self.scheduler.call_later(0, self._deliver_alert, alert_id, obs, event_ts)

    async def _deliver_alert(self, alert_id: int, obs: LiquidationObservation, event_ts: Optional[int]) -> None:
        self._alerts.pop(alert_id, None)
        await self._send_large_liquidation_alert(obs, event_ts)

    async def _send_large_liquidation_alert(self, obs: LiquidationObservation, event_ts: Optional[int]) -> None:
        ts_ms = obs.exchange_ts or event_ts
        when = datetime.fromtimestamp(ts_ms / 1000 if ts_ms else time.time()).strftime('%H:%M:%S')
        marker = '🟢' if obs.side is Side.BUY else '🔴'
        metrics.record_alert(obs.symbol)
        await self._notify(
            f"<b>⚠️ ({when}) {obs.side.label.upper()} LIQUIDATION {marker} {obs.symbol}</b>\n"
            f"<i>notional {round(obs.notional)}$</i>"
        )

    async def _notify(self, text: str) -> None:
        if self.notifier is None:
            return
        await self.notifier.send(self.recipient_id, text)

    def shutdown(self) -> None:
        for decision in self._pending.values():
            if decision.handle is not None:
                decision.handle.cancel()
        self._pending.clear()
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        for handle in self._alerts.values():
            handle.cancel()
        self._alerts.clear()
