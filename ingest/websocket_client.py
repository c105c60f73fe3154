import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import websockets

from api.metrics import metrics
from config import config
from strategy.execution_types import LiquidationEvent, LiquidationObservation, Side


logger = logging.getLogger(__name__)

EventHandler = Callable[[LiquidationEvent], Awaitable[None]]

TOPIC_PREFIX = "allLiquidation."


def subscription_message(symbols: Sequence[str]) -> Dict[str, Any]:
    return {"op": "subscribe", "args": [f"{TOPIC_PREFIX}{symbol}" for symbol in symbols]}


def parse_liquidation_message(message: Any) -> Optional[LiquidationEvent]:
    """Translate one stream payload into an event; None for control frames."""
    if not isinstance(message, dict):
        return None
    if "op" in message or "success" in message:
        return None
    topic = message.get("topic") or ""
    if not topic.startswith(TOPIC_PREFIX):
        return None
    data = message.get("data")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return None

    observations: List[LiquidationObservation] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            observations.append(
                LiquidationObservation(
                    symbol=item.get("s") or topic[len(TOPIC_PREFIX):],
                    side=Side.parse(item.get("S")),
                    price=float(item["p"]),
                    volume=float(item["v"]),
                    exchange_ts=int(item["T"]) if item.get("T") is not None else None,
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed liquidation %s: %s", item, exc)
            metrics.record_drop("malformed")
    ts = message.get("ts")
    return LiquidationEvent(timestamp=int(ts) if ts is not None else int(time.time() * 1000), observations=observations)


class LiquidationStream:
    """Public liquidation feed with subscribe-on-connect and fixed-delay reconnects."""

    def __init__(
        self,
        symbols: Optional[Sequence[str]] = None,
        url: Optional[str] = None,
        reconnect_delay_s: Optional[float] = None,
        ping_interval_s: Optional[float] = None,
    ):
        ws_cfg = config.section('websocket')
        self.symbols = list(symbols if symbols is not None else (config.get('symbols') or []))
        self.url = url or config.section('exchange').get('ws_url') or "wss://stream.bybit.com/v5/public/linear"
        self.reconnect_delay_s = float(reconnect_delay_s or ws_cfg.get('reconnect_delay_s', 5))
        self.ping_interval_s = float(ping_interval_s or ws_cfg.get('ping_interval_s', 20))

        self.handler: Optional[EventHandler] = None
        self.running = False
        self.connected = False
        self.reconnect_count = 0
        self.last_message_at: Optional[float] = None

    def register_handler(self, handler: EventHandler) -> None:
        self.handler = handler

    async def run(self) -> None:
        self.running = True
        if not self.symbols:
            logger.warning("No symbols configured; liquidation stream idle")
            return
        while self.running:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Liquidation stream error: %s", e)
            finally:
                self.connected = False
            if not self.running:
                break
            self.reconnect_count += 1
            metrics.record_reconnect()
            logger.info("WebSocket disconnected; reconnecting in %.1fs (attempt %s)", self.reconnect_delay_s, self.reconnect_count)
            try:
                await asyncio.sleep(self.reconnect_delay_s)
            except asyncio.CancelledError:
                break

    async def _connect_once(self) -> None:
        async with websockets.connect(self.url, ping_interval=None) as ws:
            self.connected = True
            await ws.send(json.dumps(subscription_message(self.symbols)))
            logger.info("WebSocket connected to %s; subscribed to %s", self.url, ", ".join(self.symbols))
            ping_task = asyncio.create_task(self._ping_loop(ws))
            try:
                async for raw in ws:
                    if not self.running:
                        break
                    await self._handle_raw(raw)
            finally:
                ping_task.cancel()
                await asyncio.gather(ping_task, return_exceptions=True)

    async def _handle_raw(self, raw: Any) -> None:
        self.last_message_at = time.time()
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping non-JSON frame: %r", raw)
            metrics.record_drop("invalid_json")
            return

        if not isinstance(message, dict):
            metrics.record_drop("unexpected_frame")
            return
        if message.get("op") == "subscribe" and not message.get("success", True):
            logger.error("Subscription rejected: %s", message.get("ret_msg"))
            return

        event = parse_liquidation_message(message)
        if event is None or not event.observations or self.handler is None:
            return
        try:
            await self.handler(event)
        except Exception as exc:
            logger.error("Liquidation handler failed: %s", exc, exc_info=True)

    async def _ping_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_s)
            try:
                await ws.send(json.dumps({"op": "ping"}))
            except Exception as exc:
                logger.debug("Ping failed: %s", exc)
                return

    def stop(self) -> None:
        self.running = False
