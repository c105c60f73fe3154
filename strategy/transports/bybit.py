import asyncio
from typing import Any, Dict, List, Optional

from ingest.bybit_rest import BybitAPIError, BybitRESTClient

from strategy.execution_types import InstrumentRules, OrderAck, OrderRequest, PositionSnapshot, Side


__all__ = ["BybitTransport", "BybitAPIError"]


class BybitTransport:
    """Thin adapter around Bybit v5 REST with typed responses."""

    def __init__(self, rest: Optional[BybitRESTClient] = None, category: str = "linear") -> None:
        self._rest: Optional[BybitRESTClient] = rest
        self.category = category
        self._lock = asyncio.Lock()

    def _client(self) -> BybitRESTClient:
        if self._rest is None:
            self._rest = BybitRESTClient()
        return self._rest

    async def fetch_ticker(self, symbol: str) -> Optional[Dict[str, Any]]:
        data = await self._client().get(
            "/v5/market/tickers",
            params={"category": self.category, "symbol": symbol},
        )
        items = self._result_list(data, "tickers")
        return items[0] if items else None

    async def fetch_last_price(self, symbol: str) -> Optional[float]:
        ticker = await self.fetch_ticker(symbol)
        if not ticker:
            return None
        return self._as_positive(ticker.get("lastPrice"))

    async def fetch_mark_price(self, symbol: str) -> Optional[float]:
        ticker = await self.fetch_ticker(symbol)
        if not ticker:
            return None
        return self._as_positive(ticker.get("markPrice")) or self._as_positive(ticker.get("lastPrice"))

    async def fetch_instrument_rules(self, symbol: str) -> Optional[InstrumentRules]:
        data = await self._client().get(
            "/v5/market/instruments-info",
            params={"category": self.category, "symbol": symbol},
        )
        items = self._result_list(data, "instruments-info")
        if not items:
            return None
        return self._parse_instrument(items[0])

    async def fetch_position(self, symbol: str) -> PositionSnapshot:
        data = await self._client().get(
            "/v5/position/list",
            params={"category": self.category, "symbol": symbol},
            signed=True,
        )
        for item in self._result_list(data, "position/list"):
            if item.get("symbol") not in (None, symbol):
                continue
            size = self._as_float(item.get("size")) or 0.0
            if size <= 0:
                continue
            try:
                side = Side.parse(item.get("side"))
            except ValueError:
                continue
            return PositionSnapshot(symbol=symbol, side=side, size=size)
        return PositionSnapshot(symbol=symbol, side=None, size=0.0)

    async def submit_order(self, order: OrderRequest) -> OrderAck:
        body = {
            "category": self.category,
            "symbol": order.symbol,
            "side": order.side.value,
            "orderType": order.order_type,
            "qty": self._fmt(order.qty),
            "timeInForce": order.time_in_force,
            "takeProfit": self._fmt(order.take_profit),
            "stopLoss": self._fmt(order.stop_loss),
            "tpTriggerBy": order.trigger_by,
            "slTriggerBy": order.trigger_by,
            "positionIdx": 0,
        }
        try:
            data = await self._client().post("/v5/order/create", body=body, signed=True)
        except BybitAPIError as exc:
            return OrderAck(success=False, reason=exc.msg or str(exc), code=exc.code)
        if not isinstance(data, dict):
            return OrderAck(success=False, reason=f"Unexpected response: {data!r}")
        code = self._as_int(data.get("retCode"))
        if code != 0:
            return OrderAck(success=False, reason=data.get("retMsg") or "unknown", code=code)
        result = data.get("result") or {}
        return OrderAck(success=True, order_id=result.get("orderId"), code=code)

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _result_list(self, data: Any, endpoint: str) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            raise BybitAPIError(200, None, f"Malformed {endpoint} response", str(data))
        code = self._as_int(data.get("retCode"))
        if code not in (None, 0):
            raise BybitAPIError(200, code, data.get("retMsg"), str(data))
        result = data.get("result") or {}
        items = result.get("list") or []
        return [item for item in items if isinstance(item, dict)]

    def _parse_instrument(self, payload: Dict[str, Any]) -> Optional[InstrumentRules]:
        lot = payload.get("lotSizeFilter") or {}
        price = payload.get("priceFilter") or {}
        qty_step = self._as_positive(lot.get("qtyStep"))
        min_qty = self._as_positive(lot.get("minOrderQty"))
        tick = self._as_positive(price.get("tickSize"))
        if qty_step is None or tick is None:
            return None
        return InstrumentRules(qty_step=qty_step, min_qty=min_qty or qty_step, price_tick=tick)

    @staticmethod
    def _fmt(value: float) -> str:
        text = f"{value:.10f}".rstrip("0").rstrip(".")
        return text or "0"

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def _as_positive(cls, value: Any) -> Optional[float]:
        number = cls._as_float(value)
        if number is None or number <= 0:
            return None
        return number

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
