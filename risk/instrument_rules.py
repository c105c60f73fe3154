import logging
from typing import Any, Dict, Mapping, Optional

from strategy.errors import InstrumentNotFound, TransientQueryFailure
from strategy.execution_types import InstrumentRules


logger = logging.getLogger(__name__)


class StaticInstrumentRules:
    """Fixed instrument table, e.g. the ``instruments`` config section."""

    def __init__(self, table: Optional[Mapping[str, Any]] = None):
        self._table: Dict[str, InstrumentRules] = {}
        for symbol, entry in (table or {}).items():
            self._table[symbol.upper()] = self._coerce(symbol, entry)

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._table

    async def rules(self, symbol: str) -> InstrumentRules:
        try:
            return self._table[symbol.upper()]
        except KeyError:
            raise InstrumentNotFound(symbol) from None

    @staticmethod
    def _coerce(symbol: str, entry: Any) -> InstrumentRules:
        if isinstance(entry, InstrumentRules):
            return entry
        try:
            qty_step = float(entry['qty_step'])
            price_tick = float(entry['price_tick'])
            min_qty = float(entry.get('min_qty', qty_step))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid instrument rules for {symbol}: {entry!r}") from exc
        if qty_step <= 0 or price_tick <= 0 or min_qty <= 0:
            raise ValueError(f"Instrument rules for {symbol} must be positive: {entry!r}")
        return InstrumentRules(qty_step=qty_step, min_qty=min_qty, price_tick=price_tick)


class ExchangeInstrumentRules:
    """Resolve rules from the exchange, caching each symbol after first lookup.

    Static overrides win over the exchange. Unknown symbols are not cached so a
    listing that appears later is picked up on the next call.
    """

    def __init__(self, transport, overrides: Optional[StaticInstrumentRules] = None):
        self.transport = transport
        self.overrides = overrides or StaticInstrumentRules()
        self._cache: Dict[str, InstrumentRules] = {}

    async def rules(self, symbol: str) -> InstrumentRules:
        if symbol in self.overrides:
            return await self.overrides.rules(symbol)
        cached = self._cache.get(symbol)
        if cached is not None:
            return cached
        try:
            info = await self.transport.fetch_instrument_rules(symbol)
        except Exception as exc:
            raise TransientQueryFailure("instrument rules", symbol, exc) from exc
        if info is None:
            raise InstrumentNotFound(symbol)
        self._cache[symbol] = info
        logger.info(
            "Loaded %s rules: qty_step=%s min_qty=%s tick=%s",
            symbol,
            info.qty_step,
            info.min_qty,
            info.price_tick,
        )
        return info
