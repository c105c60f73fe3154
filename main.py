import asyncio
import logging
from typing import Any, Optional

from analytics.trade_tracker import PositionTracker
from analytics.trading_analytics import TradingAnalytics
from api.alerts import TelegramNotifier
from api.metrics import start_metrics_server
from config import config
from config.utils import get_config_list, get_config_section
from ingest.websocket_client import LiquidationStream
from monitoring.async_utils import LoopScheduler, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from risk.instrument_rules import ExchangeInstrumentRules, StaticInstrumentRules
from strategy.cascade_detector import CascadeDetector
from strategy.execution import ExecutionGate
from strategy.transports.bybit import BybitTransport


logger = logging.getLogger(__name__)


class LiquidationTradingSystem:
    """Wire the liquidation feed, cascade detector, execution gate, tracker and analytics."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        *,
        transport=None,
        notifier=None,
        scheduler: Optional[LoopScheduler] = None,
        stream: Optional[LiquidationStream] = None,
    ):
        self.config = config_obj or config
        self.exchange_cfg = get_config_section(self.config, 'exchange')
        self.websocket_cfg = get_config_section(self.config, 'websocket')
        self.detector_cfg = get_config_section(self.config, 'detector')
        self.execution_cfg = get_config_section(self.config, 'execution')
        self.instruments_cfg = get_config_section(self.config, 'instruments')
        self.tracker_cfg = get_config_section(self.config, 'tracker')
        self.analytics_cfg = get_config_section(self.config, 'analytics')
        self.notifications_cfg = get_config_section(self.config, 'notifications')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.api_cfg = get_config_section(self.config, 'api')
        self.symbols = get_config_list(self.config, 'symbols')

        self.recipient_id = self.notifications_cfg.get('recipient_id')
        self.notifier = notifier or TelegramNotifier.from_config(self.notifications_cfg)
        self.transport = transport or BybitTransport(category=self.exchange_cfg.get('category', 'linear'))
        self.scheduler = scheduler or LoopScheduler()

        self.rules_resolver = ExchangeInstrumentRules(
            self.transport,
            StaticInstrumentRules(self.instruments_cfg),
        )
        self.analytics = TradingAnalytics(
            self.analytics_cfg,
            notifier=self.notifier,
            recipient_id=self.recipient_id,
        )
        self.tracker = PositionTracker(
            self.transport,
            self.analytics,
            self.tracker_cfg,
            notifier=self.notifier,
            recipient_id=self.recipient_id,
        )
        self.gate = ExecutionGate(
            self.transport,
            self.rules_resolver,
            self.tracker,
            self.execution_cfg,
            notifier=self.notifier,
            recipient_id=self.recipient_id,
        )
        self.detector = CascadeDetector(
            self.gate,
            self.detector_cfg,
            order_notional_usd=float(self.execution_cfg.get('order_notional_usd', 1000)),
            notifier=self.notifier,
            recipient_id=self.recipient_id,
            scheduler=self.scheduler,
        )
        self.stream = stream or LiquidationStream(
            symbols=self.symbols,
            url=self.exchange_cfg.get('ws_url'),
            reconnect_delay_s=self.websocket_cfg.get('reconnect_delay_s'),
            ping_interval_s=self.websocket_cfg.get('ping_interval_s'),
        )
        self.stream.register_handler(self.detector.on_event)

        self.running = False
        self._stopped = False

    def _api_server(self):
        import uvicorn
        from api.fastapi_server import create_app

        server_cfg = uvicorn.Config(
            create_app(self),
            host=self.api_cfg.get('host', '0.0.0.0'),
            port=int(self.api_cfg.get('port', 8000)),
            log_level="info",
        )
        return uvicorn.Server(server_cfg)

    async def start(self, serve_api: bool = True):
        self.running = True
        self._stopped = False
        logger.info(
            "Starting liquidation cascade trader on %s (notional %s USD)",
            ", ".join(self.symbols) or "no symbols",
            self.execution_cfg.get('order_notional_usd', 1000),
        )

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port), int(self.monitoring_cfg.get('prometheus_port_scan') or 0))

        tasks = [
            asyncio.create_task(self.stream.run()),
            asyncio.create_task(self.tracker.run()),
        ]
        if serve_api and self.api_cfg.get('enabled', False):
            tasks.append(asyncio.create_task(self._api_server().serve()))

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        self.stream.stop()
        self.tracker.stop()
        self.detector.shutdown()
        await self.scheduler.shutdown()
        await self.transport.close()
        await self.notifier.close()
        logger.info("Liquidation cascade trader stopped")


async def main():
    system = LiquidationTradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


def run():
    setup_logging(get_config_section(config, 'monitoring').get('log_level', logging.INFO))
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
