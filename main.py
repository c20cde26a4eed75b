import asyncio
import logging
from typing import Dict, List, Optional

from analytics.aggregator import AnalysisAggregator, AnalysisStore
from api.alerts import TradeNotifier, alert_webhook
from api.metrics import start_metrics_server
from config import config
from ingest.binance_rest import BinanceRESTClient
from ingest.liquidations import LiquidationFeed
from ingest.mark_price_hub import MarkPriceHub
from ingest.market_data import MarketDataClient
from ingest.persister import DataPersister
from ingest.user_stream import UserDataStream
from ledger.history_store import HistoryStore
from ledger.repository import MemoryPositionRepository, PostgresPositionRepository
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.services import AnalysisService, EntryService, MonitorService, ReconcileService
from trading.cooldown import CooldownHub
from trading.engine import EntryEngine
from trading.event_processor import OrderEventProcessor
from trading.execution import ExchangeGateway
from trading.execution_types import SymbolFilters
from trading.executor import TradeExecutor
from trading.monitor import PositionMonitor
from trading.simulators.paper import PaperTransport
from trading.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


def _paper_filters(symbols: List[str], cfg: Dict) -> Dict[str, SymbolFilters]:
    tick = str(cfg.get('tick_size', 0.01))
    step = str(cfg.get('step_size', 0.001))
    return {
        symbol: SymbolFilters(
            symbol=symbol,
            tick_size=float(tick),
            step_size=float(step),
            min_qty=float(cfg.get('min_qty', 0) or 0),
            tick_size_text=tick,
            step_size_text=step,
        )
        for symbol in symbols
    }


class TradingSystem:
    """Wire the exchange boundary, analysis, entry gate, ledger and loops together."""

    def __init__(self, config_obj=None):
        self.config = config_obj or config
        self.exchange_cfg = self.config.section('exchange')
        self.websocket_cfg = self.config.section('websocket')
        self.monitoring_cfg = self.config.section('monitoring')
        self.symbols: List[str] = list(self.config.get('symbols') or [])
        self.paper = bool(self.exchange_cfg.get('paper', True))
        self.db_enabled = bool(self.config.section('database').get('enabled', False))
        ws_base = self.exchange_cfg.get('ws_base', 'wss://fstream.binance.com')
        backoff = self.websocket_cfg.get('reconnect_backoff')
        stream_stale_s = float(self.websocket_cfg.get('stream_stale_s', 30))

        if self.paper:
            self.transport = PaperTransport(
                filters=_paper_filters(self.symbols, self.exchange_cfg.get('paper_filters') or {})
            )
        else:
            self.transport = BinanceTransport(BinanceRESTClient())
        self.gateway = ExchangeGateway(self.transport, self.config.section('caches'))

        self.notifier = TradeNotifier()
        self.alerts = alert_webhook
        self.repository = PostgresPositionRepository() if self.db_enabled else MemoryPositionRepository()
        self.history = HistoryStore(self.repository, notifier=self.notifier)
        self.persister: Optional[DataPersister] = DataPersister() if self.db_enabled else None

        analysis_cfg = self.config.section('analysis')
        self.aggregator = AnalysisAggregator.from_config(analysis_cfg)
        self.analysis_store = AnalysisStore(int(analysis_cfg.get('store_depth', 50)), persister=self.persister)
        self.market_data = MarketDataClient()

        self.mark_hub = MarkPriceHub.from_config(
            self.config.section('mark_price'),
            ws_base,
            rest_fetch=self.gateway.fetch_mark_price,
            stream_stale_s=stream_stale_s,
        )

        liq_cfg = self.config.section('liquidations')
        self.liquidations = LiquidationFeed(
            self.symbols,
            min_value=float(liq_cfg.get('min_value', 0)),
            handler=self.persister.insert_liquidation_bucket if self.persister else None,
            history=int(liq_cfg.get('history', 120)),
            ws_base=ws_base,
            reconnect_backoff=backoff,
        )

        self.processor = OrderEventProcessor.from_config(
            self.history, self.gateway, self.notifier, self.config.section('events')
        )
        self.user_stream = None
        if self.paper:
            self.transport.set_listener(self.processor.handle_message)
            self.mark_hub.add_listener(self.transport.on_mark)
        else:
            self.user_stream = UserDataStream(
                self.processor.handle_message,
                rest=BinanceRESTClient(),
                ws_base=ws_base,
                reconnect_backoff=backoff,
                listen_key_refresh_s=float(self.websocket_cfg.get('listen_key_refresh_s', 1500)),
                stream_stale_s=stream_stale_s,
                on_lost=self.alerts.stream_lost_alert,
            )

        cooldown_cfg = self.config.section('cooldown')
        self.cooldown = CooldownHub(
            self.gateway,
            poll_interval_s=float(cooldown_cfg.get('poll_interval_s', 60)),
            income_limit=int(cooldown_cfg.get('income_limit', 100)),
        )
        self.executor = TradeExecutor(self.gateway, self.config.section('executor'))
        self.engine = EntryEngine(
            self.history,
            self.gateway,
            self.analysis_store,
            self.mark_hub,
            self.executor,
            cooldown=self.cooldown,
            notifier=self.notifier,
            engine_cfg=self.config.section('engine'),
        )
        self.monitor = PositionMonitor(
            self.history,
            self.gateway,
            self.mark_hub,
            self.analysis_store,
            self.config.section('monitor'),
        )

        self.analysis_service = AnalysisService(self)
        self.entry_service = EntryService(self)
        self.monitor_service = MonitorService(self)
        self.reconcile_service = ReconcileService(self)
        self.running = False

    async def initialize(self):
        await self.repository.initialize()
        if self.persister is not None:
            await self.persister.start()
        await self.gateway.initialize()
        logger.info(
            "Trading system ready: mode=%s symbols=%s ledger=%s",
            'paper' if self.paper else 'live',
            ",".join(self.symbols),
            type(self.repository).__name__,
        )

    async def start(self):
        self.running = True
        await self.initialize()
        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))

        await self.mark_hub.start()
        await self.liquidations.start()
        self.cooldown.start()
        for service in (self.analysis_service, self.entry_service, self.monitor_service, self.reconcile_service):
            await service.start()

        tasks = []
        if self.user_stream is not None:
            tasks.append(asyncio.create_task(self.user_stream.start()))
        tasks.append(asyncio.create_task(self._wait_stopped()))

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def _wait_stopped(self):
        while self.running:
            await asyncio.sleep(1)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        for service in (self.analysis_service, self.entry_service, self.monitor_service, self.reconcile_service):
            await service.stop()
        if self.user_stream is not None:
            await self.user_stream.stop()
        await self.cooldown.stop()
        await self.liquidations.stop()
        await self.mark_hub.stop()
        await self.market_data.close()
        if self.persister is not None:
            await self.persister.stop()
        await self.gateway.close()
        await self.repository.close()
        logger.info("Trading system stopped")


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
