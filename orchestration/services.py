import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, TYPE_CHECKING

from analytics.aggregator import AnalysisInputs, AnalysisSnapshot
from config.utils import strategy_for
from ingest.market_data import DepthSnapshot
from monitoring.async_utils import cancel_tasks, run_periodic

if TYPE_CHECKING:
    from main import TradingSystem


logger = logging.getLogger(__name__)


class PerSymbolService:
    """Run ``tick(symbol)`` on its own periodic task for every configured symbol."""

    name = "service"

    def __init__(self, system: 'TradingSystem', interval_s: float):
        self.system = system
        self.interval_s = interval_s
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def tick(self, symbol: str) -> None:
        raise NotImplementedError

    async def start(self):
        if self.running:
            return
        self.running = True
        for symbol in self.system.symbols:
            self._tasks.append(
                asyncio.create_task(
                    run_periodic(
                        f"{self.name}:{symbol}",
                        self.interval_s,
                        lambda s=symbol: self.tick(s),
                        lambda: self.running,
                    )
                )
            )
        logger.info("%s started for %s every %ss", self.name, ", ".join(self.system.symbols), self.interval_s)

    async def stop(self):
        self.running = False
        await cancel_tasks(self._tasks)
        self._tasks = []


class AnalysisService(PerSymbolService):
    name = "analysis"

    def __init__(self, system: 'TradingSystem'):
        self.cfg = system.config.section('analysis')
        super().__init__(system, float(self.cfg.get('interval_s', 60)))
        self._depth: Dict[str, Deque[DepthSnapshot]] = defaultdict(lambda: deque(maxlen=10))

    async def gather_inputs(self, symbol: str) -> AnalysisInputs:
        market = self.system.market_data
        cfg = self.cfg
        higher = cfg.get('higher_ma') or {}
        oi_window = int(cfg.get('oi_window', 10))
        higher_limit = int(higher.get('ma_long', 14)) + 2

        candles, higher_candles, funding, depth, oi, oi_candles, long_short = await asyncio.gather(
            market.klines(symbol, cfg.get('candle_timeframe', '1m'), int(cfg.get('history_limit', 200))),
            market.klines(symbol, higher.get('timeframe', '1d'), higher_limit),
            market.funding_history(symbol, int(cfg.get('funding_window', 60))),
            market.depth(symbol),
            market.open_interest_history(symbol, '5m', oi_window),
            market.klines(symbol, '5m', oi_window),
            market.long_short_ratio(symbol, '5m', int(cfg.get('long_short_window', 5))),
        )
        if depth is not None:
            self._depth[symbol].append(depth)
        liquidations = self.system.liquidations.history(symbol) if self.system.liquidations else []
        return AnalysisInputs(
            candles=candles,
            higher_closes=[c.close for c in higher_candles],
            funding=funding,
            depth=list(self._depth[symbol]),
            open_interest=oi,
            oi_closes=[c.close for c in oi_candles],
            long_short=long_short,
            liquidations=liquidations,
            now_ms=int(time.time() * 1000),
        )

    async def tick(self, symbol: str) -> Optional[AnalysisSnapshot]:
        inputs = await self.gather_inputs(symbol)
        if not inputs.candles:
            logger.warning("%s: no candles, analysis skipped", symbol)
            return None
        strategy = strategy_for(symbol, self.system.config)
        snapshot = self.system.aggregator.analyze(symbol, inputs, strategy)
        await self.system.analysis_store.add(snapshot)
        return snapshot


class EntryService(PerSymbolService):
    name = "entry"

    def __init__(self, system: 'TradingSystem'):
        super().__init__(system, float(system.config.section('engine').get('interval_s', 60)))

    async def tick(self, symbol: str) -> None:
        await self.system.engine.try_enter(symbol, strategy_for(symbol, self.system.config))


class MonitorService(PerSymbolService):
    name = "monitor"

    def __init__(self, system: 'TradingSystem'):
        super().__init__(system, float(system.config.section('monitor').get('interval_s', 10)))

    async def tick(self, symbol: str) -> None:
        await self.system.monitor.tick(symbol, strategy_for(symbol, self.system.config))


class ReconcileService:
    """Periodic desync sweep over every OPEN ledger record."""

    def __init__(self, system: 'TradingSystem'):
        self.system = system
        cfg = system.config.section('reconcile')
        self.interval_s = float(cfg.get('interval_s', 60))
        self.lookback_buffer_ms = int(float(cfg.get('trades_lookback_buffer_s', 60)) * 1000)
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> None:
        closed = await self.system.history.reconcile_positions(
            self.system.gateway,
            self.system.notifier,
            lookback_buffer_ms=self.lookback_buffer_ms,
            on_closed=self.system.processor.contexts.drop,
        )
        for position in closed:
            reason = position.adjustments[-1].reason if position.adjustments else 'DESYNC'
            await self.system.alerts.desync_alert(position.symbol, reason or 'DESYNC')

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(
            run_periodic('reconcile', self.interval_s, self.tick, lambda: self.running)
        )

    async def stop(self):
        self.running = False
        await cancel_tasks([self._task])
        self._task = None
