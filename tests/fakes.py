from typing import Any, Dict, List, Optional, Sequence, Tuple

from analytics.aggregator import AnalysisSnapshot
from analytics.modules import LONG, NEUTRAL, SHORT, ModuleResult
from config.utils import StrategyConfig, merge_strategy
from ingest.mark_price_hub import MarkPriceHub
from ledger.history_store import HistoryStore
from ledger.repository import MemoryPositionRepository
from trading.execution import ExchangeGateway
from trading.execution_types import PositionRisk, SymbolFilters
from trading.simulators.paper import PaperTransport


T0 = 1_700_000_000.0
T0_MS = int(T0 * 1000)

NO_CACHE = {'position_risk_ttl_s': 0, 'open_orders_ttl_s': 0, 'exchange_info_ttl_s': 600}


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, Any]] = []

    async def notify_trade(self, position, action: str = 'UPDATE') -> bool:
        self.sent.append((action, position))
        return True

    def actions(self) -> List[str]:
        return [action for action, _ in self.sent]


class ScriptedGateway:
    """Gateway double whose fresh position reads follow a script; the last amount repeats."""

    def __init__(self, amounts: Sequence[Optional[float]]):
        self.amounts = list(amounts)
        self.calls: List[str] = []

    def _next(self) -> Optional[float]:
        if len(self.amounts) > 1:
            return self.amounts.pop(0)
        return self.amounts[0]

    async def get_position_fresh(self, symbol: str) -> Optional[PositionRisk]:
        amount = self._next()
        self.calls.append(f"risk:{amount}")
        if amount is None:
            return None
        return PositionRisk(symbol=symbol, position_amt=amount)

    async def get_position_amount(self, symbol: str, fresh: bool = True) -> Optional[float]:
        risk = await self.get_position_fresh(symbol)
        return None if risk is None else risk.position_amt

    async def cancel_all_orders(self, symbol: str) -> bool:
        self.calls.append("cancel_all")
        return True

    async def cancel_stop_orders(self, symbol: str, only_sl: bool = False, only_tp: bool = False) -> int:
        self.calls.append("cancel_stops")
        return 0

    async def close_position(self, symbol: str, side: str, qty: float):
        self.calls.append(f"close:{qty}")
        return None

    async def place_stop_loss(self, symbol: str, side: str, stop_price: float, qty: float):
        self.calls.append(f"stop:{stop_price}")
        return None


def filters_for(symbol: str = 'ETHUSDT') -> SymbolFilters:
    return SymbolFilters(
        symbol=symbol,
        tick_size=0.01,
        step_size=0.001,
        min_qty=0.001,
        tick_size_text='0.01',
        step_size_text='0.001',
    )


def make_exchange(symbols=('ETHUSDT',), mark: Optional[float] = 2000.0, clock=None, with_filters: bool = True):
    transport = PaperTransport(
        filters={s: filters_for(s) for s in symbols} if with_filters else {},
        clock=clock or FakeClock(),
    )
    if mark is not None:
        for symbol in symbols:
            transport.set_mark(symbol, mark)
    return transport, ExchangeGateway(transport, NO_CACHE)


def make_history(clock=None, notifier=None) -> HistoryStore:
    return HistoryStore(MemoryPositionRepository(), clock=clock or FakeClock(), notifier=notifier)


def make_mark_hub(clock=None, marks: Optional[Dict[str, float]] = None, rest_fetch=None) -> MarkPriceHub:
    hub = MarkPriceHub(clock=clock or FakeClock(), cold_start_timeout_s=0.01, rest_fetch=rest_fetch)
    for symbol, price in (marks or {}).items():
        hub.apply_tick({'e': 'markPriceUpdate', 's': symbol, 'p': str(price)})
    return hub


async def open_live(transport, gateway, symbol: str, side: str, qty: float, price: float, leverage: int = 10):
    transport.set_mark(symbol, price)
    await gateway.set_leverage(symbol, leverage)
    return await gateway.open_market_order(symbol, side, qty)


BASE_STRATEGY: Dict[str, Any] = {
    'entry': {
        'lookback': 3,
        'minScore': {'LONG': 55, 'SHORT': 55},
        'minModules': 6,
        'requiredModules': ['trend', 'volatility'],
        'sideBiasTolerance': 5,
        'cooldownMin': 15,
        'maxSpreadPct': 0.05,
        'avoidWhen': {'volatility': 'DEAD', 'fundingExtreme': {'absOver': 0.0008}},
    },
    'capital': {'account': 1000, 'riskPerTradePct': 2, 'leverage': 10},
    'sizing': {'maxAdds': 0, 'addOnAdverseMovePct': 30, 'addMultiplier': 1},
    'exits': {
        'tp': {'use': True, 'tpGridPct': [20, 40], 'tpGridSizePct': [50, 50]},
        'sl': {'type': 'hard', 'hardPct': 20},
        'trailing': {'use': False, 'startAfterPct': 25, 'trailStepPct': 10},
        'oppositeCountExit': 0,
    },
}


def make_strategy(overrides: Optional[Dict[str, Any]] = None) -> StrategyConfig:
    return StrategyConfig(merge_strategy(BASE_STRATEGY, overrides), name='test')


def make_snapshot(
    symbol: str = 'ETHUSDT',
    bias: str = LONG,
    scores: Optional[Dict[str, float]] = None,
    modules: Optional[Dict[str, Optional[ModuleResult]]] = None,
    coverage: str = '8/10',
    time_ms: int = T0_MS,
) -> AnalysisSnapshot:
    if scores is None:
        if bias == LONG:
            scores = {LONG: 70.0, SHORT: 20.0}
        elif bias == SHORT:
            scores = {LONG: 20.0, SHORT: 70.0}
        else:
            scores = {LONG: 40.0, SHORT: 40.0}
    if modules is None:
        modules = {
            'trend': ModuleResult('trend', bias, {LONG: scores[LONG], SHORT: scores[SHORT]}),
            'volatility': ModuleResult(
                'volatility', 'ACTIVE', {LONG: 40.0, SHORT: 40.0, 'regime': 'NORMAL', 'atrPct': 0.8}
            ),
            'liquidity': ModuleResult('liquidity', NEUTRAL, {LONG: 50.0, SHORT: 50.0, 'spreadPct': 0.01}),
            'funding': ModuleResult('funding', NEUTRAL, {LONG: 50, SHORT: 50, 'avgFunding': 0.0001}),
        }
    return AnalysisSnapshot(
        symbol=symbol,
        time=time_ms,
        modules=modules,
        scores=scores,
        coverage=coverage,
        bias=bias,
        decision=f"STRONG {bias}" if bias != NEUTRAL else 'NO TRADE',
    )


def order_update(
    symbol: str,
    order_id: int,
    order_type: str,
    price: float,
    qty: float,
    cum: Optional[float] = None,
    status: str = 'FILLED',
    side: str = 'SELL',
    ts: int = T0_MS,
    avg: Optional[float] = None,
    fee: float = 0.0,
) -> Dict[str, Any]:
    """An ``ORDER_TRADE_UPDATE`` message as the user-data stream delivers it."""
    return {
        'e': 'ORDER_TRADE_UPDATE',
        'E': ts,
        'T': ts,
        'o': {
            's': symbol,
            'i': order_id,
            'X': status,
            'S': side,
            'o': order_type,
            'ot': order_type,
            'L': str(price),
            'l': str(qty),
            'z': str(qty if cum is None else cum),
            'q': str(qty),
            'ap': str(price if avg is None else avg),
            'n': str(fee),
            'N': 'USDT',
            'R': True,
            'T': ts,
        },
    }
