import logging
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence

from analytics import scorers
from analytics.modules import ALL_MODULES, LONG, NEUTRAL, SHORT, ModuleResult
from ingest.market_data import Candle, DepthSnapshot, FundingPoint, LongShortPoint, OpenInterestPoint


logger = logging.getLogger(__name__)

STRONG_SCORE = 65
WEAK_SCORE = 50


@dataclass
class AnalysisInputs:
    """Market history for one analysis pass."""

    candles: Sequence[Candle] = ()
    higher_closes: Sequence[float] = ()
    funding: Sequence[FundingPoint] = ()
    depth: Sequence[DepthSnapshot] = ()
    open_interest: Sequence[OpenInterestPoint] = ()
    oi_closes: Sequence[float] = ()
    long_short: Sequence[LongShortPoint] = ()
    liquidations: Sequence[Dict[str, Any]] = ()
    now_ms: Optional[int] = None


@dataclass(frozen=True)
class AnalysisSnapshot:
    symbol: str
    time: int
    modules: Mapping[str, Optional[ModuleResult]]
    scores: Mapping[str, float]
    coverage: str
    bias: str
    decision: str
    timeframe: str = '1m'
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, 'modules', MappingProxyType(dict(self.modules)))
        object.__setattr__(self, 'scores', MappingProxyType(dict(self.scores)))

    def module(self, name: str) -> Optional[ModuleResult]:
        return self.modules.get(name)

    @property
    def filled_modules(self) -> int:
        try:
            return int(self.coverage.split('/')[0])
        except (AttributeError, ValueError):
            return 0

    def ref(self) -> Dict[str, Any]:
        return {'analysisId': self.id, 'bias': self.bias, 'scores': dict(self.scores)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'time': self.time,
            'timeframe': self.timeframe,
            'modules': {name: (m.to_dict() if m else None) for name, m in self.modules.items()},
            'scores': dict(self.scores),
            'coverage': self.coverage,
            'bias': self.bias,
            'decision': self.decision,
        }


class AnalysisAggregator:
    """Weighted LONG/SHORT scoring over the module results."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        thresholds: Optional[Dict[str, float]] = None,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.weights = dict(weights or {})
        self.thresholds = dict(thresholds or {})
        self.settings = dict(settings or {})
        self._clock = clock

    @classmethod
    def from_config(cls, analysis_cfg: Dict[str, Any]) -> 'AnalysisAggregator':
        return cls(
            weights=analysis_cfg.get('weights'),
            thresholds=analysis_cfg.get('module_thresholds'),
            settings=analysis_cfg,
        )

    def run_modules(self, inputs: AnalysisInputs, volatility_filter: Optional[Dict[str, float]] = None) -> Dict[str, Optional[ModuleResult]]:
        s = self.settings
        candles = list(inputs.candles)
        last_price = candles[-1].close if candles else None
        results = {
            'trend': scorers.score_trend(candles),
            'volatility': scorers.score_volatility(candles, int(s.get('vol_window', 14)), volatility_filter),
            'trendRegime': scorers.score_trend_regime(
                candles, adx_signal_min=float(self.thresholds.get('trendRegime') or 20)
            ),
            'rsiVolTrend': scorers.score_rsi_vol_trend(candles, now_ms=inputs.now_ms),
            'higherMA': scorers.score_higher_ma(list(inputs.higher_closes), s.get('higher_ma')),
            'funding': scorers.score_funding(list(inputs.funding), int(s.get('funding_window', 60))),
            'liquidity': scorers.score_liquidity(list(inputs.depth), last_price),
            'liquidations': scorers.score_liquidations(
                list(inputs.liquidations), inputs.now_ms or int(self._clock() * 1000)
            ),
            'openInterest': scorers.score_open_interest(
                list(inputs.open_interest), list(inputs.oi_closes), int(s.get('oi_window', 10))
            ),
            'longShort': scorers.score_long_short(list(inputs.long_short), int(s.get('long_short_window', 5))),
        }
        return results

    def _weighted(self, modules: Mapping[str, Optional[ModuleResult]], side: str) -> float:
        total = 0.0
        for name, result in modules.items():
            if result is None:
                continue
            value = result.score(side)
            if value < float(self.thresholds.get(name) or 0):
                continue
            total += value * float(self.weights.get(name) or 0)
        return total

    def combine(
        self,
        symbol: str,
        modules: Mapping[str, Optional[ModuleResult]],
        side_bias_tolerance: float = 0.0,
    ) -> AnalysisSnapshot:
        full = {name.value: None for name in ALL_MODULES}
        full.update(modules)
        score_long = self._weighted(full, LONG)
        score_short = self._weighted(full, SHORT)

        if score_long > score_short:
            bias = LONG
        elif score_short > score_long:
            bias = SHORT
        else:
            bias = NEUTRAL

        best = max(score_long, score_short)
        dominant = LONG if score_long >= score_short else SHORT
        decision = 'NO TRADE'
        if abs(score_long - score_short) >= side_bias_tolerance and best >= WEAK_SCORE:
            decision = f"{'STRONG' if best >= STRONG_SCORE else 'WEAK'} {dominant}"

        filled = sum(1 for m in full.values() if m is not None and m.filled)
        return AnalysisSnapshot(
            symbol=symbol,
            time=int(self._clock() * 1000),
            timeframe=str(self.settings.get('candle_timeframe', '1m')),
            modules=full,
            scores={LONG: round(score_long, 1), SHORT: round(score_short, 1)},
            coverage=f"{filled}/{len(full)}",
            bias=bias,
            decision=decision,
        )

    def analyze(self, symbol: str, inputs: AnalysisInputs, strategy=None) -> AnalysisSnapshot:
        tolerance = 0.0
        vol_filter = None
        if strategy is not None:
            tolerance = strategy.number('entry.sideBiasTolerance', 0)
            vol_filter = strategy.section('volatilityFilter') or None
        snapshot = self.combine(symbol, self.run_modules(inputs, vol_filter), tolerance)
        logger.info(
            "%s analysis bias=%s decision=%s scores=%s coverage=%s",
            symbol, snapshot.bias, snapshot.decision, dict(snapshot.scores), snapshot.coverage,
        )
        return snapshot


class AnalysisStore:
    """Recent snapshots per symbol, newest last internally."""

    def __init__(self, depth: int = 50, persister=None):
        self.depth = depth
        self.persister = persister
        self._snapshots: Dict[str, Deque[AnalysisSnapshot]] = defaultdict(lambda: deque(maxlen=self.depth))

    async def add(self, snapshot: AnalysisSnapshot) -> None:
        self._snapshots[snapshot.symbol].append(snapshot)
        if self.persister is not None:
            await self.persister.insert_analysis(snapshot.to_dict())

    def latest(self, symbol: str, n: int = 1) -> List[AnalysisSnapshot]:
        """Up to ``n`` snapshots, newest first."""
        items = self._snapshots.get(symbol)
        if not items or n <= 0:
            return []
        return list(reversed(items))[:n]

    def last(self, symbol: str) -> Optional[AnalysisSnapshot]:
        found = self.latest(symbol, 1)
        return found[0] if found else None
