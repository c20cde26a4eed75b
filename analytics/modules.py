from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ModuleName(str, Enum):
    TREND = 'trend'
    VOLATILITY = 'volatility'
    TREND_REGIME = 'trendRegime'
    RSI_VOL_TREND = 'rsiVolTrend'
    HIGHER_MA = 'higherMA'
    FUNDING = 'funding'
    LIQUIDITY = 'liquidity'
    LIQUIDATIONS = 'liquidations'
    OPEN_INTEREST = 'openInterest'
    LONG_SHORT = 'longShort'


SCORING_MODULES = (
    ModuleName.TREND,
    ModuleName.TREND_REGIME,
    ModuleName.RSI_VOL_TREND,
    ModuleName.HIGHER_MA,
    ModuleName.FUNDING,
    ModuleName.LIQUIDATIONS,
    ModuleName.OPEN_INTEREST,
    ModuleName.LONG_SHORT,
)
VALIDATION_MODULES = (
    ModuleName.VOLATILITY,
    ModuleName.LIQUIDITY,
)
ALL_MODULES = tuple(ModuleName)

LONG = 'LONG'
SHORT = 'SHORT'
NEUTRAL = 'NEUTRAL'
NONE = 'NONE'


def is_validation_module(name: str) -> bool:
    return name in {m.value for m in VALIDATION_MODULES}


def signal_from_scores(long_score: float, short_score: float, dead_zone: float = 0.0) -> str:
    if abs(long_score - short_score) < dead_zone or long_score == short_score:
        return NEUTRAL
    return LONG if long_score > short_score else SHORT


@dataclass
class ModuleResult:
    """Output of one analysis module: a signal plus LONG/SHORT scores in ``meta``."""

    module: str
    signal: str
    meta: Dict[str, Any] = field(default_factory=dict)

    def score(self, side: str) -> float:
        try:
            return float(self.meta.get(side) or 0.0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def filled(self) -> bool:
        return self.score(LONG) + self.score(SHORT) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {'module': self.module, 'signal': self.signal, 'meta': dict(self.meta)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['ModuleResult']:
        if not data:
            return None
        return cls(module=data.get('module', ''), signal=data.get('signal', NEUTRAL), meta=dict(data.get('meta') or {}))
