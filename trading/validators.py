"""Entry validators.

Each validator takes the latest analysis snapshot, the majority side and
the symbol's strategy, logs the reason at INFO when it rejects, and
returns a bool. ``run_validators`` stops at the first rejection and
returns the failing validator's name.
"""
import logging
import math
from typing import Callable, List, Optional, Tuple

from analytics.aggregator import AnalysisSnapshot
from analytics.modules import NEUTRAL, NONE, is_validation_module
from config.utils import StrategyConfig


logger = logging.getLogger(__name__)

Validator = Callable[[AnalysisSnapshot, str, StrategyConfig], bool]


def _num(value, default: float = 0.0) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    return out if math.isfinite(out) else default


def check_min_score(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    min_score = strategy.number(f'entry.minScore.{majority}', 0)
    score = snapshot.scores.get(majority, 0.0)
    if score < min_score:
        logger.info("%s: skip, score %s < minScore %s", snapshot.symbol, score, min_score)
        return False
    return True


def check_coverage(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    min_modules = strategy.number('entry.minModules', 0)
    if snapshot.filled_modules < min_modules:
        logger.info("%s: skip, coverage %s < minModules %s", snapshot.symbol, snapshot.coverage, min_modules)
        return False
    return True


def check_required_modules(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    required = strategy.value('entry.requiredModules', []) or []
    for name in required:
        result = snapshot.module(name)
        if result is None:
            logger.info("%s: skip, required module %s missing", snapshot.symbol, name)
            return False
        blocked = NONE if is_validation_module(name) else NEUTRAL
        if result.signal == blocked:
            logger.info("%s: skip, required module %s is %s", snapshot.symbol, name, result.signal)
            return False
        if name == 'higherMA' and result.signal != majority:
            logger.info("%s: skip, higherMA(%s) != majority(%s)", snapshot.symbol, result.signal, majority)
            return False
    return True


def check_side_bias(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    tolerance = strategy.number('entry.sideBiasTolerance', 0)
    diff = abs(snapshot.scores.get('LONG', 0.0) - snapshot.scores.get('SHORT', 0.0))
    if diff < tolerance:
        logger.info("%s: skip, side bias diff %.1f < tolerance %s", snapshot.symbol, diff, tolerance)
        return False
    return True


def check_volatility(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    vol = snapshot.module('volatility')
    if vol is None:
        return True
    regime = vol.meta.get('regime')
    if vol.signal == NONE and regime in ('DEAD', 'EXTREME'):
        logger.info("%s: skip, volatility regime %s", snapshot.symbol, regime)
        return False
    avoid = strategy.value('entry.avoidWhen.volatility')
    avoid_list = [avoid] if isinstance(avoid, str) else list(avoid or [])
    if regime in avoid_list:
        logger.info("%s: skip, volatility regime %s in avoidWhen", snapshot.symbol, regime)
        return False
    return True


def check_spread(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    liquidity = snapshot.module('liquidity')
    max_spread = strategy.value('entry.maxSpreadPct')
    if liquidity is None or max_spread is None:
        return True
    spread_pct = _num(liquidity.meta.get('spreadPct'))
    if spread_pct > float(max_spread):
        logger.info("%s: skip, spread %s > maxSpreadPct %s", snapshot.symbol, spread_pct, max_spread)
        return False
    return True


def check_funding(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> bool:
    abs_over = strategy.value('entry.avoidWhen.fundingExtreme.absOver')
    funding = snapshot.module('funding')
    if not abs_over or funding is None:
        return True
    avg = _num(funding.meta.get('avgFunding'))
    if abs(avg) > float(abs_over):
        logger.info("%s: skip, funding extreme abs(%s) > %s", snapshot.symbol, avg, abs_over)
        return False
    return True


VALIDATORS: List[Tuple[str, Validator]] = [
    ('min_score', check_min_score),
    ('coverage', check_coverage),
    ('required_modules', check_required_modules),
    ('side_bias', check_side_bias),
    ('volatility', check_volatility),
    ('spread', check_spread),
    ('funding', check_funding),
]


def run_validators(snapshot: AnalysisSnapshot, majority: str, strategy: StrategyConfig) -> Optional[str]:
    for name, validator in VALIDATORS:
        if not validator(snapshot, majority, strategy):
            return name
    regime = snapshot.module('trendRegime')
    if regime is None or regime.signal == NEUTRAL:
        logger.info("%s: ADX regime NEUTRAL (no trend)", snapshot.symbol)
    return None
