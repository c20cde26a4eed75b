"""Per-module scoring functions.

Every scorer is a pure function of market history and returns a
``ModuleResult`` whose ``meta`` holds ``LONG``/``SHORT`` scores in 0..100,
or ``None`` when the history is too short to say anything.
"""
import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from analytics import indicators
from analytics.modules import LONG, NEUTRAL, NONE, SHORT, ModuleName, ModuleResult, signal_from_scores
from ingest.market_data import Candle, DepthSnapshot, FundingPoint, LongShortPoint, OpenInterestPoint


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _r(value: Optional[float], digits: int = 2) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return round(value, digits)


def score_trend(candles: Sequence[Candle], fast: int = 9, slow: int = 21, rsi_period: int = 14) -> Optional[ModuleResult]:
    """EMA fast/slow gap, nudged by RSI in the direction of the trend."""
    if len(candles) < max(rsi_period + 1, slow + 1):
        return None
    closes = [c.close for c in candles]
    ema_fast = indicators.ema(closes, fast)
    ema_slow = indicators.ema(closes, slow)
    rsi_raw = indicators.rsi(closes, rsi_period)
    r = rsi_raw if rsi_raw is not None else 50.0

    gap_pct = (ema_fast - ema_slow) / ema_slow * 100 if ema_fast and ema_slow else 0.0
    gap_eff = 0.0 if abs(gap_pct) < 0.1 else abs(gap_pct)
    long_score = short_score = 50.0
    push = min(30.0, gap_eff * 5)
    if gap_pct > 0:
        long_score += push
        short_score -= push
    elif gap_pct < 0:
        short_score += push
        long_score -= push

    # RSI boost fades into a penalty once the move is stretched
    adj = 0.0
    if 55 <= r <= 65:
        adj = 10 * (r - 55) / 10
    elif 65 < r <= 75:
        adj = 10 * (1 - (r - 65) / 10)
    elif r > 75:
        adj = -10 * min(1.0, (r - 75) / 10)
    elif 35 <= r <= 45:
        adj = 10 * (45 - r) / 10
    elif 25 <= r < 35:
        adj = 10 * (1 - (35 - r) / 10)
    elif r < 25:
        adj = -10 * min(1.0, (25 - r) / 10)
    if gap_pct > 0:
        long_score += adj
    elif gap_pct < 0:
        short_score += adj

    long_score, short_score = _clamp(long_score), _clamp(short_score)
    return ModuleResult(
        module=ModuleName.TREND.value,
        signal=signal_from_scores(long_score, short_score),
        meta={
            LONG: round(long_score, 3),
            SHORT: round(short_score, 3),
            'emaFast': _r(ema_fast),
            'emaSlow': _r(ema_slow),
            'emaGapPct': round(gap_pct, 2),
            'rsi': round(r, 2),
            'lastVolume': candles[-1].volume,
        },
    )


def score_volatility(
    candles: Sequence[Candle],
    window: int = 14,
    thresholds: Optional[Dict[str, float]] = None,
) -> Optional[ModuleResult]:
    """ATR% regime. DEAD and EXTREME report signal NONE, which blocks entries."""
    thresholds = dict(thresholds or {'deadBelow': 0.2, 'extremeAbove': 2.5})
    if len(candles) < window + 1:
        return None
    atr_abs = indicators.atr(
        [c.high for c in candles],
        [c.low for c in candles],
        [c.close for c in candles],
        period=window,
    )
    last_close = candles[-1].close
    if atr_abs is None or last_close <= 0:
        return None
    atr_pct = atr_abs / last_close * 100

    if atr_pct < float(thresholds.get('deadBelow', 0.2)):
        regime, signal, strength = 'DEAD', NONE, 0.0
    elif atr_pct > float(thresholds.get('extremeAbove', 2.5)):
        regime, signal, strength = 'EXTREME', NONE, 100.0
    else:
        regime, signal, strength = 'NORMAL', 'ACTIVE', min(100.0, atr_pct * 50)

    return ModuleResult(
        module=ModuleName.VOLATILITY.value,
        signal=signal,
        meta={
            LONG: round(strength, 3),
            SHORT: round(strength, 3),
            'regime': regime,
            'atrAbs': round(atr_abs, 5),
            'atrPct': round(atr_pct, 2),
            'window': window,
            'thresholds': thresholds,
        },
    )


def score_trend_regime(
    candles: Sequence[Candle],
    period: int = 14,
    adx_signal_min: float = 20.0,
    adx_max_for_scale: float = 35.0,
) -> Optional[ModuleResult]:
    """ADX strength split between sides by +DI/-DI share."""
    di = indicators.directional(
        [c.high for c in candles],
        [c.low for c in candles],
        [c.close for c in candles],
        period=period,
    )
    if di is None:
        return None
    adx, plus_di, minus_di = di['adx'], di['plus_di'], di['minus_di']
    di_sum = max(plus_di + minus_di, 1e-9)

    adx_scaled = _clamp(adx / adx_max_for_scale * 100)
    gap_raw = _clamp(abs(plus_di - minus_di) / di_sum * 100)
    gap_eff = 0.0 if gap_raw <= 5 else (gap_raw - 5) / 95 * 100
    strength = _clamp(0.5 * adx_scaled + 0.5 * gap_eff)

    # soft gate below the ADX threshold, floored at 25%
    x = _clamp(adx / max(adx_signal_min, 1e-9), 0.0, 1.0)
    gate = 0.25 + 0.75 * math.pow(x, 0.7)
    eff = round(strength * gate, 3)

    long_score = round(_clamp(eff * plus_di / di_sum), 3)
    short_score = round(_clamp(eff * minus_di / di_sum), 3)
    signal = NEUTRAL
    if eff >= 5:
        signal = signal_from_scores(plus_di, minus_di)

    return ModuleResult(
        module=ModuleName.TREND_REGIME.value,
        signal=signal,
        meta={
            LONG: long_score,
            SHORT: short_score,
            'ADX': round(adx, 2),
            'ADX_scaled': round(adx_scaled, 3),
            'dirGapPct': round(gap_raw, 3),
            'plusDI': round(plus_di, 2),
            'minusDI': round(minus_di, 2),
            'period': period,
            'adxSignalMin': adx_signal_min,
        },
    )


def score_rsi_vol_trend(
    candles: Sequence[Candle],
    now_ms: Optional[int] = None,
    rsi_period: int = 14,
    rsi_warmup: int = 60,
    vol_lookback: int = 10,
    ma_short: int = 7,
    ma_long: int = 25,
) -> Optional[ModuleResult]:
    """RSI and short-MA trend, confirmed and damped by relative volume."""
    need = max(rsi_warmup + rsi_period + 5, ma_long + vol_lookback + 5)
    if len(candles) < need:
        return None
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    price = closes[-1]

    ma7 = indicators.sma(closes, ma_short)
    ma25 = indicators.sma(closes, ma_long)
    prev_ma7 = indicators.sma(closes, ma_short, offset=2)
    slope = ma7 - prev_ma7 if ma7 is not None and prev_ma7 is not None else 0.0

    # scale the still-forming candle's volume by how far into it we are
    progress = 1.0
    if now_ms is not None and len(candles) >= 2:
        duration = candles[-1].open_time - candles[-2].open_time
        if duration > 0:
            progress = _clamp((now_ms - candles[-1].open_time) / duration, 0.1, 1.0)
    last_vol = volumes[-1] / progress
    avg_vol = indicators.mean(volumes[-vol_lookback - 1:-1])
    if not avg_vol or not last_vol:
        return ModuleResult(
            module=ModuleName.RSI_VOL_TREND.value,
            signal=NEUTRAL,
            meta={LONG: 0.0, SHORT: 0.0, 'reason': 'LowVolume'},
        )
    vol_ratio = last_vol / avg_vol

    rsi = indicators.rsi(closes[-(rsi_warmup + rsi_period):], rsi_period)
    rsi = rsi if rsi is not None else 50.0

    vol_score = _clamp((vol_ratio - 0.7) / 1.3 * 100)
    trend_long = trend_short = 0.0
    if ma7 and ma25:
        if price > ma7 and ma7 >= ma25 * 0.997:
            trend_long = _clamp(slope / ma25 * 100 + 50)
        if price < ma7 and ma7 <= ma25 * 1.003:
            trend_short = _clamp(-slope / ma25 * 100 + 50)

    boost_long = min(20.0, (28 - rsi) * 1.2) if rsi < 28 else 0.0
    boost_short = min(20.0, (rsi - 72) * 1.2) if rsi > 72 else 0.0
    rsi_long = (rsi - 50) / 22 * 100 if rsi >= 50 else 0.0
    rsi_short = (50 - rsi) / 22 * 100 if rsi <= 50 else 0.0

    long_score = vol_score * 0.5 + trend_long * 0.3 + rsi_long * 0.15 + boost_long
    short_score = vol_score * 0.5 + trend_short * 0.3 + rsi_short * 0.15 + boost_short
    if vol_ratio <= 0.7:
        long_score *= vol_ratio / 0.7
        short_score *= vol_ratio / 0.7

    dead_zone = 5 if vol_ratio > 1.5 else 15
    return ModuleResult(
        module=ModuleName.RSI_VOL_TREND.value,
        signal=signal_from_scores(long_score, short_score, dead_zone),
        meta={
            LONG: round(long_score, 2),
            SHORT: round(short_score, 2),
            'rsi': round(rsi, 2),
            'volRatio': round(vol_ratio, 2),
            'trendLong': round(trend_long, 2),
            'trendShort': round(trend_short, 2),
            'ma7': _r(ma7, 6),
            'ma25': _r(ma25, 6),
            'maSlope': round(slope, 6),
            'progress': round(progress * 100, 1),
            'deadZone': dead_zone,
        },
    )


def score_higher_ma(closes: Sequence[float], cfg: Optional[Dict[str, Any]] = None) -> Optional[ModuleResult]:
    """Higher-timeframe short vs long moving average, tanh roll-off past a dead zone."""
    cfg = cfg or {}
    ma_short = int(cfg.get('ma_short', 7))
    ma_long = int(cfg.get('ma_long', 14))
    ma_type = str(cfg.get('type', 'SMA')).upper()
    threshold_pct = float(cfg.get('threshold_pct', 0.2))
    scale = float(cfg.get('scale', 12) or 12)
    if len(closes) < ma_long:
        return None

    average = indicators.ema if ma_type == 'EMA' else indicators.sma
    short_val = average(closes, ma_short)
    long_val = average(closes, ma_long)
    price = closes[-1]
    if short_val is None or not long_val:
        return None

    delta = short_val - long_val
    delta_pct = delta / long_val * 100
    price_vs_long = (price - long_val) / long_val * 100
    long_score = short_score = 0.0
    gap = abs(delta_pct)
    if gap > threshold_pct:
        roll = max(1e-9, threshold_pct * 3 * (12 / scale))
        strength = math.tanh((gap - threshold_pct) / roll) * 100
        if delta > 0:
            long_score = strength * (0.8 if price_vs_long < 0 else 1.0)
        elif delta < 0:
            short_score = strength * (0.8 if price_vs_long > 0 else 1.0)

    return ModuleResult(
        module=ModuleName.HIGHER_MA.value,
        signal=signal_from_scores(long_score, short_score),
        meta={
            LONG: round(long_score, 3),
            SHORT: round(short_score, 3),
            'timeframe': cfg.get('timeframe', '1d'),
            'type': ma_type,
            'maShortVal': round(short_val, 6),
            'maLongVal': round(long_val, 6),
            'deltaPct': round(delta_pct, 3),
            'priceVsLongPct': round(price_vs_long, 3),
        },
    )


def score_funding(points: Sequence[FundingPoint], window: int = 60, eps: float = 0.00002) -> Optional[ModuleResult]:
    """Crowded side pays funding, so positive funding leans SHORT."""
    if not points or len(points) < window:
        return None
    avg = float(np.mean([p.funding_rate for p in points[-window:]]))
    long_score = short_score = 50.0
    if abs(avg) > eps:
        lean = min(100.0, 50 + abs(avg) * 1000)
        if avg > 0:
            short_score, long_score = lean, 100 - lean
        else:
            long_score, short_score = lean, 100 - lean
    long_score, short_score = round(long_score), round(short_score)
    return ModuleResult(
        module=ModuleName.FUNDING.value,
        signal=signal_from_scores(long_score, short_score),
        meta={
            LONG: long_score,
            SHORT: short_score,
            'avgFunding': round(avg, 5),
            'pointsUsed': window,
        },
    )


def score_liquidity(snapshots: Sequence[DepthSnapshot], last_price: Optional[float] = None) -> Optional[ModuleResult]:
    """Order-book imbalance; ``spreadPct`` feeds the spread gate."""
    usable = [s for s in snapshots if s is not None and s.imbalance is not None]
    if not usable:
        return None
    imbalance = float(np.mean([s.imbalance for s in usable]))
    spreads = [s.spread for s in usable if s.spread is not None]
    avg_spread = float(np.mean(spreads)) if spreads else None
    if last_price and avg_spread is not None:
        spread_pct = avg_spread / last_price * 100
    else:
        pcts = [s.spread_pct for s in usable if s.spread_pct is not None]
        spread_pct = float(np.mean(pcts)) if pcts else None

    clamped = _clamp(imbalance, 0.0, 1.0)
    long_score = round(clamped * 100, 3)
    short_score = round((1 - clamped) * 100, 3)
    return ModuleResult(
        module=ModuleName.LIQUIDITY.value,
        signal=signal_from_scores(long_score, short_score),
        meta={
            LONG: long_score,
            SHORT: short_score,
            'avgImbalance': round(imbalance, 3),
            'avgSpreadAbs': _r(avg_spread, 6),
            'spreadPct': _r(spread_pct, 3),
            'window': len(usable),
        },
    )


def _percentile(values: List[float], pct: float) -> float:
    return float(np.percentile(np.asarray(values, dtype=float), pct)) if values else 0.0


def score_liquidations(
    buckets: Sequence[Dict[str, Any]],
    now_ms: int,
    current_records: int = 24,
    max_age_min: float = 30.0,
) -> ModuleResult:
    """Forced buys (short squeezes) lean LONG, forced sells lean SHORT.

    A total above the dynamic threshold (max of the 90th percentile and
    mean + 2 std) is treated as a cascade and zeroes both scores.
    """
    ordered = sorted(buckets, key=lambda b: b.get('time', 0), reverse=True)
    empty = ModuleResult(
        module=ModuleName.LIQUIDATIONS.value,
        signal=NEUTRAL,
        meta={LONG: 0.0, SHORT: 0.0, 'candlesUsed': 0, 'state': 'NO_DATA'},
    )
    if not ordered:
        return empty
    current = ordered[:current_records]
    age_min = (now_ms - int(current[0].get('time', 0))) / 60000
    if age_min > max_age_min:
        return empty

    avg_buy = float(np.mean([float(b.get('buysValue', 0)) for b in current]))
    avg_sell = float(np.mean([float(b.get('sellsValue', 0)) for b in current]))
    total = avg_buy + avg_sell
    buy_pct = avg_buy / total * 100 if total > 0 else 50.0
    sell_pct = avg_sell / total * 100 if total > 0 else 50.0

    totals = sorted(float(b.get('buysValue', 0)) + float(b.get('sellsValue', 0)) for b in ordered)
    recent = totals[-current_records:]
    threshold = max(_percentile(totals, 90), float(np.mean(recent)) + 2 * float(np.std(recent)))

    state = 'ACTIVE'
    if total > threshold:
        state = 'CASCADE'
    elif total > threshold * 0.7:
        state = 'WARNING'

    long_score, short_score = (0.0, 0.0) if state == 'CASCADE' else (buy_pct, sell_pct)
    return ModuleResult(
        module=ModuleName.LIQUIDATIONS.value,
        signal=signal_from_scores(long_score, short_score, dead_zone=5),
        meta={
            LONG: round(long_score, 1),
            SHORT: round(short_score, 1),
            'candlesUsed': len(current),
            'avgBuy': round(avg_buy, 2),
            'avgSell': round(avg_sell, 2),
            'buyPct': round(buy_pct, 1),
            'sellPct': round(sell_pct, 1),
            'threshold': round(threshold, 2),
            'state': state,
        },
    )


def score_open_interest(
    points: Sequence[OpenInterestPoint],
    closes: Sequence[float],
    window: int = 10,
) -> Optional[ModuleResult]:
    """OI rising with price confirms the move; OI diverging from price fades it."""
    if len(points) < window or len(closes) < window:
        return None
    pts = points[-window:]
    prices = closes[-window:]

    def pct(end: float, start: float) -> float:
        return (end - start) / start * 100 if start else 0.0

    oi_change = pct(pts[-1].open_interest, pts[0].open_interest)
    oi_value_change = pct(pts[-1].open_interest_value, pts[0].open_interest_value)
    price_change = pct(prices[-1], prices[0])
    same_direction = (oi_change >= 0) == (price_change >= 0)
    magnitude = 0.6 * abs(oi_change) + 0.4 * abs(price_change)

    meta = {
        'oiChangePct': round(oi_change, 2),
        'oiValueChangePct': round(oi_value_change, 2),
        'priceChangePct': round(price_change, 2),
        'pointsUsed': len(pts),
    }
    if magnitude < 0.05:
        meta.update({LONG: 50, SHORT: 50})
        return ModuleResult(module=ModuleName.OPEN_INTEREST.value, signal=NEUTRAL, meta=meta)

    sign = 1 if same_direction else -1
    p_long = 1 / (1 + math.exp(-0.35 * sign * magnitude))
    long_score = round(p_long * 100)
    short_score = 100 - long_score
    meta.update({LONG: long_score, SHORT: short_score})
    return ModuleResult(
        module=ModuleName.OPEN_INTEREST.value,
        signal=signal_from_scores(long_score, short_score, dead_zone=5),
        meta=meta,
    )


def score_long_short(points: Sequence[LongShortPoint], window: int = 5) -> Optional[ModuleResult]:
    if len(points) < window:
        return None
    pts = points[-window:]
    avg_long = float(np.mean([p.long_account * 100 for p in pts]))
    avg_short = float(np.mean([p.short_account * 100 for p in pts]))
    total = avg_long + avg_short
    long_pct = avg_long / total * 100 if total > 0 else 50.0
    short_pct = avg_short / total * 100 if total > 0 else 50.0
    return ModuleResult(
        module=ModuleName.LONG_SHORT.value,
        signal=signal_from_scores(long_pct, short_pct, dead_zone=5),
        meta={
            LONG: round(long_pct, 3),
            SHORT: round(short_pct, 3),
            'avgLong': round(avg_long, 2),
            'avgShort': round(avg_short, 2),
            'pointsUsed': len(pts),
        },
    )
