import numpy as np
import talib
from typing import Dict, Optional, Sequence


def _array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def _last(series: np.ndarray, offset: int = 1) -> Optional[float]:
    if series is None or len(series) < offset:
        return None
    value = series[-offset]
    return float(value) if not np.isnan(value) else None


def ema(closes: Sequence[float], period: int, offset: int = 1) -> Optional[float]:
    if len(closes) < period:
        return None
    return _last(talib.EMA(_array(closes), timeperiod=period), offset)


def sma(closes: Sequence[float], period: int, offset: int = 1) -> Optional[float]:
    if len(closes) < period:
        return None
    return _last(talib.SMA(_array(closes), timeperiod=period), offset)


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    if len(closes) < period + 1:
        return None
    return _last(talib.RSI(_array(closes), timeperiod=period))


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> Optional[float]:
    if len(closes) < period + 1:
        return None
    return _last(talib.ATR(_array(highs), _array(lows), _array(closes), timeperiod=period))


def directional(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> Optional[Dict[str, float]]:
    """Latest ADX with +DI/-DI, or None until ADX has warmed up (2 * period bars)."""
    if len(closes) < 2 * period:
        return None
    h, l, c = _array(highs), _array(lows), _array(closes)
    adx_value = _last(talib.ADX(h, l, c, timeperiod=period))
    plus_di = _last(talib.PLUS_DI(h, l, c, timeperiod=period))
    minus_di = _last(talib.MINUS_DI(h, l, c, timeperiod=period))
    if adx_value is None or plus_di is None or minus_di is None:
        return None
    return {'adx': adx_value, 'plus_di': plus_di, 'minus_di': minus_di}


def mean(values: Sequence[float]) -> Optional[float]:
    if not len(values):
        return None
    return float(np.mean(_array(values)))
