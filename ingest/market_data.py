import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient


logger = logging.getLogger(__name__)


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_kline(cls, row: List[Any]) -> 'Candle':
        return cls(
            open_time=int(row[0]),
            open=_f(row[1]),
            high=_f(row[2]),
            low=_f(row[3]),
            close=_f(row[4]),
            volume=_f(row[5]),
        )


@dataclass
class DepthSnapshot:
    bids: List[Tuple[float, float]] = field(default_factory=list)
    asks: List[Tuple[float, float]] = field(default_factory=list)
    time: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'DepthSnapshot':
        return cls(
            bids=[(_f(p), _f(q)) for p, q in payload.get('bids', [])],
            asks=[(_f(p), _f(q)) for p, q in payload.get('asks', [])],
            time=payload.get('T') or payload.get('E'),
        )

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid

    @property
    def spread_pct(self) -> Optional[float]:
        spread = self.spread
        if spread is None:
            return None
        mid = (self.best_ask + self.best_bid) / 2
        return spread / mid * 100 if mid > 0 else None

    @property
    def imbalance(self) -> Optional[float]:
        """Bid share of resting quantity, 0..1."""
        bid_qty = sum(q for _, q in self.bids)
        ask_qty = sum(q for _, q in self.asks)
        total = bid_qty + ask_qty
        return bid_qty / total if total > 0 else None


@dataclass
class FundingPoint:
    time: int
    funding_rate: float


@dataclass
class OpenInterestPoint:
    time: int
    open_interest: float
    open_interest_value: float


@dataclass
class LongShortPoint:
    time: int
    long_account: float
    short_account: float
    ratio: float


class MarketDataClient:
    """Public futures market data over REST. Failures come back as empty lists."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None, depth_limit: int = 20):
        self._rest = rest
        self.depth_limit = depth_limit

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def close(self):
        if self._rest is not None:
            await self._rest.close()

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            return await self._client().get(path, params=params)
        except BinanceAPIError as exc:
            logger.warning("%s %s failed: %s", path, params.get('symbol'), exc)
        except Exception as exc:
            logger.warning("%s %s transport error: %s", path, params.get('symbol'), exc)
        return None

    async def klines(self, symbol: str, interval: str = '1m', limit: int = 200) -> List[Candle]:
        raw = await self._get('/fapi/v1/klines', {'symbol': symbol, 'interval': interval, 'limit': limit})
        if not isinstance(raw, list):
            return []
        return [Candle.from_kline(row) for row in raw if isinstance(row, list) and len(row) >= 6]

    async def depth(self, symbol: str, limit: Optional[int] = None) -> Optional[DepthSnapshot]:
        raw = await self._get('/fapi/v1/depth', {'symbol': symbol, 'limit': limit or self.depth_limit})
        if not isinstance(raw, dict):
            return None
        return DepthSnapshot.from_payload(raw)

    async def funding_history(self, symbol: str, limit: int = 60) -> List[FundingPoint]:
        raw = await self._get('/fapi/v1/fundingRate', {'symbol': symbol, 'limit': limit})
        if not isinstance(raw, list):
            return []
        return [FundingPoint(time=int(r.get('fundingTime', 0)), funding_rate=_f(r.get('fundingRate'))) for r in raw]

    async def open_interest_history(self, symbol: str, period: str = '5m', limit: int = 10) -> List[OpenInterestPoint]:
        raw = await self._get('/futures/data/openInterestHist', {'symbol': symbol, 'period': period, 'limit': limit})
        if not isinstance(raw, list):
            return []
        return [
            OpenInterestPoint(
                time=int(r.get('timestamp', 0)),
                open_interest=_f(r.get('sumOpenInterest')),
                open_interest_value=_f(r.get('sumOpenInterestValue')),
            )
            for r in raw
        ]

    async def long_short_ratio(self, symbol: str, period: str = '5m', limit: int = 5) -> List[LongShortPoint]:
        raw = await self._get(
            '/futures/data/globalLongShortAccountRatio',
            {'symbol': symbol, 'period': period, 'limit': limit},
        )
        if not isinstance(raw, list):
            return []
        return [
            LongShortPoint(
                time=int(r.get('timestamp', 0)),
                long_account=_f(r.get('longAccount')),
                short_account=_f(r.get('shortAccount')),
                ratio=_f(r.get('longShortRatio'), 1.0),
            )
            for r in raw
        ]
