import asyncio
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import websockets

from api.metrics import metrics
from monitoring.async_utils import cancel_tasks


logger = logging.getLogger(__name__)

MarkListener = Callable[[str, float], Awaitable[None]]
RestFetch = Callable[[str], Awaitable[Optional[float]]]


@dataclass
class MarkRead:
    symbol: str
    mark_price: float
    received_at: float
    event_time: Optional[int] = None
    index_price: Optional[float] = None
    funding_rate: Optional[float] = None
    source: str = 'ws'
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'markPrice': self.mark_price,
            'indexPrice': self.index_price,
            'fundingRate': self.funding_rate,
            'eventTime': self.event_time,
            'source': self.source,
            'stale': self.stale,
        }


def _float(value: Any) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out


class MarkPriceHub:
    """Latest mark price per symbol from the all-market ``!markPrice@arr`` stream."""

    def __init__(
        self,
        ws_base: str = 'wss://fstream.binance.com',
        frequency: str = '@1s',
        stale_after_s: float = 7.0,
        cold_start_timeout_s: float = 1.2,
        initial_backoff_s: float = 0.5,
        max_backoff_s: float = 5.0,
        stream_stale_s: float = 30.0,
        rest_fetch: Optional[RestFetch] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = f"{ws_base.rstrip('/')}/ws/!markPrice@arr{frequency}"
        self.stale_after_s = stale_after_s
        self.cold_start_timeout_s = cold_start_timeout_s
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s
        self.stream_stale_s = stream_stale_s
        self.rest_fetch = rest_fetch
        self._clock = clock
        self._marks: Dict[str, MarkRead] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = defaultdict(list)
        self._listeners: List[MarkListener] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.connected = False

    @classmethod
    def from_config(cls, mark_cfg: Dict[str, Any], ws_base: str, rest_fetch: Optional[RestFetch] = None, stream_stale_s: float = 30.0):
        return cls(
            ws_base=ws_base,
            frequency=mark_cfg.get('frequency', '@1s'),
            stale_after_s=float(mark_cfg.get('stale_after_s', 7)),
            cold_start_timeout_s=float(mark_cfg.get('cold_start_timeout_s', 1.2)),
            initial_backoff_s=float(mark_cfg.get('initial_backoff_s', 0.5)),
            max_backoff_s=float(mark_cfg.get('max_backoff_s', 5)),
            stream_stale_s=stream_stale_s,
            rest_fetch=rest_fetch,
        )

    def add_listener(self, listener: MarkListener) -> None:
        self._listeners.append(listener)

    # reads

    def get_mark(self, symbol: str) -> Optional[MarkRead]:
        read = self._marks.get(symbol)
        if read is None:
            return None
        age = self._clock() - read.received_at
        metrics.update_mark_age(symbol, age)
        return MarkRead(**{**vars(read), 'stale': age > self.stale_after_s})

    def has_fresh(self, symbol: str) -> bool:
        read = self.get_mark(symbol)
        return read is not None and not read.stale

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {symbol: self.get_mark(symbol).to_dict() for symbol in list(self._marks)}

    async def wait_for_mark(
        self,
        symbol: str,
        timeout: Optional[float] = None,
        use_rest_fallback: bool = True,
    ) -> Optional[MarkRead]:
        """Fresh cached mark, else the next tick within ``timeout``, else one REST read."""
        read = self.get_mark(symbol)
        if read is not None and not read.stale:
            return read

        timeout = self.cold_start_timeout_s if timeout is None else timeout
        future = asyncio.get_running_loop().create_future()
        self._waiters[symbol].append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            if future in self._waiters.get(symbol, []):
                self._waiters[symbol].remove(future)

        if not use_rest_fallback or self.rest_fetch is None:
            return None
        price = await self.rest_fetch(symbol)
        if price is None or price <= 0:
            logger.warning("%s: no mark from stream or REST", symbol)
            return None
        metrics.record_mark_fallback()
        logger.info("%s: mark %.6f from REST cold start", symbol, price)
        return self._store(MarkRead(symbol=symbol, mark_price=price, received_at=self._clock(), source='rest-cold-start'))

    # writes

    def _store(self, read: MarkRead) -> MarkRead:
        self._marks[read.symbol] = read
        for future in self._waiters.pop(read.symbol, []):
            if not future.done():
                future.set_result(read)
        return read

    def apply_tick(self, payload: Any) -> List[MarkRead]:
        """Store one ``markPriceUpdate`` or an array of them. Returns the stored reads."""
        if isinstance(payload, dict) and 'data' in payload:
            payload = payload['data']
        items: Iterable[Any] = payload if isinstance(payload, list) else [payload]
        now = self._clock()
        stored = []
        for item in items:
            if not isinstance(item, dict):
                continue
            symbol = item.get('s')
            price = _float(item.get('p'))
            if not symbol or price is None or price <= 0:
                continue
            stored.append(
                self._store(
                    MarkRead(
                        symbol=symbol,
                        mark_price=price,
                        received_at=now,
                        event_time=item.get('E'),
                        index_price=_float(item.get('i')),
                        funding_rate=_float(item.get('r')),
                    )
                )
            )
        return stored

    async def dispatch(self, payload: Any) -> None:
        for read in self.apply_tick(payload):
            for listener in self._listeners:
                try:
                    await listener(read.symbol, read.mark_price)
                except Exception:
                    logger.exception("Mark listener failed for %s", read.symbol)

    # lifecycle

    async def _run(self):
        delay = self.initial_backoff_s
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    self.connected = True
                    delay = self.initial_backoff_s
                    logger.info("Mark price stream connected")
                    while self._running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_stale_s)
                        except asyncio.TimeoutError:
                            logger.warning("Mark price stream stale; reconnecting")
                            raise
                        await self.dispatch(json.loads(raw))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Mark price stream error: %s", e)
            finally:
                self.connected = False
            if not self._running:
                break
            metrics.record_reconnect('mark_price')
            logger.info("Mark price stream reconnecting in %.2fs", delay)
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
            delay = min(delay * 2, self.max_backoff_s)

    async def start(self):
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        self._running = False
        await cancel_tasks([self._task])
        self._task = None
