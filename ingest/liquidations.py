import asyncio
import json
import logging
import random
import time
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import websockets

from api.metrics import metrics
from monitoring.async_utils import cancel_tasks


logger = logging.getLogger(__name__)

BucketHandler = Callable[[Dict[str, Any]], Awaitable[None]]
BUCKET_MS = 60_000


def _new_bucket(symbol: str, start_ms: int) -> Dict[str, Any]:
    return {
        'symbol': symbol,
        'time': start_ms,
        'count': 0,
        'buysCount': 0,
        'sellsCount': 0,
        'buysValue': 0.0,
        'sellsValue': 0.0,
        'totalValue': 0.0,
        'minValue': None,
    }


def _finish(bucket: Dict[str, Any]) -> Dict[str, Any]:
    for key in ('buysValue', 'sellsValue', 'totalValue'):
        bucket[key] = round(bucket[key], 2)
    bucket['minValue'] = round(bucket['minValue'] or 0.0, 2)
    return bucket


class LiquidationFeed:
    """Aggregate ``!forceOrder@arr`` liquidations into one-minute buckets per symbol."""

    def __init__(
        self,
        symbols: Iterable[str],
        min_value: float = 0.0,
        handler: Optional[BucketHandler] = None,
        history: int = 120,
        ws_base: str = 'wss://fstream.binance.com',
        reconnect_backoff: Optional[List[float]] = None,
        stream_stale_s: float = 120,
        clock: Callable[[], float] = time.time,
    ):
        self.symbols = set(symbols)
        self.min_value = min_value
        self.handler = handler
        self.url = f"{ws_base.rstrip('/')}/ws/!forceOrder@arr"
        self.reconnect_backoff = reconnect_backoff or [0.5, 1, 2, 4, 5]
        self.stream_stale_s = stream_stale_s
        self._clock = clock
        self._open: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, Deque[Dict[str, Any]]] = defaultdict(lambda: deque(maxlen=history))
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def apply_event(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Fold one forceOrder event in. Returns buckets closed by it."""
        if isinstance(payload, dict) and 'data' in payload:
            payload = payload['data']
        order = (payload or {}).get('o') or {}
        symbol = order.get('s')
        if symbol not in self.symbols:
            return []
        try:
            qty = float(order.get('z') or order.get('q') or 0)
            price = float(order.get('ap') or order.get('p') or 0)
            trade_ms = int(order.get('T') or payload.get('E') or 0)
        except (TypeError, ValueError):
            logger.debug("Malformed forceOrder payload: %s", payload)
            return []
        value = qty * price
        if value <= 0 or value < self.min_value:
            return []

        start = trade_ms - trade_ms % BUCKET_MS
        closed = []
        bucket = self._open.get(symbol)
        if bucket is not None and bucket['time'] != start:
            if start < bucket['time']:
                # late print for an already closed minute
                return []
            closed.append(self._close(symbol))
            bucket = None
        if bucket is None:
            bucket = self._open[symbol] = _new_bucket(symbol, start)

        # SELL force orders liquidate longs, BUY force orders liquidate shorts
        side = order.get('S')
        bucket['count'] += 1
        if side == 'BUY':
            bucket['buysCount'] += 1
            bucket['buysValue'] += value
        else:
            bucket['sellsCount'] += 1
            bucket['sellsValue'] += value
        bucket['totalValue'] += value
        bucket['minValue'] = value if bucket['minValue'] is None else min(bucket['minValue'], value)
        return closed

    def _close(self, symbol: str) -> Dict[str, Any]:
        bucket = _finish(self._open.pop(symbol))
        self._history[symbol].append(bucket)
        return bucket

    def close_elapsed(self, now_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        """Close buckets whose minute has passed."""
        now_ms = int(self._clock() * 1000) if now_ms is None else now_ms
        current = now_ms - now_ms % BUCKET_MS
        return [self._close(symbol) for symbol, b in list(self._open.items()) if b['time'] < current]

    def history(self, symbol: str) -> List[Dict[str, Any]]:
        return list(self._history.get(symbol, ()))

    async def _emit(self, buckets: List[Dict[str, Any]]):
        if self.handler is None:
            return
        for bucket in buckets:
            try:
                await self.handler(bucket)
            except Exception:
                logger.exception("Liquidation bucket handler failed for %s", bucket['symbol'])

    async def dispatch(self, payload: Dict[str, Any]):
        await self._emit(self.apply_event(payload))

    async def _run(self):
        backoff_index = 0
        while self.running:
            try:
                async with websockets.connect(self.url) as ws:
                    logger.info("Liquidation stream connected")
                    backoff_index = 0
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_stale_s)
                        except asyncio.TimeoutError:
                            await self._emit(self.close_elapsed())
                            continue
                        await self.dispatch(json.loads(raw))
                        await self._emit(self.close_elapsed())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Liquidation stream error: %s", e)
            if not self.running:
                break
            metrics.record_reconnect('liquidations')
            delay = self.reconnect_backoff[min(backoff_index, len(self.reconnect_backoff) - 1)] + random.uniform(0, 0.5)
            logger.info("Liquidation stream reconnecting in %.1fs", delay)
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
            backoff_index += 1

    async def start(self):
        if self._task is not None:
            return
        self.running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        self.running = False
        await cancel_tasks([self._task])
        self._task = None
