import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from api.metrics import metrics
from trading.close_context import CloseContextRegistry, FillAggregator, TTLCache
from trading.fill_handlers import FillHandlers
from trading.order_events import OrderEvent

if TYPE_CHECKING:
    from ledger.history_store import HistoryStore
    from trading.execution import ExchangeGateway


logger = logging.getLogger(__name__)


class OrderEventProcessor:
    """Consume user-data stream messages and apply each logical fill once.

    Duplicates inside the dedup window are dropped, partial fills feed a
    per-order VWAP, and only FILLED events reach the handlers, which run
    under a per-symbol lock.
    """

    def __init__(
        self,
        history: 'HistoryStore',
        gateway: 'ExchangeGateway',
        notifier=None,
        dedup_ttl_s: float = 300.0,
        dedup_max_entries: int = 10_000,
        tp_fallback_max_distance_pct: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.history = history
        self.gateway = gateway
        self.contexts = CloseContextRegistry()
        self.handlers = FillHandlers(
            history,
            gateway,
            notifier=notifier,
            contexts=self.contexts,
            tp_fallback_max_distance_pct=tp_fallback_max_distance_pct,
        )
        self._seen: TTLCache[str, bool] = TTLCache(dedup_ttl_s, dedup_max_entries, clock=clock)
        self._aggregators: TTLCache[int, FillAggregator] = TTLCache(dedup_ttl_s, dedup_max_entries, clock=clock)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(cls, history, gateway, notifier, events_cfg: Dict[str, Any]) -> "OrderEventProcessor":
        return cls(
            history,
            gateway,
            notifier=notifier,
            dedup_ttl_s=float(events_cfg.get('dedup_ttl_s', 300)),
            dedup_max_entries=int(events_cfg.get('dedup_max_entries', 10_000)),
            tp_fallback_max_distance_pct=events_cfg.get('tp_fallback_max_distance_pct'),
        )

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        kind = msg.get("e") if isinstance(msg, dict) else None
        if kind == "ACCOUNT_UPDATE":
            logger.debug("ACCOUNT_UPDATE reason=%s", (msg.get("a") or {}).get("m"))
            return
        if kind != "ORDER_TRADE_UPDATE":
            logger.debug("Ignoring user-stream event %s", kind)
            return

        event = OrderEvent.from_message(msg)
        if event is None:
            return
        if not self._seen.add_if_absent(event.dedup_key):
            metrics.record_duplicate_event()
            logger.debug("Duplicate order event %s dropped", event.dedup_key)
            return
        metrics.record_order_event(event.status)

        if event.status == "PARTIALLY_FILLED":
            self._aggregate(event)
            logger.debug("%s: partial fill %s @ %s on %s", event.symbol, event.last_qty, event.last_price, event.order_id)
            return
        if event.status != "FILLED":
            logger.info("%s: %s %s order %s", event.symbol, event.status, event.order_type, event.order_id)
            return

        self._aggregate(event)
        async with self._locks[event.symbol]:
            await self._dispatch(event)

    def _aggregate(self, event: OrderEvent) -> None:
        if event.order_id is None:
            return
        agg = self._aggregators.get(event.order_id)
        if agg is None:
            agg = FillAggregator()
            self._aggregators.set(event.order_id, agg)
        agg.add(event.last_qty, event.last_price)

    async def _dispatch(self, event: OrderEvent) -> None:
        agg = self._aggregators.pop(event.order_id) if event.order_id is not None else None
        position = None
        if event.is_stop_loss or event.is_take_profit:
            position = await self.history.get_open_position(event.symbol)
            if position is None:
                await self.handlers.cleanup_orphan(event)
                return

        if event.is_stop_loss:
            await self.handlers.handle_stop_loss(event, position, agg)
        elif event.is_take_profit:
            await self.handlers.handle_take_profit(event, position)
        elif event.is_market:
            await self.handlers.handle_market(event, agg)
        else:
            logger.info("%s: FILLED %s order %s not handled", event.symbol, event.order_type, event.order_id)

    async def maybe_finalize_close(self, symbol: str, closed_by: str = "SL") -> bool:
        async with self._locks[symbol]:
            return await self.handlers.maybe_finalize_close(symbol, closed_by)
