import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from config import config
from ingest.binance_rest import BinanceAPIError
from api.metrics import metrics
from trading.execution_types import (
    MARKET,
    STOP_MARKET,
    TAKE_PROFIT_MARKET,
    LiveState,
    OrderTicket,
    PositionRisk,
    SymbolFilters,
    close_order_side,
    entry_order_side,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CachedValue(Generic[T]):
    """Single TTL slot whose concurrent misses share one in-flight fetch.

    ``invalidate`` bumps a generation counter: a load started before it
    neither serves later callers nor repopulates the slot.
    """

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._value: Optional[T] = None
        self._expires_at = 0.0
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None
        self._inflight_generation = -1

    def invalidate(self) -> None:
        self._expires_at = 0.0
        self._generation += 1

    def _store(self, value: T, generation: int) -> None:
        if generation == self._generation:
            self._value = value
            self._expires_at = self._clock() + self.ttl_s

    async def refresh(self, loader: Callable[[], Awaitable[T]]) -> T:
        """Load past the cached value and any in-flight fetch, then cache the result."""
        self.invalidate()
        generation = self._generation
        value = await loader()
        self._store(value, generation)
        return value

    async def get(self, loader: Callable[[], Awaitable[T]]) -> T:
        if self._clock() < self._expires_at:
            return self._value
        if self._inflight is not None and self._inflight_generation == self._generation:
            return await asyncio.shield(self._inflight)

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        generation = self._generation
        self._inflight = future
        self._inflight_generation = generation
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # retrieved here so an unawaited failure is not reported
            future.exception()
            raise
        else:
            self._store(value, generation)
            future.set_result(value)
            return value
        finally:
            if self._inflight is future:
                self._inflight = None


class ExchangeGateway:
    """Cached, best-effort facade over a live or paper exchange transport.

    Reads go through short TTL caches. Order mutations invalidate the
    caches for their symbol. Only ``open_market_order`` raises; every
    other call logs the failure and returns an empty result.
    """

    def __init__(self, transport: Any, caches: Optional[Dict[str, Any]] = None):
        caches_cfg = caches if caches is not None else config.section('caches')
        self.transport = transport
        self._risk_cache: CachedValue[Dict[str, PositionRisk]] = CachedValue(
            float(caches_cfg.get('position_risk_ttl_s', 1.2))
        )
        self._orders_ttl = float(caches_cfg.get('open_orders_ttl_s', 2.0))
        self._orders_cache: Dict[str, CachedValue[List[OrderTicket]]] = {}
        self._info_cache: CachedValue[Dict[str, SymbolFilters]] = CachedValue(
            float(caches_cfg.get('exchange_info_ttl_s', 600))
        )

    @property
    def has_credentials(self) -> bool:
        return bool(getattr(self.transport, 'has_credentials', False))

    async def initialize(self) -> None:
        try:
            filters = await self._info_cache.get(self.transport.fetch_exchange_info)
            logger.info("Loaded exchange filters for %s symbols", len(filters))
        except Exception as exc:
            self._log_transport_error("exchange info", exc)

    async def close(self) -> None:
        await self.transport.close()

    def invalidate(self, symbol: Optional[str] = None) -> None:
        self._risk_cache.invalidate()
        if symbol is None:
            for cache in self._orders_cache.values():
                cache.invalidate()
        elif symbol in self._orders_cache:
            self._orders_cache[symbol].invalidate()

    # reads

    async def _load_risk(self) -> Dict[str, PositionRisk]:
        rows = await self.transport.fetch_position_risk()
        return {row.symbol: row for row in rows}

    async def _read_position(self, symbol: str, fresh: bool) -> Optional[PositionRisk]:
        try:
            if fresh:
                risk = await self._risk_cache.refresh(self._load_risk)
            else:
                risk = await self._risk_cache.get(self._load_risk)
        except Exception as exc:
            self._log_transport_error(f"position risk {symbol}", exc)
            return None
        return risk.get(symbol) or PositionRisk(symbol=symbol, position_amt=0.0)

    async def get_position(self, symbol: str) -> Optional[PositionRisk]:
        return await self._read_position(symbol, fresh=False)

    async def get_position_fresh(self, symbol: str) -> Optional[PositionRisk]:
        """Direct exchange read. ``None`` means the read failed, not that the position is flat."""
        return await self._read_position(symbol, fresh=True)

    async def get_position_amount(self, symbol: str, fresh: bool = True) -> Optional[float]:
        risk = await (self.get_position_fresh(symbol) if fresh else self.get_position(symbol))
        return None if risk is None else risk.position_amt

    async def get_open_orders(self, symbol: str) -> List[OrderTicket]:
        cache = self._orders_cache.get(symbol)
        if cache is None:
            cache = CachedValue(self._orders_ttl)
            self._orders_cache[symbol] = cache
        try:
            return await cache.get(lambda: self.transport.fetch_open_orders(symbol))
        except Exception as exc:
            self._log_transport_error(f"open orders {symbol}", exc)
            return []

    async def get_live_state(self, symbol: str, fresh: bool = False) -> Optional[LiveState]:
        risk = await (self.get_position_fresh(symbol) if fresh else self.get_position(symbol))
        if risk is None:
            return None
        orders = await self.get_open_orders(symbol)
        return LiveState.from_risk(risk, orders)

    async def get_symbol_filters(self, symbol: str) -> Optional[SymbolFilters]:
        try:
            filters = await self._info_cache.get(self.transport.fetch_exchange_info)
        except Exception as exc:
            self._log_transport_error(f"exchange info {symbol}", exc)
            return None
        return filters.get(symbol)

    async def fetch_income(self, income_type: str = "REALIZED_PNL", limit: int = 100) -> List[Dict[str, Any]]:
        try:
            return await self.transport.fetch_income(income_type=income_type, limit=limit)
        except Exception as exc:
            self._log_transport_error("income", exc)
            return []

    async def fetch_user_trades(
        self,
        symbol: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> Optional[List[Dict[str, Any]]]:
        try:
            return await self.transport.fetch_user_trades(symbol, start_time=start_time, end_time=end_time)
        except Exception as exc:
            self._log_transport_error(f"user trades {symbol}", exc)
            return None

    async def fetch_mark_price(self, symbol: str) -> Optional[float]:
        try:
            payload = await self.transport.fetch_premium_index(symbol)
        except Exception as exc:
            self._log_transport_error(f"premium index {symbol}", exc)
            return None
        if not payload:
            return None
        try:
            price = float(payload.get("markPrice"))
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

    # mutations

    async def open_market_order(self, symbol: str, side: str, qty: float) -> OrderTicket:
        """Market entry. Raises on failure so the caller can abort the trade."""
        try:
            ticket = await self.transport.place_order(symbol, entry_order_side(side), MARKET, qty)
        except Exception as exc:
            self._log_transport_error(f"market entry {symbol}", exc)
            raise
        finally:
            self.invalidate(symbol)
        if ticket is None:
            raise RuntimeError(f"Market entry for {symbol} returned no acknowledgement")
        metrics.record_order_placed(MARKET)
        logger.info("Market %s %s qty=%s avg=%s", side, symbol, qty, ticket.avg_price)
        return ticket

    async def close_position(self, symbol: str, side: str, qty: float) -> Optional[OrderTicket]:
        """Reduce-only market close of ``qty`` for a position held on ``side``."""
        if qty is None or qty <= 0:
            return None
        try:
            ticket = await self.transport.place_order(
                symbol, close_order_side(side), MARKET, abs(qty), reduce_only=True
            )
            metrics.record_order_placed("CLOSE")
            return ticket
        except Exception as exc:
            self._log_transport_error(f"close {symbol}", exc)
            return None
        finally:
            self.invalidate(symbol)

    async def place_stop_loss(self, symbol: str, side: str, stop_price: float, qty: float) -> Optional[OrderTicket]:
        return await self._place_trigger(symbol, side, STOP_MARKET, stop_price, qty)

    async def place_take_profit(self, symbol: str, side: str, price: float, qty: float) -> Optional[OrderTicket]:
        return await self._place_trigger(symbol, side, TAKE_PROFIT_MARKET, price, qty)

    async def _place_trigger(
        self,
        symbol: str,
        side: str,
        order_type: str,
        trigger: float,
        qty: float,
    ) -> Optional[OrderTicket]:
        if qty is None or qty <= 0 or trigger is None or trigger <= 0:
            return None
        try:
            ticket = await self.transport.place_order(
                symbol,
                close_order_side(side),
                order_type,
                qty,
                stop_price=trigger,
                reduce_only=True,
            )
            metrics.record_order_placed(order_type)
            return ticket
        except Exception as exc:
            self._log_transport_error(f"{order_type} {symbol}", exc)
            return None
        finally:
            self.invalidate(symbol)

    async def cancel_all_orders(self, symbol: str) -> bool:
        try:
            await self.transport.cancel_all_orders(symbol)
            return True
        except Exception as exc:
            self._log_transport_error(f"cancel all {symbol}", exc)
            return False
        finally:
            self.invalidate(symbol)

    async def cancel_stop_orders(self, symbol: str, only_sl: bool = False, only_tp: bool = False) -> int:
        """Cancel resting stop/take-profit orders. Returns the number cancelled."""
        self.invalidate(symbol)
        orders = await self.get_open_orders(symbol)
        cancelled = 0
        for order in orders:
            if only_sl and not order.is_stop:
                continue
            if only_tp and not order.is_take_profit:
                continue
            if not (order.is_stop or order.is_take_profit):
                continue
            try:
                await self.transport.cancel_order(
                    symbol,
                    order_id=order.order_id,
                    client_order_id=None if order.order_id is not None else order.client_order_id,
                )
                cancelled += 1
            except Exception as exc:
                self._log_transport_error(f"cancel order {order.id}", exc)
        self.invalidate(symbol)
        return cancelled

    async def set_leverage(self, symbol: str, leverage: float) -> bool:
        try:
            await self.transport.set_leverage(symbol, int(leverage))
            return True
        except Exception as exc:
            self._log_transport_error(f"set leverage {symbol}", exc)
            return False

    def _log_transport_error(self, action: str, error: Exception) -> None:
        metrics.record_order_failure(action.split(" ")[0])
        if isinstance(error, BinanceAPIError):
            logger.error(
                "Binance %s failed (code=%s, msg=%s)",
                action,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)
