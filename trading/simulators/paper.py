import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from trading.execution_types import (
    MARKET,
    STOP_MARKET,
    TAKE_PROFIT_MARKET,
    OrderTicket,
    PositionRisk,
    SymbolFilters,
)


logger = logging.getLogger(__name__)

EventListener = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class PaperPosition:
    symbol: str
    amount: float = 0.0
    entry_price: float = 0.0
    leverage: int = 1


@dataclass
class PaperOrder:
    order_id: int
    symbol: str
    side: str
    type: str
    quantity: float
    stop_price: Optional[float] = None
    reduce_only: bool = False
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def ticket(self, status: str = "NEW") -> OrderTicket:
        return OrderTicket(
            symbol=self.symbol,
            side=self.side,
            type=self.type,
            quantity=self.quantity,
            status=status,
            stop_price=self.stop_price,
            reduce_only=self.reduce_only,
            order_id=self.order_id,
            raw={"origType": self.type},
        )


class PaperTransport:
    """In-memory exchange with the same surface as ``BinanceTransport``.

    Market orders fill at the last mark. Reduce-only STOP_MARKET and
    TAKE_PROFIT_MARKET orders rest until ``on_mark`` crosses their trigger.
    Every fill is queued as an ``ORDER_TRADE_UPDATE``-shaped message and
    delivered to the listener by ``flush``.
    """

    def __init__(
        self,
        filters: Optional[Dict[str, SymbolFilters]] = None,
        clock: Callable[[], float] = time.time,
        fee_rate: float = 0.0,
    ) -> None:
        self._filters: Dict[str, SymbolFilters] = dict(filters or {})
        self._clock = clock
        self.fee_rate = fee_rate
        self._marks: Dict[str, float] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self._orders: Dict[int, PaperOrder] = {}
        self._ids = itertools.count(1_000_001)
        self._pending: List[Dict[str, Any]] = []
        self._listener: Optional[EventListener] = None
        self.income: List[Dict[str, Any]] = []
        self.trades: List[Dict[str, Any]] = []
        self.calls: List[str] = []

    has_credentials = True

    def set_listener(self, listener: Optional[EventListener]) -> None:
        self._listener = listener

    def set_filters(self, symbol: str, filters: SymbolFilters) -> None:
        self._filters[symbol] = filters

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _position(self, symbol: str) -> PaperPosition:
        pos = self._positions.get(symbol)
        if pos is None:
            pos = PaperPosition(symbol=symbol)
            self._positions[symbol] = pos
        return pos

    # transport surface

    async def fetch_exchange_info(self) -> Dict[str, SymbolFilters]:
        self.calls.append("exchange_info")
        return dict(self._filters)

    async def fetch_position_risk(self) -> List[PositionRisk]:
        self.calls.append("position_risk")
        rows: List[PositionRisk] = []
        for symbol, pos in self._positions.items():
            mark = self._marks.get(symbol)
            unrealized = (mark - pos.entry_price) * pos.amount if mark and pos.amount else 0.0
            notional = abs(pos.amount) * pos.entry_price
            rows.append(
                PositionRisk(
                    symbol=symbol,
                    position_amt=pos.amount,
                    entry_price=pos.entry_price if pos.amount else 0.0,
                    mark_price=mark,
                    unrealized_profit=unrealized,
                    leverage=float(pos.leverage),
                    isolated_margin=0.0,
                    initial_margin=notional / pos.leverage if pos.leverage else None,
                )
            )
        return rows

    async def fetch_open_orders(self, symbol: str) -> List[OrderTicket]:
        self.calls.append(f"open_orders:{symbol}")
        return [o.ticket() for o in self._orders.values() if o.symbol == symbol]

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        stop_price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> Optional[OrderTicket]:
        self.calls.append(f"place:{order_type}:{side}")
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        order = PaperOrder(
            order_id=next(self._ids),
            symbol=symbol,
            side=side.upper(),
            type=order_type,
            quantity=quantity,
            stop_price=stop_price,
            reduce_only=reduce_only,
        )
        if order_type == MARKET:
            mark = self._marks.get(symbol)
            if mark is None:
                raise RuntimeError(f"No paper mark for {symbol}")
            filled = self._fill(order, mark)
            ticket = order.ticket(status="FILLED")
            ticket.avg_price = mark
            ticket.executed_qty = filled
            return ticket
        if order_type not in (STOP_MARKET, TAKE_PROFIT_MARKET):
            raise ValueError(f"Unsupported paper order type {order_type}")
        self._orders[order.order_id] = order
        return order.ticket()

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> None:
        self.calls.append(f"cancel:{order_id}")
        self._orders.pop(order_id, None)

    async def cancel_all_orders(self, symbol: str) -> None:
        self.calls.append(f"cancel_all:{symbol}")
        for order_id in [oid for oid, o in self._orders.items() if o.symbol == symbol]:
            self._orders.pop(order_id, None)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self._position(symbol).leverage = int(leverage)

    async def fetch_income(
        self,
        income_type: str = "REALIZED_PNL",
        limit: int = 100,
        start_time: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [r for r in self.income if r.get("incomeType") == income_type]
        if start_time is not None:
            rows = [r for r in rows if r["time"] >= start_time]
        return rows[-limit:]

    async def fetch_user_trades(
        self,
        symbol: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [t for t in self.trades if t["symbol"] == symbol]
        if start_time is not None:
            rows = [t for t in rows if t["time"] >= start_time]
        if end_time is not None:
            rows = [t for t in rows if t["time"] <= end_time]
        return rows

    async def fetch_premium_index(self, symbol: str) -> Optional[Dict[str, Any]]:
        mark = self._marks.get(symbol)
        if mark is None:
            return None
        return {"symbol": symbol, "markPrice": str(mark), "time": self._now_ms()}

    async def close(self) -> None:
        return None

    # simulation

    async def on_mark(self, symbol: str, price: float) -> None:
        """Record a mark and trigger any resting reduce-only orders it crosses."""
        self._marks[symbol] = float(price)
        for order in list(self._orders.values()):
            if order.symbol != symbol or not self._triggered(order, price):
                continue
            self._orders.pop(order.order_id, None)
            if self._position(symbol).amount == 0:
                logger.debug("Paper %s %s expired on flat position", order.type, order.order_id)
                continue
            self._fill(order, order.stop_price or price)
        await self.flush()

    def set_mark(self, symbol: str, price: float) -> None:
        self._marks[symbol] = float(price)

    async def flush(self) -> None:
        pending, self._pending = self._pending, []
        if self._listener is None:
            return
        for event in pending:
            await self._listener(event)

    def pending_events(self) -> List[Dict[str, Any]]:
        return list(self._pending)

    @staticmethod
    def _triggered(order: PaperOrder, price: float) -> bool:
        if order.stop_price is None:
            return False
        selling = order.side == "SELL"
        if order.type == STOP_MARKET:
            return price <= order.stop_price if selling else price >= order.stop_price
        return price >= order.stop_price if selling else price <= order.stop_price

    def _fill(self, order: PaperOrder, price: float) -> float:
        pos = self._position(order.symbol)
        signed = order.quantity if order.side == "BUY" else -order.quantity
        if order.reduce_only:
            if pos.amount == 0 or (pos.amount > 0) == (signed > 0):
                return 0.0
            signed = max(-abs(pos.amount), min(abs(pos.amount), signed))
        realized = 0.0
        if pos.amount and (pos.amount > 0) != (signed > 0):
            closing = min(abs(signed), abs(pos.amount))
            direction = 1 if pos.amount > 0 else -1
            realized = (price - pos.entry_price) * closing * direction
            pos.amount += closing * (1 if signed > 0 else -1)
            remainder = abs(signed) - closing
            if abs(pos.amount) < 1e-12:
                pos.amount = 0.0
                pos.entry_price = 0.0
            if remainder > 0:
                pos.amount = remainder if signed > 0 else -remainder
                pos.entry_price = price
        else:
            total = abs(pos.amount) + abs(signed)
            pos.entry_price = (abs(pos.amount) * pos.entry_price + abs(signed) * price) / total
            pos.amount += signed

        qty = abs(signed)
        now = self._now_ms()
        fee = qty * price * self.fee_rate
        self.trades.append(
            {
                "symbol": order.symbol,
                "orderId": order.order_id,
                "side": order.side,
                "price": str(price),
                "qty": str(qty),
                "realizedPnl": str(realized),
                "commission": str(fee),
                "commissionAsset": "USDT",
                "time": now,
            }
        )
        if realized:
            self.income.append(
                {"symbol": order.symbol, "incomeType": "REALIZED_PNL", "income": str(realized), "time": now}
            )
        self._pending.append(self._event(order, price, qty, fee, now))
        return qty

    @staticmethod
    def _event(order: PaperOrder, price: float, qty: float, fee: float, now: int) -> Dict[str, Any]:
        return {
            "e": "ORDER_TRADE_UPDATE",
            "E": now,
            "T": now,
            "o": {
                "s": order.symbol,
                "c": f"paper-{order.order_id}",
                "S": order.side,
                "o": order.type,
                "ot": order.type,
                "q": str(order.quantity),
                "sp": str(order.stop_price or 0),
                "ap": str(price),
                "X": "FILLED",
                "x": "TRADE",
                "i": order.order_id,
                "l": str(qty),
                "z": str(qty),
                "L": str(price),
                "n": str(fee),
                "N": "USDT",
                "T": now,
                "R": order.reduce_only,
            },
        }

    def open_order_ids(self, symbol: Optional[str] = None) -> Iterable[int]:
        return [oid for oid, o in self._orders.items() if symbol is None or o.symbol == symbol]
