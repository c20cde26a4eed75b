from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

LONG = "LONG"
SHORT = "SHORT"

MARKET = "MARKET"
STOP_MARKET = "STOP_MARKET"
TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"

STOP_TYPES = ("STOP_MARKET", "STOP", "TRAILING_STOP_MARKET")
TAKE_PROFIT_TYPES = ("TAKE_PROFIT_MARKET", "TAKE_PROFIT")


def normalize_side(raw: str) -> str:
    side = str(raw or "").upper()
    if side == "BUY":
        return LONG
    if side == "SELL":
        return SHORT
    return side


def direction(side: str) -> int:
    return 1 if normalize_side(side) == LONG else -1


def entry_order_side(side: str) -> str:
    """Exchange order side that opens or adds to a position of ``side``."""
    return "BUY" if normalize_side(side) == LONG else "SELL"


def close_order_side(side: str) -> str:
    """Exchange order side that reduces a position of ``side``."""
    return "SELL" if normalize_side(side) == LONG else "BUY"


def opposite(side: str) -> str:
    return SHORT if normalize_side(side) == LONG else LONG


def as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class SymbolFilters:
    """Exchange quantization rules for one symbol."""

    symbol: str
    tick_size: Optional[float] = None
    step_size: Optional[float] = None
    min_qty: Optional[float] = None
    min_notional: Optional[float] = None
    tick_size_text: Optional[str] = None
    step_size_text: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SymbolFilters":
        filters = cls(symbol=payload.get("symbol", ""), raw=payload)
        for filt in payload.get("filters", []) or []:
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and filters.tick_size is None:
                filters.tick_size_text = filt.get("tickSize")
                filters.tick_size = as_float(filters.tick_size_text)
            elif ftype == "LOT_SIZE" and filters.step_size is None:
                filters.step_size_text = filt.get("stepSize")
                filters.step_size = as_float(filters.step_size_text)
                filters.min_qty = as_float(filt.get("minQty"))
            elif ftype == "MIN_NOTIONAL":
                filters.min_notional = as_float(filt.get("notional") or filt.get("minNotional"))
        return filters


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    avg_price: Optional[float] = None
    executed_qty: float = 0.0
    reduce_only: bool = False
    order_id: Optional[int] = None
    client_order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.order_id is not None:
            return str(self.order_id)
        if self.client_order_id:
            return self.client_order_id
        return "order"

    @property
    def is_stop(self) -> bool:
        orig = self.raw.get("origType") if self.raw else None
        return self.type in STOP_TYPES or orig in STOP_TYPES

    @property
    def is_take_profit(self) -> bool:
        orig = self.raw.get("origType") if self.raw else None
        return self.type in TAKE_PROFIT_TYPES or orig in TAKE_PROFIT_TYPES

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OrderTicket":
        qty_val = payload.get("origQty") or payload.get("quantity") or payload.get("cumQty")
        return cls(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or payload.get("origType") or MARKET,
            quantity=as_float(qty_val) or 0.0,
            status=payload.get("status"),
            price=as_float(payload.get("price")),
            stop_price=as_float(payload.get("stopPrice")),
            avg_price=as_float(payload.get("avgPrice")),
            executed_qty=as_float(payload.get("executedQty")) or 0.0,
            reduce_only=bool(payload.get("reduceOnly", False)),
            order_id=as_int(payload.get("orderId")),
            client_order_id=payload.get("clientOrderId"),
            raw=payload,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "avg_price": self.avg_price,
            "executed_qty": self.executed_qty,
            "reduce_only": self.reduce_only,
            "order_id": self.order_id,
        }


@dataclass
class PositionRisk:
    """One row of ``/fapi/v2/positionRisk``."""

    symbol: str
    position_amt: float
    entry_price: Optional[float] = None
    mark_price: Optional[float] = None
    unrealized_profit: Optional[float] = None
    leverage: Optional[float] = None
    isolated_margin: Optional[float] = None
    initial_margin: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PositionRisk":
        return cls(
            symbol=payload.get("symbol", ""),
            position_amt=as_float(payload.get("positionAmt")) or 0.0,
            entry_price=as_float(payload.get("entryPrice")),
            mark_price=as_float(payload.get("markPrice")),
            unrealized_profit=as_float(payload.get("unRealizedProfit", payload.get("unrealizedProfit"))),
            leverage=as_float(payload.get("leverage")),
            isolated_margin=as_float(payload.get("isolatedMargin")),
            initial_margin=as_float(payload.get("initialMargin")),
        )


@dataclass
class LiveOrder:
    type: str  # "SL" or "TP"
    price: Optional[float]
    qty: float
    side: str
    reduce_only: bool
    order_id: Optional[int] = None


@dataclass
class LiveState:
    """Flattened live exchange view of one symbol."""

    side: Optional[str] = None
    size: float = 0.0
    entry_price: Optional[float] = None
    leverage: Optional[float] = None
    unrealized_profit: Optional[float] = None
    isolated_margin: Optional[float] = None
    initial_margin: Optional[float] = None
    mark_price: Optional[float] = None
    orders: List[LiveOrder] = field(default_factory=list)

    @property
    def is_flat(self) -> bool:
        return self.side is None or self.size <= 0

    @classmethod
    def from_risk(cls, risk: Optional[PositionRisk], orders: Optional[List[OrderTicket]] = None) -> "LiveState":
        state = cls()
        if risk is not None:
            amt = risk.position_amt
            state.side = LONG if amt > 0 else SHORT if amt < 0 else None
            state.size = abs(amt)
            state.entry_price = risk.entry_price if amt != 0 else None
            state.leverage = risk.leverage
            state.unrealized_profit = risk.unrealized_profit
            state.isolated_margin = risk.isolated_margin
            state.initial_margin = risk.initial_margin
            state.mark_price = risk.mark_price
        for ticket in orders or []:
            if not (ticket.is_stop or ticket.is_take_profit):
                continue
            price = ticket.stop_price if ticket.stop_price else ticket.price
            state.orders.append(
                LiveOrder(
                    type="SL" if ticket.is_stop else "TP",
                    price=price,
                    qty=ticket.quantity,
                    side="SELL" if ticket.side == "SELL" else "BUY",
                    reduce_only=ticket.reduce_only,
                    order_id=ticket.order_id,
                )
            )
        return state
