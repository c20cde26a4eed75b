from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from trading.execution_types import as_float, as_int


STOP_LOSS_TYPES = ("STOP_MARKET", "STOP")
TAKE_PROFIT_TYPES = ("TAKE_PROFIT_MARKET", "TAKE_PROFIT")


@dataclass
class OrderEvent:
    """One ``ORDER_TRADE_UPDATE`` from the user-data stream."""

    order_id: Optional[int]
    symbol: str
    status: str
    side: str
    order_type: str
    last_price: float = 0.0
    last_qty: float = 0.0
    cum_qty: float = 0.0
    orig_qty: float = 0.0
    avg_price: float = 0.0
    commission: float = 0.0
    commission_asset: Optional[str] = None
    reduce_only: bool = False
    event_time: Optional[int] = None
    trade_time: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> Optional["OrderEvent"]:
        if not isinstance(msg, dict) or msg.get("e") != "ORDER_TRADE_UPDATE":
            return None
        o = msg.get("o") or {}
        return cls(
            order_id=as_int(o.get("i")),
            symbol=o.get("s", ""),
            status=o.get("X", ""),
            side=o.get("S", ""),
            order_type=o.get("ot") or o.get("o") or "",
            last_price=as_float(o.get("L")) or 0.0,
            last_qty=as_float(o.get("l")) or 0.0,
            cum_qty=as_float(o.get("z")) or 0.0,
            orig_qty=as_float(o.get("q")) or 0.0,
            avg_price=as_float(o.get("ap")) or 0.0,
            commission=as_float(o.get("n")) or 0.0,
            commission_asset=o.get("N"),
            reduce_only=bool(o.get("R", False)),
            event_time=as_int(msg.get("E")),
            trade_time=as_int(msg.get("T") or o.get("T")),
            raw=msg,
        )

    @property
    def dedup_key(self) -> str:
        qty = self.cum_qty or self.last_qty or 0
        ts = self.trade_time or self.event_time
        return f"{self.order_id}:{self.status}:{qty}:{ts}"

    @property
    def is_stop_loss(self) -> bool:
        return self.order_type in STOP_LOSS_TYPES

    @property
    def is_take_profit(self) -> bool:
        return self.order_type in TAKE_PROFIT_TYPES

    @property
    def is_market(self) -> bool:
        return self.order_type == "MARKET"
