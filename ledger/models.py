"""Position ledger documents.

Field names on the dataclasses are snake_case; ``to_dict``/``from_dict``
use the camelCase keys of the stored document.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


MAX_ADJUSTMENTS = 20


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class AdjustmentType(str, Enum):
    OPEN = "OPEN"
    ADD = "ADD"
    SL_SET = "SL_SET"
    SL_UPDATE = "SL_UPDATE"
    TP_SET = "TP_SET"
    TP_UPDATE = "TP_UPDATE"
    TP_HIT = "TP_HIT"
    SL_HIT = "SL_HIT"
    CLOSE = "CLOSE"
    OPPOSITE_SIGNAL = "OPPOSITE_SIGNAL"


FILL_ADJUSTMENTS = (AdjustmentType.TP_HIT, AdjustmentType.SL_HIT, AdjustmentType.CLOSE)


def _float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class TpFill:
    qty: float
    price: float
    time: int
    fee: float = 0.0
    fee_asset: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "qty": self.qty,
            "price": self.price,
            "time": self.time,
            "fee": self.fee,
            "feeAsset": self.fee_asset,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TpFill":
        return cls(
            qty=_float(data.get("qty"), 0.0),
            price=_float(data.get("price"), 0.0),
            time=int(data.get("time") or 0),
            fee=_float(data.get("fee"), 0.0),
            fee_asset=data.get("feeAsset"),
        )


@dataclass
class TakeProfit:
    price: float
    size_pct: float
    pct: Optional[float] = None
    filled: bool = False
    fills: List[TpFill] = field(default_factory=list)
    cum: float = 0.0
    order_id: Optional[int] = None

    @property
    def filled_qty(self) -> float:
        return sum(f.qty for f in self.fills)

    def same_plan(self, other: "TakeProfit") -> bool:
        return (
            abs(self.price - other.price) < 1e-12
            and abs(self.size_pct - other.size_pct) < 1e-12
            and self.filled == other.filled
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "sizePct": self.size_pct,
            "pct": self.pct,
            "filled": self.filled,
            "fills": [f.to_dict() for f in self.fills],
            "cum": self.cum,
            "orderId": self.order_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TakeProfit":
        return cls(
            price=_float(data.get("price"), 0.0),
            size_pct=_float(data.get("sizePct", data.get("size")), 100.0),
            pct=_float(data.get("pct")),
            filled=bool(data.get("filled", False)),
            fills=[TpFill.from_dict(f) for f in data.get("fills") or []],
            cum=_float(data.get("cum"), 0.0),
            order_id=data.get("orderId"),
        )


@dataclass
class Trailing:
    active: bool = False
    start_after_pct: float = 0.0
    trail_step_pct: float = 0.0
    anchor: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "startAfterPct": self.start_after_pct,
            "trailStepPct": self.trail_step_pct,
            "anchor": self.anchor,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Trailing"]:
        if not data:
            return None
        return cls(
            active=bool(data.get("active", False)),
            start_after_pct=_float(data.get("startAfterPct"), 0.0),
            trail_step_pct=_float(data.get("trailStepPct"), 0.0),
            anchor=_float(data.get("anchor")),
        )


@dataclass
class Adjustment:
    type: AdjustmentType
    ts: int
    price: Optional[float] = None
    size: Optional[float] = None
    tps: Optional[List[Dict[str, Any]]] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"type": self.type.value, "ts": self.ts}
        if self.price is not None:
            doc["price"] = self.price
        if self.size is not None:
            doc["size"] = self.size
        if self.tps is not None:
            doc["tps"] = self.tps
        if self.reason is not None:
            doc["reason"] = self.reason
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Adjustment":
        return cls(
            type=AdjustmentType(data.get("type")),
            ts=int(data.get("ts") or 0),
            price=_float(data.get("price")),
            size=_float(data.get("size")),
            tps=data.get("tps"),
            reason=data.get("reason"),
        )


@dataclass
class AddRecord:
    qty: float
    price: float
    size: float
    ts: int
    fee: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"qty": self.qty, "price": self.price, "size": self.size, "ts": self.ts, "fee": self.fee}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddRecord":
        return cls(
            qty=_float(data.get("qty"), 0.0),
            price=_float(data.get("price"), 0.0),
            size=_float(data.get("size"), 0.0),
            ts=int(data.get("ts") or 0),
            fee=_float(data.get("fee"), 0.0),
        )


@dataclass
class Execution:
    kind: str  # OPEN, ADD, TP, SL, CLOSE
    ts: int
    price: float
    qty: float
    fee: float = 0.0
    pnl: float = 0.0
    cum_pnl: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "ts": self.ts,
            "price": self.price,
            "qty": self.qty,
            "fee": self.fee,
            "pnl": self.pnl,
            "cumPnl": self.cum_pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        return cls(
            kind=data.get("kind", "CLOSE"),
            ts=int(data.get("ts") or 0),
            price=_float(data.get("price"), 0.0),
            qty=_float(data.get("qty"), 0.0),
            fee=_float(data.get("fee"), 0.0),
            pnl=_float(data.get("pnl"), 0.0),
            cum_pnl=_float(data.get("cumPnl")),
        )


@dataclass
class PositionMeta:
    leverage: Optional[float] = None
    risk_pct: Optional[float] = None
    strategy_name: Optional[str] = None
    opened_by: str = "BOT"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leverage": self.leverage,
            "riskPct": self.risk_pct,
            "strategyName": self.strategy_name,
            "openedBy": self.opened_by,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PositionMeta":
        data = data or {}
        return cls(
            leverage=_float(data.get("leverage")),
            risk_pct=_float(data.get("riskPct")),
            strategy_name=data.get("strategyName"),
            opened_by=data.get("openedBy") or "BOT",
        )


@dataclass
class Position:
    symbol: str
    side: str
    entry_price: float
    size: float
    opened_at: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: PositionStatus = PositionStatus.OPEN
    stop_price: Optional[float] = None
    initial_stop_price: Optional[float] = None
    take_profits: List[TakeProfit] = field(default_factory=list)
    initial_tps: List[Dict[str, Any]] = field(default_factory=list)
    trailing: Optional[Trailing] = None
    adds: List[AddRecord] = field(default_factory=list)
    executions: List[Execution] = field(default_factory=list)
    adjustments: List[Adjustment] = field(default_factory=list)
    analysis_ref: Optional[Dict[str, Any]] = None
    meta: PositionMeta = field(default_factory=PositionMeta)
    realized_pnl: float = 0.0
    fees: float = 0.0
    closed_at: Optional[int] = None
    final_pnl: Optional[float] = None
    closed_by: Optional[str] = None
    updated_at: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def direction(self) -> int:
        return 1 if self.side == "LONG" else -1

    @property
    def leverage(self) -> Optional[float]:
        return self.meta.leverage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "entryPrice": self.entry_price,
            "size": self.size,
            "openedAt": self.opened_at,
            "status": self.status.value,
            "stopPrice": self.stop_price,
            "initialStopPrice": self.initial_stop_price,
            "takeProfits": [tp.to_dict() for tp in self.take_profits],
            "initialTPs": list(self.initial_tps),
            "trailing": self.trailing.to_dict() if self.trailing else None,
            "adds": [a.to_dict() for a in self.adds],
            "executions": [e.to_dict() for e in self.executions],
            "adjustments": [a.to_dict() for a in self.adjustments],
            "analysisRef": self.analysis_ref,
            "meta": self.meta.to_dict(),
            "realizedPnl": self.realized_pnl,
            "fees": self.fees,
            "closedAt": self.closed_at,
            "finalPnl": self.final_pnl,
            "closedBy": self.closed_by,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            symbol=data["symbol"],
            side=data["side"],
            entry_price=_float(data.get("entryPrice"), 0.0),
            size=_float(data.get("size"), 0.0),
            opened_at=int(data.get("openedAt") or 0),
            status=PositionStatus(data.get("status", "OPEN")),
            stop_price=_float(data.get("stopPrice")),
            initial_stop_price=_float(data.get("initialStopPrice")),
            take_profits=[TakeProfit.from_dict(tp) for tp in data.get("takeProfits") or []],
            initial_tps=list(data.get("initialTPs") or []),
            trailing=Trailing.from_dict(data.get("trailing")),
            adds=[AddRecord.from_dict(a) for a in data.get("adds") or []],
            executions=[Execution.from_dict(e) for e in data.get("executions") or []],
            adjustments=[Adjustment.from_dict(a) for a in data.get("adjustments") or []],
            analysis_ref=data.get("analysisRef"),
            meta=PositionMeta.from_dict(data.get("meta")),
            realized_pnl=_float(data.get("realizedPnl"), 0.0),
            fees=_float(data.get("fees"), 0.0),
            closed_at=data.get("closedAt"),
            final_pnl=_float(data.get("finalPnl")),
            closed_by=data.get("closedBy"),
            updated_at=data.get("updatedAt"),
        )
