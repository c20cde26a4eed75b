import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from api.metrics import metrics
from ledger.errors import PositionConflict
from ledger.models import (
    FILL_ADJUSTMENTS,
    MAX_ADJUSTMENTS,
    AddRecord,
    Adjustment,
    AdjustmentType,
    Execution,
    Position,
    PositionMeta,
    PositionStatus,
    TakeProfit,
    Trailing,
)
from ledger.reconcile import compute_final_from_trades, mark_tp_fills

if TYPE_CHECKING:
    from trading.execution import ExchangeGateway


logger = logging.getLogger(__name__)

COALESCE_WINDOW_MS = 30_000
COALESCE_MIN_MOVE = 0.001
PRICE_EPSILON = 1e-12

_EXECUTION_KIND = {
    AdjustmentType.TP_HIT: "TP",
    AdjustmentType.SL_HIT: "SL",
    AdjustmentType.CLOSE: "CLOSE",
}


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


class HistoryStore:
    """Authoritative lifecycle record of each position.

    Every mutation re-reads the OPEN document and is a no-op when the
    stored state already matches, so concurrent callers may race safely.
    """

    def __init__(self, repository, clock: Callable[[], float] = time.time, notifier=None):
        self.repository = repository
        self.clock = clock
        self.notifier = notifier

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def get_open_position(self, symbol: str) -> Optional[Position]:
        return await self.repository.find_open(symbol)

    async def list_open_positions(self) -> List[Position]:
        return await self.repository.list_open()

    async def get_history(self, symbol: str, limit: int = 50) -> List[Position]:
        return await self.repository.history(symbol, limit)

    async def _save(self, position: Position) -> Position:
        position.updated_at = self._now_ms()
        return await self.repository.update(position)

    def _push_adjustment(self, position: Position, adjustment: Adjustment) -> None:
        position.adjustments.append(adjustment)
        if len(position.adjustments) > MAX_ADJUSTMENTS:
            del position.adjustments[: len(position.adjustments) - MAX_ADJUSTMENTS]

    def _coalesce(
        self,
        position: Position,
        adj_type: AdjustmentType,
        price: Optional[float],
        reason: Optional[str],
        tps: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Fold a SL/TP update into the previous one unless it is both old and far."""
        now = self._now_ms()
        last = position.adjustments[-1] if position.adjustments else None
        if last is not None and last.type == adj_type:
            elapsed = now - last.ts
            if last.price and price is not None:
                moved = abs(price - last.price) / abs(last.price)
            else:
                moved = math.inf
            if not (elapsed > COALESCE_WINDOW_MS and moved > COALESCE_MIN_MOVE):
                last.price = price
                last.reason = reason
                last.ts = now
                if tps is not None:
                    last.tps = tps
                return
        self._push_adjustment(position, Adjustment(type=adj_type, ts=now, price=price, tps=tps, reason=reason))

    async def open_position(
        self,
        symbol: str,
        side: str,
        entry_price: float,
        size: float,
        stop_price: Optional[float] = None,
        take_profits: Optional[Sequence[Dict[str, Any]]] = None,
        trailing: Optional[Dict[str, Any]] = None,
        analysis_ref: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Position:
        existing = await self.get_open_position(symbol)
        if existing is not None:
            logger.warning("open_position: %s already has an OPEN record %s", symbol, existing.id)
            return existing

        now = self._now_ms()
        levels = [
            TakeProfit(
                price=float(tp["price"]),
                size_pct=float(tp.get("sizePct", tp.get("size", 100))),
                pct=tp.get("pct"),
                filled=bool(tp.get("filled", False)),
            )
            for tp in take_profits or []
        ]
        trailing_state = None
        if trailing:
            trailing_state = Trailing(
                active=bool(trailing.get("active", False)),
                start_after_pct=float(trailing.get("startAfterPct", 0)),
                trail_step_pct=float(trailing.get("trailStepPct", 0)),
                anchor=trailing.get("anchor"),
            )
        meta = meta or {}
        position = Position(
            symbol=symbol,
            side=side,
            entry_price=float(entry_price),
            size=float(size),
            opened_at=now,
            stop_price=stop_price,
            initial_stop_price=stop_price,
            take_profits=levels,
            initial_tps=[{"price": tp.price, "sizePct": tp.size_pct} for tp in levels],
            trailing=trailing_state,
            analysis_ref=analysis_ref,
            meta=PositionMeta(
                leverage=meta.get("leverage"),
                risk_pct=meta.get("riskPct"),
                strategy_name=meta.get("strategyName"),
                opened_by=meta.get("openedBy", "BOT"),
            ),
            updated_at=now,
        )
        position.executions.append(
            Execution(kind="OPEN", ts=now, price=position.entry_price, qty=size / entry_price if entry_price else 0.0)
        )
        self._push_adjustment(position, Adjustment(type=AdjustmentType.OPEN, ts=now, price=position.entry_price, size=size))
        try:
            await self.repository.insert(position)
        except PositionConflict:
            existing = await self.get_open_position(symbol)
            if existing is not None:
                logger.warning("open_position: lost race for %s, returning existing record", symbol)
                return existing
            raise
        metrics.record_position_opened(symbol, side)
        logger.info("Opened %s %s at %.6f size=%.2f", side, symbol, position.entry_price, position.size)
        return position

    async def add_to_position(
        self,
        symbol: str,
        qty: float,
        price: Optional[float] = None,
        fee: float = 0.0,
    ) -> Optional[Position]:
        position = await self.get_open_position(symbol)
        if position is None:
            return None
        effective = float(price) if _finite(price) else position.entry_price
        qty = float(qty or 0)
        notional = round(qty * effective, 8)
        now = self._now_ms()

        old_qty = position.size / position.entry_price if position.entry_price else 0.0
        new_qty = old_qty + qty
        if new_qty > 0 and effective > 0:
            position.entry_price = (old_qty * position.entry_price + qty * effective) / new_qty
        position.size = round(position.size + notional, 8)
        position.fees += float(fee or 0)
        position.adds.append(AddRecord(qty=qty, price=effective, size=notional, ts=now, fee=float(fee or 0)))
        position.executions.append(Execution(kind="ADD", ts=now, price=effective, qty=qty, fee=float(fee or 0)))
        await self._save(position)
        return position

    async def adjust_position(
        self,
        symbol: str,
        adj_type: AdjustmentType,
        price: Optional[float] = None,
        size: Optional[float] = None,
        tps: Optional[List[Dict[str, Any]]] = None,
        reason: Optional[str] = None,
        fee: float = 0.0,
    ) -> Optional[Position]:
        position = await self.get_open_position(symbol)
        if position is None:
            return None
        now = self._now_ms()
        self._push_adjustment(
            position,
            Adjustment(type=adj_type, ts=now, price=price, size=size, tps=tps, reason=reason),
        )
        if adj_type in FILL_ADJUSTMENTS and _finite(price) and _finite(size) and size > 0:
            pnl = round(position.direction * (price - position.entry_price) * size, 8)
            position.realized_pnl = round(position.realized_pnl + pnl, 8)
            position.fees += float(fee or 0)
            position.size = max(0.0, round(position.size - position.entry_price * size, 8))
            position.executions.append(
                Execution(
                    kind=_EXECUTION_KIND[adj_type],
                    ts=now,
                    price=price,
                    qty=size,
                    fee=float(fee or 0),
                    pnl=pnl,
                    cum_pnl=position.realized_pnl,
                )
            )
        await self._save(position)
        return position

    async def update_stop_price(self, symbol: str, price: float, reason: Optional[str] = None) -> Optional[Position]:
        position = await self.get_open_position(symbol)
        if position is None or not _finite(price):
            return position
        if position.stop_price is not None and abs(position.stop_price - price) <= PRICE_EPSILON:
            return position
        position.stop_price = float(price)
        if position.initial_stop_price is None:
            position.initial_stop_price = float(price)
        self._coalesce(position, AdjustmentType.SL_UPDATE, float(price), reason)
        await self._save(position)
        return position

    async def update_take_profits(
        self,
        symbol: str,
        tps: Sequence[TakeProfit],
        entry_price: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Optional[Position]:
        position = await self.get_open_position(symbol)
        if position is None:
            return None
        levels = [tp if isinstance(tp, TakeProfit) else TakeProfit.from_dict(tp) for tp in tps]
        unchanged = len(levels) == len(position.take_profits) and all(
            new.same_plan(old) for new, old in zip(levels, position.take_profits)
        )
        # fills and cum may advance without a plan change
        fills_changed = any(
            len(new.fills) != len(old.fills) or abs(new.cum - old.cum) > PRICE_EPSILON
            for new, old in zip(levels, position.take_profits)
        )
        if unchanged and not fills_changed:
            return position
        position.take_profits = levels
        if not unchanged:
            summary = [{"price": tp.price, "sizePct": tp.size_pct, "filled": tp.filled} for tp in levels]
            first_price = levels[0].price if levels else None
            self._coalesce(position, AdjustmentType.TP_UPDATE, first_price, reason, tps=summary)
        await self._save(position)
        return position

    async def update_trailing(self, symbol: str, trailing: Trailing) -> Optional[Position]:
        position = await self.get_open_position(symbol)
        if position is None:
            return None
        if position.trailing is not None and position.trailing.to_dict() == trailing.to_dict():
            return position
        position.trailing = Trailing(**vars(trailing))
        await self._save(position)
        return position

    async def close_position_history(
        self,
        symbol: str,
        closed_by: str = "UNKNOWN",
        final_pnl: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Optional[Position]:
        position = await self.get_open_position(symbol)
        if position is None:
            return None
        pnl = final_pnl if _finite(final_pnl) else position.realized_pnl
        now = self._now_ms()
        position.status = PositionStatus.CLOSED
        position.closed_at = now
        position.final_pnl = round(float(pnl or 0.0), 8)
        position.closed_by = closed_by
        self._push_adjustment(
            position,
            Adjustment(type=AdjustmentType.CLOSE, ts=now, reason=reason or closed_by),
        )
        await self._save(position)
        metrics.record_position_closed(symbol, closed_by, position.final_pnl)
        logger.info("Closed %s %s by %s finalPnl=%.8f", position.side, symbol, closed_by, position.final_pnl)
        return position

    async def reconcile_positions(
        self,
        gateway: 'ExchangeGateway',
        notifier=None,
        lookback_buffer_ms: int = 60_000,
        on_closed: Optional[Callable[[str], Any]] = None,
    ) -> List[Position]:
        """Close OPEN records the exchange already shows flat.

        ``on_closed`` is called with the symbol of every record closed here.
        """
        notifier = notifier or self.notifier
        closed: List[Position] = []
        for position in await self.list_open_positions():
            symbol = position.symbol
            try:
                risk = await gateway.get_position_fresh(symbol)
                if risk is None:
                    logger.warning("Reconcile: live read failed for %s, skipping", symbol)
                    continue
                if abs(risk.position_amt) > 0:
                    continue

                start = max(0, position.opened_at - lookback_buffer_ms)
                trades = await gateway.fetch_user_trades(symbol, start_time=start, end_time=self._now_ms())
                final_pnl = None
                hint = "AUTO"
                if trades:
                    final_pnl = compute_final_from_trades(trades)["finalPnl"]
                    levels, hint = mark_tp_fills(position, trades)
                    if levels:
                        await self.update_take_profits(symbol, levels, position.entry_price, "DESYNC")

                result = await self.close_position_history(
                    symbol, "DESYNC", final_pnl=final_pnl, reason=f"DESYNC:{hint}"
                )
                await gateway.cancel_all_orders(symbol)
                if result is None:
                    continue
                if on_closed is not None:
                    on_closed(symbol)
                logger.warning("Reconcile: %s closed locally as DESYNC (hint=%s)", symbol, hint)
                closed.append(result)
                if notifier is not None:
                    await notifier.notify_trade(result, "CLOSED")
            except Exception:
                logger.exception("Reconcile failed for %s", symbol)
        return closed
