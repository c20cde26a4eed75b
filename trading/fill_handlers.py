import logging
import math
from typing import List, Optional, Tuple, TYPE_CHECKING

from ledger.models import AdjustmentType, Position, TakeProfit, TpFill
from trading.close_context import CloseContextRegistry, FillAggregator
from trading.execution_types import LONG, SHORT
from trading.order_events import OrderEvent
from trading.pnl import calc_fill_pnl, next_monotonic_cum, sum_fills_qty, sum_tp_realized_pnl, tp_fill_pnl

if TYPE_CHECKING:
    from ledger.history_store import HistoryStore
    from trading.execution import ExchangeGateway


logger = logging.getLogger(__name__)

MIN_TP_TOLERANCE = 0.01
TP_TOLERANCE_PCT = 0.001
TP_PNL_EPSILON = 0.01


class FillHandlers:
    """Ledger side effects of filled stop-loss, take-profit and market orders."""

    def __init__(
        self,
        history: 'HistoryStore',
        gateway: 'ExchangeGateway',
        notifier=None,
        contexts: Optional[CloseContextRegistry] = None,
        tp_fallback_max_distance_pct: Optional[float] = None,
    ):
        self.history = history
        self.gateway = gateway
        self.notifier = notifier
        self.contexts = contexts or CloseContextRegistry()
        self.tp_fallback_max_distance_pct = tp_fallback_max_distance_pct

    async def _notify_closed(self, position: Position) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_trade(position, "CLOSED")
        except Exception as exc:
            logger.error("CLOSED notification failed for %s: %s", position.symbol, exc)

    async def _live_amount(self, symbol: str) -> Optional[float]:
        amount = await self.gateway.get_position_amount(symbol, fresh=True)
        return None if amount is None else abs(amount)

    async def force_close_if_leftover(self, symbol: str) -> None:
        risk = await self.gateway.get_position_fresh(symbol)
        if risk is None:
            return
        amount = risk.position_amt
        if not math.isfinite(amount) or amount == 0:
            return
        held = LONG if amount > 0 else SHORT
        ticket = await self.gateway.close_position(symbol, held, abs(amount))
        if ticket is not None:
            logger.info("Forced close of leftover %s on %s", amount, symbol)

    async def cleanup_orphan(self, event: OrderEvent) -> None:
        logger.warning(
            "%s: FILLED %s without an OPEN record; cleaning exchange leftovers only",
            event.symbol,
            event.order_type,
        )
        await self.gateway.cancel_all_orders(event.symbol)
        await self.force_close_if_leftover(event.symbol)

    async def maybe_finalize_close(self, symbol: str, closed_by: str = "SL") -> bool:
        """Close the ledger record once the exchange is flat. Safe to call repeatedly."""
        amount = await self._live_amount(symbol)
        if amount is None or amount > 0:
            return False
        ctx = self.contexts.get(symbol)
        if ctx is None or ctx.closed:
            return False
        position = await self.history.get_open_position(symbol)
        if position is not None and ctx.position_id is not None and position.id != ctx.position_id:
            logger.warning("%s: dropping close context of earlier position %s", symbol, ctx.position_id)
            self.contexts.drop(symbol)
            return False
        total = ctx.total
        closed = await self.history.close_position_history(symbol, closed_by, final_pnl=total)
        ctx.closed = True
        try:
            await self.gateway.cancel_all_orders(symbol)
            await self.force_close_if_leftover(symbol)
        finally:
            self.contexts.drop(symbol)
        if closed is not None:
            logger.info(
                "%s: finalized close by %s (tp=%.8f sl=%.8f leftover=%.8f) finalPnl=%.8f",
                symbol, closed_by, ctx.tp, ctx.sl, ctx.leftover, total,
            )
            await self._notify_closed(closed)
        return True

    async def handle_stop_loss(self, event: OrderEvent, position: Position, agg: Optional[FillAggregator]) -> None:
        symbol = event.symbol
        logger.info("%s: stop-loss filled at %s", symbol, event.last_price)
        await self.history.update_stop_price(symbol, event.last_price, "FILLED")

        qty = (agg.qty if agg else 0) or event.cum_qty or event.orig_qty or event.last_qty
        avg = event.avg_price or (agg.avg_px if agg and agg.avg_px > 0 else 0) or event.last_price
        sl_delta = calc_fill_pnl(position.entry_price, avg, qty, position.side)
        realized_tp = sum_tp_realized_pnl(position)
        logger.info(
            "%s: SL PnL parts realizedFromTP=%.8f slDelta=%.8f qty=%s entry=%s avg=%s",
            symbol, realized_tp, sl_delta, qty, position.entry_price, avg,
        )

        ctx = self.contexts.ensure(symbol, position.entry_price, position.side, position.id)
        ctx.tp = realized_tp
        ctx.sl += sl_delta

        await self.history.adjust_position(
            symbol,
            AdjustmentType.SL_HIT,
            price=avg,
            size=qty,
            reason="STOP_FILLED",
            fee=event.commission,
        )
        await self.gateway.cancel_all_orders(symbol)
        await self.force_close_if_leftover(symbol)
        await self.maybe_finalize_close(symbol, "SL")

    async def handle_market(self, event: OrderEvent, agg: Optional[FillAggregator]) -> None:
        symbol = event.symbol
        ctx = self.contexts.get(symbol)
        if ctx is None or ctx.closed:
            logger.debug("%s: market fill with no pending close", symbol)
            return
        qty = (agg.qty if agg else 0) or event.cum_qty or event.orig_qty or event.last_qty
        avg = event.avg_price or (agg.avg_px if agg and agg.avg_px > 0 else 0) or event.last_price
        delta = calc_fill_pnl(ctx.entry, avg, qty, ctx.side)
        ctx.leftover += delta
        logger.info("%s: leftover PnL += %.8f (qty=%s avg=%s)", symbol, delta, qty, avg)
        await self.maybe_finalize_close(symbol, "SL")

    def _match_level(self, position: Position, levels: List[TakeProfit], price: float) -> Tuple[Optional[TakeProfit], bool]:
        tolerance = max(MIN_TP_TOLERANCE, abs(position.entry_price) * TP_TOLERANCE_PCT)
        for level in levels:
            if math.isfinite(level.price) and abs(level.price - price) <= tolerance:
                return level, False
        candidates = [lvl for lvl in levels if math.isfinite(lvl.price)]
        if not candidates:
            return None, True
        nearest = min(candidates, key=lambda lvl: abs(lvl.price - price))
        bound = self.tp_fallback_max_distance_pct
        if bound is not None and position.entry_price > 0:
            distance_pct = abs(nearest.price - price) / position.entry_price * 100
            if distance_pct > bound:
                return None, True
        return nearest, True

    async def handle_take_profit(self, event: OrderEvent, position: Position) -> None:
        symbol = event.symbol
        levels = [TakeProfit.from_dict(tp.to_dict()) for tp in position.take_profits]
        level, fallback = self._match_level(position, levels, event.last_price)
        if fallback:
            logger.warning(
                "%s: TP fill at %s matched no level within tolerance; %s",
                symbol,
                event.last_price,
                f"using nearest {level.price}" if level else "no level in range",
            )

        recorded_qty = 0.0
        if level is not None:
            prev = level.cum
            delta = max(0.0, event.cum_qty - prev) if event.cum_qty > 0 else event.last_qty
            if delta > 0:
                level.fills.append(
                    TpFill(
                        qty=delta,
                        price=event.last_price,
                        time=event.trade_time or event.event_time or 0,
                        fee=event.commission,
                        fee_asset=event.commission_asset,
                    )
                )
                recorded_qty = delta
            else:
                logger.info("%s: TP delta=%s, no fill recorded but level marked filled", symbol, delta)
            level.cum = next_monotonic_cum(prev, event.cum_qty, delta, level.fills)
            if 0 < event.cum_qty < prev:
                logger.warning("%s: TP cum regressed (z=%s < %s); keeping cum=%s", symbol, event.cum_qty, prev, level.cum)
            level.filled = True
            level.order_id = level.order_id or event.order_id

        for lvl in levels:
            lvl.cum = max(lvl.cum, sum_fills_qty(lvl.fills))

        await self.history.update_take_profits(symbol, levels, position.entry_price, "TP_FILLED")
        if level is not None:
            await self.history.adjust_position(
                symbol,
                AdjustmentType.TP_HIT,
                price=event.last_price,
                size=recorded_qty or None,
                reason=f"TP @ {level.price}",
                fee=event.commission,
            )

        filled_count = sum(1 for lvl in levels if lvl.filled)
        all_filled = bool(levels) and filled_count == len(levels)
        live_amount = None
        if not all_filled:
            live_amount = await self._live_amount(symbol)
        flat = live_amount is not None and live_amount == 0
        logger.info("%s: TP status %s/%s filled, flat=%s", symbol, filled_count, len(levels), flat)

        if all_filled or flat:
            pnl = sum(tp_fill_pnl(lvl, position.entry_price, position.side) for lvl in levels)
            if abs(pnl) < TP_PNL_EPSILON:
                pnl = calc_fill_pnl(
                    position.entry_price,
                    event.avg_price or event.last_price,
                    event.cum_qty or event.last_qty,
                    position.side,
                )
            closed = await self.history.close_position_history(symbol, "TP", final_pnl=round(pnl, 8))
            try:
                await self.gateway.cancel_all_orders(symbol)
                await self.force_close_if_leftover(symbol)
            finally:
                self.contexts.drop(symbol)
            if closed is not None:
                await self._notify_closed(closed)
            return

        await self._break_even(position, levels, filled_count, live_amount)

    async def _break_even(
        self,
        position: Position,
        levels: List[TakeProfit],
        filled_count: int,
        live_amount: Optional[float],
    ) -> None:
        if position.trailing is not None or len(levels) < 2 or filled_count != 1:
            return
        if not live_amount or live_amount <= 0:
            return
        symbol = position.symbol
        await self.gateway.cancel_stop_orders(symbol, only_sl=True)
        ticket = await self.gateway.place_stop_loss(symbol, position.side, position.entry_price, live_amount)
        if ticket is None:
            logger.warning("%s: break-even stop placement failed", symbol)
            return
        await self.history.update_stop_price(symbol, position.entry_price, "BREAKEVEN")
        logger.info("%s: stop moved to break-even %s for qty=%s", symbol, position.entry_price, live_amount)
