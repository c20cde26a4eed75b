import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from api.metrics import metrics
from config.utils import StrategyConfig
from ledger.models import AdjustmentType, Position, Trailing
from trading.adjusters import (
    ROI_MARGIN,
    adds_count,
    compute_roi,
    compute_trailing_stop,
    dca_add_notional,
    is_tighter,
    opposite_streak,
    resolve_leverage,
)
from trading.execution_types import LiveState
from trading.quantize import adjust_price, adjust_quantity

if TYPE_CHECKING:
    from analytics.aggregator import AnalysisStore
    from ingest.mark_price_hub import MarkPriceHub
    from ledger.history_store import HistoryStore
    from trading.execution import ExchangeGateway


logger = logging.getLogger(__name__)

EXIT = "exit_opposite"
ADD = "dca_add"
TRAIL_ON = "trail_on"
TRAIL = "trail"


class PositionMonitor:
    """One management pass over an open position: opposite exit, DCA add, trailing stop."""

    def __init__(
        self,
        history: 'HistoryStore',
        gateway: 'ExchangeGateway',
        mark_hub: 'MarkPriceHub',
        analysis_store: 'AnalysisStore',
        monitor_cfg: Optional[Dict[str, Any]] = None,
    ):
        monitor_cfg = monitor_cfg or {}
        self.history = history
        self.gateway = gateway
        self.mark_hub = mark_hub
        self.analysis_store = analysis_store
        self.roi_mode = monitor_cfg.get('roi_mode', ROI_MARGIN)

    async def _mark(self, symbol: str) -> Optional[float]:
        read = self.mark_hub.get_mark(symbol)
        if read is None or read.stale:
            read = await self.mark_hub.wait_for_mark(symbol)
        return read.mark_price if read is not None else None

    async def tick(self, symbol: str, strategy: StrategyConfig) -> List[str]:
        """Run one pass for ``symbol``. Returns the actions taken."""
        position = await self.history.get_open_position(symbol)
        if position is None:
            return []
        live = await self.gateway.get_live_state(symbol)
        if live is None or live.is_flat:
            return []
        mark = await self._mark(symbol)
        if mark is None:
            logger.warning("%s: no mark price, monitor pass skipped", symbol)
            return []

        side = live.side
        entry = live.entry_price or position.entry_price
        lev = resolve_leverage(live.leverage, position.meta.leverage, strategy.number('capital.leverage', 1))
        roi = compute_roi(
            side,
            entry,
            mark,
            lev,
            unrealized_profit=live.unrealized_profit,
            isolated_margin=live.isolated_margin,
            mode=self.roi_mode,
        )
        logger.debug("%s monitor: side=%s entry=%s mark=%s roi=%.2f%% lev=%s", symbol, side, entry, mark, roi, lev)

        actions: List[str] = []
        if await self._opposite_exit(symbol, side, live, mark, strategy):
            actions.append(EXIT)
            return actions

        refreshed = await self._dca_add(symbol, position, side, mark, roi, lev, strategy)
        if refreshed is not None:
            actions.append(ADD)
            position = refreshed

        actions.extend(await self._trail(symbol, position, live, entry, roi, lev, strategy))
        for action in actions:
            metrics.record_monitor_action(action)
        return actions

    async def _opposite_exit(
        self,
        symbol: str,
        side: str,
        live: LiveState,
        mark: float,
        strategy: StrategyConfig,
    ) -> bool:
        try:
            count = max(0, int(strategy.number('exits.oppositeCountExit', 0)))
        except (TypeError, ValueError, OverflowError):
            count = 0
        if count <= 0:
            return False
        biases = [snap.bias for snap in self.analysis_store.latest(symbol, count)]
        if not opposite_streak(biases, side, count):
            return False

        logger.info("%s: exit on %s opposite analyses (position %s)", symbol, count, side)
        await self.gateway.cancel_stop_orders(symbol)
        await self.gateway.close_position(symbol, side, live.size)
        await self.history.adjust_position(
            symbol,
            AdjustmentType.OPPOSITE_SIGNAL,
            price=mark,
            size=live.size,
            reason=f"EXIT_OPPOSITE x{count}",
        )
        metrics.record_monitor_action(EXIT)
        return True

    async def _dca_add(
        self,
        symbol: str,
        position: Position,
        side: str,
        mark: float,
        roi: float,
        lev: float,
        strategy: StrategyConfig,
    ) -> Optional[Position]:
        max_adds = strategy.number('sizing.maxAdds', 0)
        if max_adds <= 0:
            return None
        trigger = max(0.0, strategy.number('sizing.addOnAdverseMovePct', 0))
        count = adds_count(position)
        if roi > -trigger or count >= max_adds:
            return None

        notional = dca_add_notional(position.size, lev, strategy.number('sizing.addMultiplier', 1))
        filters = await self.gateway.get_symbol_filters(symbol)
        qty = adjust_quantity(filters, notional / mark)
        logger.info(
            "%s ADD: roi=%.2f%% <= -%s%% adds=%s/%s notional=%.2f$ qty=%s",
            symbol, roi, trigger, count, int(max_adds), notional, qty,
        )
        if qty <= 0:
            logger.info("%s ADD skipped: quantity rounds to zero", symbol)
            return None
        try:
            ticket = await self.gateway.open_market_order(symbol, side, qty)
        except Exception as exc:
            logger.error("%s ADD order failed: %s", symbol, exc)
            return None

        fill_price = ticket.avg_price or mark
        await self.history.add_to_position(symbol, qty, fill_price)
        await self.history.adjust_position(symbol, AdjustmentType.ADD, price=fill_price, size=qty)
        return await self.history.get_open_position(symbol)

    async def _trail(
        self,
        symbol: str,
        position: Position,
        live: LiveState,
        entry: float,
        roi: float,
        lev: float,
        strategy: StrategyConfig,
    ) -> List[str]:
        trailing_cfg = strategy.section('exits').get('trailing') or {}
        if not trailing_cfg.get('use') or not entry:
            return []
        actions: List[str] = []
        state = position.trailing or Trailing(
            start_after_pct=max(0.0, float(trailing_cfg.get('startAfterPct', 0) or 0)),
            trail_step_pct=max(0.0, float(trailing_cfg.get('trailStepPct', 0) or 0)),
        )
        state = Trailing(**vars(state))

        if not state.active:
            if roi < state.start_after_pct:
                return []
            state.active = True
            state.anchor = roi
            await self.history.update_trailing(symbol, state)
            logger.info("%s: trailing on at roi=%.2f%%", symbol, roi)
            actions.append(TRAIL_ON)
        elif state.anchor is None or roi > state.anchor:
            state.anchor = roi
            await self.history.update_trailing(symbol, state)

        current_stop = position.stop_price
        if current_stop is None:
            live_sl = next((o for o in live.orders if o.type == 'SL'), None)
            current_stop = live_sl.price if live_sl is not None else None

        filters = await self.gateway.get_symbol_filters(symbol)
        new_stop = adjust_price(
            filters,
            compute_trailing_stop(live.side, entry, lev, state.anchor, state.trail_step_pct),
        )
        if not is_tighter(live.side, new_stop, current_stop):
            return actions

        await self.gateway.cancel_stop_orders(symbol, only_sl=True)
        ticket = await self.gateway.place_stop_loss(symbol, live.side, new_stop, live.size)
        if ticket is None:
            logger.error("%s: trailing stop @ %s was not accepted", symbol, new_stop)
            return actions
        await self.history.adjust_position(
            symbol, AdjustmentType.SL_UPDATE, price=new_stop, size=live.size, reason="TRAIL"
        )
        await self.history.update_stop_price(symbol, new_stop, "TRAIL")
        logger.info("%s: stop trailed %s -> %s (anchor %.2f%%)", symbol, current_stop, new_stop, state.anchor)
        actions.append(TRAIL)
        return actions
