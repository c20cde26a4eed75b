import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from config.utils import StrategyConfig
from risk.position_sizer import PreparedPosition, normalize_tp_plan, prepare_position
from trading.execution_types import SymbolFilters, direction
from trading.quantize import adjust_price, adjust_quantity, validate_stop

if TYPE_CHECKING:
    from trading.execution import ExchangeGateway


logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    prepared: PreparedPosition
    entry_price: float
    qty: float
    stop_price: Optional[float] = None
    take_profits: List[Dict[str, Any]] = field(default_factory=list)
    entry_order_id: Optional[int] = None
    stop_order_id: Optional[int] = None
    tp_order_ids: List[int] = field(default_factory=list)
    realigned: bool = False

    @property
    def size_usd(self) -> float:
        return round(self.qty * self.entry_price, 8)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.prepared.symbol,
            'side': self.prepared.side,
            'entryPrice': self.entry_price,
            'qty': self.qty,
            'size': self.size_usd,
            'stopPrice': self.stop_price,
            'takeProfits': list(self.take_profits),
            'orderIds': {
                'entry': self.entry_order_id,
                'stop': self.stop_order_id,
                'takes': list(self.tp_order_ids),
            },
            'realigned': self.realigned,
        }


class TradeExecutor:
    """Place a market entry with its reduce-only stop and take-profit grid."""

    def __init__(self, gateway: 'ExchangeGateway', executor_cfg: Optional[Dict[str, Any]] = None):
        executor_cfg = executor_cfg or {}
        self.gateway = gateway
        self.default_stop_pct = float(executor_cfg.get('default_stop_pct', 5))
        self.realign_slippage_pct = float(executor_cfg.get('realign_slippage_pct', 0.05))

    async def execute(
        self,
        symbol: str,
        strategy: StrategyConfig,
        analysis: Any,
        side: str,
        price: float,
    ) -> Optional[ExecutionResult]:
        prepared = prepare_position(symbol, strategy, analysis, side, price)
        prepared.take_profits = normalize_tp_plan(prepared.take_profits)
        side = prepared.side
        entry = prepared.entry_price

        if not await self.gateway.set_leverage(symbol, prepared.leverage):
            logger.warning("%s: leverage %s not confirmed, continuing", symbol, prepared.leverage)

        filters = await self.gateway.get_symbol_filters(symbol)
        if filters is None:
            logger.error("%s: no exchange filters, entry aborted", symbol)
            return None

        raw_qty = prepared.size_usd / entry
        qty = adjust_quantity(filters, raw_qty)
        logger.info(
            "%s sizing: size=%.2f$ entry=%s rawQty=%.8f qty=%s",
            symbol, prepared.size_usd, entry, raw_qty, qty,
        )
        if qty <= 0:
            logger.error("%s: quantity below exchange minimum (raw=%.8f), entry aborted", symbol, raw_qty)
            return None

        await self.gateway.cancel_all_orders(symbol)

        try:
            ticket = await self.gateway.open_market_order(symbol, side, qty)
        except Exception as exc:
            logger.error("%s: market entry failed: %s", symbol, exc)
            return None

        result = ExecutionResult(prepared=prepared, entry_price=entry, qty=qty, entry_order_id=ticket.order_id)

        stop = prepared.stop_price
        if stop is None or not math.isfinite(stop):
            stop = entry * (1 - direction(side) * self.default_stop_pct / 100)
            logger.warning("%s: no stop computed, falling back to %.2f%% hard stop", symbol, self.default_stop_pct)
        await self._place_stop(result, filters, entry, stop, qty)

        if prepared.take_profits:
            result.take_profits, result.tp_order_ids = await self._place_take_profits(
                symbol, side, filters, prepared.take_profits, qty
            )
        else:
            logger.info("%s: no take-profit plan, none placed", symbol)

        risk = await self.gateway.get_position_fresh(symbol)
        if risk is None or risk.position_amt == 0:
            logger.warning("%s: live position not confirmed after entry", symbol)
            return result

        avg = risk.entry_price if risk.entry_price else entry
        live_qty = abs(risk.position_amt)
        result.entry_price = avg
        result.qty = live_qty
        slippage_pct = abs(avg - entry) / entry * 100
        if slippage_pct > self.realign_slippage_pct:
            await self._realign(result, filters, entry, avg, live_qty, slippage_pct)
        return result

    async def _place_stop(
        self,
        result: ExecutionResult,
        filters: SymbolFilters,
        reference: float,
        stop: float,
        qty: float,
    ) -> None:
        symbol, side = result.prepared.symbol, result.prepared.side
        if not validate_stop(side, reference, reference, stop):
            logger.info("%s: stop %.8f invalid against %.8f, not placed", symbol, stop, reference)
            return
        stop_px = adjust_price(filters, stop)
        ticket = await self.gateway.place_stop_loss(symbol, side, stop_px, qty)
        if ticket is None:
            logger.warning("%s: stop-loss @ %s was not accepted", symbol, stop_px)
            return
        result.stop_price = stop_px
        result.stop_order_id = ticket.order_id
        logger.info("%s: stop-loss @ %s orderId=%s", symbol, stop_px, ticket.order_id)

    async def _place_take_profits(
        self,
        symbol: str,
        side: str,
        filters: SymbolFilters,
        levels: List[Dict[str, Any]],
        total_qty: float,
    ):
        allocated = 0.0
        plan: List[Dict[str, Any]] = []
        order_ids: List[int] = []
        last = len(levels) - 1
        for idx, level in enumerate(levels):
            if idx == last:
                tp_qty = adjust_quantity(filters, max(total_qty - allocated, 0.0))
            else:
                tp_qty = adjust_quantity(filters, total_qty * level['sizePct'] / 100)
            if allocated + tp_qty > total_qty:
                tp_qty = adjust_quantity(filters, max(total_qty - allocated, 0.0))
            if tp_qty <= 0:
                logger.info("%s: TP%s skipped, qty rounds to zero", symbol, idx + 1)
                continue
            tp_px = adjust_price(filters, level['price'])
            ticket = await self.gateway.place_take_profit(symbol, side, tp_px, tp_qty)
            allocated += tp_qty
            entry = {'price': tp_px, 'sizePct': level['sizePct']}
            if level.get('pct') is not None:
                entry['pct'] = level['pct']
            if ticket is not None and ticket.order_id is not None:
                order_ids.append(ticket.order_id)
            plan.append(entry)
            logger.info("%s: TP%s @ %s qty=%s (%.2f%%)", symbol, idx + 1, tp_px, tp_qty, level['sizePct'])
        if total_qty - allocated > 0:
            logger.info("%s: %.8f left unallocated by quantization", symbol, total_qty - allocated)
        return plan, order_ids

    async def _realign(
        self,
        result: ExecutionResult,
        filters: SymbolFilters,
        entry: float,
        avg: float,
        live_qty: float,
        slippage_pct: float,
    ) -> None:
        """Re-place stop and take-profits around the filled average price."""
        symbol, side = result.prepared.symbol, result.prepared.side
        dir_ = direction(side)
        logger.info("%s: realigning stop/TPs to avg %.8f (slippage %.3f%%)", symbol, avg, slippage_pct)
        await self.gateway.cancel_all_orders(symbol)

        old_stop = result.stop_price
        result.stop_price = None
        result.stop_order_id = None
        if old_stop is not None:
            new_stop = avg - dir_ * abs(entry - old_stop)
            await self._place_stop(result, filters, avg, new_stop, live_qty)

        shifted = []
        for level in result.take_profits:
            pct = level.get('pct')
            if pct is None:
                pct = dir_ * (level['price'] - entry) / entry * 100
            shifted.append(dict(level, price=avg * (1 + dir_ * pct / 100), pct=pct))
        if shifted:
            result.take_profits, result.tp_order_ids = await self._place_take_profits(
                symbol, side, filters, shifted, live_qty
            )
        result.realigned = True
