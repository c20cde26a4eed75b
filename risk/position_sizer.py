import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config.utils import StrategyConfig
from trading.execution_types import direction, normalize_side


logger = logging.getLogger(__name__)

AUTO_TP_MULTIPLIERS = {
    "NORMAL": (1.2, 2.0),
    "DEAD": (0.8, 1.5),
    "EXTREME": (2.0, 3.0),
}
AUTO_TP_RRR = 2.0
AUTO_TP_FALLBACK_PCT = 0.02


@dataclass
class PreparedPosition:
    symbol: str
    side: str
    entry_price: float
    leverage: float
    margin_usd: float
    size_usd: float
    qty: float
    stop_price: Optional[float]
    stop_model: str
    take_profits: List[Dict[str, float]]
    trailing: Optional[Dict[str, Any]] = None
    rrr_to_first_tp: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def risk_pct(self) -> Optional[float]:
        return self.context.get("riskPct")


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def _module_meta(analysis: Any, name: str) -> Dict[str, Any]:
    if analysis is None:
        return {}
    modules = getattr(analysis, "modules", None)
    if modules is None and isinstance(analysis, dict):
        modules = analysis.get("modules")
    module = (modules or {}).get(name)
    if module is None:
        return {}
    meta = getattr(module, "meta", None)
    if meta is None and isinstance(module, dict):
        meta = module.get("meta")
    return dict(meta or {})


def _tp_pct(price: float, entry: float) -> float:
    return round(abs((price - entry) / entry) * 100, 3)


def auto_take_profits(
    entry_price: float,
    side: str,
    atr: Optional[float] = None,
    stop_price: Optional[float] = None,
    regime: str = "NORMAL",
) -> List[Dict[str, float]]:
    """ATR grid when ATR is known, else RRR 2 off the stop, else a flat 2%."""
    dir_ = direction(side)
    if _finite(atr) and atr > 0:
        m1, m2 = AUTO_TP_MULTIPLIERS.get(regime, AUTO_TP_MULTIPLIERS["NORMAL"])
        levels = [
            {"price": entry_price + dir_ * atr * m1, "sizePct": 50.0},
            {"price": entry_price + dir_ * atr * m2, "sizePct": 50.0},
        ]
    elif _finite(stop_price):
        risk = abs(entry_price - stop_price)
        levels = [{"price": entry_price + dir_ * risk * AUTO_TP_RRR, "sizePct": 100.0}]
    else:
        levels = [{"price": entry_price * (1 + dir_ * AUTO_TP_FALLBACK_PCT), "sizePct": 100.0}]
    for level in levels:
        level["pct"] = _tp_pct(level["price"], entry_price)
    return levels


def normalize_tp_plan(tps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop unusable levels and make ``sizePct`` sum to exactly 100."""
    cleaned: List[Dict[str, Any]] = []
    for tp in tps or []:
        price = tp.get("price")
        size_pct = tp.get("sizePct")
        if not (_finite(price) and _finite(size_pct)) or price <= 0 or size_pct <= 0:
            continue
        cleaned.append(dict(tp, price=float(price), sizePct=float(size_pct)))
    if not cleaned:
        return []

    total = sum(tp["sizePct"] for tp in cleaned)
    if total > 100:
        scale = 100.0 / total
        for tp in cleaned:
            tp["sizePct"] = tp["sizePct"] * scale
    allocated = sum(tp["sizePct"] for tp in cleaned[:-1])
    cleaned[-1]["sizePct"] = 100.0 - allocated
    return cleaned


def _stop_distance(sl_cfg: Dict[str, Any], margin_usd: float, qty: float, atr: float):
    hard_pct = sl_cfg.get("hardPct")
    sl_type = sl_cfg.get("type")
    hard_dist = None
    if _finite(hard_pct) and qty > 0:
        hard_dist = margin_usd * hard_pct / 100 / qty
    if sl_type == "hard":
        return hard_dist, f"hardPct_of_margin-{hard_pct}" if hard_dist is not None else "none"
    if sl_type == "atr":
        mult = float(sl_cfg.get("atrMult", 1) or 1)
        if atr > 0:
            return atr * mult, f"atr x{mult}"
        if hard_dist is not None:
            return hard_dist, "fallback-hardPct_of_margin"
    return None, "none"


def prepare_position(
    symbol: str,
    strategy: StrategyConfig,
    analysis: Any,
    side: str,
    entry_price: float,
) -> PreparedPosition:
    """Size, stop and take-profit plan for an entry at ``entry_price``."""
    if not _finite(entry_price) or entry_price <= 0:
        raise ValueError(f"Invalid entry price for {symbol}: {entry_price}")

    side = normalize_side(side)
    dir_ = direction(side)
    leverage = strategy.number("capital.leverage", 1) or 1
    margin_usd = strategy.number("capital.account", 0) * strategy.number("capital.riskPerTradePct", 0) / 100
    size_usd = margin_usd * leverage
    qty = size_usd / entry_price

    vol_meta = _module_meta(analysis, "volatility")
    atr_abs = vol_meta.get("atrAbs", vol_meta.get("atr"))
    atr_pct = vol_meta.get("atrPct")
    if _finite(atr_abs) and atr_abs > 0:
        atr = float(atr_abs)
    elif _finite(atr_pct) and atr_pct > 0:
        atr = entry_price * atr_pct / 100
    else:
        atr = 0.0

    stop_dist, stop_model = _stop_distance(strategy.section("exits").get("sl") or {}, margin_usd, qty, atr)
    stop_price = entry_price - dir_ * stop_dist if stop_dist is not None else None

    take_profits: List[Dict[str, float]] = []
    tp_cfg = strategy.section("exits").get("tp") or {}
    if tp_cfg.get("use"):
        sizes = tp_cfg.get("tpGridSizePct") or []
        for idx, roi in enumerate(tp_cfg.get("tpGridPct") or []):
            if not _finite(roi) or qty <= 0:
                continue
            dist = margin_usd * roi / 100 / qty
            price = entry_price + dir_ * dist
            size_pct = float(sizes[idx]) if idx < len(sizes) else 0.0
            take_profits.append({"price": price, "sizePct": size_pct, "pct": _tp_pct(price, entry_price)})
    else:
        take_profits = auto_take_profits(
            entry_price,
            side,
            atr=atr,
            stop_price=stop_price,
            regime=vol_meta.get("regime") or "NORMAL",
        )

    trailing = None
    trailing_cfg = strategy.section("exits").get("trailing") or {}
    if trailing_cfg.get("use"):
        trailing = {
            "active": False,
            "startAfterPct": float(trailing_cfg.get("startAfterPct", 0)),
            "trailStepPct": float(trailing_cfg.get("trailStepPct", 0)),
            "anchor": None,
        }

    rrr = None
    if stop_price is not None and take_profits:
        risk = abs(entry_price - stop_price)
        if risk > 0:
            rrr = round(abs(take_profits[0]["price"] - entry_price) / risk, 2)

    prepared = PreparedPosition(
        symbol=symbol,
        side=side,
        entry_price=entry_price,
        leverage=leverage,
        margin_usd=margin_usd,
        size_usd=size_usd,
        qty=qty,
        stop_price=stop_price,
        stop_model=stop_model,
        take_profits=take_profits,
        trailing=trailing,
        rrr_to_first_tp=rrr,
        context={
            "riskPct": strategy.number("capital.riskPerTradePct", 0),
            "volatilityStatus": vol_meta.get("regime"),
            "atr": atr or None,
            "atrPct": (atr / entry_price * 100) if atr else vol_meta.get("atrPct"),
            "atrWindow": vol_meta.get("window"),
        },
    )
    logger.debug(
        "%s prepared %s qty=%.6f stop=%s (%s) tps=%s",
        symbol, side, qty, stop_price, stop_model, [tp["price"] for tp in take_profits],
    )
    return prepared


__all__ = [
    "PreparedPosition",
    "auto_take_profits",
    "normalize_tp_plan",
    "prepare_position",
]
