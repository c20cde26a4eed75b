"""Bounded in-memory state for the order event processor."""
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Insertion-ordered dict whose entries expire after ``ttl_s`` seconds."""

    def __init__(self, ttl_s: float, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[K, tuple]" = OrderedDict()

    def _evict(self) -> None:
        now = self._clock()
        while self._data:
            key, (_, expires_at) = next(iter(self._data.items()))
            if expires_at > now and len(self._data) <= self.max_entries:
                break
            self._data.popitem(last=False)

    def __contains__(self, key: K) -> bool:
        self._evict()
        return key in self._data

    def __len__(self) -> int:
        self._evict()
        return len(self._data)

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        self._evict()
        item = self._data.get(key)
        return item[0] if item else default

    def set(self, key: K, value: V) -> None:
        self._data.pop(key, None)
        self._data[key] = (value, self._clock() + self.ttl_s)
        self._evict()

    def add_if_absent(self, key: K, value: V = True) -> bool:
        """Store ``key`` and return True, or return False when already present."""
        if key in self:
            return False
        self.set(key, value)
        return True

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        item = self._data.pop(key, None)
        return item[0] if item else default


class FillAggregator:
    """Per-order VWAP over partial fills."""

    def __init__(self):
        self.qty = 0.0
        self.notional = 0.0

    def add(self, qty: float, price: float) -> None:
        if qty and price and qty > 0 and price > 0:
            self.qty += qty
            self.notional += qty * price

    @property
    def avg_px(self) -> float:
        return self.notional / self.qty if self.qty > 0 else 0.0


@dataclass
class CloseContext:
    entry: float
    side: str
    tp: float = 0.0
    sl: float = 0.0
    leftover: float = 0.0
    closed: bool = False
    position_id: Optional[str] = None

    @property
    def total(self) -> float:
        return round(self.tp + self.sl + self.leftover, 8)


class CloseContextRegistry:
    def __init__(self):
        self._contexts: Dict[str, CloseContext] = {}

    def get(self, symbol: str) -> Optional[CloseContext]:
        return self._contexts.get(symbol)

    def ensure(self, symbol: str, entry: float, side: str, position_id: Optional[str] = None) -> CloseContext:
        """Context of the given position; one left over from an earlier position is replaced."""
        ctx = self._contexts.get(symbol)
        if ctx is None or ctx.position_id != position_id:
            ctx = CloseContext(entry=entry, side=side, position_id=position_id)
            self._contexts[symbol] = ctx
        return ctx

    def drop(self, symbol: str) -> Optional[CloseContext]:
        return self._contexts.pop(symbol, None)

    def snapshot(self) -> Dict[str, Any]:
        return {symbol: vars(ctx).copy() for symbol, ctx in self._contexts.items()}
