"""Helpers for reading config sections and resolving per-symbol strategy settings."""
from __future__ import annotations

import copy
from typing import Any, Dict, Optional


def get_config_section(source: Any, section: str) -> Dict:
    """Return a dictionary section from Config, SectionProxy, or plain dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
        return candidate if isinstance(candidate, dict) else {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            candidate = to_dict()
        if isinstance(candidate, dict):
            return candidate

    return {}


def merge_strategy(defaults: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep-merge ``overrides`` onto a copy of ``defaults``. Lists are replaced, not merged."""
    merged = copy.deepcopy(defaults or {})
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_strategy(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class StrategyConfig:
    """Per-symbol strategy settings with dotted-path lookups."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, name: Optional[str] = None):
        self._data = data or {}
        self.name = name or self._data.get('name')

    def value(self, path: str, default: Any = None) -> Any:
        node: Any = self._data
        for part in path.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return default if node is None else node

    def number(self, path: str, default: float = 0.0) -> float:
        raw = self.value(path, default)
        try:
            return float(raw)
        except (TypeError, ValueError):
            return float(default)

    def section(self, name: str) -> Dict[str, Any]:
        node = self.value(name, {})
        return node if isinstance(node, dict) else {}

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def __repr__(self) -> str:
        return f"StrategyConfig(name={self.name!r})"


def strategy_for(symbol: str, source: Any) -> StrategyConfig:
    """Resolve the strategy for ``symbol``: ``strategy`` defaults plus ``strategies[symbol]``."""
    defaults = get_config_section(source, 'strategy')
    per_symbol = get_config_section(source, 'strategies').get(symbol) or {}
    merged = merge_strategy(defaults, per_symbol)
    return StrategyConfig(merged, name=merged.get('name'))
