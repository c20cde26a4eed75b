import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from api.metrics import metrics
from config.utils import StrategyConfig
from ledger.models import Position
from trading.validators import run_validators
from trading.voting import NEUTRAL, majority_vote_strict

if TYPE_CHECKING:
    from analytics.aggregator import AnalysisStore
    from ingest.mark_price_hub import MarkPriceHub
    from ledger.history_store import HistoryStore
    from trading.cooldown import CooldownHub
    from trading.execution import ExchangeGateway
    from trading.executor import TradeExecutor


logger = logging.getLogger(__name__)

OPENED = "opened"


@dataclass
class EntryAttempt:
    symbol: str
    reason: str
    position: Optional[Position] = None

    @property
    def opened(self) -> bool:
        return self.reason == OPENED


class EntryEngine:
    """Gate an entry on ledger/exchange state, cooldown, recent analyses and validators."""

    def __init__(
        self,
        history: 'HistoryStore',
        gateway: 'ExchangeGateway',
        analysis_store: 'AnalysisStore',
        mark_hub: 'MarkPriceHub',
        executor: 'TradeExecutor',
        cooldown: Optional['CooldownHub'] = None,
        notifier=None,
        engine_cfg: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        engine_cfg = engine_cfg or {}
        self.history = history
        self.gateway = gateway
        self.analysis_store = analysis_store
        self.mark_hub = mark_hub
        self.executor = executor
        self.cooldown = cooldown
        self.notifier = notifier
        self.check_live_position = bool(engine_cfg.get('check_live_position', True))
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _skip(self, symbol: str, reason: str) -> EntryAttempt:
        metrics.record_entry_skip(reason)
        return EntryAttempt(symbol, reason)

    async def try_enter(self, symbol: str, strategy: StrategyConfig) -> EntryAttempt:
        async with self._locks[symbol]:
            return await self._try_enter(symbol, strategy)

    async def _has_active_position(self, symbol: str) -> bool:
        if await self.history.get_open_position(symbol) is not None:
            return True
        if not self.check_live_position:
            return False
        amount = await self.gateway.get_position_amount(symbol, fresh=False)
        # an unreadable exchange position is treated as held
        return amount is None or abs(amount) > 0

    def _in_cooldown(self, symbol: str, strategy: StrategyConfig) -> bool:
        cooldown_min = strategy.number('entry.cooldownMin', 0)
        if cooldown_min <= 0 or self.cooldown is None:
            return False
        last_closed = self.cooldown.last_closed_at(symbol)
        if not last_closed:
            return False
        minutes_since = (self._clock() * 1000 - last_closed) / 60_000
        if minutes_since < cooldown_min:
            logger.info("%s: skip, cooldown %sm, %.1fm left", symbol, cooldown_min, cooldown_min - minutes_since)
            return True
        return False

    async def _try_enter(self, symbol: str, strategy: StrategyConfig) -> EntryAttempt:
        if await self._has_active_position(symbol):
            logger.info("%s: skip, active position exists", symbol)
            return self._skip(symbol, 'active_position')

        if self._in_cooldown(symbol, strategy):
            return self._skip(symbol, 'cooldown')

        lookback = max(1, int(strategy.number('entry.lookback', 3)))
        recent = self.analysis_store.latest(symbol, lookback)
        if len(recent) < lookback:
            logger.debug("%s: skip, %s/%s analyses available", symbol, len(recent), lookback)
            return self._skip(symbol, 'insufficient_history')

        snapshot = recent[0]
        majority = majority_vote_strict([snap.bias for snap in reversed(recent)])
        if majority == NEUTRAL:
            logger.info("%s: skip, majority is NEUTRAL", symbol)
            return self._skip(symbol, 'neutral_majority')
        if snapshot.bias != majority:
            logger.info("%s: skip, latest bias %s != majority %s", symbol, snapshot.bias, majority)
            return self._skip(symbol, 'majority_mismatch')

        failed = run_validators(snapshot, majority, strategy)
        if failed is not None:
            return self._skip(symbol, failed)

        read = self.mark_hub.get_mark(symbol)
        if read is None or read.stale:
            read = await self.mark_hub.wait_for_mark(symbol)
        if read is None:
            logger.warning("%s: skip, no fresh mark price available", symbol)
            return self._skip(symbol, 'no_mark')

        result = await self.executor.execute(symbol, strategy, snapshot, majority, read.mark_price)
        if result is None:
            return self._skip(symbol, 'execution_failed')

        prepared = result.prepared
        position = await self.history.open_position(
            symbol,
            prepared.side,
            entry_price=result.entry_price,
            size=result.size_usd,
            stop_price=result.stop_price,
            take_profits=result.take_profits,
            trailing=prepared.trailing,
            analysis_ref=snapshot.ref(),
            meta={
                'leverage': prepared.leverage,
                'riskPct': prepared.risk_pct,
                'strategyName': strategy.name,
                'openedBy': 'BOT',
            },
        )
        if self.notifier is not None:
            try:
                await self.notifier.notify_trade(position, 'OPEN')
            except Exception as exc:
                logger.error("OPEN notification failed for %s: %s", symbol, exc)
        return EntryAttempt(symbol, OPENED, position)
