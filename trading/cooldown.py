import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, TYPE_CHECKING

from monitoring.async_utils import cancel_tasks, run_periodic
from trading.execution_types import as_int

if TYPE_CHECKING:
    from trading.execution import ExchangeGateway


logger = logging.getLogger(__name__)


class CooldownHub:
    """Track the last realized-PnL time per symbol from exchange income."""

    def __init__(self, gateway: 'ExchangeGateway', poll_interval_s: float = 60.0, income_limit: int = 100):
        self.gateway = gateway
        self.poll_interval_s = poll_interval_s
        self.income_limit = income_limit
        self._last_closed: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._warned = False

    @property
    def started(self) -> bool:
        return self._running

    def ingest(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Fold income rows in, keeping the newest time per symbol. Returns rows used."""
        used = 0
        for row in rows or []:
            symbol = row.get('symbol')
            ts = as_int(row.get('time'))
            if not symbol or ts is None:
                continue
            used += 1
            if ts > self._last_closed.get(symbol, 0):
                self._last_closed[symbol] = ts
        return used

    async def poll_once(self) -> None:
        rows = await self.gateway.fetch_income('REALIZED_PNL', limit=self.income_limit)
        self.ingest(rows)

    def start(self) -> bool:
        if self._running:
            return True
        if not self.gateway.has_credentials:
            if not self._warned:
                logger.warning("Cooldown hub not started: no API credentials")
                self._warned = True
            return False
        self._running = True
        self._task = asyncio.create_task(
            run_periodic('cooldown', self.poll_interval_s, self.poll_once, lambda: self._running)
        )
        logger.info("Cooldown hub polling income every %ss", self.poll_interval_s)
        return True

    async def stop(self) -> None:
        self._running = False
        await cancel_tasks([self._task])
        self._task = None

    def last_closed_at(self, symbol: str) -> Optional[int]:
        """Epoch ms of the last realized PnL for ``symbol``."""
        return self._last_closed.get(symbol)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._last_closed)
