import asyncio
import copy
import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from config import config
from ledger.errors import LedgerError, PositionConflict
from ledger.models import Position, PositionStatus


logger = logging.getLogger(__name__)


class MemoryPositionRepository:
    """In-process position store. Documents are copied in and out."""

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def initialize(self):
        return None

    async def close(self):
        return None

    async def find_open(self, symbol: str) -> Optional[Position]:
        for doc in reversed(list(self._docs.values())):
            if doc["symbol"] == symbol and doc["status"] == PositionStatus.OPEN.value:
                return Position.from_dict(copy.deepcopy(doc))
        return None

    async def list_open(self) -> List[Position]:
        return [
            Position.from_dict(copy.deepcopy(doc))
            for doc in self._docs.values()
            if doc["status"] == PositionStatus.OPEN.value
        ]

    async def insert(self, position: Position) -> Position:
        async with self._lock:
            if position.is_open and await self.find_open(position.symbol) is not None:
                raise PositionConflict(position.symbol)
            self._docs[position.id] = position.to_dict()
        return position

    async def update(self, position: Position) -> Position:
        if position.id not in self._docs:
            raise LedgerError(f"Unknown position {position.id}")
        self._docs[position.id] = position.to_dict()
        return position

    async def history(self, symbol: str, limit: int = 50) -> List[Position]:
        docs = [doc for doc in self._docs.values() if doc["symbol"] == symbol]
        docs.sort(key=lambda d: d.get("openedAt") or 0, reverse=True)
        return [Position.from_dict(copy.deepcopy(doc)) for doc in docs[:limit]]


class PostgresPositionRepository:
    """asyncpg-backed store keeping each position as a JSONB document.

    A partial unique index on ``symbol WHERE status = 'OPEN'`` rejects a
    second OPEN row, which surfaces as ``PositionConflict``.
    """

    SCHEMA = (
        '''CREATE TABLE IF NOT EXISTS positions (
               id TEXT PRIMARY KEY,
               symbol TEXT NOT NULL,
               status TEXT NOT NULL,
               opened_at BIGINT NOT NULL,
               closed_at BIGINT,
               doc JSONB NOT NULL
           )''',
        '''CREATE UNIQUE INDEX IF NOT EXISTS positions_one_open_per_symbol
           ON positions(symbol) WHERE status = 'OPEN' ''',
        '''CREATE INDEX IF NOT EXISTS positions_symbol_opened
           ON positions(symbol, opened_at DESC)''',
    )

    def __init__(self, pool: Optional[asyncpg.Pool] = None):
        self.pool = pool

    async def initialize(self):
        if self.pool is None:
            db_config = config.database
            self.pool = await asyncpg.create_pool(
                host=db_config['host'],
                port=db_config['port'],
                database=db_config['database'],
                user=db_config['user'],
                password=db_config['password'],
                min_size=int(db_config.get('min_pool', 2)),
                max_size=int(db_config.get('max_pool', 10)),
            )
        async with self.pool.acquire() as conn:
            for statement in self.SCHEMA:
                await conn.execute(statement)
        logger.info("Position repository ready")

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    @staticmethod
    def _row_to_position(row) -> Position:
        doc = row['doc']
        if isinstance(doc, str):
            doc = json.loads(doc)
        return Position.from_dict(doc)

    async def find_open(self, symbol: str) -> Optional[Position]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT doc FROM positions WHERE symbol = $1 AND status = 'OPEN' LIMIT 1",
                symbol,
            )
        return self._row_to_position(row) if row else None

    async def list_open(self) -> List[Position]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT doc FROM positions WHERE status = 'OPEN'")
        return [self._row_to_position(row) for row in rows]

    async def insert(self, position: Position) -> Position:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''INSERT INTO positions (id, symbol, status, opened_at, closed_at, doc)
                       VALUES ($1, $2, $3, $4, $5, $6::jsonb)''',
                    position.id,
                    position.symbol,
                    position.status.value,
                    position.opened_at,
                    position.closed_at,
                    json.dumps(position.to_dict()),
                )
        except asyncpg.UniqueViolationError as exc:
            raise PositionConflict(position.symbol) from exc
        except asyncpg.PostgresError as exc:
            raise LedgerError(f"insert failed for {position.symbol}: {exc}") from exc
        return position

    async def update(self, position: Position) -> Position:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''UPDATE positions SET status = $2, closed_at = $3, doc = $4::jsonb
                       WHERE id = $1''',
                    position.id,
                    position.status.value,
                    position.closed_at,
                    json.dumps(position.to_dict()),
                )
        except asyncpg.PostgresError as exc:
            raise LedgerError(f"update failed for {position.symbol}: {exc}") from exc
        return position

    async def history(self, symbol: str, limit: int = 50) -> List[Position]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT doc FROM positions WHERE symbol = $1 ORDER BY opened_at DESC LIMIT $2',
                symbol,
                limit,
            )
        return [self._row_to_position(row) for row in rows]
