import asyncio
import asyncpg
import json
import logging
from typing import Any, Dict, Optional
from datetime import datetime, timezone

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)


def _ts(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class DataPersister:
    SCHEMA = (
        '''CREATE TABLE IF NOT EXISTS analysis_snapshots (
               id TEXT PRIMARY KEY,
               symbol TEXT NOT NULL,
               ts TIMESTAMPTZ NOT NULL,
               bias TEXT NOT NULL,
               decision TEXT NOT NULL,
               score_long DOUBLE PRECISION,
               score_short DOUBLE PRECISION,
               coverage TEXT,
               modules JSONB
           )''',
        '''CREATE TABLE IF NOT EXISTS liquidation_buckets (
               symbol TEXT NOT NULL,
               ts TIMESTAMPTZ NOT NULL,
               count INTEGER,
               buys_count INTEGER,
               sells_count INTEGER,
               buys_value DOUBLE PRECISION,
               sells_value DOUBLE PRECISION,
               total_value DOUBLE PRECISION,
               min_value DOUBLE PRECISION,
               PRIMARY KEY (symbol, ts)
           )''',
    )

    def __init__(self, pool: Optional[asyncpg.Pool] = None):
        self.pool = pool
        self._owns_pool = pool is None
        self.analysis_buffer = []
        self.liquidation_buffer = []

        self.batch_size = 200
        self.flush_interval = 5
        self.max_buffer_size = 5000
        self.running = False
        self._auto_task = None

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

    async def close(self):
        if self.pool:
            await self.flush_all()
            if self._owns_pool:
                await self.pool.close()
            self.pool = None

    async def insert_analysis(self, snapshot: Dict[str, Any]):
        self.analysis_buffer.append(snapshot)
        self._enforce_bounds('analysis', self.analysis_buffer)
        if len(self.analysis_buffer) >= self.batch_size:
            await self.flush_analysis()

    async def insert_liquidation_bucket(self, bucket: Dict[str, Any]):
        self.liquidation_buffer.append(bucket)
        self._enforce_bounds('liquidations', self.liquidation_buffer)
        if len(self.liquidation_buffer) >= self.batch_size:
            await self.flush_liquidations()

    def _enforce_bounds(self, name: str, buf: list):
        if len(buf) > self.max_buffer_size:
            # Drop oldest 20% to relieve pressure
            drop_n = max(int(self.max_buffer_size * 0.2), 1)
            del buf[:drop_n]
            logger.warning("%s buffer over %s rows; dropped %s oldest", name, self.max_buffer_size, drop_n)
        metrics.update_queue_depth(f'persist_{name}', len(buf))

    async def flush_analysis(self):
        if not self.analysis_buffer or self.pool is None:
            return
        rows = list(self.analysis_buffer)
        self.analysis_buffer.clear()
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(
                    '''INSERT INTO analysis_snapshots
                       (id, symbol, ts, bias, decision, score_long, score_short, coverage, modules)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                       ON CONFLICT (id) DO NOTHING''',
                    [
                        (
                            a['id'],
                            a['symbol'],
                            _ts(a['time']),
                            a['bias'],
                            a['decision'],
                            a['scores'].get('LONG'),
                            a['scores'].get('SHORT'),
                            a.get('coverage'),
                            json.dumps(a.get('modules', {})),
                        )
                        for a in rows
                    ]
                )
        except Exception as e:
            logger.error("Analysis snapshot flush failed (%s rows): %s", len(rows), e)

    async def flush_liquidations(self):
        if not self.liquidation_buffer or self.pool is None:
            return
        rows = list(self.liquidation_buffer)
        self.liquidation_buffer.clear()
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(
                    '''INSERT INTO liquidation_buckets
                       (symbol, ts, count, buys_count, sells_count, buys_value, sells_value, total_value, min_value)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                       ON CONFLICT (symbol, ts) DO NOTHING''',
                    [
                        (
                            b['symbol'],
                            _ts(b['time']),
                            b['count'],
                            b['buysCount'],
                            b['sellsCount'],
                            b['buysValue'],
                            b['sellsValue'],
                            b['totalValue'],
                            b['minValue'],
                        )
                        for b in rows
                    ]
                )
        except Exception as e:
            logger.error("Liquidation bucket flush failed (%s rows): %s", len(rows), e)

    async def flush_all(self):
        await self.flush_analysis()
        await self.flush_liquidations()

    async def auto_flush_loop(self):
        self.running = True
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.flush_interval)
                except asyncio.CancelledError:
                    break
                await self.flush_all()
        finally:
            await self.flush_all()

    async def start(self):
        await self.initialize()
        if self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop())

    async def stop(self):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        await self.close()
