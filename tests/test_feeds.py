import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ingest.liquidations import LiquidationFeed
from ingest.mark_price_hub import MarkPriceHub
from tests.fakes import T0_MS, FakeClock, make_exchange, make_mark_hub
from trading.close_context import TTLCache
from trading.cooldown import CooldownHub
from trading.execution import CachedValue, ExchangeGateway
from trading.execution_types import PositionRisk


# mark price hub

def test_mark_goes_stale_after_threshold():
    clock = FakeClock()
    hub = MarkPriceHub(clock=clock, stale_after_s=7)
    stored = hub.apply_tick({'data': [
        {'e': 'markPriceUpdate', 's': 'ETHUSDT', 'p': '2000.5', 'E': 1},
        {'s': 'BTCUSDT', 'p': '0'},
        'junk',
    ]})

    assert [read.symbol for read in stored] == ['ETHUSDT']
    read = hub.get_mark('ETHUSDT')
    assert read.mark_price == 2000.5
    assert read.stale is False
    assert hub.has_fresh('ETHUSDT')
    assert hub.get_mark('BTCUSDT') is None

    clock.advance(8)
    assert hub.get_mark('ETHUSDT').stale is True
    assert not hub.has_fresh('ETHUSDT')
    assert hub.snapshot()['ETHUSDT']['stale'] is True


def test_waiter_resolves_on_next_tick():
    async def _run():
        hub = MarkPriceHub(clock=FakeClock(), cold_start_timeout_s=1.0)
        waiter = asyncio.create_task(hub.wait_for_mark('ETHUSDT'))
        await asyncio.sleep(0)
        hub.apply_tick([{'s': 'ETHUSDT', 'p': '2001'}])
        read = await waiter
        assert read.mark_price == 2001.0
        assert read.source == 'ws'

    asyncio.run(_run())


def test_cold_start_falls_back_to_rest():
    async def _run():
        fetched = []

        async def fetch(symbol):
            fetched.append(symbol)
            return 1999.5 if symbol == 'ETHUSDT' else None

        hub = make_mark_hub(FakeClock(), {}, rest_fetch=fetch)
        read = await hub.wait_for_mark('ETHUSDT')
        assert read.mark_price == 1999.5
        assert read.source == 'rest-cold-start'
        assert hub.get_mark('ETHUSDT').source == 'rest-cold-start'

        assert await hub.wait_for_mark('BTCUSDT') is None
        assert await hub.wait_for_mark('XRPUSDT', use_rest_fallback=False) is None
        assert fetched == ['ETHUSDT', 'BTCUSDT']

    asyncio.run(_run())


def test_dispatch_survives_failing_listener():
    async def _run():
        hub = MarkPriceHub(clock=FakeClock())
        seen = []

        async def broken(symbol, price):
            raise RuntimeError('boom')

        async def recorder(symbol, price):
            seen.append((symbol, price))

        hub.add_listener(broken)
        hub.add_listener(recorder)
        await hub.dispatch([{'s': 'ETHUSDT', 'p': '2000'}, {'s': 'BTCUSDT', 'p': '30000'}])
        assert seen == [('ETHUSDT', 2000.0), ('BTCUSDT', 30000.0)]

    asyncio.run(_run())


# liquidations

MINUTE = 1_700_000_040_000


def _force_order(side, qty, price, ts, symbol='ETHUSDT'):
    return {
        'e': 'forceOrder',
        'E': ts,
        'o': {'s': symbol, 'S': side, 'q': str(qty), 'z': str(qty), 'p': str(price), 'ap': str(price), 'T': ts},
    }


def test_liquidations_bucket_per_minute():
    feed = LiquidationFeed(['ETHUSDT'], min_value=100)

    assert feed.apply_event(_force_order('BUY', 1, 2000, MINUTE + 5_000)) == []
    assert feed.apply_event({'data': _force_order('SELL', 0.5, 2000, MINUTE + 20_000)}) == []
    # below min value and foreign symbol are ignored
    assert feed.apply_event(_force_order('SELL', 0.01, 2000, MINUTE + 21_000)) == []
    assert feed.apply_event(_force_order('SELL', 1, 30000, MINUTE + 22_000, symbol='BTCUSDT')) == []

    closed = feed.apply_event(_force_order('SELL', 1, 2000, MINUTE + 65_000))
    assert len(closed) == 1
    bucket = closed[0]
    assert bucket['time'] == MINUTE
    assert bucket['count'] == 2
    assert bucket['buysCount'] == 1
    assert bucket['sellsCount'] == 1
    assert bucket['buysValue'] == 2000.0
    assert bucket['sellsValue'] == 1000.0
    assert bucket['totalValue'] == 3000.0
    assert bucket['minValue'] == 1000.0

    # late print for the closed minute
    assert feed.apply_event(_force_order('BUY', 1, 2000, MINUTE + 30_000)) == []

    assert feed.close_elapsed(now_ms=MINUTE + 90_000) == []
    elapsed = feed.close_elapsed(now_ms=MINUTE + 120_001)
    assert [b['time'] for b in elapsed] == [MINUTE + 60_000]
    assert elapsed[0]['sellsValue'] == 2000.0
    assert [b['time'] for b in feed.history('ETHUSDT')] == [MINUTE, MINUTE + 60_000]


def test_liquidation_handler_receives_closed_buckets():
    async def _run():
        received = []

        async def handler(bucket):
            received.append(bucket)

        feed = LiquidationFeed(['ETHUSDT'], handler=handler)
        await feed.dispatch(_force_order('BUY', 1, 2000, MINUTE))
        await feed.dispatch(_force_order('BUY', 1, 2000, MINUTE + 60_000))
        assert [b['time'] for b in received] == [MINUTE]

    asyncio.run(_run())


# cooldown

def test_cooldown_keeps_newest_close_per_symbol():
    transport, gateway = make_exchange()
    hub = CooldownHub(gateway)
    used = hub.ingest([
        {'symbol': 'ETHUSDT', 'time': 100},
        {'symbol': 'ETHUSDT', 'time': 50},
        {'symbol': None, 'time': 1},
        {'symbol': 'BTCUSDT', 'time': 'x'},
    ])
    assert used == 2
    assert hub.last_closed_at('ETHUSDT') == 100
    assert hub.last_closed_at('BTCUSDT') is None
    assert hub.snapshot() == {'ETHUSDT': 100}


def test_cooldown_polls_realized_pnl_income():
    async def _run():
        transport, gateway = make_exchange()
        transport.income.append({'symbol': 'ETHUSDT', 'incomeType': 'REALIZED_PNL', 'income': '5', 'time': T0_MS})
        transport.income.append({'symbol': 'ETHUSDT', 'incomeType': 'FUNDING_FEE', 'income': '1', 'time': T0_MS + 9})
        hub = CooldownHub(gateway)
        await hub.poll_once()
        assert hub.last_closed_at('ETHUSDT') == T0_MS

    asyncio.run(_run())


def test_cooldown_needs_credentials():
    async def _run():
        transport, gateway = make_exchange()
        transport.has_credentials = False
        hub = CooldownHub(gateway)
        assert hub.start() is False
        assert hub.started is False

        transport.has_credentials = True
        assert hub.start() is True
        assert hub.started is True
        await hub.stop()
        assert hub.started is False

    asyncio.run(_run())


# caches

def test_cached_value_shares_inflight_load():
    async def _run():
        clock = FakeClock()
        cache = CachedValue(ttl_s=5, clock=clock)
        loads = []

        async def loader():
            loads.append(1)
            await asyncio.sleep(0.01)
            return len(loads)

        results = await asyncio.gather(*[cache.get(loader) for _ in range(5)])
        assert results == [1] * 5
        assert len(loads) == 1

        assert await cache.get(loader) == 1
        clock.advance(6)
        assert await cache.get(loader) == 2
        cache.invalidate()
        assert await cache.get(loader) == 3

    asyncio.run(_run())


def test_cached_value_failure_reaches_every_waiter():
    async def _run():
        cache = CachedValue(ttl_s=5, clock=FakeClock())
        calls = []

        async def failing():
            calls.append(1)
            await asyncio.sleep(0.01)
            raise RuntimeError('exchange down')

        results = await asyncio.gather(*[cache.get(failing) for _ in range(3)], return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert len(calls) == 1

        async def ok():
            return 'fine'

        assert await cache.get(ok) == 'fine'

    asyncio.run(_run())


def test_ttl_cache_expiry_and_capacity():
    clock = FakeClock()
    cache = TTLCache(ttl_s=10, max_entries=2, clock=clock)

    assert cache.add_if_absent('a') is True
    assert cache.add_if_absent('a') is False
    cache.set('b', 'B')
    cache.set('c', 'C')
    assert len(cache) == 2
    assert 'a' not in cache
    assert cache.get('b') == 'B'

    clock.advance(11)
    assert len(cache) == 0
    assert cache.get('b', 'gone') == 'gone'
    assert cache.pop('missing', 'default') == 'default'


def test_invalidate_during_load_keeps_stale_value_out():
    async def _run():
        cache = CachedValue(ttl_s=5, clock=FakeClock())

        async def slow_old():
            await asyncio.sleep(0.01)
            return 'old'

        async def new():
            return 'new'

        pending = asyncio.create_task(cache.get(slow_old))
        await asyncio.sleep(0)
        cache.invalidate()
        # a miss after invalidate starts its own load instead of joining the old one
        assert await cache.get(new) == 'new'
        assert await pending == 'old'
        assert await cache.get(slow_old) == 'new'

    asyncio.run(_run())


class SlowRiskTransport:
    def __init__(self):
        self.amount = 1.0
        self.calls = 0

    async def fetch_position_risk(self):
        self.calls += 1
        amount = self.amount
        await asyncio.sleep(0.02)
        return [PositionRisk(symbol='ETHUSDT', position_amt=amount)]


def test_fresh_position_read_skips_inflight_fetch():
    async def _run():
        transport = SlowRiskTransport()
        gateway = ExchangeGateway(transport, {'position_risk_ttl_s': 60})

        cached = asyncio.create_task(gateway.get_position('ETHUSDT'))
        await asyncio.sleep(0)
        transport.amount = 0.0

        assert await gateway.get_position_amount('ETHUSDT', fresh=True) == 0.0
        assert (await cached).position_amt == 1.0
        assert transport.calls == 2
        # the older fetch, started before the fresh read, did not repopulate the cache
        assert await gateway.get_position_amount('ETHUSDT', fresh=False) == 0.0
        assert transport.calls == 2

    asyncio.run(_run())
