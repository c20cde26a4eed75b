import asyncio
import sys
from types import SimpleNamespace

sys.path.insert(0, '.')

import pytest

from analytics.aggregator import AnalysisStore
from tests.fakes import (
    T0_MS,
    FakeClock,
    RecordingNotifier,
    make_exchange,
    make_history,
    make_mark_hub,
    make_snapshot,
    make_strategy,
    open_live,
)
from trading.cooldown import CooldownHub
from trading.engine import EntryEngine
from trading.executor import TradeExecutor


def _setup(marks=None, with_filters=True):
    clock = FakeClock()
    transport, gateway = make_exchange(clock=clock, with_filters=with_filters)
    history = make_history(clock)
    store = AnalysisStore(depth=10)
    hub = make_mark_hub(clock, {'ETHUSDT': 2000.0} if marks is None else marks)
    cooldown = CooldownHub(gateway)
    notifier = RecordingNotifier()
    engine = EntryEngine(
        history,
        gateway,
        store,
        hub,
        TradeExecutor(gateway, {}),
        cooldown=cooldown,
        notifier=notifier,
        engine_cfg={'check_live_position': True},
        clock=clock,
    )
    return SimpleNamespace(
        clock=clock,
        transport=transport,
        gateway=gateway,
        history=history,
        store=store,
        cooldown=cooldown,
        notifier=notifier,
        hub=hub,
        engine=engine,
    )


async def _feed(store, biases, **kwargs):
    """Add snapshots oldest first."""
    snaps = [make_snapshot(bias=bias, time_ms=T0_MS + i, **kwargs) for i, bias in enumerate(biases)]
    for snap in snaps:
        await store.add(snap)
    return snaps


def test_entry_opens_position_and_notifies():
    async def _run():
        s = _setup()
        snaps = await _feed(s.store, ['LONG', 'LONG', 'LONG'])

        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())

        assert attempt.opened
        position = attempt.position
        assert position.side == 'LONG'
        assert position.entry_price == 2000.0
        assert position.size == pytest.approx(200.0)
        assert position.stop_price == pytest.approx(1960.0)
        assert [tp.price for tp in position.take_profits] == pytest.approx([2040.0, 2080.0])
        assert position.meta.leverage == 10
        assert position.meta.strategy_name == 'test'
        assert position.meta.opened_by == 'BOT'
        assert position.analysis_ref['analysisId'] == snaps[-1].id
        assert s.notifier.actions() == ['OPEN']

        again = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert again.reason == 'active_position'

    asyncio.run(_run())


@pytest.mark.parametrize('biases, reason', [
    (['LONG', 'LONG'], 'insufficient_history'),
    (['LONG', 'SHORT', 'NEUTRAL'], 'neutral_majority'),
    (['LONG', 'LONG', 'SHORT'], 'majority_mismatch'),
])
def test_entry_skips_on_analysis_history(biases, reason):
    async def _run():
        s = _setup()
        await _feed(s.store, biases)
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.reason == reason
        assert not attempt.opened
        assert await s.history.get_open_position('ETHUSDT') is None

    asyncio.run(_run())


def test_entry_skips_on_failing_validator():
    async def _run():
        s = _setup()
        await _feed(s.store, ['LONG'] * 3, scores={'LONG': 50.0, 'SHORT': 20.0})
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.reason == 'min_score'

    asyncio.run(_run())


def test_entry_skips_inside_cooldown():
    async def _run():
        s = _setup()
        await _feed(s.store, ['LONG'] * 3)
        s.cooldown.ingest([{'symbol': 'ETHUSDT', 'time': T0_MS - 5 * 60_000}])
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.reason == 'cooldown'

        s.clock.advance(11 * 60)
        s.hub.apply_tick({'s': 'ETHUSDT', 'p': '2000'})
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.opened

    asyncio.run(_run())


def test_entry_skips_when_exchange_holds_position():
    async def _run():
        s = _setup()
        await _feed(s.store, ['LONG'] * 3)
        await open_live(s.transport, s.gateway, 'ETHUSDT', 'SHORT', 0.05, 2000.0)
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.reason == 'active_position'

    asyncio.run(_run())


def test_entry_skips_without_mark():
    async def _run():
        s = _setup(marks={})
        await _feed(s.store, ['LONG'] * 3)
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.reason == 'no_mark'

    asyncio.run(_run())


def test_entry_reports_execution_failure():
    async def _run():
        s = _setup(with_filters=False)
        await _feed(s.store, ['LONG'] * 3)
        attempt = await s.engine.try_enter('ETHUSDT', make_strategy())
        assert attempt.reason == 'execution_failed'
        assert await s.history.get_open_position('ETHUSDT') is None

    asyncio.run(_run())
