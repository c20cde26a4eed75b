import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ledger.errors import LedgerError
from ledger.models import AdjustmentType, TakeProfit
from tests.fakes import (
    T0_MS,
    FakeClock,
    RecordingNotifier,
    ScriptedGateway,
    make_exchange,
    make_history,
    open_live,
    order_update,
)
from trading.event_processor import OrderEventProcessor
from trading.order_events import OrderEvent


TWO_TPS = [{'price': 2050.0, 'sizePct': 50}, {'price': 2100.0, 'sizePct': 50}]


def test_order_event_parses_user_stream_fields():
    msg = order_update('ETHUSDT', 42, 'TAKE_PROFIT_MARKET', 2050.0, 0.25, cum=0.5, avg=2049.5, fee=0.02)
    event = OrderEvent.from_message(msg)
    assert event.order_id == 42
    assert event.symbol == 'ETHUSDT'
    assert event.status == 'FILLED'
    assert event.is_take_profit and not event.is_stop_loss
    assert event.last_qty == 0.25
    assert event.cum_qty == 0.5
    assert event.avg_price == 2049.5
    assert event.commission == 0.02
    assert event.reduce_only is True
    assert event.dedup_key == f"42:FILLED:0.5:{T0_MS}"

    assert OrderEvent.from_message({'e': 'ACCOUNT_UPDATE'}) is None


def test_take_profit_ladder_closes_with_final_pnl():
    """LONG 1.0 ETHUSDT @ 2000, TPs 2050/2100 at 50/50 -> finalPnl 75."""

    async def _run():
        clock = FakeClock()
        transport, gateway = make_exchange(clock=clock)
        history = make_history(clock)
        notifier = RecordingNotifier()
        processor = OrderEventProcessor(history, gateway, notifier=notifier)
        transport.set_listener(processor.handle_message)

        await open_live(transport, gateway, 'ETHUSDT', 'LONG', 1.0, 2000.0)
        await transport.flush()
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)
        await gateway.place_take_profit('ETHUSDT', 'LONG', 2050.0, 0.5)
        await gateway.place_take_profit('ETHUSDT', 'LONG', 2100.0, 0.5)

        clock.advance(30)
        await transport.on_mark('ETHUSDT', 2050.0)

        position = await history.get_open_position('ETHUSDT')
        assert position is not None
        tp1, tp2 = position.take_profits
        assert tp1.filled is True
        assert tp1.cum == pytest.approx(0.5)
        assert tp1.fills[0].price == 2050.0
        assert tp2.filled is False
        # one of two levels filled moves the stop to break-even
        assert position.stop_price == 2000.0
        assert notifier.actions() == []

        clock.advance(30)
        await transport.on_mark('ETHUSDT', 2100.0)

        assert await history.get_open_position('ETHUSDT') is None
        closed = (await history.get_history('ETHUSDT'))[0]
        assert closed.closed_by == 'TP'
        assert closed.final_pnl == pytest.approx(75.0)
        assert all(tp.filled for tp in closed.take_profits)
        assert notifier.actions() == ['CLOSED']
        assert list(transport.open_order_ids('ETHUSDT')) == []

    asyncio.run(_run())


def test_replaying_the_stream_after_close_changes_nothing():
    async def _run():
        clock = FakeClock()
        transport, gateway = make_exchange(clock=clock)
        history = make_history(clock)
        notifier = RecordingNotifier()
        processor = OrderEventProcessor(history, gateway, notifier=notifier)
        delivered = []

        async def listener(msg):
            delivered.append(msg)
            await processor.handle_message(msg)

        transport.set_listener(listener)
        await open_live(transport, gateway, 'ETHUSDT', 'LONG', 1.0, 2000.0)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)
        await gateway.place_take_profit('ETHUSDT', 'LONG', 2050.0, 0.5)
        await gateway.place_take_profit('ETHUSDT', 'LONG', 2100.0, 0.5)
        clock.advance(5)
        await transport.on_mark('ETHUSDT', 2050.0)
        clock.advance(5)
        await transport.on_mark('ETHUSDT', 2100.0)

        closed = (await history.get_history('ETHUSDT'))[0]
        before = closed.to_dict()
        assert notifier.actions() == ['CLOSED']

        # same processor: every message is inside the dedup window
        for msg in delivered:
            await processor.handle_message(msg)
        # fresh processor: no dedup memory, but no OPEN record either
        replay = OrderEventProcessor(history, gateway, notifier=notifier)
        for msg in delivered:
            await replay.handle_message(msg)

        after = (await history.get_history('ETHUSDT'))[0].to_dict()
        assert after == before
        assert notifier.actions() == ['CLOSED']
        assert await processor.maybe_finalize_close('ETHUSDT') is False

    asyncio.run(_run())


def test_duplicate_event_is_a_no_op():
    async def _run():
        history = make_history()
        gateway = ScriptedGateway([1.0])
        notifier = RecordingNotifier()
        processor = OrderEventProcessor(history, gateway, notifier=notifier)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)

        msg = order_update('ETHUSDT', 7, 'TAKE_PROFIT_MARKET', 2050.0, 0.5)
        await processor.handle_message(msg)
        first = (await history.get_open_position('ETHUSDT')).to_dict()
        calls = list(gateway.calls)

        await processor.handle_message(msg)
        second = (await history.get_open_position('ETHUSDT')).to_dict()

        assert second == first
        assert gateway.calls == calls
        assert len(second['takeProfits'][0]['fills']) == 1
        hits = [a for a in second['adjustments'] if a['type'] == AdjustmentType.TP_HIT.value]
        assert len(hits) == 1
        assert notifier.sent == []

    asyncio.run(_run())


def test_take_profit_cum_never_regresses():
    async def _run():
        history = make_history()
        processor = OrderEventProcessor(history, ScriptedGateway([1.0]))
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)

        seen = []
        for step, cum in enumerate([0.3, 0.2, 0.5, 0.5]):
            msg = order_update(
                'ETHUSDT', 9, 'TAKE_PROFIT_MARKET', 2050.0, 0.1, cum=cum, ts=T0_MS + step * 1000
            )
            await processor.handle_message(msg)
            level = (await history.get_open_position('ETHUSDT')).take_profits[0]
            assert level.cum >= sum(f.qty for f in level.fills) - 1e-12
            seen.append(level.cum)

        assert seen == sorted(seen)
        assert seen[-1] == pytest.approx(0.5)
        level = (await history.get_open_position('ETHUSDT')).take_profits[0]
        assert sum(f.qty for f in level.fills) == pytest.approx(0.5)

    asyncio.run(_run())


def test_stop_loss_with_leftover_closes_once_flat():
    async def _run():
        history = make_history()
        # leftover 0.4 survives the stop and the forced close attempt, then goes flat
        gateway = ScriptedGateway([0.4, 0.4, 0.0])
        notifier = RecordingNotifier()
        processor = OrderEventProcessor(history, gateway, notifier=notifier)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, stop_price=1950.0)

        await processor.handle_message(order_update('ETHUSDT', 11, 'STOP_MARKET', 1950.0, 0.6))
        position = await history.get_open_position('ETHUSDT')
        assert position is not None
        assert position.adjustments[-1].type == AdjustmentType.SL_HIT
        assert 'close:0.4' in gateway.calls

        await processor.handle_message(
            order_update('ETHUSDT', 12, 'MARKET', 1950.0, 0.4, ts=T0_MS + 500)
        )
        assert await history.get_open_position('ETHUSDT') is None
        closed = (await history.get_history('ETHUSDT'))[0]
        assert closed.closed_by == 'SL'
        assert closed.final_pnl == pytest.approx(-50.0)
        assert notifier.actions() == ['CLOSED']

    asyncio.run(_run())


def test_unreadable_exchange_position_does_not_close():
    async def _run():
        history = make_history()
        processor = OrderEventProcessor(history, ScriptedGateway([None]))
        await history.open_position('ETHUSDT', 'SHORT', entry_price=2000.0, size=2000.0, stop_price=2050.0)

        await processor.handle_message(order_update('ETHUSDT', 21, 'STOP_MARKET', 2050.0, 1.0, side='BUY'))
        assert await history.get_open_position('ETHUSDT') is not None
        assert await processor.maybe_finalize_close('ETHUSDT') is False

    asyncio.run(_run())


def test_orphan_fill_cleans_exchange_only():
    async def _run():
        history = make_history()
        gateway = ScriptedGateway([0.2])
        processor = OrderEventProcessor(history, gateway)

        await processor.handle_message(order_update('ETHUSDT', 31, 'TAKE_PROFIT_MARKET', 2050.0, 0.5))
        assert gateway.calls[0] == 'cancel_all'
        assert 'close:0.2' in gateway.calls
        assert await history.get_history('ETHUSDT') == []

    asyncio.run(_run())


def test_non_fill_statuses_are_ignored():
    async def _run():
        history = make_history()
        gateway = ScriptedGateway([1.0])
        processor = OrderEventProcessor(history, gateway)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)

        await processor.handle_message(order_update('ETHUSDT', 41, 'TAKE_PROFIT_MARKET', 2050.0, 0.0, status='NEW'))
        await processor.handle_message(
            order_update('ETHUSDT', 41, 'TAKE_PROFIT_MARKET', 2050.0, 0.2, status='PARTIALLY_FILLED')
        )
        await processor.handle_message({'e': 'ACCOUNT_UPDATE', 'a': {'m': 'ORDER'}})

        position = await history.get_open_position('ETHUSDT')
        assert not position.take_profits[0].filled
        assert gateway.calls == []

    asyncio.run(_run())


def test_desync_close_drops_pending_stop_context():
    async def _run():
        history = make_history()
        gateway = ScriptedGateway([None])
        processor = OrderEventProcessor(history, gateway)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, stop_price=1950.0)

        # live read fails, so the stop fill leaves a pending close
        await processor.handle_message(order_update('ETHUSDT', 51, 'STOP_MARKET', 1950.0, 1.0))
        assert processor.contexts.get('ETHUSDT').sl == pytest.approx(-50.0)

        _, flat_gateway = make_exchange()
        swept = await history.reconcile_positions(flat_gateway, on_closed=processor.contexts.drop)
        assert [p.closed_by for p in swept] == ['DESYNC']
        assert processor.contexts.snapshot() == {}

        gateway.amounts = [0.0]
        await history.open_position('ETHUSDT', 'LONG', entry_price=3000.0, size=3000.0, stop_price=2900.0)
        await processor.handle_message(order_update('ETHUSDT', 52, 'STOP_MARKET', 2900.0, 1.0, ts=T0_MS + 1000))

        second = next(p for p in await history.get_history('ETHUSDT') if p.entry_price == 3000.0)
        assert second.closed_by == 'SL'
        assert second.final_pnl == pytest.approx(-100.0)

    asyncio.run(_run())


def test_stop_context_of_an_earlier_position_is_replaced():
    async def _run():
        history = make_history()
        gateway = ScriptedGateway([None])
        processor = OrderEventProcessor(history, gateway)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, stop_price=1950.0)
        await processor.handle_message(order_update('ETHUSDT', 53, 'STOP_MARKET', 1950.0, 1.0))
        # record closed outside the event stream, context left behind
        await history.close_position_history('ETHUSDT', 'MANUAL')

        gateway.amounts = [0.0]
        opened = await history.open_position('ETHUSDT', 'LONG', entry_price=3000.0, size=3000.0, stop_price=2900.0)
        await processor.handle_message(order_update('ETHUSDT', 54, 'STOP_MARKET', 2900.0, 1.0, ts=T0_MS + 1000))

        second = next(p for p in await history.get_history('ETHUSDT') if p.id == opened.id)
        assert second.closed_by == 'SL'
        assert second.final_pnl == pytest.approx(-100.0)
        assert processor.contexts.snapshot() == {}

    asyncio.run(_run())


def test_failed_ledger_close_can_be_finalized_later():
    async def _run():
        history = make_history()
        processor = OrderEventProcessor(history, ScriptedGateway([0.0]))
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, stop_price=1950.0)

        close = history.close_position_history
        failures = [LedgerError('database unavailable')]

        async def flaky_close(*args, **kwargs):
            if failures:
                raise failures.pop()
            return await close(*args, **kwargs)

        history.close_position_history = flaky_close
        with pytest.raises(LedgerError):
            await processor.handle_message(order_update('ETHUSDT', 55, 'STOP_MARKET', 1950.0, 1.0))

        assert processor.contexts.get('ETHUSDT').closed is False
        assert await history.get_open_position('ETHUSDT') is not None

        assert await processor.maybe_finalize_close('ETHUSDT') is True
        closed = (await history.get_history('ETHUSDT'))[0]
        assert closed.closed_by == 'SL'
        assert closed.final_pnl == pytest.approx(-50.0)
        assert processor.contexts.get('ETHUSDT') is None

    asyncio.run(_run())


def test_take_profit_off_level_uses_nearest():
    async def _run():
        history = make_history()
        processor = OrderEventProcessor(history, ScriptedGateway([1.0]))
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)

        # 10 away from 2050, outside the 2.0 tolerance at entry 2000
        await processor.handle_message(order_update('ETHUSDT', 61, 'TAKE_PROFIT_MARKET', 2060.0, 0.5))

        position = await history.get_open_position('ETHUSDT')
        tp1, tp2 = position.take_profits
        assert tp1.filled is True
        assert tp1.fills[0].price == 2060.0
        assert tp2.filled is False
        hits = [a for a in position.adjustments if a.type == AdjustmentType.TP_HIT]
        assert [a.reason for a in hits] == ['TP @ 2050.0']

    asyncio.run(_run())


def test_take_profit_beyond_fallback_distance_is_not_recorded():
    async def _run():
        history = make_history()
        processor = OrderEventProcessor(history, ScriptedGateway([1.0]), tp_fallback_max_distance_pct=0.25)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)

        # 0.5% of entry away from the nearest level
        await processor.handle_message(order_update('ETHUSDT', 62, 'TAKE_PROFIT_MARKET', 2060.0, 0.5))

        position = await history.get_open_position('ETHUSDT')
        assert not any(tp.filled for tp in position.take_profits)
        assert all(tp.fills == [] for tp in position.take_profits)
        assert not [a for a in position.adjustments if a.type == AdjustmentType.TP_HIT]

    asyncio.run(_run())


def test_flat_after_first_take_profit_closes_record():
    async def _run():
        history = make_history()
        notifier = RecordingNotifier()
        gateway = ScriptedGateway([0.0])
        processor = OrderEventProcessor(history, gateway, notifier=notifier)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=TWO_TPS)

        await processor.handle_message(order_update('ETHUSDT', 63, 'TAKE_PROFIT_MARKET', 2050.0, 0.5))

        assert await history.get_open_position('ETHUSDT') is None
        closed = (await history.get_history('ETHUSDT'))[0]
        assert closed.closed_by == 'TP'
        assert closed.final_pnl == pytest.approx(25.0)
        assert closed.take_profits[1].filled is False
        assert 'cancel_all' in gateway.calls
        assert notifier.actions() == ['CLOSED']

    asyncio.run(_run())


def test_take_profit_pnl_falls_back_to_the_event():
    async def _run():
        history = make_history()
        processor = OrderEventProcessor(history, ScriptedGateway([0.0]))
        await history.open_position(
            'ETHUSDT', 'LONG', entry_price=2000.0, size=2000.0, take_profits=[{'price': 2050.0, 'sizePct': 100}]
        )
        # cum already at the order quantity, so the fill adds no new qty
        await history.update_take_profits('ETHUSDT', [TakeProfit(price=2050.0, size_pct=100.0, cum=0.5)])

        await processor.handle_message(order_update('ETHUSDT', 64, 'TAKE_PROFIT_MARKET', 2050.0, 0.5, cum=0.5))

        closed = (await history.get_history('ETHUSDT'))[0]
        assert closed.closed_by == 'TP'
        assert closed.take_profits[0].fills == []
        assert closed.final_pnl == pytest.approx(25.0)

    asyncio.run(_run())
