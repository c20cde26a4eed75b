import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ledger.models import MAX_ADJUSTMENTS, AdjustmentType, Position, PositionStatus, TakeProfit
from ledger.reconcile import compute_final_from_trades, mark_tp_fills
from tests.fakes import FakeClock, RecordingNotifier, make_exchange, make_history, open_live


def _sl_updates(position):
    return [a for a in position.adjustments if a.type == AdjustmentType.SL_UPDATE]


def test_open_position_returns_existing_record():
    async def _run():
        history = make_history()
        first = await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=200.0, stop_price=1960.0)
        second = await history.open_position('ETHUSDT', 'SHORT', entry_price=2100.0, size=50.0)
        assert second.id == first.id
        assert second.side == 'LONG'
        assert len(await history.list_open_positions()) == 1

        assert first.initial_stop_price == 1960.0
        assert first.adjustments[0].type == AdjustmentType.OPEN
        assert first.executions[0].qty == pytest.approx(0.1)

    asyncio.run(_run())


def test_stop_updates_coalesce_inside_window():
    async def _run():
        clock = FakeClock()
        history = make_history(clock)
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=200.0, stop_price=1950.0)

        await history.update_stop_price('ETHUSDT', 1960.0, 'TRAIL')
        clock.advance(10)
        position = await history.update_stop_price('ETHUSDT', 1970.0, 'TRAIL')
        assert len(_sl_updates(position)) == 1
        assert position.adjustments[-1].price == 1970.0

        clock.advance(31)
        position = await history.update_stop_price('ETHUSDT', 1990.0, 'TRAIL')
        assert len(_sl_updates(position)) == 2

        # old but tiny move still folds into the previous entry
        clock.advance(40)
        position = await history.update_stop_price('ETHUSDT', 1990.5, 'BREAKEVEN')
        assert len(_sl_updates(position)) == 2
        assert position.adjustments[-1].price == 1990.5
        assert position.adjustments[-1].reason == 'BREAKEVEN'
        assert position.stop_price == 1990.5
        assert position.initial_stop_price == 1950.0

        updated_at = position.updated_at
        clock.advance(1)
        same = await history.update_stop_price('ETHUSDT', 1990.5, 'TRAIL')
        assert same.updated_at == updated_at

    asyncio.run(_run())


def test_adjustments_are_capped():
    async def _run():
        history = make_history()
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=200.0)
        for i in range(25):
            await history.adjust_position('ETHUSDT', AdjustmentType.SL_UPDATE, price=1900.0 + i, reason=f"r{i}")
        position = await history.get_open_position('ETHUSDT')
        assert len(position.adjustments) == MAX_ADJUSTMENTS
        assert position.adjustments[0].reason == 'r5'
        assert position.adjustments[-1].reason == 'r24'

    asyncio.run(_run())


def test_add_and_fill_adjustments_update_the_record():
    async def _run():
        history = make_history()
        await history.open_position('ETHUSDT', 'LONG', entry_price=2000.0, size=200.0)

        position = await history.add_to_position('ETHUSDT', 0.1, 1900.0, fee=0.05)
        assert position.entry_price == pytest.approx(1950.0)
        assert position.size == pytest.approx(390.0)
        assert len(position.adds) == 1
        assert position.fees == pytest.approx(0.05)

        position = await history.adjust_position('ETHUSDT', AdjustmentType.TP_HIT, price=2050.0, size=0.1, reason='TP')
        assert position.realized_pnl == pytest.approx(10.0)
        assert position.status == PositionStatus.OPEN
        assert position.executions[-1].kind == 'TP'

        closed = await history.close_position_history('ETHUSDT', 'MANUAL')
        assert closed.final_pnl == pytest.approx(10.0)
        assert closed.closed_by == 'MANUAL'
        assert await history.close_position_history('ETHUSDT', 'MANUAL') is None
        assert await history.add_to_position('ETHUSDT', 0.1, 1900.0) is None

    asyncio.run(_run())


def test_final_pnl_from_trades_subtracts_commission():
    trades = [
        {'realizedPnl': '30', 'commission': '0.5', 'time': 10},
        {'realizedPnl': '-5', 'commission': '0.25', 'time': 20},
    ]
    result = compute_final_from_trades(trades)
    assert result['finalPnl'] == pytest.approx(24.25)
    assert result['fees'] == pytest.approx(0.75)
    assert result['closedAt'] == 20


def test_mark_tp_fills_hints():
    long_pos = Position(
        symbol='ETHUSDT',
        side='LONG',
        entry_price=2000.0,
        size=2000.0,
        opened_at=0,
        take_profits=[TakeProfit(price=2050.0, size_pct=50.0), TakeProfit(price=2100.0, size_pct=50.0)],
    )
    trades = [
        {'side': 'SELL', 'price': '2050', 'qty': '0.5', 'time': 1},
        {'side': 'SELL', 'price': '2100', 'qty': '0.5', 'time': 2},
    ]
    levels, hint = mark_tp_fills(long_pos, trades)
    assert [tp.filled for tp in levels] == [True, True]
    assert hint == 'TP'

    short_pos = Position(
        symbol='ETHUSDT',
        side='SHORT',
        entry_price=2000.0,
        size=2000.0,
        opened_at=0,
        stop_price=2050.0,
        take_profits=[TakeProfit(price=1950.0, size_pct=100.0)],
    )
    levels, hint = mark_tp_fills(short_pos, [{'side': 'BUY', 'price': '2050', 'qty': '1', 'time': 1}])
    assert [tp.filled for tp in levels] == [False]
    assert hint == 'SL'


def test_reconcile_closes_flat_positions_as_desync():
    async def _run():
        clock = FakeClock()
        transport, gateway = make_exchange(symbols=('ETHUSDT', 'BTCUSDT'), clock=clock)
        history = make_history(clock)
        notifier = RecordingNotifier()

        eth = await history.open_position(
            'ETHUSDT',
            'LONG',
            entry_price=2000.0,
            size=2000.0,
            stop_price=1900.0,
            take_profits=[{'price': 2050.0, 'sizePct': 100}],
        )
        transport.trades.append({
            'symbol': 'ETHUSDT',
            'side': 'SELL',
            'price': '2050',
            'qty': '1.0',
            'realizedPnl': '50',
            'commission': '1',
            'time': eth.opened_at + 1000,
        })
        await open_live(transport, gateway, 'BTCUSDT', 'LONG', 0.01, 30000.0)
        await history.open_position('BTCUSDT', 'LONG', entry_price=30000.0, size=300.0)
        clock.advance(5)

        closed = await history.reconcile_positions(gateway, notifier, lookback_buffer_ms=60_000)

        assert [p.symbol for p in closed] == ['ETHUSDT']
        result = closed[0]
        assert result.closed_by == 'DESYNC'
        assert result.final_pnl == pytest.approx(49.0)
        assert result.adjustments[-1].reason == 'DESYNC:TP'
        assert result.take_profits[0].filled is True
        assert notifier.actions() == ['CLOSED']
        assert await history.get_open_position('BTCUSDT') is not None

    asyncio.run(_run())
