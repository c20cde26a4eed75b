import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from tests.fakes import make_exchange, make_snapshot, make_strategy
from trading.executor import TradeExecutor


def test_execute_places_entry_stop_and_take_profits():
    async def _run():
        transport, gateway = make_exchange()
        executor = TradeExecutor(gateway, {})

        result = await executor.execute('ETHUSDT', make_strategy(), make_snapshot(), 'LONG', 2000.0)

        assert result is not None
        assert result.entry_price == 2000.0
        assert result.qty == pytest.approx(0.1)
        assert result.size_usd == pytest.approx(200.0)
        # 20% of 20$ margin over 0.1 qty is a 40$ stop distance
        assert result.stop_price == pytest.approx(1960.0)
        assert [tp['price'] for tp in result.take_profits] == pytest.approx([2040.0, 2080.0])
        assert sum(tp['sizePct'] for tp in result.take_profits) == pytest.approx(100.0)
        assert result.stop_order_id is not None
        assert len(result.tp_order_ids) == 2
        assert result.realigned is False
        assert len(list(transport.open_order_ids('ETHUSDT'))) == 3
        assert await gateway.get_position_amount('ETHUSDT') == pytest.approx(0.1)

        doc = result.to_dict()
        assert doc['size'] == pytest.approx(200.0)
        assert doc['orderIds']['stop'] == result.stop_order_id

    asyncio.run(_run())


def test_execute_aborts_without_filters():
    async def _run():
        transport, gateway = make_exchange(with_filters=False)
        result = await TradeExecutor(gateway, {}).execute('ETHUSDT', make_strategy(), make_snapshot(), 'LONG', 2000.0)
        assert result is None
        assert not any(call.startswith('place:') for call in transport.calls)

    asyncio.run(_run())


def test_execute_aborts_when_quantity_rounds_to_zero():
    async def _run():
        transport, gateway = make_exchange()
        strategy = make_strategy({'capital': {'account': 1}})
        result = await TradeExecutor(gateway, {}).execute('ETHUSDT', strategy, make_snapshot(), 'LONG', 2000.0)
        assert result is None
        assert not any(call.startswith('place:') for call in transport.calls)

    asyncio.run(_run())


def test_missing_stop_falls_back_to_default_percent():
    async def _run():
        transport, gateway = make_exchange()
        strategy = make_strategy({'exits': {'sl': {'type': 'atr', 'hardPct': None}}})
        snapshot = make_snapshot(modules={})

        result = await TradeExecutor(gateway, {'default_stop_pct': 5}).execute(
            'ETHUSDT', strategy, snapshot, 'LONG', 2000.0
        )
        assert result.stop_price == pytest.approx(1900.0)

    asyncio.run(_run())


def test_short_entry_mirrors_levels():
    async def _run():
        transport, gateway = make_exchange()
        result = await TradeExecutor(gateway, {}).execute('ETHUSDT', make_strategy(), make_snapshot(), 'SHORT', 2000.0)
        assert result.stop_price == pytest.approx(2040.0)
        assert [tp['price'] for tp in result.take_profits] == pytest.approx([1960.0, 1920.0])
        assert await gateway.get_position_amount('ETHUSDT') == pytest.approx(-0.1)

    asyncio.run(_run())


def test_slippage_realigns_stop_and_take_profits():
    async def _run():
        transport, gateway = make_exchange()
        # the market order fills 0.5% above the price the plan was built on
        transport.set_mark('ETHUSDT', 2010.0)
        executor = TradeExecutor(gateway, {'realign_slippage_pct': 0.05})

        result = await executor.execute('ETHUSDT', make_strategy(), make_snapshot(), 'LONG', 2000.0)

        assert result.realigned is True
        assert result.entry_price == pytest.approx(2010.0)
        assert result.stop_price == pytest.approx(1970.0)
        prices = [tp['price'] for tp in result.take_profits]
        assert prices[0] == pytest.approx(2050.2, abs=0.02)
        assert prices[1] == pytest.approx(2090.4, abs=0.02)
        assert len(list(transport.open_order_ids('ETHUSDT'))) == 3

    asyncio.run(_run())
