import asyncio
import sys

sys.path.insert(0, '.')

from api.alerts import AlertWebhook, TradeNotifier, format_trade_message
from ledger.models import Adjustment, AdjustmentType, Position, PositionMeta, TakeProfit
from tests.fakes import T0_MS


def _position(**kwargs):
    defaults = dict(
        symbol='ETHUSDT',
        side='LONG',
        entry_price=2000.0,
        size=200.0,
        opened_at=T0_MS,
        id='abc123',
        stop_price=1960.0,
        take_profits=[TakeProfit(price=2040.0, size_pct=50.0, filled=True), TakeProfit(price=2080.0, size_pct=50.0)],
        meta=PositionMeta(leverage=10),
    )
    defaults.update(kwargs)
    return Position(**defaults)


def test_open_message_lists_levels_and_link():
    text = format_trade_message(_position(), 'OPEN', frontend_url='https://dash.example/')
    lines = text.split('\n')
    assert lines[0] == '*ETHUSDT* OPENED (LONG)'
    assert 'Leverage: 10x' in lines[1]
    assert 'SL: 1960' in text
    assert 'TP1: 2040 (50.0%) filled' in text
    assert 'TP2: 2080 (50.0%)' in text
    assert lines[-1] == 'https://dash.example/positions?pos=abc123'


def test_closed_message_marks_trailed_stop():
    position = _position(
        final_pnl=12.5,
        closed_by='SL',
        closed_at=T0_MS + 60_000,
        adjustments=[Adjustment(type=AdjustmentType.SL_UPDATE, ts=T0_MS, price=1990.0, reason='TRAIL')],
    )
    text = format_trade_message(position, 'CLOSED')
    assert text.startswith('[WIN] *ETHUSDT* CLOSED (SL (trail))')
    assert 'PnL: 12.5000 USDT' in text
    assert 'positions?pos=' not in text


def test_closed_message_for_a_loss():
    text = format_trade_message(_position(final_pnl=-3.0, closed_by='DESYNC'), 'CLOSED')
    assert text.startswith('[LOSS] *ETHUSDT* CLOSED (DESYNC)')


def test_unconfigured_channels_stay_quiet():
    async def _run():
        notifier = TradeNotifier(token='', chat_id='', frontend_url='')
        assert notifier.enabled is False
        assert await notifier.notify_trade(_position(), 'OPEN') is False

        webhook = AlertWebhook(url='https://your-webhook-url')
        assert webhook.enabled is False
        await webhook.desync_alert('ETHUSDT', 'TP')

    asyncio.run(_run())
