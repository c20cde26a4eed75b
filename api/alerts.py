import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


def _configured(value: Optional[str], placeholder: str) -> bool:
    return bool(value) and placeholder not in str(value)


class AlertWebhook:
    """Operational alerts (desync, stream loss) posted as JSON to a webhook."""

    def __init__(self, url: Optional[str] = None):
        monitoring_cfg = config.get('monitoring', {}) or {}
        url = url if url is not None else monitoring_cfg.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if _configured(url, 'your-webhook-url'):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': int(time.time() * 1000),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def desync_alert(self, symbol: str, hint: str):
        await self.send_alert(
            'desync',
            f'{symbol} closed locally after exchange showed it flat ({hint})',
            'critical',
            {'symbol': symbol, 'hint': hint}
        )

    async def stream_lost_alert(self, stream: str):
        await self.send_alert(
            'stream_lost',
            f'{stream} disconnected; reconnecting',
            'warning',
            {'stream': stream}
        )


def _fmt_price(value: Any) -> str:
    if isinstance(value, (int, float)):
        return f"{value:g}"
    return "-"


def _fmt_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_trade_message(position, action: str = 'UPDATE', frontend_url: Optional[str] = None) -> str:
    """Markdown text for a position OPEN/CLOSED/UPDATE notification."""
    doc = position.to_dict() if hasattr(position, 'to_dict') else dict(position or {})
    symbol = doc.get('symbol') or 'UNKNOWN'
    side = doc.get('side') or 'UNKNOWN'
    entry = doc.get('entryPrice')
    stop = doc.get('stopPrice')
    leverage = (doc.get('meta') or {}).get('leverage')

    if action == 'CLOSED':
        pnl = float(doc.get('finalPnl') or doc.get('realizedPnl') or 0)
        mark = 'WIN' if pnl > 0 else 'LOSS' if pnl < 0 else 'FLAT'
        reason = doc.get('closedBy') or 'CLOSED'
        trailed = any(
            adj.get('type') == 'SL_UPDATE' and adj.get('reason') in ('TRAIL', 'BREAKEVEN')
            for adj in doc.get('adjustments') or []
        )
        if reason == 'SL' and trailed:
            reason = 'SL (trail)'
        header = f"[{mark}] *{symbol}* CLOSED ({reason})"
    elif action == 'OPEN':
        header = f"*{symbol}* OPENED ({side})"
    else:
        header = f"*{symbol}* {action} ({side})"

    lines = [
        header,
        f"Side: {side}  Leverage: {leverage or '-'}x",
        f"Entry: {_fmt_price(entry)}  Size: {_fmt_price(doc.get('size'))} USD",
        f"SL: {_fmt_price(stop)}",
    ]
    for idx, tp in enumerate(doc.get('takeProfits') or [], start=1):
        flag = " filled" if tp.get('filled') else ""
        lines.append(f"TP{idx}: {_fmt_price(tp.get('price'))} ({tp.get('sizePct')}%){flag}")
    lines.append(f"Opened: {_fmt_ts(doc.get('openedAt'))}")
    if action == 'CLOSED':
        lines.append(f"Closed: {_fmt_ts(doc.get('closedAt'))}")
        lines.append(f"PnL: {float(doc.get('finalPnl') or 0):.4f} USDT")
    if frontend_url and doc.get('id'):
        lines.append(f"{frontend_url.rstrip('/')}/positions?pos={doc['id']}")
    return "\n".join(lines)


class TradeNotifier:
    """Trade notifications through a Telegram ``sendMessage`` compatible endpoint."""

    def __init__(
        self,
        token: Optional[str] = None,
        chat_id: Optional[str] = None,
        frontend_url: Optional[str] = None,
        api_base: str = TELEGRAM_API,
    ):
        monitoring_cfg = config.get('monitoring', {}) or {}
        self.token = token if token is not None else monitoring_cfg.get('telegram_token')
        self.chat_id = chat_id if chat_id is not None else monitoring_cfg.get('telegram_chat_id')
        self.frontend_url = frontend_url if frontend_url is not None else monitoring_cfg.get('frontend_url')
        self.api_base = api_base.rstrip('/')
        self.enabled = bool(self.token and self.chat_id)

    async def send_text(self, text: str) -> bool:
        if not self.enabled:
            logger.info("[Notify] %s", text.replace("\n", " | "))
            return False
        url = f"{self.api_base}/bot{self.token}/sendMessage"
        payload = {
            'chat_id': self.chat_id,
            'text': text,
            'parse_mode': 'Markdown',
            'disable_web_page_preview': True,
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=5)) as response:
                    if response.status != 200:
                        logger.error("[Notify] sendMessage failed with status %s", response.status)
                        return False
        except Exception as e:
            logger.error("[Notify] sendMessage error: %s", e)
            return False
        return True

    async def notify_trade(self, position, action: str = 'UPDATE') -> bool:
        try:
            text = format_trade_message(position, action, self.frontend_url)
        except Exception as e:
            logger.error("[Notify] could not format %s notification: %s", action, e)
            return False
        return await self.send_text(text)


alert_webhook = AlertWebhook()
