import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from api.metrics import metrics
from monitoring.async_utils import run_tasks_with_cleanup
from .binance_rest import BinanceAPIError, BinanceRESTClient


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class ListenKeyExpired(Exception):
    pass


class UserDataStream:
    """Futures user-data stream: listenKey lifecycle plus a reconnecting reader."""

    def __init__(
        self,
        handler: MessageHandler,
        rest: Optional[BinanceRESTClient] = None,
        ws_base: str = 'wss://fstream.binance.com',
        reconnect_backoff: Optional[List[float]] = None,
        listen_key_refresh_s: float = 1500,
        stream_stale_s: float = 30,
        on_lost: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.handler = handler
        self._rest = rest or BinanceRESTClient()
        self.ws_base = ws_base.rstrip('/')
        self.reconnect_backoff = reconnect_backoff or [0.5, 1, 2, 4, 5]
        self.listen_key_refresh_s = listen_key_refresh_s
        self.stream_stale_s = stream_stale_s
        self.on_lost = on_lost
        self.running = False
        self._listen_key: Optional[str] = None
        self._listen_key_last_refresh = 0.0

    async def _ensure_listen_key(self, keepalive: bool = False):
        now = time.time()
        try:
            if not self._listen_key:
                data = await self._rest.post("/fapi/v1/listenKey")
                if isinstance(data, dict):
                    self._listen_key = data.get("listenKey")
                    self._listen_key_last_refresh = now
                    logger.info("Obtained listenKey for user data stream")
            elif keepalive or (now - self._listen_key_last_refresh) >= self.listen_key_refresh_s:
                await self._rest.put("/fapi/v1/listenKey", params={"listenKey": self._listen_key})
                self._listen_key_last_refresh = now
                logger.debug("listenKey refreshed")
        except BinanceAPIError as e:
            logger.error("listenKey error: %s", e)
            if e.code == -1125:
                # key expired on the exchange side
                self._listen_key = None
        except Exception as e:
            logger.error("listenKey error: %s", e)

    async def _handle_reconnect(self, backoff_index: int):
        backoff_index = min(backoff_index, len(self.reconnect_backoff) - 1)
        delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        metrics.record_reconnect('user_data')
        logger.info("User stream reconnecting in %.1fs", delay)
        await asyncio.sleep(delay)

    async def _dispatch(self, raw: str):
        data = json.loads(raw)
        event = data.get("data") if isinstance(data, dict) and "data" in data else data
        if not isinstance(event, dict):
            return
        if event.get("e") == "listenKeyExpired":
            logger.warning("listenKey expired; requesting a new one")
            raise ListenKeyExpired(self._listen_key)
        event_ts = event.get("E")
        if event_ts:
            metrics.update_stream_lag('user_data', max(0.0, time.time() - int(event_ts) / 1000))
        try:
            await self.handler(event)
        except Exception:
            logger.exception("User stream handler failed for %s", event.get("e"))

    async def subscribe(self):
        backoff_index = 0
        while self.running:
            await self._ensure_listen_key()
            if not self._listen_key:
                await self._handle_reconnect(backoff_index)
                backoff_index += 1
                continue
            url = f"{self.ws_base}/ws/{self._listen_key}"
            try:
                async with websockets.connect(url, ping_interval=None) as ws:
                    logger.info("User data stream connected")
                    backoff_index = 0
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_stale_s)
                        except asyncio.TimeoutError:
                            # user stream is quiet without activity; keep the key warm
                            await self._ensure_listen_key()
                            continue
                        await self._dispatch(raw)
            except asyncio.CancelledError:
                break
            except ListenKeyExpired:
                self._listen_key = None
            except Exception as e:
                logger.error("User stream error: %s", e)
                if self.on_lost is not None:
                    await self.on_lost("user_stream_lost")
            if not self.running:
                break
            await self._handle_reconnect(backoff_index)
            backoff_index += 1

    async def _keepalive_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.listen_key_refresh_s)
                if self.running:
                    await self._ensure_listen_key(keepalive=True)
            except asyncio.CancelledError:
                break

    async def start(self):
        if not self._rest.has_credentials:
            logger.warning("No API credentials; user data stream disabled")
            return
        self.running = True
        tasks = [
            asyncio.create_task(self.subscribe()),
            asyncio.create_task(self._keepalive_loop()),
        ]
        await run_tasks_with_cleanup(tasks, cleanup=self._rest.close)

    async def stop(self):
        self.running = False
        await self._rest.close()
