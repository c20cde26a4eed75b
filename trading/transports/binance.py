import asyncio
from typing import Any, Dict, List, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient

from trading.execution_types import OrderTicket, PositionRisk, SymbolFilters


__all__ = ["BinanceTransport", "BinanceAPIError"]


class BinanceTransport:
    """Thin adapter around Binance USDⓈ-M REST with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest: Optional[BinanceRESTClient] = rest
        self._lock = asyncio.Lock()

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    @property
    def has_credentials(self) -> bool:
        return self._client().has_credentials

    async def fetch_exchange_info(self) -> Dict[str, SymbolFilters]:
        data = await self._client().get("/fapi/v1/exchangeInfo")
        if not isinstance(data, dict):
            return {}
        result: Dict[str, SymbolFilters] = {}
        for payload in data.get("symbols") or []:
            filters = SymbolFilters.from_payload(payload)
            if filters.symbol:
                result[filters.symbol] = filters
        return result

    async def fetch_position_risk(self) -> List[PositionRisk]:
        data = await self._client().get("/fapi/v2/positionRisk", signed=True)
        if not isinstance(data, list):
            return []
        return [PositionRisk.from_payload(item) for item in data if isinstance(item, dict)]

    async def fetch_open_orders(self, symbol: str) -> List[OrderTicket]:
        payload = await self._client().get(
            "/fapi/v1/openOrders",
            params={"symbol": symbol},
            signed=True,
        )
        if not isinstance(payload, list):
            return []
        return [OrderTicket.from_payload(item) for item in payload if isinstance(item, dict)]

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        stop_price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> Optional[OrderTicket]:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type,
            "quantity": _fmt(quantity),
            "newOrderRespType": "RESULT",
        }
        if stop_price is not None:
            params["stopPrice"] = _fmt(stop_price)
            params["workingType"] = "MARK_PRICE"
        if reduce_only:
            params["reduceOnly"] = "true"
        data = await self._client().post("/fapi/v1/order", params=params, signed=True)
        if not isinstance(data, dict):
            return None
        return OrderTicket.from_payload(data)

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> None:
        if order_id is None and not client_order_id:
            raise ValueError("Either order_id or client_order_id must be provided")
        params: Dict[str, Any] = {"symbol": symbol}
        if order_id is not None:
            params["orderId"] = order_id
        if client_order_id:
            params["origClientOrderId"] = client_order_id
        await self._client().delete("/fapi/v1/order", params=params, signed=True)

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._client().delete("/fapi/v1/allOpenOrders", params={"symbol": symbol}, signed=True)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._client().post(
            "/fapi/v1/leverage",
            params={"symbol": symbol, "leverage": int(leverage)},
            signed=True,
        )

    async def fetch_income(
        self,
        income_type: str = "REALIZED_PNL",
        limit: int = 100,
        start_time: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        data = await self._client().get(
            "/fapi/v1/income",
            params={"incomeType": income_type, "limit": limit, "startTime": start_time},
            signed=True,
        )
        return data if isinstance(data, list) else []

    async def fetch_user_trades(
        self,
        symbol: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        data = await self._client().get(
            "/fapi/v1/userTrades",
            params={"symbol": symbol, "startTime": start_time, "endTime": end_time},
            signed=True,
        )
        return data if isinstance(data, list) else []

    async def fetch_premium_index(self, symbol: str) -> Optional[Dict[str, Any]]:
        data = await self._client().get("/fapi/v1/premiumIndex", params={"symbol": symbol})
        return data if isinstance(data, dict) else None

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None


def _fmt(value: float) -> str:
    # avoid scientific notation for small steps
    text = f"{value:.10f}".rstrip("0").rstrip(".")
    return text or "0"
