"""Async facade over the python-binance REST client.

python-binance's :class:`~binance.client.Client` is blocking, so every call is
pushed onto a worker thread with :func:`asyncio.to_thread`.  Callers never
use this module directly during normal operation; requests are routed through
:meth:`market_stream.BinanceStreamManager.request`, which admits them via the
rate-limited queue using the weights in :data:`REQUEST_WEIGHTS`.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from binance.client import Client

from log_utils import setup_logger

logger = setup_logger(__name__)

__all__ = [
    "REQUEST_WEIGHTS",
    "BinanceRestClient",
    "SymbolRules",
    "parse_exchange_info",
]

# Exchange request weights for the calls the engine makes.
REQUEST_WEIGHTS: Dict[str, int] = {
    "klines": 2,
    "depth": 5,
    "exchange_info": 20,
    "listen_key": 2,
}


@dataclass(frozen=True)
class SymbolRules:
    """Trading rules for a single symbol taken from exchange metadata."""

    symbol: str
    status: str
    base_asset: str
    quote_asset: str
    tick_size: Optional[float] = None
    step_size: Optional[float] = None

    @property
    def is_trading(self) -> bool:
        return self.status.upper() == "TRADING"


def _filter_value(filters: Iterable[Mapping[str, Any]], kind: str, key: str) -> Optional[float]:
    for item in filters:
        if item.get("filterType") == kind:
            try:
                value = float(item.get(key))
            except (TypeError, ValueError):
                return None
            return value if value > 0 else None
    return None


def parse_exchange_info(payload: Mapping[str, Any]) -> Dict[str, SymbolRules]:
    """Reduce an ``exchangeInfo`` payload to per-symbol :class:`SymbolRules`."""

    rules: Dict[str, SymbolRules] = {}
    for entry in payload.get("symbols") or []:
        symbol = str(entry.get("symbol", "")).upper()
        if not symbol:
            continue
        filters = entry.get("filters") or []
        rules[symbol] = SymbolRules(
            symbol=symbol,
            status=str(entry.get("status", "")),
            base_asset=str(entry.get("baseAsset", "")),
            quote_asset=str(entry.get("quoteAsset", "")),
            tick_size=_filter_value(filters, "PRICE_FILTER", "tickSize"),
            step_size=_filter_value(filters, "LOT_SIZE", "stepSize"),
        )
    return rules


class BinanceRestClient:
    """Thin async wrapper that lazily builds a python-binance client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        client: Optional[Client] = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else os.getenv("BINANCE_API_KEY")
        self._api_secret = api_secret if api_secret is not None else os.getenv("BINANCE_API_SECRET")
        self._client = client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Sequence[Any]]:
        client = await self._get_client()
        return await asyncio.to_thread(
            client.get_klines, symbol=symbol.upper(), interval=interval, limit=int(limit)
        )

    async def get_order_book(self, symbol: str, limit: int = 20) -> Dict[str, Any]:
        client = await self._get_client()
        return await asyncio.to_thread(client.get_order_book, symbol=symbol.upper(), limit=int(limit))

    async def get_exchange_info(self) -> Dict[str, Any]:
        client = await self._get_client()
        return await asyncio.to_thread(client.get_exchange_info)

    async def create_listen_key(self) -> str:
        client = await self._get_client()
        return await asyncio.to_thread(client.stream_get_listen_key)

    async def keep_alive_listen_key(self, listen_key: str) -> None:
        client = await self._get_client()
        await asyncio.to_thread(client.stream_keepalive, listen_key)

    async def close_listen_key(self, listen_key: str) -> None:
        client = await self._get_client()
        await asyncio.to_thread(client.stream_close, listen_key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _get_client(self) -> Client:
        if self._client is None:
            # Client() pings the exchange on construction.
            if self._api_key and self._api_secret:
                self._client = await asyncio.to_thread(Client, self._api_key, self._api_secret)
            else:
                self._client = await asyncio.to_thread(Client)
            logger.info("Binance REST client initialised")
        return self._client
