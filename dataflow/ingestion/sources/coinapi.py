"""
CoinAPI Historical Data Source

Pages trade and quote history out of the CoinAPI REST API:
- GET /v1/trades/{symbol_id}/history
- GET /v1/quotes/{symbol_id}/history
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import httpx

from dataflow.ingestion.sources.base import DataSourceError, ResumeBoundary
from schemas.market_data import DataPoint, QuoteTick, TickType, TradeTick

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://rest.coinapi.io"

HISTORY_PATHS = {
    TickType.TRADE: "trades",
    TickType.QUOTE: "quotes",
}

# CoinAPI sends 7 fractional digits; datetime keeps 6
_FRACTION = re.compile(r"\.(\d{6})\d*")


def symbol_id(exchange: str, ticker: str) -> str:
    """
    Build a CoinAPI spot symbol id from an exchange and a BASE_QUOTE ticker.

    Example: symbol_id("binance", "eth_usdt") -> "BINANCE_SPOT_ETH_USDT"
    """
    if "_" not in ticker:
        raise ValueError(f"Ticker must look like BASE_QUOTE, got {ticker!r}")
    return f"{exchange.upper()}_SPOT_{ticker.upper()}"


def parse_time(value: str) -> datetime:
    """Parse a CoinAPI timestamp (e.g. 2019-01-01T00:00:02.0810000Z) to UTC"""
    value = _FRACTION.sub(lambda m: "." + m.group(1), value.replace("Z", "+00:00"))
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_trade(symbol: str, item: Dict) -> TradeTick:
    return TradeTick(
        symbol=symbol,
        time=parse_time(item["time_exchange"]),
        price=Decimal(str(item["price"])),
        size=Decimal(str(item["size"])),
        received_time=parse_time(item["time_coinapi"]) if item.get("time_coinapi") else None,
    )


def parse_quote(symbol: str, item: Dict) -> QuoteTick:
    return QuoteTick(
        symbol=symbol,
        time=parse_time(item["time_exchange"]),
        bid_price=Decimal(str(item.get("bid_price") or 0)),
        bid_size=Decimal(str(item.get("bid_size") or 0)),
        ask_price=Decimal(str(item.get("ask_price") or 0)),
        ask_size=Decimal(str(item.get("ask_size") or 0)),
        received_time=parse_time(item["time_coinapi"]) if item.get("time_coinapi") else None,
    )


PARSERS = {
    TickType.TRADE: parse_trade,
    TickType.QUOTE: parse_quote,
}


class CoinApiSource:
    """
    Paged trade/quote history for one CoinAPI symbol.

    Example usage:
        async with httpx.AsyncClient(timeout=30.0) as client:
            source = CoinApiSource(api_key, "BINANCE_SPOT_ETH_USDT", "ETHUSDT", client=client)
            ticks = await source.fetch(TickType.TRADE, day_start, 1000, end=day_end)
    """

    def __init__(
        self,
        api_key: str,
        symbol_id: str,
        symbol: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ):
        self.symbol_id = symbol_id
        self.symbol = symbol
        self.base_url = base_url.rstrip("/")
        self._headers = {"X-CoinAPI-Key": api_key, "Accept": "application/json"}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._boundary = ResumeBoundary()
        self.requests_made = 0

    async def __aenter__(self) -> "CoinApiSource":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(
        self,
        tick_type: TickType,
        start: datetime,
        max_count: int,
        end: Optional[datetime] = None,
    ) -> List[DataPoint]:
        skip = self._boundary.skip_count(tick_type, start)
        params = {
            "time_start": format_time(start),
            "limit": max_count + skip,
        }
        if end is not None:
            params["time_end"] = format_time(end)

        url = f"{self.base_url}/v1/{HISTORY_PATHS[tick_type]}/{self.symbol_id}/history"

        logger.debug(
            f"[CoinAPI] Requesting {tick_type.value} history for {self.symbol_id} "
            f"from {params['time_start']} (limit {params['limit']})"
        )

        try:
            resp = await self._client.get(url, headers=self._headers, params=params)
        except httpx.HTTPError as e:
            raise DataSourceError(f"CoinAPI request failed for {self.symbol_id}: {e}") from e
        self.requests_made += 1

        if resp.status_code != 200:
            logger.error(
                "CoinAPI %s request failed: status=%s body=%s",
                tick_type.value,
                resp.status_code,
                resp.text[:500],
            )
            raise DataSourceError(
                f"CoinAPI {tick_type.value} request failed: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json(parse_float=Decimal)
            parse = PARSERS[tick_type]
            page = [parse(self.symbol, item) for item in payload]
        except (ValueError, KeyError, TypeError) as e:
            raise DataSourceError(f"Malformed CoinAPI {tick_type.value} response: {e}") from e

        items = self._boundary.filter(tick_type, start, page)[:max_count]
        self._boundary.record(tick_type, items)

        logger.debug(
            f"[CoinAPI] Received {len(page)} {tick_type.value} items for {self.symbol_id} "
            f"({len(page) - len(items)} already seen)"
        )
        return items
