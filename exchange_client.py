"""Coinbase client: spot prices, historical candles and market orders.

Public endpoints (price, candles) need no credentials. Orders go through the
exchange API and are signed: base64(HMAC-SHA256(base64-decoded secret,
timestamp + METHOD + path + body)).

Candles are fetched in pages of at most ``chunk_limit`` candles. Each page is
retried with exponential backoff; pages are then merged, deduplicated by
candle time and returned oldest first.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import math
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from models import Candle
from price_sources import PriceFetchError

logger = logging.getLogger(__name__)

COINBASE_API_URL = "https://api.coinbase.com/v2"
COINBASE_EXCHANGE_URL = "https://api.exchange.coinbase.com"

ONE_MINUTE = 60
FIVE_MINUTES = 300
FIFTEEN_MINUTES = 900
ONE_HOUR = 3600
SIX_HOURS = 21600
ONE_DAY = 86400
SUPPORTED_GRANULARITIES = (ONE_MINUTE, FIVE_MINUTES, FIFTEEN_MINUTES, ONE_HOUR, SIX_HOURS, ONE_DAY)


class ExchangeError(Exception):
    """Base exchange client error."""


class CandleFetchError(ExchangeError):
    """A candle page could not be fetched after all retries."""


class ExchangeAuthError(ExchangeError):
    """Raised when a signed request is attempted without credentials."""


# --- Granularity helpers ---

def total_candles(start: datetime, end: datetime, granularity: int) -> int:
    return math.ceil((end - start).total_seconds() / granularity)


def required_requests(start: datetime, end: datetime, granularity: int, chunk_limit: int = 300) -> int:
    return math.ceil(total_candles(start, end, granularity) / chunk_limit)


def recommended_granularity(start: datetime, end: datetime) -> int:
    days = (end - start).total_seconds() / 86400
    if days <= 1:
        return ONE_MINUTE
    if days <= 7:
        return FIVE_MINUTES
    if days <= 30:
        return FIFTEEN_MINUTES
    if days <= 90:
        return ONE_HOUR
    if days <= 180:
        return SIX_HOURS
    return ONE_DAY


class CoinbaseClient:
    """Async Coinbase client with paginated, retried candle downloads."""

    def __init__(
        self,
        *,
        api_url: str = COINBASE_API_URL,
        exchange_url: str = COINBASE_EXCHANGE_URL,
        api_key: str = "",
        api_secret: str = "",
        passphrase: str = "",
        timeout_s: float = 10.0,
        chunk_limit: int = 300,
        max_retries: int = 5,
        retry_delay_s: float = 0.5,
        page_delay_s: float = 0.25,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
        clock=time.time,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._exchange_url = exchange_url.rstrip("/")
        self._api_key = api_key.strip()
        self._api_secret = api_secret.strip()
        self._passphrase = passphrase
        self.chunk_limit = chunk_limit
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.page_delay_s = page_delay_s
        self._sleep = sleep
        self._clock = clock
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
            headers={"User-Agent": "crossbot"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Prices ---

    async def get_price(self, pair: str) -> float:
        url = f"{self._api_url}/prices/{pair}/spot"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return float(response.json()["data"]["amount"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            raise PriceFetchError(f"price fetch for {pair} failed: {exc}") from exc

    # --- Candles ---

    async def get_candles(self, pair: str, start: datetime, end: datetime, granularity: int) -> List[Candle]:
        if granularity not in SUPPORTED_GRANULARITIES:
            raise ValueError(f"unsupported granularity {granularity}")
        if end <= start:
            return []

        logger.info(
            "Fetching ~%d %ss candles for %s in %d page(s)",
            total_candles(start, end, granularity), granularity, pair,
            required_requests(start, end, granularity, self.chunk_limit),
        )
        rows: List[list] = []
        page_span = timedelta(seconds=granularity * self.chunk_limit)
        cursor = start
        while cursor < end:
            page_end = min(end, cursor + page_span)
            if cursor > start and self.page_delay_s > 0:
                await self._sleep(self.page_delay_s)
            rows.extend(await self._fetch_candle_page(pair, cursor, page_end, granularity))
            cursor = page_end

        # Row format: [time, low, high, open, close, volume], time in seconds.
        unique = {int(row[0]): row for row in rows}
        return [
            Candle(
                time=ts * 1000,
                low=float(row[1]),
                high=float(row[2]),
                open=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for ts, row in sorted(unique.items())
        ]

    async def _fetch_candle_page(self, pair: str, start: datetime, end: datetime, granularity: int) -> list:
        url = f"{self._exchange_url}/products/{pair}/candles"
        params = {"start": start.isoformat(), "end": end.isoformat(), "granularity": str(granularity)}
        delay = self.retry_delay_s
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.get(url, params=params)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                if attempt == self.max_retries:
                    raise CandleFetchError(
                        f"candles for {pair} {params['start']}..{params['end']} failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Candle page for %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    pair, attempt, self.max_retries, delay, exc,
                )
                await self._sleep(delay)
                delay *= 2
                continue
            if not isinstance(body, list):
                raise CandleFetchError(f"unexpected candle payload for {pair}: {body!r}")
            return body
        raise CandleFetchError(f"no attempts made for {pair}")

    # --- Orders ---

    def sign(self, timestamp: str, method: str, path: str, body: str = "") -> str:
        message = f"{timestamp}{method}{path}{body}".encode()
        key = base64.b64decode(self._api_secret)
        digest = hmac.new(key, message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    async def _signed_request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self._api_key or not self._api_secret:
            raise ExchangeAuthError("API credentials not set")

        timestamp = f"{self._clock():.3f}"
        body_str = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = {
            "Content-Type": "application/json",
            "CB-ACCESS-KEY": self._api_key,
            "CB-ACCESS-SIGN": self.sign(timestamp, method, path, body_str),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": self._passphrase,
        }
        response = await self._client.request(
            method, f"{self._exchange_url}{path}", headers=headers, content=body_str or None
        )
        if response.is_error:
            raise ExchangeError(f"Coinbase API error: status={response.status_code} body={response.text[:300]!r}")
        return response.json()

    async def place_order(self, pair: str, side: str, size: str) -> Dict[str, Any]:
        return await self._signed_request(
            "POST", "/orders", {"product_id": pair, "side": side, "type": "market", "size": size}
        )
