from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from trendscan.exchange.binance.filters import SymbolFilters, extract_filters
from trendscan.strategy.base import Candle

log = logging.getLogger("trendscan.binance")


class ExchangeError(RuntimeError):
    """A Binance REST call failed after retries (or with a non-retryable error)."""


def parse_klines(klines: list) -> List[Candle]:
    """
    Binance kline format:
    [openTime, open, high, low, close, volume, closeTime, ...]
    """
    out: List[Candle] = []
    for k in klines or []:
        out.append(
            Candle(
                open_time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
            )
        )
    return out


class BinanceMarketData:
    """
    Public USDT-M futures market data (no keys, no signing).

    Implements the MarketDataGateway protocol: klines, 24h liquidity ranking,
    mark price and symbol filters from a cached exchangeInfo.
    """

    def __init__(
        self,
        base_url: str = "https://fapi.binance.com",
        *,
        quote_asset: str = "USDT",
        min_quote_volume: float = 10_000_000.0,
        exclude: Optional[List[str]] = None,
        exchange_info_ttl: int = 3600,
        timeout: float = 15.0,
        max_retries: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.quote_asset = quote_asset.upper()
        self.min_quote_volume = float(min_quote_volume)
        self.exclude = {s.upper() for s in (exclude or [])}
        self.exchange_info_ttl = int(exchange_info_ttl)
        self.timeout = float(timeout)
        self.max_retries = int(max_retries)
        self._sleep = sleep
        self._session = requests.Session()

        self._exchange_info_cache: Optional[dict] = None
        self._exchange_info_cache_ts: float = 0.0
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # request helper: retries rate limits, 5xx and network errors
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        params = dict(params or {})

        last_err: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            try:
                r = self._session.request(method, url, params=params, timeout=self.timeout)
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = f"{type(e).__name__}: {e}"
                self._sleep(min(0.4 * (2**attempt), 8.0))
                continue

            # Rate limit / temp ban
            if r.status_code in (418, 429):
                ra = r.headers.get("Retry-After")
                sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                sleep_s += random.uniform(0, 0.2)
                last_err = f"HTTP {r.status_code}"
                log.warning("binance rate limited on %s, sleeping %.2fs", path, sleep_s)
                self._sleep(min(sleep_s, 10.0))
                continue

            # Server errors
            if r.status_code >= 500:
                last_err = f"HTTP {r.status_code}"
                self._sleep(min(0.4 * (2**attempt), 8.0))
                continue

            if r.status_code >= 400:
                raise ExchangeError(f"Binance HTTP {r.status_code} on {path}: {r.text[:300]}")

            return r.json() if r.content else None

        raise ExchangeError(f"Binance request failed after retries: {method} {path} ({last_err})")

    # ---------------- PUBLIC ----------------

    def exchange_info(self) -> dict:
        return self._request("GET", "/fapi/v1/exchangeInfo")

    def exchange_info_cached(self) -> dict:
        with self._cache_lock:
            now = time.time()
            if (
                self._exchange_info_cache
                and (now - self._exchange_info_cache_ts) < self.exchange_info_ttl
            ):
                return self._exchange_info_cache

        data = self.exchange_info()
        with self._cache_lock:
            self._exchange_info_cache = data
            self._exchange_info_cache_ts = time.time()
        return data

    def klines(self, symbol: str, interval: str = "5m", limit: int = 200) -> list:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
        return self._request("GET", "/fapi/v1/klines", params=params)

    def ticker_24h(self) -> list:
        data = self._request("GET", "/fapi/v1/ticker/24hr")
        return data if isinstance(data, list) else []

    def premium_index(self, symbol: str) -> dict:
        return self._request("GET", "/fapi/v1/premiumIndex", params={"symbol": symbol.upper()})

    # ---------------- MarketDataGateway ----------------

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        return parse_klines(self.klines(symbol, timeframe, limit))

    def get_mark_price(self, symbol: str) -> float:
        data = self.premium_index(symbol)
        price = float(data.get("markPrice") or 0.0)
        if price <= 0:
            raise ExchangeError(f"no mark price for {symbol}")
        return price

    def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        return extract_filters(self.exchange_info_cached(), symbol)

    def get_liquidity_ranking(self) -> List[str]:
        """
        Symbols quoted in `quote_asset`, ranked by 24h quote volume (desc),
        keeping only those above `min_quote_volume`.
        """
        rows = []
        for t in self.ticker_24h():
            sym = str(t.get("symbol") or "").upper()
            if not sym.endswith(self.quote_asset) or sym in self.exclude:
                continue
            try:
                qv = float(t.get("quoteVolume") or 0.0)
            except (TypeError, ValueError):
                continue
            if qv > self.min_quote_volume:
                rows.append((qv, sym))
        rows.sort(key=lambda x: x[0], reverse=True)
        return [sym for _, sym in rows]
