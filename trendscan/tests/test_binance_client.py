import json

import pytest
import requests

from trendscan.exchange.binance.client import BinanceMarketData, ExchangeError, parse_klines


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        return self._payload


def _client(responses, sleeps, **kw):
    c = BinanceMarketData("https://fapi.example", sleep=sleeps.append, **kw)
    calls = []

    def request(method, url, params=None, timeout=None):
        calls.append((method, url, params))
        r = responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    c._session.request = request
    return c, calls


def test_rate_limit_honours_retry_after_then_succeeds():
    sleeps = []
    c, calls = _client(
        [FakeResponse(429, headers={"Retry-After": "1"}), FakeResponse(200, {"markPrice": "42.5"})],
        sleeps,
    )

    assert c.get_mark_price("btcusdt") == 42.5
    assert len(calls) == 2
    assert calls[0][2] == {"symbol": "BTCUSDT"}
    assert 1.0 <= sleeps[0] <= 1.2


def test_server_errors_and_timeouts_are_retried():
    sleeps = []
    c, calls = _client(
        [FakeResponse(502), requests.Timeout("slow"), FakeResponse(200, [])],
        sleeps,
    )
    assert c.ticker_24h() == []
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_client_error_raises_without_retry():
    sleeps = []
    c, calls = _client([FakeResponse(400, {"code": -1121, "msg": "Invalid symbol."})], sleeps)

    with pytest.raises(ExchangeError, match="400"):
        c.klines("NOPEUSDT")
    assert len(calls) == 1
    assert sleeps == []


def test_gives_up_after_max_retries():
    sleeps = []
    c, calls = _client([FakeResponse(503) for _ in range(3)], sleeps, max_retries=2)

    with pytest.raises(ExchangeError, match="after retries"):
        c.exchange_info()
    assert len(calls) == 3


def test_missing_mark_price_raises():
    c, _ = _client([FakeResponse(200, {"markPrice": "0"})], [])
    with pytest.raises(ExchangeError):
        c.get_mark_price("BTCUSDT")


def test_liquidity_ranking_filters_and_sorts():
    tickers = [
        {"symbol": "ETHUSDT", "quoteVolume": "50000000"},
        {"symbol": "BTCUSDT", "quoteVolume": "90000000"},
        {"symbol": "DOGEUSDT", "quoteVolume": "1000"},
        {"symbol": "ETHBTC", "quoteVolume": "99999999999"},
        {"symbol": "USDCUSDT", "quoteVolume": "80000000"},
        {"symbol": "BADUSDT", "quoteVolume": "n/a"},
    ]
    c, _ = _client(
        [FakeResponse(200, tickers)],
        [],
        min_quote_volume=1_000_000,
        exclude=["usdcusdt"],
    )

    assert c.get_liquidity_ranking() == ["BTCUSDT", "ETHUSDT"]


def test_candles_are_parsed_from_klines():
    kl = [
        [1000, "1.0", "2.0", "0.5", "1.5", "10", 1999, "15", 3, "5", "7", "0"],
        [2000, "1.5", "1.6", "1.4", "1.45", "12", 2999, "17", 4, "6", "8", "0"],
    ]
    c, calls = _client([FakeResponse(200, kl)], [])

    candles = c.get_candles("btcusdt", "15m", 2)

    assert calls[0][2] == {"symbol": "BTCUSDT", "interval": "15m", "limit": 2}
    assert [k.open_time for k in candles] == [1000, 2000]
    assert candles[0].close == 1.5
    assert candles[1].volume == 12.0
    assert parse_klines([]) == []


def test_symbol_filters_use_cached_exchange_info():
    info = {
        "symbols": [
            {
                "symbol": "BTCUSDT",
                "filters": [
                    {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                    {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                    {"filterType": "MIN_NOTIONAL", "notional": "100"},
                ],
            }
        ]
    }
    c, calls = _client([FakeResponse(200, info)], [])

    assert str(c.get_symbol_filters("BTCUSDT").step_size) == "0.001"
    assert str(c.get_symbol_filters("BTCUSDT").min_notional) == "100"
    assert len(calls) == 1
