import pytest

from trendscan.exchange.gateways import OrderResult, PaperOrderGateway


@pytest.fixture
def prices():
    return {"BTCUSDT": 100.0}


@pytest.fixture
def gw(prices):
    return PaperOrderGateway(lambda s: prices[s], balance_usdt=1000.0)


def test_order_result_fill_rules():
    assert OrderResult("1", "FILLED", 1.0, 100.0).filled
    assert OrderResult("1", "NEW", 0.5).filled
    assert not OrderResult("1", "NEW").filled
    assert not OrderResult("1", "FILLED", 1.0, error="boom").filled
    assert not OrderResult.rejected("nope").filled


def test_market_order_reserves_margin(gw):
    gw.set_leverage("BTCUSDT", 5)
    res = gw.place_market_order("btcusdt", "BUY", 5.0)

    assert res.filled
    assert res.avg_price == 100.0
    # 5 * 100 / 5x
    assert gw.get_available_balance() == pytest.approx(900.0)


def test_insufficient_balance_is_rejected(gw):
    res = gw.place_market_order("BTCUSDT", "BUY", 20.0)
    assert not res.filled
    assert gw.get_available_balance() == 1000.0


def test_close_returns_margin_and_pnl(gw, prices):
    gw.set_leverage("BTCUSDT", 5)
    gw.place_market_order("BTCUSDT", "BUY", 5.0)
    prices["BTCUSDT"] = 102.0

    half = gw.close_position("BTCUSDT", 2.5)
    assert half.executed_qty == 2.5
    rest = gw.close_position("BTCUSDT", 10.0)
    assert rest.executed_qty == 2.5

    # +2 per unit on 5 units
    assert gw.get_available_balance() == pytest.approx(1010.0)
    assert not gw.close_position("BTCUSDT", 1.0).filled


def test_short_profit_when_price_falls(gw, prices):
    gw.place_market_order("BTCUSDT", "SELL", 1.0)
    prices["BTCUSDT"] = 90.0
    gw.close_position("BTCUSDT", 1.0)
    assert gw.get_available_balance() == pytest.approx(1010.0)


def test_leverage_must_be_positive(gw):
    with pytest.raises(ValueError):
        gw.set_leverage("BTCUSDT", 0)
    assert gw.leverage("BTCUSDT") == 1
