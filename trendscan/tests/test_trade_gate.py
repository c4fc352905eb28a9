from trendscan.core.config import TradingConfig
from trendscan.risk.gate import TradeGate
from trendscan.tests.fakes import FakeClock


def test_cooldown_blocks_signals_before_t_plus_5min():
    clock = FakeClock()
    gate = TradeGate(clock=clock)
    cfg = TradingConfig()
    t = clock.ms
    gate.record_trade("BTCUSDT", t)

    blocked = gate.can_open("BTCUSDT", open_positions=0, config=cfg, at_ms=t + 299_999)
    assert not blocked.allowed
    assert blocked.reason == "symbol_in_cooldown"

    ok = gate.can_open("BTCUSDT", open_positions=0, config=cfg, at_ms=t + 300_000)
    assert ok.allowed

    # other symbols are unaffected
    assert gate.can_open("ETHUSDT", open_positions=0, config=cfg, at_ms=t).allowed


def test_max_open_positions_is_a_normal_rejection():
    gate = TradeGate(clock=FakeClock())
    d = gate.can_open("BTCUSDT", open_positions=3, config=TradingConfig(max_open_positions=3))
    assert d.allowed is False
    assert d.reason == "max_open_positions_reached"


def test_daily_limit_resets_on_new_day():
    clock = FakeClock()
    gate = TradeGate(clock=clock)
    cfg = TradingConfig(daily_trades_limit=2, cooldown_seconds=0)

    gate.record_trade("AUSDT")
    gate.record_trade("BUSDT")
    d = gate.can_open("CUSDT", open_positions=0, config=cfg)
    assert d.reason == "daily_trades_limit_reached"

    clock.advance(86_400)
    assert gate.trades_today() == 0
    assert gate.can_open("CUSDT", open_positions=0, config=cfg).allowed
