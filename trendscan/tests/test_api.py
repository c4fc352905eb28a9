import pytest
from fastapi.testclient import TestClient

from trendscan.core.config import TradingConfig
from trendscan.main import create_app
from trendscan.persistence.audit import Audit
from trendscan.runner.service import TradingService
from trendscan.strategy.base import Direction, Signal
from trendscan.tests.fakes import FakeClock, FakeMarket, FakeOrders


@pytest.fixture
def service(tmp_path):
    market = FakeMarket()
    market.prices["BTCUSDT"] = 100.0
    orders = FakeOrders()
    orders.fill_price = 100.0
    svc = TradingService(
        config=TradingConfig(symbol_delay_seconds=0),
        market=market,
        orders=orders,
        audit=Audit(str(tmp_path / "audit.jsonl")),
        clock=FakeClock(),
    )
    yield svc
    svc.shutdown()


@pytest.fixture
def client(service):
    with TestClient(create_app(service, start_loops=False)) as c:
        yield c


def _open(service):
    service.start_auto_trading()
    sig = Signal("BTCUSDT", Direction.LONG, 0, 100.0, 1.0, "test")
    assert service.manager.open_from_signal(sig, service.config).executed


def test_health_and_status(client):
    assert client.get("/health").json()["ok"] is True
    st = client.get("/status").json()
    assert st["auto_trading"] is False
    assert st["open_positions"] == 0


def test_auto_trading_endpoints(client, service):
    assert client.post("/auto-trading/start").json() == {"auto_trading": True}
    assert service.auto_trading.is_set()
    assert client.post("/auto-trading/stop").json() == {"auto_trading": False}


def test_scan_run_once_reports_status(client):
    r = client.post("/scan/run-once")
    assert r.status_code == 200
    assert r.json()["status"] == "disabled"


def test_positions_and_manual_close(client, service):
    _open(service)

    body = client.get("/positions").json()
    assert body["count"] == 1
    assert body["positions"][0]["symbol"] == "BTCUSDT"

    r = client.post("/positions/btcusdt/close")
    assert r.status_code == 200
    assert r.json()["executed"] is True

    assert client.post("/positions/BTCUSDT/close").status_code == 404


def test_refresh_endpoint(client, service):
    _open(service)
    body = client.post("/positions/refresh").json()
    assert body["count"] == 1


def test_events_filter(client, service):
    _open(service)
    body = client.get("/events", params={"event_type": "POSITION_OPENED"}).json()
    assert body["count"] == 1
    assert body["events"][0]["symbol"] == "BTCUSDT"


def test_signals_limit_is_bounded(client):
    assert client.get("/signals").json()["count"] == 0
    assert client.get("/signals", params={"limit": 500}).status_code == 422


def test_config_read_and_patch(client):
    body = client.get("/config").json()
    assert body["trading"]["max_open_positions"] == 3
    assert "EXECUTION_MODE" in body["settings"]

    r = client.patch("/config", json={"max_open_positions": 4})
    assert r.status_code == 200
    assert r.json()["trading"]["max_open_positions"] == 4

    assert client.patch("/config", json={"strategy": {"ema_short": 90}}).status_code == 422
    assert client.patch("/config", json={"strategy": "fast"}).status_code == 422
