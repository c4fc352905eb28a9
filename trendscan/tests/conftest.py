import pytest


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit live trading or write audit files into the repo.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("BINANCE_ENV", "testnet")
    monkeypatch.setenv("AUTO_TRADING_ON_START", "false")
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setenv("SCAN_SYMBOL_DELAY_SECONDS", "0")
