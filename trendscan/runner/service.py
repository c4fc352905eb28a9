from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from trendscan.core.config import Settings, TradingConfig
from trendscan.exchange.binance.client import BinanceMarketData
from trendscan.exchange.gateways import MarketDataGateway, OrderGateway, PaperOrderGateway
from trendscan.execution.position_manager import ExecutionResult, PositionManager
from trendscan.market.candle_store import CandleStore
from trendscan.persistence.audit import Audit
from trendscan.risk.gate import TradeGate
from trendscan.runner.models import ScanReport
from trendscan.runner.scanner import ScanOrchestrator
from trendscan.strategy.ema_pullback import EmaPullbackDetector
from trendscan.symbols.universe import SymbolPool

log = logging.getLogger("trendscan.service")


class TradingService:
    """
    Wires the components together and runs two independent loops:

      - scan loop    every scan_interval_seconds (only while auto trading)
      - refresh loop every position_refresh_seconds

    Both wait on events so stop() returns promptly. A slow scan never delays
    the refresh loop.
    """

    def __init__(
        self,
        *,
        config: TradingConfig,
        market: MarketDataGateway,
        orders: OrderGateway,
        audit: Audit,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._config = config
        self._config_lock = threading.Lock()
        self.market = market
        self.orders = orders
        self.audit = audit

        self.auto_trading = threading.Event()
        self._stop = threading.Event()
        self._scan_wake = threading.Event()
        self._threads: List[threading.Thread] = []

        self.gate = TradeGate(clock=clock)
        self.candles = CandleStore(max_len=max(config.candle_limit, 200))
        self.detector = EmaPullbackDetector()
        self.manager = PositionManager(
            market=market,
            orders=orders,
            gate=self.gate,
            audit=audit,
            candle_store=self.candles,
            detector=self.detector,
            auto_trading=self.auto_trading,
            clock=clock,
        )
        self.pool = SymbolPool(
            pool_size=config.pool_size,
            batch_size=config.scan_batch_size,
            refresh_seconds=config.pool_refresh_seconds,
            clock=clock,
        )
        self.scanner = ScanOrchestrator(
            market=market,
            detector=self.detector,
            manager=self.manager,
            gate=self.gate,
            pool=self.pool,
            candle_store=self.candles,
            audit=audit,
            auto_trading=self.auto_trading,
            sleep=sleep,
            clock=clock,
        )

    # ---------------- config ----------------

    @property
    def config(self) -> TradingConfig:
        with self._config_lock:
            return self._config

    def update_config(self, changes: Dict[str, Any]) -> TradingConfig:
        """
        Validate and swap in a new TradingConfig. In-flight cycles keep the
        value they started with.
        """
        with self._config_lock:
            data = self._config.model_dump()
            strategy_changes = changes.get("strategy")
            data.update({k: v for k, v in changes.items() if k != "strategy"})
            if isinstance(strategy_changes, dict):
                data["strategy"] = {**data["strategy"], **strategy_changes}
            elif strategy_changes is not None:
                # not a mapping: let model validation reject it
                data["strategy"] = strategy_changes
            new_cfg = TradingConfig.model_validate(data)
            self._config = new_cfg

        self.pool.pool_size = new_cfg.pool_size
        self.pool.batch_size = new_cfg.scan_batch_size
        self.pool.refresh_seconds = new_cfg.pool_refresh_seconds
        self.audit.event("CONFIG_UPDATED", details={"changes": changes})
        return new_cfg

    # ---------------- auto trading ----------------

    def start_auto_trading(self) -> None:
        if not self.auto_trading.is_set():
            self.auto_trading.set()
            self.audit.event("AUTO_TRADING_STARTED")
        # scan right away instead of waiting a full interval
        self._scan_wake.set()

    def stop_auto_trading(self) -> None:
        if self.auto_trading.is_set():
            self.auto_trading.clear()
            self.audit.event("AUTO_TRADING_STOPPED")

    # ---------------- one-shot operations ----------------

    def run_scan_once(self) -> ScanReport:
        return self.scanner.run_cycle(self.config)

    def refresh_positions(self) -> List[Dict[str, object]]:
        return self.manager.refresh(self.config)

    def close_position(self, symbol: str) -> ExecutionResult:
        return self.manager.close_position(symbol, self.config)

    # ---------------- loops ----------------

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._scan_loop, name="scan-loop", daemon=True),
            threading.Thread(target=self._refresh_loop, name="refresh-loop", daemon=True),
        ]
        for t in self._threads:
            t.start()
        log.info("trading service started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._scan_wake.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        log.info("trading service stopped")

    def shutdown(self) -> None:
        self.stop_auto_trading()
        self.stop()
        self.scanner.close()

    def _scan_loop(self) -> None:
        while not self._stop.is_set():
            self._scan_wake.clear()
            if self.auto_trading.is_set():
                try:
                    report = self.scanner.run_cycle(self.config)
                    log.info(
                        "scan %s batch %d/%d checked=%d signals=%d executed=%d",
                        report.status,
                        report.batch_index + 1,
                        report.total_batches,
                        report.checked,
                        len(report.signals),
                        len(report.executed),
                    )
                except Exception:
                    log.exception("scan cycle crashed")
            self._scan_wake.wait(self.config.scan_interval_seconds)

    def _refresh_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.manager.refresh(self.config)
            except Exception:
                log.exception("position refresh crashed")
            self._stop.wait(self.config.position_refresh_seconds)

    # ---------------- status ----------------

    def status(self) -> Dict[str, Any]:
        snap = self.pool.snapshot()
        last = self.scanner.last_report
        return {
            "running": self.running,
            "auto_trading": self.auto_trading.is_set(),
            "open_positions": self.manager.open_count(),
            "max_open_positions": self.config.max_open_positions,
            "risk": self.gate.snapshot(),
            "pool": {
                "size": len(snap.symbols),
                "batch_index": snap.batch_index,
                "refreshed_at": snap.refreshed_at,
            },
            "last_scan": last.to_dict() if last else None,
        }


def build_service(
    s: Settings,
    *,
    market: Optional[MarketDataGateway] = None,
    orders: Optional[OrderGateway] = None,
    audit: Optional[Audit] = None,
) -> TradingService:
    """
    Default wiring: Binance public market data plus a paper order gateway.
    Live execution needs an injected OrderGateway; this package does not sign
    requests or hold keys.
    """
    if market is None:
        market = BinanceMarketData(
            s.BINANCE_FAPI_BASE_URL,
            quote_asset=s.QUOTE_ASSET,
            min_quote_volume=s.POOL_MIN_QUOTE_VOLUME,
            exclude=s.POOL_EXCLUDE,
        )
    if orders is None:
        if s.EXECUTION_MODE == "live":
            raise ValueError("EXECUTION_MODE=live requires an injected order gateway")
        orders = PaperOrderGateway(market.get_mark_price, balance_usdt=s.PAPER_BALANCE_USDT)
    if audit is None:
        audit = Audit(s.AUDIT_JSONL_PATH)
    return TradingService(config=s.trading_config(), market=market, orders=orders, audit=audit)
