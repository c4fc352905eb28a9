from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, List, Optional, Tuple

from trendscan.core.config import TradingConfig
from trendscan.exchange.gateways import MarketDataGateway
from trendscan.execution.position_manager import PositionManager
from trendscan.market.candle_store import CandleStore
from trendscan.ops.context import clear_cycle_id, new_cycle_id, set_cycle_id
from trendscan.persistence.audit import Audit
from trendscan.risk.gate import TradeGate
from trendscan.runner.models import ScanReport, SignalRecord
from trendscan.strategy.base import Candle, Detector, Signal
from trendscan.symbols.universe import SymbolPool

log = logging.getLogger("trendscan.scanner")

SIGNAL_HISTORY_SIZE = 50
SIGNAL_DEDUPE_MS = 5 * 60 * 1000


class ScanOrchestrator:
    """
    One scan cycle: refresh pool (if stale) -> pick next batch -> scan each
    symbol sequentially with a small delay.

    Symbols are never scanned in parallel; only the two timeframe fetches of
    one symbol run concurrently. A failing symbol is audited and skipped.
    """

    def __init__(
        self,
        *,
        market: MarketDataGateway,
        detector: Detector,
        manager: PositionManager,
        gate: TradeGate,
        pool: SymbolPool,
        candle_store: CandleStore,
        audit: Audit,
        auto_trading: threading.Event,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.market = market
        self.detector = detector
        self.manager = manager
        self.gate = gate
        self.pool = pool
        self.candles = candle_store
        self.audit = audit
        self.auto_trading = auto_trading
        self._sleep = sleep
        self._clock = clock

        self._cycle_lock = threading.Lock()
        self._fetcher = ThreadPoolExecutor(max_workers=2, thread_name_prefix="candles")
        self._history: Deque[SignalRecord] = deque(maxlen=SIGNAL_HISTORY_SIZE)
        self._history_lock = threading.Lock()
        self.last_report: Optional[ScanReport] = None

    def close(self) -> None:
        self._fetcher.shutdown(wait=False)

    # ---------------- signal history ----------------

    def signal_history(self) -> List[SignalRecord]:
        """Most recent first."""
        with self._history_lock:
            return list(reversed(self._history))

    def _record(self, signal: Signal, executed: bool, reason: Optional[str]) -> bool:
        now_ms = int(self._clock() * 1000)
        with self._history_lock:
            for rec in self._history:
                if (
                    rec.signal.symbol == signal.symbol
                    and rec.signal.direction is signal.direction
                    and now_ms - rec.recorded_at_ms < SIGNAL_DEDUPE_MS
                ):
                    return False
            self._history.append(SignalRecord(signal, executed, reason, now_ms))
            return True

    # ---------------- cycle ----------------

    def run_cycle(self, config: TradingConfig) -> ScanReport:
        if not self._cycle_lock.acquire(blocking=False):
            return ScanReport(cycle_id="", status="skipped_busy")
        cycle_id = new_cycle_id("scan")
        set_cycle_id(cycle_id)
        try:
            report = self._run(cycle_id, config)
            self.last_report = report
            return report
        finally:
            clear_cycle_id()
            self._cycle_lock.release()

    def _run(self, cycle_id: str, config: TradingConfig) -> ScanReport:
        report = ScanReport(cycle_id=cycle_id)

        if not self.auto_trading.is_set():
            report.status = "disabled"
            return report

        try:
            self.pool.refresh(self.market.get_liquidity_ranking)
        except Exception as e:
            self.audit.event("POOL_REFRESH_FAILED", details={"error": f"{type(e).__name__}: {e}"})
            report.status = "no_pool"
            return report

        batch = self.pool.next_batch()
        report.batch_index = batch.index
        report.total_batches = batch.total
        report.symbols = list(batch.symbols)
        if not batch.symbols:
            report.status = "no_pool"
            return report

        self.audit.event(
            "SCAN_CYCLE_START",
            details={"batch": batch.index + 1, "total_batches": batch.total, "symbols": batch.symbols},
        )

        for i, sym in enumerate(batch.symbols):
            if i > 0 and config.symbol_delay_seconds > 0:
                self._sleep(config.symbol_delay_seconds)

            # cancellation point: observed before every symbol
            if not self.auto_trading.is_set():
                report.cancelled = True
                break

            reason = self._skip_reason(sym, config)
            if reason:
                report.skipped[sym] = reason
                continue

            report.checked += 1
            self._scan_symbol(sym, config, report)

        self.audit.event(
            "SCAN_CYCLE_END",
            details={
                "checked": report.checked,
                "skipped": len(report.skipped),
                "signals": report.signals,
                "executed": report.executed,
                "errors": len(report.errors),
                "cancelled": report.cancelled,
            },
        )
        return report

    def _skip_reason(self, sym: str, config: TradingConfig) -> Optional[str]:
        cap = self.gate.capacity(self.manager.open_count(), config)
        if not cap.allowed:
            return cap.reason
        if self.manager.has_position(sym):
            return "position_exists"
        if self.gate.in_cooldown(sym, self.gate.now_ms(), config.cooldown_seconds):
            return "symbol_in_cooldown"
        return None

    def _fetch(self, sym: str, config: TradingConfig) -> Tuple[List[Candle], List[Candle]]:
        params = config.strategy
        f_trend = self._fetcher.submit(
            self.market.get_candles, sym, params.trend_timeframe, config.candle_limit
        )
        f_entry = self._fetcher.submit(
            self.market.get_candles, sym, params.entry_timeframe, config.candle_limit
        )
        trend, entry = f_trend.result(), f_entry.result()
        self.candles.replace(sym, params.trend_timeframe, trend)
        self.candles.replace(sym, params.entry_timeframe, entry)
        return trend, entry

    def _scan_symbol(self, sym: str, config: TradingConfig, report: ScanReport) -> None:
        try:
            trend, entry = self._fetch(sym, config)
            result = self.detector.detect(sym, trend, entry, config.strategy)
        except Exception as e:
            err = f"{type(e).__name__}: {e}"
            report.errors[sym] = err
            self.audit.event("STEP_SYMBOL_FAILED", symbol=sym, details={"error": err})
            return

        if result.signal is None:
            self.audit.event(
                "SIGNAL_REJECTED",
                symbol=sym,
                details={"reason": result.reason, "explain": result.explain(), **result.details},
            )
            return

        sig = result.signal
        report.signals.append(sym)
        self.audit.event(
            "SIGNAL_ACCEPTED",
            symbol=sym,
            action=sig.direction.value,
            details={"price": sig.entry_price, "confidence": sig.confidence, "reason": sig.reason},
        )

        try:
            outcome = self.manager.open_from_signal(sig, config)
        except Exception as e:
            err = f"{type(e).__name__}: {e}"
            report.errors[sym] = err
            self.audit.event("STEP_SYMBOL_FAILED", symbol=sym, action="OPEN", details={"error": err})
            self._record(sig, False, err)
            return

        if outcome.executed:
            report.executed.append(sym)
        self._record(sig, outcome.executed, None if outcome.executed else outcome.reason)
