# trendscan/core/config.py
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("trendscan.config")

_TIMEFRAME_RE = re.compile(r"^[1-9][0-9]*[mhdw]$")


def _parse_kv_int(v: Any) -> Dict[str, int]:
    """
    Accepts:
      - dict: {"BTCUSDT": 10}
      - csv:  "BTCUSDT:10,ETHUSDT:10"
      - json: '{"BTCUSDT":10,"ETHUSDT":10}'
    """
    if v is None:
        return {}
    if isinstance(v, dict):
        out: Dict[str, int] = {}
        for k, val in v.items():
            ks = str(k).strip().upper()
            if not ks:
                continue
            try:
                out[ks] = int(val)
            except (TypeError, ValueError):
                continue
        return out

    s = str(v).strip()
    if not s:
        return {}

    if s.startswith("{"):
        try:
            raw = json.loads(s)
            if isinstance(raw, dict):
                return _parse_kv_int(raw)
        except json.JSONDecodeError:
            pass

    out: Dict[str, int] = {}
    for part in s.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        k, val = part.split(":", 1)
        k = k.strip().upper()
        if not k:
            continue
        try:
            out[k] = int(val.strip())
        except ValueError:
            continue
    return out


def _parse_list(v: Any) -> List[str]:
    """
    Accepts a list, a csv string or a json array. Returns uppercase symbols.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except json.JSONDecodeError:
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


# =========================
# Immutable per-cycle config
# =========================
class StrategyParams(BaseModel):
    """Parameters of the EMA trend / pullback detector."""

    model_config = ConfigDict(frozen=True)

    trend_timeframe: str = "15m"
    entry_timeframe: str = "5m"

    ema_short: int = Field(20, ge=2)
    ema_long: int = Field(60, ge=3)
    rsi_period: int = Field(14, ge=2)
    rsi_threshold: float = Field(50.0, ge=0, le=100)
    volume_period: int = Field(20, ge=1)

    # percent distance between the two EMAs on the trend timeframe
    min_trend_distance: float = Field(0.05, ge=0)
    require_trend_volume: bool = False

    enable_price_ema_filter: bool = True
    enable_rsi_filter: bool = True
    enable_ema_touch_filter: bool = True
    enable_candle_filter: bool = True

    ema_touch_lookback: int = Field(3, ge=1)
    min_candle_change_percent: float = Field(0.1, ge=0)
    min_conditions_required: int = Field(2, ge=1, le=4)

    @field_validator("trend_timeframe", "entry_timeframe")
    @classmethod
    def _check_timeframe(cls, v: str) -> str:
        v = (v or "").strip()
        if not _TIMEFRAME_RE.match(v):
            raise ValueError(f"unsupported timeframe '{v}' (expected e.g. 5m, 15m, 1h, 1d)")
        return v

    @model_validator(mode="after")
    def _check_ema_order(self) -> "StrategyParams":
        if self.ema_short >= self.ema_long:
            raise ValueError("ema_short must be smaller than ema_long")
        return self

    @property
    def min_candles(self) -> int:
        return max(self.ema_long, self.rsi_period) + 10


class TradingConfig(BaseModel):
    """
    Everything the scan and position loops need for one cycle.
    Built from Settings; never carries credentials.
    """

    model_config = ConfigDict(frozen=True)

    # sizing / caps
    position_size_percent: float = Field(10.0, gt=0, le=100)
    max_open_positions: int = Field(3, ge=1)
    daily_trades_limit: int = Field(10, ge=1)
    cooldown_seconds: int = Field(300, ge=0)
    default_leverage: int = Field(5, ge=1)
    symbol_leverage: Dict[str, int] = Field(default_factory=dict)
    min_notional_usdt: float = Field(5.0, ge=0)
    hedge_mode: bool = False

    # exits
    stop_loss_percent: float = Field(0.5, gt=0)
    take_profit_percent: float = Field(1.0, gt=0)
    auto_stop_loss: bool = True
    auto_take_profit: bool = False
    reverse_signal_close: bool = True

    use_partial_take_profit: bool = True
    tp_r1_close_percent: float = Field(50.0, gt=0, le=100)
    tp_r2_close_percent: float = Field(100.0, gt=0, le=100)
    tp_r3_close_percent: float = Field(100.0, gt=0, le=100)

    use_trailing_stop: bool = True
    trailing_stop_trigger_r: float = Field(1.0, gt=0)
    trailing_stop_move_to_breakeven: bool = True

    # scan loop
    scan_interval_seconds: int = Field(300, ge=1)
    position_refresh_seconds: float = Field(5.0, gt=0)
    pool_size: int = Field(20, ge=1)
    pool_refresh_seconds: int = Field(1800, ge=0)
    scan_batch_size: int = Field(10, ge=1)
    symbol_delay_seconds: float = Field(0.2, ge=0)
    candle_limit: int = Field(200, ge=10)

    strategy: StrategyParams = Field(default_factory=StrategyParams)

    def leverage_for(self, symbol: str) -> int:
        return int(self.symbol_leverage.get(symbol.strip().upper(), self.default_leverage))


# =========================
# Environment settings
# =========================
class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding dict fields
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange ---
    BINANCE_ENV: str = "mainnet"  # mainnet/testnet
    BINANCE_FAPI_BASE_URL: str = "https://fapi.binance.com"
    QUOTE_ASSET: str = "USDT"
    POOL_MIN_QUOTE_VOLUME: float = 10_000_000.0
    POOL_EXCLUDE: List[str] = Field(default_factory=list)

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live
    PAPER_BALANCE_USDT: float = 1000.0
    AUTO_TRADING_ON_START: bool = False

    # --- Observability ---
    LOG_LEVEL: str = "INFO"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"

    # --- Scan loop ---
    SCAN_INTERVAL_SECONDS: int = 300
    POSITION_REFRESH_SECONDS: float = 5.0
    POOL_SIZE: int = 20
    POOL_REFRESH_SECONDS: int = 1800
    SCAN_BATCH_SIZE: int = 10
    SCAN_SYMBOL_DELAY_SECONDS: float = 0.2
    CANDLE_LIMIT: int = 200

    # --- Sizing / caps ---
    POSITION_SIZE_PERCENT: float = 10.0
    MAX_OPEN_POSITIONS: int = 3
    DAILY_TRADES_LIMIT: int = 10
    COOLDOWN_SECONDS: int = 300
    DEFAULT_LEVERAGE: int = 5
    SYMBOL_LEVERAGE_MAP: Dict[str, int] = Field(default_factory=dict)
    MIN_NOTIONAL_USDT: float = 5.0
    HEDGE_MODE: bool = False

    # --- Exits ---
    STOP_LOSS_PCT: float = 0.5
    TAKE_PROFIT_PCT: float = 1.0
    AUTO_STOP_LOSS: bool = True
    AUTO_TAKE_PROFIT: bool = False
    REVERSE_SIGNAL_CLOSE: bool = True
    USE_PARTIAL_TAKE_PROFIT: bool = True
    TP_R1_CLOSE_PCT: float = 50.0
    TP_R2_CLOSE_PCT: float = 100.0
    TP_R3_CLOSE_PCT: float = 100.0
    USE_TRAILING_STOP: bool = True
    TRAILING_STOP_TRIGGER_R: float = 1.0
    TRAILING_STOP_MOVE_TO_BREAKEVEN: bool = True

    # --- Strategy ---
    TREND_TIMEFRAME: str = "15m"
    ENTRY_TIMEFRAME: str = "5m"
    EMA_SHORT: int = 20
    EMA_LONG: int = 60
    RSI_PERIOD: int = 14
    RSI_THRESHOLD: float = 50.0
    VOLUME_PERIOD: int = 20
    MIN_TREND_DISTANCE: float = 0.05
    REQUIRE_TREND_VOLUME: bool = False
    ENABLE_PRICE_EMA_FILTER: bool = True
    ENABLE_RSI_FILTER: bool = True
    ENABLE_EMA_TOUCH_FILTER: bool = True
    ENABLE_CANDLE_FILTER: bool = True
    EMA_TOUCH_LOOKBACK: int = 3
    MIN_CANDLE_CHANGE_PCT: float = 0.1
    MIN_CONDITIONS_REQUIRED: int = 2

    @field_validator("SYMBOL_LEVERAGE_MAP", mode="before")
    @classmethod
    def parse_leverage_map(cls, v: Any) -> Dict[str, int]:
        return _parse_kv_int(v)

    @field_validator("POOL_EXCLUDE", mode="before")
    @classmethod
    def parse_pool_exclude(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.BINANCE_ENV = (self.BINANCE_ENV or "mainnet").lower().strip()
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()
        self.QUOTE_ASSET = (self.QUOTE_ASSET or "USDT").upper().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

        # Keep base URL consistent with BINANCE_ENV unless explicitly overridden
        if self.BINANCE_ENV == "testnet":
            if self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com":
                self.BINANCE_FAPI_BASE_URL = "https://testnet.binancefuture.com"

    def strategy_params(self) -> StrategyParams:
        return StrategyParams(
            trend_timeframe=self.TREND_TIMEFRAME,
            entry_timeframe=self.ENTRY_TIMEFRAME,
            ema_short=self.EMA_SHORT,
            ema_long=self.EMA_LONG,
            rsi_period=self.RSI_PERIOD,
            rsi_threshold=self.RSI_THRESHOLD,
            volume_period=self.VOLUME_PERIOD,
            min_trend_distance=self.MIN_TREND_DISTANCE,
            require_trend_volume=self.REQUIRE_TREND_VOLUME,
            enable_price_ema_filter=self.ENABLE_PRICE_EMA_FILTER,
            enable_rsi_filter=self.ENABLE_RSI_FILTER,
            enable_ema_touch_filter=self.ENABLE_EMA_TOUCH_FILTER,
            enable_candle_filter=self.ENABLE_CANDLE_FILTER,
            ema_touch_lookback=self.EMA_TOUCH_LOOKBACK,
            min_candle_change_percent=self.MIN_CANDLE_CHANGE_PCT,
            min_conditions_required=self.MIN_CONDITIONS_REQUIRED,
        )

    def trading_config(self) -> TradingConfig:
        """Snapshot the environment into an immutable TradingConfig."""
        return TradingConfig(
            position_size_percent=self.POSITION_SIZE_PERCENT,
            max_open_positions=self.MAX_OPEN_POSITIONS,
            daily_trades_limit=self.DAILY_TRADES_LIMIT,
            cooldown_seconds=self.COOLDOWN_SECONDS,
            default_leverage=self.DEFAULT_LEVERAGE,
            symbol_leverage=dict(self.SYMBOL_LEVERAGE_MAP),
            min_notional_usdt=self.MIN_NOTIONAL_USDT,
            hedge_mode=self.HEDGE_MODE,
            stop_loss_percent=self.STOP_LOSS_PCT,
            take_profit_percent=self.TAKE_PROFIT_PCT,
            auto_stop_loss=self.AUTO_STOP_LOSS,
            auto_take_profit=self.AUTO_TAKE_PROFIT,
            reverse_signal_close=self.REVERSE_SIGNAL_CLOSE,
            use_partial_take_profit=self.USE_PARTIAL_TAKE_PROFIT,
            tp_r1_close_percent=self.TP_R1_CLOSE_PCT,
            tp_r2_close_percent=self.TP_R2_CLOSE_PCT,
            tp_r3_close_percent=self.TP_R3_CLOSE_PCT,
            use_trailing_stop=self.USE_TRAILING_STOP,
            trailing_stop_trigger_r=self.TRAILING_STOP_TRIGGER_R,
            trailing_stop_move_to_breakeven=self.TRAILING_STOP_MOVE_TO_BREAKEVEN,
            scan_interval_seconds=self.SCAN_INTERVAL_SECONDS,
            position_refresh_seconds=self.POSITION_REFRESH_SECONDS,
            pool_size=self.POOL_SIZE,
            pool_refresh_seconds=self.POOL_REFRESH_SECONDS,
            scan_batch_size=self.SCAN_BATCH_SIZE,
            symbol_delay_seconds=self.SCAN_SYMBOL_DELAY_SECONDS,
            candle_limit=self.CANDLE_LIMIT,
            strategy=self.strategy_params(),
        )

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        if self.BINANCE_ENV not in {"mainnet", "testnet"}:
            errors.append("BINANCE_ENV must be 'mainnet' or 'testnet'.")

        if self.EMA_SHORT >= self.EMA_LONG:
            errors.append("EMA_SHORT must be smaller than EMA_LONG.")

        if not 1 <= self.MIN_CONDITIONS_REQUIRED <= 4:
            errors.append("MIN_CONDITIONS_REQUIRED must be between 1 and 4.")

        if not 0 <= self.RSI_THRESHOLD <= 100:
            errors.append("RSI_THRESHOLD must be between 0 and 100.")

        if self.STOP_LOSS_PCT <= 0:
            errors.append("STOP_LOSS_PCT must be > 0.")
        if self.TAKE_PROFIT_PCT <= 0:
            errors.append("TAKE_PROFIT_PCT must be > 0.")

        if self.POSITION_SIZE_PERCENT <= 0 or self.POSITION_SIZE_PERCENT > 100:
            errors.append("POSITION_SIZE_PERCENT must be in (0, 100].")

        if self.MAX_OPEN_POSITIONS <= 0:
            errors.append("MAX_OPEN_POSITIONS must be > 0.")
        if self.DAILY_TRADES_LIMIT <= 0:
            errors.append("DAILY_TRADES_LIMIT must be > 0.")
        if self.SCAN_BATCH_SIZE <= 0:
            errors.append("SCAN_BATCH_SIZE must be > 0.")

        if self.DEFAULT_LEVERAGE < 1:
            errors.append("DEFAULT_LEVERAGE must be >= 1.")

        # Exit strategy overlaps are resolved by priority, but flag the ones
        # that make a toggle a no-op.
        if self.AUTO_TAKE_PROFIT and self.USE_PARTIAL_TAKE_PROFIT:
            warnings.append(
                "AUTO_TAKE_PROFIT is ignored while USE_PARTIAL_TAKE_PROFIT is enabled."
            )
        if (
            not self.ENABLE_PRICE_EMA_FILTER
            and not self.ENABLE_RSI_FILTER
            and not self.ENABLE_EMA_TOUCH_FILTER
            and not self.ENABLE_CANDLE_FILTER
        ):
            warnings.append(
                "All entry filters are disabled; every trend-aligned bar will signal."
            )
        if self.TP_R2_CLOSE_PCT < 100 and not self.USE_PARTIAL_TAKE_PROFIT:
            warnings.append("TP_R2_CLOSE_PCT has no effect without partial take-profit.")

        if self.SCAN_INTERVAL_SECONDS < self.POSITION_REFRESH_SECONDS:
            warnings.append(
                "SCAN_INTERVAL_SECONDS is shorter than POSITION_REFRESH_SECONDS."
            )

        if self.EXECUTION_MODE == "live" and self.BINANCE_ENV == "mainnet":
            warnings.append(
                "EXECUTION_MODE=live with BINANCE_ENV=mainnet will trade REAL money."
            )

        for w in warnings:
            log.warning("[CONFIG WARNING] %s", w)

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


def safe_config_snapshot(s: Settings) -> Dict[str, Any]:
    snap = s.model_dump()
    for k in list(snap):
        if "SECRET" in k or "API_KEY" in k:
            snap[k] = "***"
    return snap


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
