from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from pydantic import ValidationError

from trendscan.core.config import safe_config_snapshot, settings
from trendscan.runner.service import TradingService, build_service

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("trendscan.api")


def create_app(service: Optional[TradingService] = None, *, start_loops: bool = True) -> FastAPI:
    """
    Control API. With no service injected, startup builds the default one
    (Binance market data + paper orders) from settings.
    """
    app = FastAPI(title="trendscan")
    state: Dict[str, Optional[TradingService]] = {"service": service}

    def svc() -> TradingService:
        s = state["service"]
        if s is None:
            raise HTTPException(status_code=503, detail="service_not_started")
        return s

    @app.on_event("startup")
    async def _startup() -> None:
        """Fail-fast config validation, then wire and start the loops."""
        try:
            settings.validate_runtime()
        except ValueError as e:
            # Fail-closed: refuse to run with a dangerous config
            log.error("%s", e)
            raise

        if state["service"] is None:
            state["service"] = build_service(settings)
        s = state["service"]
        if start_loops:
            s.start()
        if settings.AUTO_TRADING_ON_START:
            s.start_auto_trading()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        s = state["service"]
        if s is not None and start_loops:
            s.shutdown()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        s = state["service"]
        return {"ok": True, "service": s is not None, "running": bool(s and s.running)}

    @app.get("/status")
    async def status() -> Dict[str, Any]:
        return svc().status()

    @app.post("/auto-trading/start")
    async def auto_trading_start() -> Dict[str, Any]:
        s = svc()
        s.start_auto_trading()
        return {"auto_trading": s.auto_trading.is_set()}

    @app.post("/auto-trading/stop")
    async def auto_trading_stop() -> Dict[str, Any]:
        s = svc()
        s.stop_auto_trading()
        return {"auto_trading": s.auto_trading.is_set()}

    @app.post("/scan/run-once")
    def scan_run_once() -> Dict[str, Any]:
        # sync endpoint: FastAPI runs it in a worker thread
        return svc().run_scan_once().to_dict()

    @app.post("/positions/refresh")
    def positions_refresh() -> Dict[str, Any]:
        results = svc().refresh_positions()
        return {"count": len(results), "results": results}

    @app.post("/positions/{symbol}/close")
    def position_close(symbol: str) -> Dict[str, Any]:
        res = svc().close_position(symbol)
        if not res.executed and res.reason == "no_position":
            raise HTTPException(status_code=404, detail=f"no open position for {symbol.upper()}")
        return {"symbol": symbol.upper(), "executed": res.executed, "reason": res.reason, "details": res.details}

    @app.get("/positions")
    async def positions() -> Dict[str, Any]:
        items = [p.to_dict() for p in svc().manager.positions()]
        return {"count": len(items), "positions": items}

    @app.get("/signals")
    async def signals(limit: int = Query(50, ge=1, le=50)) -> Dict[str, Any]:
        items = [r.to_dict() for r in svc().scanner.signal_history()[:limit]]
        return {"count": len(items), "signals": items}

    @app.get("/events")
    async def events(
        limit: int = Query(100, ge=1, le=500),
        event_type: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        data = svc().audit.tail(limit=limit, event_type=event_type)
        return {"count": len(data), "events": data}

    @app.get("/config")
    async def config_view() -> Dict[str, Any]:
        return {
            "trading": svc().config.model_dump(),
            "settings": safe_config_snapshot(settings),
        }

    @app.patch("/config")
    async def config_update(changes: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        try:
            cfg = svc().update_config(changes)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"trading": cfg.model_dump()}

    return app


app = create_app()
