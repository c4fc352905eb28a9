# trendscan/persistence/audit.py
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from trendscan.ops.context import get_cycle_id

log = logging.getLogger("trendscan.audit")

DEFAULT_MEMORY_EVENTS = 500


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Audit:
    """
    Structured event sink.

    Every event goes to the `trendscan.audit` logger, is appended to a JSONL
    file, and the most recent ones are kept in memory for the /events API.
    The core only emits events; it never reads them back for decisions.
    """

    def __init__(
        self,
        jsonl_path: Optional[str] = "logs/audit.jsonl",
        memory_size: int = DEFAULT_MEMORY_EVENTS,
    ):
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=memory_size)
        self._lock = threading.Lock()

        if self.jsonl_path is not None:
            try:
                self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
                self.jsonl_path.touch(exist_ok=True)
            except OSError as e:
                # never crash the bot due to audit file issues
                log.warning("audit file unavailable (%s): %s", self.jsonl_path, e)

    def event(
        self,
        event_type: str,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cycle_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        obj = {
            "timestamp_utc": utc_now_iso(),
            "event_type": event_type,
            "cycle_id": cycle_id or get_cycle_id(),
            "symbol": symbol,
            "action": action,
            "details": details or {},
        }

        with self._lock:
            self._recent.append(obj)

        level = logging.WARNING if event_type.endswith("FAILED") else logging.INFO
        log.log(
            level,
            "%s symbol=%s action=%s details=%s",
            event_type,
            symbol or "-",
            action or "-",
            json.dumps(obj["details"], ensure_ascii=False, default=str),
        )

        self._write_jsonl(obj)
        return obj

    def tail(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._recent)
        if event_type:
            items = [e for e in items if e["event_type"] == event_type]
        if limit <= 0:
            return []
        return items[-limit:]

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        if self.jsonl_path is None:
            return
        try:
            with self._lock:
                with self.jsonl_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never crash the trading loop because an audit write failed
            log.warning("audit write failed: %s", e)
