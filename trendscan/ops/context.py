from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Optional

# Context-local (safe for threads); each loop thread sets its own cycle id
_current_cycle_id: ContextVar[Optional[str]] = ContextVar("current_cycle_id", default=None)


def new_cycle_id(prefix: str = "scan") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def set_cycle_id(cycle_id: str) -> None:
    _current_cycle_id.set(cycle_id)


def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()


def clear_cycle_id() -> None:
    _current_cycle_id.set(None)
