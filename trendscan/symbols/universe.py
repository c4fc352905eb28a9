from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence, Set, Union

log = logging.getLogger("trendscan.universe")


def parse_symbols(raw: Union[str, Sequence[str]], max_symbols: int = 100) -> List[str]:
    # Accept both CSV string and list[str]
    if isinstance(raw, str):
        symbols = [s.strip().upper() for s in raw.split(",") if s.strip()]
    else:
        symbols = [str(s).strip().upper() for s in raw if str(s).strip()]

    # remove duplicates but keep order
    seen: Set[str] = set()
    unique = []
    for s in symbols:
        if s not in seen:
            seen.add(s)
            unique.append(s)

    return unique[:max_symbols]


def batches(pool: Sequence[str], batch_size: int) -> List[List[str]]:
    """Split the pool into consecutive fixed-size batches (last one may be short)."""
    if batch_size <= 0:
        return []
    return [list(pool[i : i + batch_size]) for i in range(0, len(pool), batch_size)]


@dataclass(frozen=True)
class Batch:
    index: int
    total: int
    symbols: List[str]


@dataclass(frozen=True)
class PoolSnapshot:
    symbols: List[str]
    batch_index: int
    refreshed_at: float


class SymbolPool:
    """
    Liquidity-ranked symbol pool with batch rotation.

    The rotation pointer survives a refresh that returns the same set of
    symbols; only a change in composition resets it to 0.
    """

    def __init__(
        self,
        *,
        pool_size: int,
        batch_size: int,
        refresh_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.pool_size = int(pool_size)
        self.batch_size = int(batch_size)
        self.refresh_seconds = float(refresh_seconds)
        self._clock = clock

        self._symbols: List[str] = []
        self._batch_index = 0
        self._refreshed_at = 0.0
        self._lock = threading.Lock()

    @property
    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._symbols)

    @property
    def batch_index(self) -> int:
        with self._lock:
            return self._batch_index

    def snapshot(self) -> PoolSnapshot:
        with self._lock:
            return PoolSnapshot(list(self._symbols), self._batch_index, self._refreshed_at)

    def needs_refresh(self) -> bool:
        with self._lock:
            if not self._symbols:
                return True
            return (self._clock() - self._refreshed_at) >= self.refresh_seconds

    def update(self, ranking: Sequence[str]) -> bool:
        """
        Replace the pool with the top `pool_size` of `ranking`.
        Returns True when the composition changed (pointer reset).
        """
        new_pool = parse_symbols(list(ranking), max_symbols=self.pool_size)
        with self._lock:
            self._refreshed_at = self._clock()
            if set(new_pool) == set(self._symbols):
                return False
            self._symbols = new_pool
            self._batch_index = 0
        log.info("symbol pool changed: %d symbols", len(new_pool))
        return True

    def refresh(self, fetch_ranking: Callable[[], Sequence[str]], force: bool = False) -> bool:
        """
        Refresh from `fetch_ranking` when empty/stale (or forced).
        A failed or empty fetch keeps the previous pool and is re-raised only
        when there is no pool at all.
        """
        if not force and not self.needs_refresh():
            return False
        try:
            ranking = list(fetch_ranking())
            if not ranking:
                raise ValueError("empty liquidity ranking")
        except Exception as e:
            if self.symbols:
                log.warning("pool refresh failed, keeping previous pool: %s: %s", type(e).__name__, e)
                return False
            raise
        return self.update(ranking)

    def next_batch(self) -> Batch:
        """Return the current batch and advance the pointer modulo batch count."""
        with self._lock:
            parts = batches(self._symbols, self.batch_size)
            if not parts:
                return Batch(index=0, total=0, symbols=[])
            total = len(parts)
            idx = self._batch_index % total
            self._batch_index = (idx + 1) % total
            return Batch(index=idx, total=total, symbols=parts[idx])
