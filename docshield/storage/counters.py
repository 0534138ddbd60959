from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class CounterStore(Protocol):
    """Ephemeral keyed counters with expiry, as used by IP tracking and rate limits.

    Implementations raise ``CounterStoreError`` on backend failure; callers in the
    admission path treat that as fail-open.
    """

    async def incr(
        self, key: str, *, ttl_seconds: Optional[int] = None, refresh_ttl: bool = False
    ) -> int:
        """Increment ``key`` and return the new count.

        When ``ttl_seconds`` is given the expiry is set on the first increment
        (fixed window). With ``refresh_ttl`` the expiry is pushed out on every
        increment (sliding decay).
        """
        ...

    async def get_int(self, key: str) -> int:
        ...

    async def set_flag(self, key: str, ttl_seconds: int) -> None:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def delete(self, *keys: str) -> None:
        ...

    async def ttl(self, key: str) -> Optional[int]:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class MemoryCounterStore:
    """Process-local counter store.

    Used in tests and as the dev fallback when Redis is unreachable. The clock is
    injectable so window expiry can be exercised without sleeping.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._values: Dict[str, Tuple[int, Optional[float]]] = {}
        # Operations never await while holding the lock, so a thread lock is safe
        # across event loops (TestClient runs its own loop per request thread).
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[int, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return entry

    async def incr(
        self, key: str, *, ttl_seconds: Optional[int] = None, refresh_ttl: bool = False
    ) -> int:
        with self._lock:
            entry = self._live(key)
            count, expires_at = entry if entry else (0, None)
            count += 1
            if ttl_seconds and (count == 1 or refresh_ttl or expires_at is None):
                expires_at = self._clock() + ttl_seconds
            self._values[key] = (count, expires_at)
            return count

    async def get_int(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else 0

    async def set_flag(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (1, self._clock() + ttl_seconds)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(round(entry[1] - self._clock())))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()


class ManualClock:
    """Deterministic clock for exercising counter windows in tests and scripts."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


__all__ = ["CounterStore", "MemoryCounterStore", "ManualClock"]
