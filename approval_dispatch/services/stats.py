"""Thread-safe delivery counters shared by the dispatcher and its workers."""

from __future__ import annotations

import threading

COUNTERS: tuple[str, ...] = (
    "enqueued",
    "published",
    "fallback_logged",
    "delivered",
    "retried",
    "dead_lettered",
    "lost",
)


class DispatchStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(COUNTERS, 0)

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self._counts:
            raise KeyError(f"Unknown dispatch counter '{name}'. Available: {', '.join(COUNTERS)}")
        with self._lock:
            self._counts[name] += amount

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)
