"""SuaTalk Analysis - Dispatch slot accounting.

Global and per-kind limits are checked at dispatch time: the poll loop only
claims a lease when a slot is free, so a leased job never waits for capacity.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping

__all__ = ["BoundedPools"]


class BoundedPools:
    """Track running handlers against a global cap and per-kind caps.

    Not thread-safe; owned by the scheduler's event loop.
    """

    def __init__(
        self,
        *,
        global_limit: int,
        pool_limits: Mapping[str, int] | None = None,
        default_pool_limit: int = 1,
    ) -> None:
        self._global_limit = max(1, int(global_limit))
        self._default_pool_limit = max(1, int(default_pool_limit))
        self._pool_limits: dict[str, int] = {}
        if pool_limits:
            for name, value in pool_limits.items():
                self._pool_limits[str(name)] = max(1, int(value))
        self._running: Counter[str] = Counter()

    @property
    def global_limit(self) -> int:
        return self._global_limit

    @property
    def in_use(self) -> int:
        return sum(self._running.values())

    def limit_for(self, name: str) -> int:
        return min(self._pool_limits.get(str(name), self._default_pool_limit), self._global_limit)

    def running(self, name: str) -> int:
        return self._running[str(name)]

    def global_full(self) -> bool:
        return self.in_use >= self._global_limit

    def has_capacity(self, name: str) -> bool:
        return not self.global_full() and self.running(name) < self.limit_for(name)

    def saturated(self, names: Iterable[str]) -> list[str]:
        """Return the names whose pool is at its limit, regardless of the global cap."""
        return [str(name) for name in names if self.running(name) >= self.limit_for(name)]

    def try_acquire(self, name: str) -> bool:
        """Take a slot for name if both the global and pool caps allow it."""
        if not self.has_capacity(name):
            return False
        self._running[str(name)] += 1
        return True

    def release(self, name: str) -> None:
        key = str(name)
        if self._running[key] <= 0:
            raise RuntimeError(f"release() without matching acquire for pool '{key}'")
        self._running[key] -= 1
        if self._running[key] == 0:
            del self._running[key]
