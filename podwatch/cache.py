"""Explicit TTL cache, injected into enrichers instead of module-level state."""

import logging
import time
from typing import Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Maps keys to values that expire *ttl* seconds after being stored.

    Expired entries are dropped lazily on access and by :meth:`prune`.

    Args:
        ttl: Lifetime of an entry in seconds.
        name: Label used in log messages.
        clock: Monotonic time source, overridable in tests.
    """

    def __init__(
        self,
        ttl: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"TTL must be positive, got {ttl}")
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: dict[K, tuple[float, V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def get(self, key: K) -> V | None:
        """Return the cached value for *key*, or ``None`` if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self._clock(), value)

    def missing(self, keys: list[K]) -> list[K]:
        """Return the keys in *keys* that have no live entry, order preserved."""
        return [k for k in keys if self.get(k) is None]

    def prune(self) -> int:
        """Drop every expired entry; return how many were dropped."""
        now = self._clock()
        expired = [k for k, (at, _) in self._entries.items() if now - at >= self.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("%s: pruned %d expired entr(ies)", self.name, len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
