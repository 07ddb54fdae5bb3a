"""In-process cache with per-entry expiry."""
import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Key -> value store where every entry expires after a fixed TTL.

    The owner of a cache instance is the only writer; other components go
    through the owner's invalidate methods.

    Args:
        ttl_seconds: Lifetime of an entry. ``None`` keeps entries until removed.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[V, Optional[float]]] = {}

    def get(self, key: str) -> Optional[V]:
        """Return the live value for key, dropping it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None

        return value

    def set(self, key: str, value: V) -> None:
        expires_at = None
        if self.ttl_seconds is not None:
            expires_at = self._clock() + self.ttl_seconds
        self._entries[key] = (value, expires_at)

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        """Remove every expired entry and return how many were dropped."""
        now = self._clock()
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
