import time
from typing import Callable, Generic, Optional, Protocol, TypeVar

T = TypeVar("T")

# Unconsumed handshakes are discarded after this many seconds
SESSION_TTL_SECONDS = 10 * 60


class HandshakeSessionStore(Protocol[T]):
    def put(self, key: str, value: T, ttl: float) -> None: ...

    def take_once(self, key: str) -> Optional[T]: ...


class InMemorySessionStore(Generic[T]):
    """
    Single-process session store with per-key expiry.

    take_once() removes the entry it returns, so a state token can only ever
    be redeemed once. Expired entries are dropped on every access.
    """

    def __init__(self, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self._entries: dict[str, tuple[float, T]] = {}

    def put(self, key: str, value: T, ttl: float = SESSION_TTL_SECONDS) -> None:
        self._evict_expired()
        self._entries[key] = (self._monotonic() + ttl, value)

    def take_once(self, key: str) -> Optional[T]:
        self._evict_expired()
        entry = self._entries.pop(key, None)
        return entry[1] if entry else None

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._monotonic()
        expired = [k for k, (deadline, _) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]
