# ================================================================
# services/rate_limiter.py: Fixed-window request limiter
# ================================================================
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from core.errors import RateLimitError

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Minimal counter store the limiter needs; swap in Redis or similar in production."""

    def get(self, key: str) -> Optional[int]: ...

    def incr(self, key: str, amount: int = 1) -> int: ...

    def expire_at(self, key: str, timestamp: float) -> None: ...


class InMemoryCache:
    """Process-local CacheBackend. Expired keys are dropped on read and by sweep()."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._values: Dict[str, Tuple[int, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[int, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires = entry
        if expires is not None and expires <= self._clock():
            del self._values[key]
            return None
        return entry

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            entry = self._live(key)
            value, expires = entry if entry else (0, None)
            value += amount
            self._values[key] = (value, expires)
            return value

    def expire_at(self, key: str, timestamp: float) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                self._values[key] = (entry[0], timestamp)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires) in self._values.items() if expires is not None and expires <= now]
            for key in expired:
                del self._values[key]
        if expired:
            logger.debug("Swept %s expired rate-limit keys", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._values)


@dataclass(frozen=True)
class RateLimitStatus:
    key: str
    count: int
    limit: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


class RateLimiter:
    """
    Fixed hourly window per caller: guests by client IP, signed-in users by id.
    """

    def __init__(
        self,
        cache: CacheBackend,
        guest_limit: int = 5,
        user_limit: int = 100,
        window_seconds: int = 3600,
        clock=time.time,
    ):
        self.cache = cache
        self.guest_limit = guest_limit
        self.user_limit = user_limit
        self.window_seconds = window_seconds
        self._clock = clock

    def _window(self) -> Tuple[int, float]:
        now = self._clock()
        start = int(now // self.window_seconds) * self.window_seconds
        return start, start + self.window_seconds

    def hit(self, *, user_id: Optional[int] = None, client_ip: Optional[str] = None) -> RateLimitStatus:
        if user_id is not None:
            identity, limit = f"user:{user_id}", self.user_limit
        else:
            identity, limit = f"ip:{client_ip or 'unknown'}", self.guest_limit

        window_start, reset_at = self._window()
        key = f"ratelimit:{identity}:{window_start}"
        count = self.cache.incr(key)
        if count == 1:
            self.cache.expire_at(key, reset_at)

        status = RateLimitStatus(key=key, count=count, limit=limit, reset_at=reset_at)
        if count > limit:
            logger.warning("🚦 Rate limit hit for %s (%s/%s)", identity, count, limit)
            raise RateLimitError(
                "Too many requests, please try again later",
                upgrade=user_id is None,
            )
        return status
