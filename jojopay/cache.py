import threading
import time

from cachetools import TTLCache

from jojopay.config import get_settings


def client_key(request) -> str:
    """Rate-limit key for a request: the connecting peer.

    X-Forwarded-For is only honoured when the peer is a configured trusted
    proxy, and then only the right-most hop that is not itself a trusted proxy.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = get_settings().trusted_proxies
    if peer not in trusted:
        return peer
    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


class RateLimiter:
    """Fixed-window request counter per client, local to this process."""

    def __init__(self, max_requests: int, window: float, maxsize: int = 10000, timer=time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._timer = timer
        self._hits = TTLCache(maxsize=maxsize, ttl=window, timer=timer)
        self._lock = threading.Lock()

    def is_limited(self, key: str) -> bool:
        now = self._timer()
        with self._lock:
            count, reset_at = self._hits.get(key, (0, now + self.window))
            if now > reset_at:
                count, reset_at = 0, now + self.window
            if count >= self.max_requests:
                return True
            self._hits[key] = (count + 1, reset_at)
            return False

    def clear(self):
        with self._lock:
            self._hits.clear()


class ResponseCache:
    """Bounded TTL cache for admin listings. Entries may be stale for up to ``ttl`` seconds."""

    def __init__(self, maxsize: int = 64, ttl: float = 60, timer=time.monotonic):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def get_or_set(self, key, produce):
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        value = produce()
        with self._lock:
            self._cache[key] = value
        return value

    def clear(self):
        with self._lock:
            self._cache.clear()
