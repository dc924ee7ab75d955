"""Per-client sliding window rate limiters for the portal.

In-memory, single-process. Each key (client IP) is tracked independently.
The portal holds three named limiters: ``api`` for every /api request,
and the stricter ``otp_request`` / ``otp_verify`` for the one-time code
endpoints.
"""

import threading
import time
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 900.0

# name -> (limit, window seconds)
DEFAULT_LIMITS: dict[str, tuple[int, float]] = {
    "api": (100, 900.0),
    "otp_request": (10, 900.0),
    "otp_verify": (20, 900.0),
}

# How often (in seconds) to purge stale entries from the store.
_CLEANUP_INTERVAL = 120.0

# Hard cap on tracked keys; oldest-touched keys are evicted beyond it.
_MAX_STORE_SIZE = 10_000


class RateLimiter:
    """Sliding-window rate limiter keyed by client address.

    Thread-safe.

    Args:
        limit: Maximum number of requests allowed per window.
        window: Window size in seconds.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def is_allowed(self, key: str) -> bool:
        """Check whether a request from *key* is within the limit.

        Records the request timestamp if allowed.
        """
        now = self._clock()

        with self._lock:
            if now - self._last_cleanup > _CLEANUP_INTERVAL:
                self._cleanup(now)
                self._last_cleanup = now

            timestamps = self._store.get(key)
            if timestamps is None:
                if len(self._store) >= _MAX_STORE_SIZE:
                    self._evict_oldest()
                self._store[key] = [now]
                return True

            cutoff = now - self.window
            timestamps[:] = [ts for ts in timestamps if ts >= cutoff]

            if len(timestamps) >= self.limit:
                return False

            timestamps.append(now)
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until *key* may make another request (0 if it may now)."""
        now = self._clock()
        with self._lock:
            timestamps = self._store.get(key) or []
            live = [ts for ts in timestamps if ts >= now - self.window]
            if len(live) < self.limit:
                return 0
            return max(1, int(live[0] + self.window - now + 0.999))

    def reset(self) -> None:
        with self._lock:
            self._store.clear()

    def _cleanup(self, now: float) -> None:
        """Remove keys with no recent requests. Caller must hold _lock."""
        cutoff = now - self.window
        stale_keys = [
            key for key, timestamps in self._store.items()
            if not timestamps or timestamps[-1] < cutoff
        ]
        for key in stale_keys:
            del self._store[key]

    def _evict_oldest(self) -> None:
        """Drop the key with the oldest latest request. Caller must hold _lock."""
        oldest = min(
            self._store, key=lambda k: self._store[k][-1] if self._store[k] else 0.0
        )
        del self._store[oldest]


class RateLimits:
    """The portal's named limiters.

    Args:
        config: ``{name: {"limit": int, "window_seconds": float}}``;
            missing names fall back to ``DEFAULT_LIMITS``.
    """

    def __init__(self, config: dict | None = None, clock: Callable[[], float] = time.monotonic):
        config = config or {}
        self._limiters: dict[str, RateLimiter] = {}
        for name, (limit, window) in DEFAULT_LIMITS.items():
            section = config.get(name) or {}
            self._limiters[name] = RateLimiter(
                limit=int(section.get("limit", limit)),
                window=float(section.get("window_seconds", window)),
                clock=clock,
            )

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def check(self, name: str, key: str) -> bool:
        return self._limiters[name].is_allowed(key)

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the ``api`` limiter to every /api request except health."""

    def __init__(self, app, limits: RateLimits):
        super().__init__(app)
        self.limits = limits

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path.startswith("/api/") and path != "/api/health":
            ip = client_ip(request)
            if not self.limits.check("api", ip):
                return JSONResponse(
                    {"error": "Too many requests from this IP, please try again later."},
                    status_code=429,
                    headers={"Retry-After": str(self.limits["api"].retry_after(ip))},
                )
        return await call_next(request)
