"""Staff-login brute-force guard.

Tracks failed attempts per source (client IP). Once a source reaches the
attempt threshold it is locked out for a window measured from its last
failure. A successful login deletes the counter.

Sources are best-effort and spoofable behind a misconfigured proxy; this
bounds exposure from one source, not from a distributed attacker.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from case_portal.errors import LockoutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCKOUT_SECONDS = 15 * 60.0
DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass
class _Counter:
    count: int
    last_attempt: float


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    retry_after: int = 0


class CredentialGuard:
    """Per-source failed-login counter with lockout and auto-expiry.

    Thread-safe. Owns its own state so tests and multiple apps in one
    process stay isolated.

    Args:
        max_attempts: Failures that trigger a lockout.
        lockout_seconds: Lockout window, measured from the last failure.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lockout_seconds: float = DEFAULT_LOCKOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._counters: dict[str, _Counter] = {}
        self._lock = threading.Lock()

    def _live_counter(self, source_id: str, now: float) -> _Counter | None:
        """Return the counter for *source_id*, dropping it if the window has passed.

        Caller holds ``_lock``.
        """
        counter = self._counters.get(source_id)
        if counter is not None and now - counter.last_attempt >= self.lockout_seconds:
            del self._counters[source_id]
            return None
        return counter

    def check(self, source_id: str) -> GuardDecision:
        """Report whether *source_id* may attempt a login right now."""
        now = self._clock()
        with self._lock:
            counter = self._live_counter(source_id, now)
            if counter is None or counter.count < self.max_attempts:
                return GuardDecision(allowed=True)
            remaining = self.lockout_seconds - (now - counter.last_attempt)
            return GuardDecision(allowed=False, retry_after=math.ceil(remaining))

    def enforce(self, source_id: str) -> None:
        """Raise LockoutError if *source_id* is locked out."""
        decision = self.check(source_id)
        if not decision.allowed:
            logger.warning(
                "Login blocked for source %s (retry in %ds)", source_id, decision.retry_after
            )
            raise LockoutError(decision.retry_after)

    def record(self, source_id: str, success: bool) -> None:
        """Record the outcome of a login attempt from *source_id*."""
        now = self._clock()
        with self._lock:
            if success:
                self._counters.pop(source_id, None)
                return
            counter = self._live_counter(source_id, now)
            if counter is None:
                self._counters[source_id] = _Counter(count=1, last_attempt=now)
                return
            counter.count = min(counter.count + 1, self.max_attempts)
            counter.last_attempt = now
            if counter.count >= self.max_attempts:
                logger.warning(
                    "Source %s locked out after %d failed logins", source_id, counter.count
                )

    def attempts(self, source_id: str) -> int:
        """Current failure count for *source_id* (0 if none or expired)."""
        now = self._clock()
        with self._lock:
            counter = self._live_counter(source_id, now)
            return counter.count if counter else 0

    def sweep(self) -> int:
        """Remove counters idle longer than the lockout window.

        Returns:
            Number of counters removed.
        """
        now = self._clock()
        with self._lock:
            stale = [
                source for source, counter in self._counters.items()
                if now - counter.last_attempt >= self.lockout_seconds
            ]
            for source in stale:
                del self._counters[source]
        if stale:
            logger.debug("Swept %d stale login counters", len(stale))
        return len(stale)

    async def run_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> None:
        """Background task: sweep every *interval* seconds until cancelled."""
        logger.info("Login counter sweeper started (interval=%.0fs)", interval)
        while True:
            await asyncio.sleep(interval)
            self.sweep()
