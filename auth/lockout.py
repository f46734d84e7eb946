"""
auth/lockout.py -- In-process failed-login tracker.

Counts failed credential checks per login key ("user:admin",
"client:<client_id>") inside a sliding failure window. Once the count exceeds
max_failed_attempts within window_minutes the key is locked for
cooldown_minutes; a successful login clears it. Failures older than the
window are forgotten, and cleanup() drops every entry that no longer carries
state, so the table stays bounded by recent activity.

State lives in this process only. Behind several workers each worker counts
separately, which still bounds guessing to workers x max_failed_attempts per
cooldown window; the slowapi limit on the token endpoint covers the rest.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

# record_failure() runs cleanup() once the table grows past this many keys.
CLEANUP_THRESHOLD = 1000


@dataclass
class _Attempts:
    failures: int = 0
    window_start: float = 0.0
    locked_until: float = 0.0


class LoginAttemptTracker:
    def __init__(
        self,
        max_failed_attempts: int = 5,
        cooldown_minutes: int = 10,
        window_minutes: int = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_failed_attempts = max_failed_attempts
        self.cooldown_seconds = cooldown_minutes * 60
        self.window_seconds = window_minutes * 60
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: dict[str, _Attempts] = {}

    def _expired(self, entry: _Attempts, now: float) -> bool:
        if entry.locked_until:
            return now >= entry.locked_until
        return now - entry.window_start >= self.window_seconds

    def is_locked(self, key: str) -> bool:
        with self._lock:
            entry = self._attempts.get(key)
            if entry is None or entry.locked_until == 0.0:
                return False
            if self._clock() >= entry.locked_until:
                # Cooldown over: start counting from zero again.
                del self._attempts[key]
                return False
            return True

    def record_failure(self, key: str) -> bool:
        """Count one failure. Returns True if this failure locked the key."""
        with self._lock:
            now = self._clock()
            entry = self._attempts.get(key)
            if entry is None or self._expired(entry, now):
                entry = self._attempts[key] = _Attempts(window_start=now)
            entry.failures += 1
            locked = False
            if entry.failures > self.max_failed_attempts and entry.locked_until == 0.0:
                entry.locked_until = now + self.cooldown_seconds
                locked = True
            if len(self._attempts) > CLEANUP_THRESHOLD:
                self._purge(now)
            return locked

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def cleanup(self) -> int:
        """Drop entries whose window or lock has run out. Returns how many were removed."""
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: float) -> int:
        stale = [key for key, entry in self._attempts.items() if self._expired(entry, now)]
        for key in stale:
            del self._attempts[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)
