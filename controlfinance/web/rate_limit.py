"""Request throttling and login brute-force protection.

State lives behind two small store interfaces so the in-memory
implementations can be swapped for a shared store when the API runs as
several processes; until then each process enforces its own limits.
"""
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from controlfinance.api.errors import AppError


RATE_LIMIT_MESSAGE = "Muitas requisicoes. Tente novamente em instantes."
LOGIN_THROTTLE_MESSAGE = "Muitas tentativas de login. Tente novamente em alguns minutos."

# Seconds between sweeps of idle keys in the in-memory stores
SWEEP_INTERVAL = 60.0


class CounterStore:
    """Timestamped hit counters with expiry."""

    def hit(self, key: str, now: float, window: float) -> int:
        """Record a hit and return the number of hits inside the window."""
        raise NotImplementedError

    def release(self, key: str) -> None:
        """Forget the most recent hit for ``key``."""
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    """Sliding-log counters kept in a dict of deques.

    A key is dropped once its newest hit has left its window.
    """

    def __init__(self, sweep_interval: float = SWEEP_INTERVAL):
        self.sweep_interval = sweep_interval
        self._hits: Dict[str, Deque[float]] = {}
        self._expires: Dict[str, float] = {}
        self._next_sweep = float("-inf")
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, now: float) -> None:
        for key in [k for k, expires in self._expires.items() if expires <= now]:
            del self._expires[key]
            self._hits.pop(key, None)
        self._next_sweep = now + self.sweep_interval

    def hit(self, key: str, now: float, window: float) -> int:
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window:
                hits.popleft()
            hits.append(now)
            self._expires[key] = now + window
            return len(hits)

    def release(self, key: str) -> None:
        with self._lock:
            hits = self._hits.get(key)
            if hits:
                hits.pop()
            if not hits:
                self._hits.pop(key, None)
                self._expires.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._expires.clear()


@dataclass
class AttemptState:
    failed_count: int
    first_failed_at: float
    lock_until: float = 0.0
    # After this moment the record no longer affects anything
    expires_at: float = 0.0


class LockStore:
    """Failed-attempt records with an optional lock expiry."""

    def get(self, key: str, now: float) -> Optional[AttemptState]:
        """Get the live record for ``key``."""
        raise NotImplementedError

    def update(
        self,
        key: str,
        now: float,
        change: Callable[[Optional[AttemptState]], Optional[AttemptState]]
    ) -> Optional[AttemptState]:
        """Atomically replace the record with ``change(record)``.

        A None result deletes the record. Returns the stored result.
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class InMemoryLockStore(LockStore):

    def __init__(self, sweep_interval: float = SWEEP_INTERVAL):
        self.sweep_interval = sweep_interval
        self._entries: Dict[str, AttemptState] = {}
        self._next_sweep = float("-inf")
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live(self, key: str, now: float) -> Optional[AttemptState]:
        if now >= self._next_sweep:
            for stale in [k for k, s in self._entries.items() if s.expires_at <= now]:
                del self._entries[stale]
            self._next_sweep = now + self.sweep_interval
        state = self._entries.get(key)
        if state is not None and state.expires_at <= now:
            del self._entries[key]
            return None
        return state

    def get(self, key: str, now: float) -> Optional[AttemptState]:
        with self._lock:
            return self._live(key, now)

    def update(
        self,
        key: str,
        now: float,
        change: Callable[[Optional[AttemptState]], Optional[AttemptState]]
    ) -> Optional[AttemptState]:
        with self._lock:
            state = change(self._live(key, now))
            if state is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = state
            return state

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


class SlidingWindowLimiter:
    """At most ``max_requests`` per ``window`` seconds per identity."""

    def __init__(
        self,
        scope: str,
        max_requests: int,
        window: float,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.monotonic,
        message: str = RATE_LIMIT_MESSAGE
    ):
        self.scope = scope
        self.max_requests = max_requests
        self.window = window
        self.store = store or InMemoryCounterStore()
        self.clock = clock
        self.message = message

    def _key(self, identity: str) -> str:
        return f"{self.scope}:{identity}"

    def hit(self, identity: str) -> None:
        """Count a request. Raises AppError(429) once the quota is spent."""
        count = self.store.hit(self._key(identity), self.clock(), self.window)
        if count > self.max_requests:
            raise AppError(429, self.message)

    def release(self, identity: str) -> None:
        """Stop counting the last request (used for successful logins)."""
        self.store.release(self._key(identity))

    def reset(self) -> None:
        self.store.reset()


def login_attempt_key(address: str, email) -> Optional[str]:
    """Key for the brute-force guard; None when no email was submitted."""
    email = email.strip().lower() if isinstance(email, str) else ""
    if not email:
        return None
    return f"{address or 'unknown'}:{email}"


class LoginGuard:
    """Locks an (address, email) pair after repeated failed logins."""

    def __init__(
        self,
        max_attempts: int,
        window: float,
        lock_duration: float,
        store: Optional[LockStore] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_attempts = max_attempts
        self.window = window
        self.lock_duration = lock_duration
        self.store = store or InMemoryLockStore()
        self.clock = clock

    def _should_reset(self, state: Optional[AttemptState], now: float) -> bool:
        if state is None:
            return True
        if state.lock_until and state.lock_until <= now:
            return True
        return now - state.first_failed_at >= self.window

    def check(self, key: Optional[str]) -> None:
        """Raise AppError(429) while ``key`` is locked."""
        if not key:
            return
        now = self.clock()
        state = self.store.update(
            key, now, lambda current: None if self._should_reset(current, now) else current
        )
        if state is not None and state.lock_until > now:
            raise AppError(429, LOGIN_THROTTLE_MESSAGE)

    def register_failure(self, key: Optional[str]) -> None:
        if not key:
            return
        now = self.clock()

        def count_failure(state: Optional[AttemptState]) -> AttemptState:
            if self._should_reset(state, now):
                failed_count, first_failed_at = 1, now
            else:
                failed_count, first_failed_at = state.failed_count + 1, state.first_failed_at
            lock_until = now + self.lock_duration if failed_count >= self.max_attempts else 0.0
            return AttemptState(
                failed_count,
                first_failed_at,
                lock_until,
                expires_at=max(lock_until, first_failed_at + self.window),
            )

        self.store.update(key, now, count_failure)

    def clear(self, key: Optional[str]) -> None:
        if key:
            self.store.delete(key)

    def reset(self) -> None:
        self.store.reset()
