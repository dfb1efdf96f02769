"""
Token-bucket admission control keyed by resource identity.

Refill is computed lazily from elapsed monotonic time on each call, so no
background timer runs. A per-key admission log additionally caps the
number of admissions in any sliding window at ``capacity``, and a minimum
delay blocks rapid-fire bursts even when tokens remain.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from ..util.errors import RateLimited
from ..util.log import get_logger
from .events import SecurityEventType, SecurityLog
from .severity import Severity

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    capacity: int
    window_seconds: float
    min_delay_seconds: float = 0.0

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.min_delay_seconds < 0:
            raise ValueError("min_delay_seconds must not be negative")

    @property
    def refill_per_second(self) -> float:
        return self.capacity / self.window_seconds


HOUR = 3600.0

PRESETS = {
    "github_api": RateLimitPolicy(capacity=60, window_seconds=HOUR, min_delay_seconds=1.0),
    "update_check": RateLimitPolicy(capacity=10, window_seconds=HOUR, min_delay_seconds=30.0),
    "strict": RateLimitPolicy(capacity=5, window_seconds=HOUR, min_delay_seconds=60.0),
    "credential_validation": RateLimitPolicy(capacity=10, window_seconds=HOUR),
}


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_ms: int
    tokens_remaining: float
    key: str = ""


@dataclass
class RateState:
    """Per-key bucket state."""

    tokens: float
    last_refill: float
    last_admission: float | None = None
    admissions: deque = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    """Token-bucket limiter; one bucket per key."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        security_log: SecurityLog | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ):
        self.policy = policy
        self.security_log = security_log
        self.clock = clock
        self.name = name
        self._states: dict[str, RateState] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def for_preset(cls, preset: str, security_log: SecurityLog | None = None, **kwargs) -> "RateLimiter":
        """Create a limiter from a named preset."""
        try:
            policy = PRESETS[preset]
        except KeyError:
            raise ValueError(f"Unknown rate limit preset: {preset!r}") from None
        return cls(policy, security_log=security_log, name=preset, **kwargs)

    def check_limit(self, key: str) -> RateDecision:
        """Attempt one admission for ``key``."""
        state = self._state(key)
        policy = self.policy

        with state.lock:
            now = self.clock()
            self._refill(state, now)
            window_start = now - policy.window_seconds
            while state.admissions and state.admissions[0] <= window_start:
                state.admissions.popleft()

            waits = []
            if state.tokens < 1.0:
                waits.append((1.0 - state.tokens) / policy.refill_per_second)
            if len(state.admissions) >= policy.capacity:
                waits.append(state.admissions[0] + policy.window_seconds - now)
            if state.last_admission is not None:
                since_last = now - state.last_admission
                if since_last < policy.min_delay_seconds:
                    waits.append(policy.min_delay_seconds - since_last)

            if waits:
                retry_after_ms = max(1, int(max(waits) * 1000 + 0.999))
                decision = RateDecision(False, retry_after_ms, state.tokens, key)
            else:
                state.tokens -= 1.0
                state.last_admission = now
                state.admissions.append(now)
                decision = RateDecision(True, 0, state.tokens, key)

        if not decision.allowed:
            logger.info(
                "Rate limit hit for %s/%s, retry in %dms",
                self.name,
                key,
                decision.retry_after_ms,
                extra={"key": key},
            )
            if self.security_log is not None:
                self.security_log.record(
                    SecurityEventType.RATE_LIMIT_EXCEEDED,
                    Severity.MEDIUM,
                    f"rate_limiter:{self.name}",
                    {"key": key, "retry_after_ms": decision.retry_after_ms},
                )
        return decision

    def require(self, key: str) -> RateDecision:
        """Admit or raise ``RateLimited``."""
        decision = self.check_limit(key)
        if not decision.allowed:
            raise RateLimited(key, decision.retry_after_ms)
        return decision

    def status(self, key: str) -> RateDecision:
        """Report the current state for ``key`` without consuming a token."""
        state = self._state(key)
        with state.lock:
            now = self.clock()
            self._refill(state, now)
            tokens = state.tokens
        return RateDecision(tokens >= 1.0, 0, tokens, key)

    def reset(self, key: str | None = None) -> None:
        """Drop bucket state for one key, or for all keys."""
        with self._registry_lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)
        if self.security_log is not None:
            self.security_log.record(
                SecurityEventType.RATE_LIMIT_RESET,
                Severity.LOW,
                f"rate_limiter:{self.name}",
                {"key": key or "*"},
            )

    def _state(self, key: str) -> RateState:
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                state = RateState(tokens=float(self.policy.capacity), last_refill=self.clock())
                self._states[key] = state
            return state

    def _refill(self, state: RateState, now: float) -> None:
        # Ignore clock steps backwards
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(
            float(self.policy.capacity),
            state.tokens + elapsed * self.policy.refill_per_second,
        )
        state.last_refill = max(state.last_refill, now)
