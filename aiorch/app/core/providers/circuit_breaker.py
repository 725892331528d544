############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# circuit_breaker.py: Per-provider circuit breaker state machine
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Per-provider circuit breaker.

States and the only legal transitions:

    closed    -> open       failures inside the sliding window reach threshold
    open      -> half_open  cooldown elapsed (evaluated lazily on allow())
    half_open -> closed     trial call succeeded
    half_open -> open       trial call failed, cooldown restarts

Half-open admits at most ``half_open_max_calls`` concurrent trial calls.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, Optional, Set

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_ALLOWED_TRANSITIONS: Dict[CircuitState, Set[CircuitState]] = {
    CircuitState.CLOSED: {CircuitState.OPEN},
    CircuitState.OPEN: {CircuitState.HALF_OPEN},
    CircuitState.HALF_OPEN: {CircuitState.CLOSED, CircuitState.OPEN},
}


@dataclass
class ProviderHealth:
    """Point-in-time breaker state for one provider."""

    provider_id: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    window_start: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    latency_ema_ms: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN


TransitionCallback = Callable[[str, CircuitState, CircuitState, ProviderHealth], Awaitable[None]]


class CircuitBreaker:
    """Failure-state machine guarding one provider."""

    def __init__(
        self,
        provider_id: str,
        failure_threshold: int = 3,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Clock = SYSTEM_CLOCK,
        on_transition: Optional[TransitionCallback] = None,
    ):
        self.provider_id = provider_id
        self._threshold = failure_threshold
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._half_open_max = max(1, half_open_max_calls)
        self._clock = clock
        self._on_transition = on_transition
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._open_failure_count = 0
        self._half_open_in_flight = 0

    @classmethod
    def from_settings(
        cls,
        provider_id: str,
        settings,
        clock: Clock = SYSTEM_CLOCK,
        on_transition: Optional[TransitionCallback] = None,
    ) -> "CircuitBreaker":
        return cls(
            provider_id,
            failure_threshold=settings.circuit_breaker_threshold,
            window_seconds=settings.circuit_breaker_window_seconds,
            cooldown_seconds=settings.circuit_breaker_cooldown_seconds,
            half_open_max_calls=settings.circuit_breaker_half_open_max_calls,
            clock=clock,
            on_transition=on_transition,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def _transition(self, new_state: CircuitState, now: float) -> CircuitState:
        """Move to ``new_state``; caller holds the lock. Returns the old state."""
        old = self._state
        if new_state not in _ALLOWED_TRANSITIONS[old]:
            raise RuntimeError(f"Illegal circuit transition {old.value} -> {new_state.value}")
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = now
            self._open_failure_count = max(len(self._failures), 1)
            self._half_open_in_flight = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
        elif new_state == CircuitState.CLOSED:
            self._failures.clear()
            self._opened_at = None
            self._open_failure_count = 0
            self._half_open_in_flight = 0
        return old

    async def _notify(self, old: CircuitState, new: CircuitState) -> None:
        snapshot = self.snapshot()
        if new == CircuitState.OPEN:
            logger.warning(
                "circuit_breaker_opened",
                provider_id=self.provider_id,
                previous=old.value,
                failures=snapshot.failure_count,
                cooldown_seconds=self._cooldown,
            )
        elif new == CircuitState.CLOSED:
            logger.info("circuit_breaker_closed", provider_id=self.provider_id)
        else:
            logger.info("circuit_breaker_half_open", provider_id=self.provider_id)
        if self._on_transition is not None:
            await self._on_transition(self.provider_id, old, new, snapshot)

    async def allow(self) -> bool:
        """Whether a call may be made now. Reserves a trial slot when half-open."""
        changed = None
        async with self._lock:
            now = self._clock.monotonic()
            if self._state == CircuitState.OPEN:
                if self._opened_at is not None and now - self._opened_at >= self._cooldown:
                    changed = (self._transition(CircuitState.HALF_OPEN, now), CircuitState.HALF_OPEN)
                else:
                    return False
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self._half_open_max:
                    allowed = False
                else:
                    self._half_open_in_flight += 1
                    allowed = True
            else:
                allowed = True
        if changed:
            await self._notify(*changed)
        return allowed

    async def record_result(self, success: bool) -> None:
        """Feed the outcome of a call admitted by allow()."""
        changed = None
        async with self._lock:
            now = self._clock.monotonic()
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                if success:
                    changed = (self._transition(CircuitState.CLOSED, now), CircuitState.CLOSED)
                else:
                    self._failures.append(now)
                    changed = (self._transition(CircuitState.OPEN, now), CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._prune(now)
                if not success:
                    self._failures.append(now)
                    if len(self._failures) >= self._threshold:
                        changed = (self._transition(CircuitState.OPEN, now), CircuitState.OPEN)
            # Results arriving while open belong to calls admitted before it opened
        if changed:
            await self._notify(*changed)

    async def record_cancelled(self) -> None:
        """Release a half-open trial slot without judging the provider."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def _to_datetime(self, mono: Optional[float]) -> Optional[datetime]:
        if mono is None:
            return None
        return self._clock.now() - timedelta(seconds=self._clock.monotonic() - mono)

    def _to_monotonic(self, when: Optional[datetime]) -> Optional[float]:
        if when is None:
            return None
        return self._clock.monotonic() - (self._clock.now() - when).total_seconds()

    def snapshot(self) -> ProviderHealth:
        self._prune(self._clock.monotonic())
        if self._state == CircuitState.CLOSED:
            failure_count = len(self._failures)
        else:
            failure_count = self._open_failure_count
        return ProviderHealth(
            provider_id=self.provider_id,
            state=self._state,
            failure_count=failure_count,
            window_start=self._to_datetime(self._failures[0]) if self._failures else None,
            opened_at=self._to_datetime(self._opened_at),
        )

    async def restore(self, health: ProviderHealth) -> None:
        """Load persisted state on startup. No transition events are emitted."""
        async with self._lock:
            self._state = health.state
            self._failures.clear()
            self._half_open_in_flight = 0
            if health.state == CircuitState.CLOSED:
                start = self._to_monotonic(health.window_start)
                if start is not None:
                    self._failures.extend([start] * min(health.failure_count, self._threshold - 1))
                self._opened_at = None
                self._open_failure_count = 0
            else:
                self._opened_at = self._to_monotonic(health.opened_at) or self._clock.monotonic()
                self._open_failure_count = health.failure_count
                # A restored half-open circuit re-enters open so the cooldown check gates the next trial
                if health.state == CircuitState.HALF_OPEN:
                    self._state = CircuitState.OPEN
                    self._opened_at -= self._cooldown

    async def merge_remote(self, health: ProviderHealth) -> bool:
        """Adopt an open circuit observed by another instance.

        Only a closed local circuit adopts a remote open state, and only while
        the remote cooldown is still running. Returns True when adopted.
        """
        changed = None
        async with self._lock:
            if self._state != CircuitState.CLOSED or health.state != CircuitState.OPEN:
                return False
            opened_at = self._to_monotonic(health.opened_at)
            now = self._clock.monotonic()
            if opened_at is None or now - opened_at >= self._cooldown:
                return False
            changed = (self._transition(CircuitState.OPEN, now), CircuitState.OPEN)
            self._opened_at = opened_at
            self._open_failure_count = health.failure_count
        logger.info("circuit_breaker_adopted_remote_open", provider_id=self.provider_id)
        await self._notify(*changed)
        return True
