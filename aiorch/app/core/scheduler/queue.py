############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# queue.py: Bounded five-level priority queue with aging
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request queue management for the orchestrator worker pool.

Entries are kept in one FIFO deque per submitted priority. An entry's
effective level is its priority minus one level per ``aging_seconds``
waited, so a long-waiting entry is promoted repeatedly until it reaches
CRITICAL. ``get()`` returns the entry with the lowest effective level,
oldest first among equals. Because aging is monotonic in wait time, the
head of each deque is always that deque's best candidate.
"""

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Deque, Dict, List, Optional, Union

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import QueueFull, ValidationError
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


class Priority(IntEnum):
    """Request priority; lower value is served first."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3
    BACKGROUND = 4

    @classmethod
    def from_str(cls, value: Union[str, int, "Priority"]) -> "Priority":
        if isinstance(value, Priority):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValidationError(
                f"Unknown priority '{value}'",
                allowed=[p.name.lower() for p in cls],
            ) from None


@dataclass(eq=False)
class QueueEntry:
    """One queued item and its scheduling state."""

    item: Any
    priority: Priority
    sequence: int
    enqueued_at: float
    cancelled: bool = False
    dequeued_at: Optional[float] = None

    def effective_level(self, now: float, aging_seconds: float) -> int:
        if aging_seconds <= 0:
            return int(self.priority)
        promotions = int((now - self.enqueued_at) // aging_seconds)
        return max(0, int(self.priority) - promotions)

    def wait_seconds(self, now: float) -> float:
        end = self.dequeued_at if self.dequeued_at is not None else now
        return max(0.0, end - self.enqueued_at)


class RequestQueue:
    """
    Bounded priority queue for orchestrated requests.

    Capacity is enforced per submitted priority level; a cancelled entry
    releases its slot immediately and is skipped when it reaches the head.
    """

    def __init__(
        self,
        capacities: Optional[Dict[Priority, int]] = None,
        default_capacity: int = 1000,
        aging_seconds: float = 30.0,
        clock: Clock = SYSTEM_CLOCK,
    ):
        capacities = capacities or {}
        self._capacity: Dict[Priority, int] = {
            p: int(capacities.get(p, default_capacity)) for p in Priority
        }
        self._aging_seconds = aging_seconds
        self._clock = clock

        self._levels: Dict[Priority, Deque[QueueEntry]] = {p: deque() for p in Priority}
        self._live: Dict[Priority, int] = {p: 0 for p in Priority}
        self._getters: Deque[asyncio.Future] = deque()
        self._putters: Dict[Priority, Deque[asyncio.Future]] = {p: deque() for p in Priority}
        self._sequence = itertools.count()

        self._enqueued_total = 0
        self._dequeued_total = 0
        self._rejected_total = 0
        self._cancelled_total = 0
        self._promoted_total = 0

    @classmethod
    def from_settings(cls, settings, clock: Clock = SYSTEM_CLOCK) -> "RequestQueue":
        return cls(
            capacities={p: settings.get_queue_capacity(p.name) for p in Priority},
            default_capacity=settings.queue_capacity_per_level,
            aging_seconds=settings.queue_aging_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Waiter wakeups
    # ------------------------------------------------------------------

    @staticmethod
    def _wakeup_next(waiters: Deque[asyncio.Future]) -> None:
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break

    def _release_slot(self, priority: Priority) -> None:
        self._live[priority] -= 1
        self._wakeup_next(self._putters[priority])

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def full(self, priority: Union[str, int, Priority]) -> bool:
        priority = Priority.from_str(priority)
        return self._live[priority] >= self._capacity[priority]

    def put_nowait(self, item: Any, priority: Union[str, int, Priority] = Priority.NORMAL) -> QueueEntry:
        """
        Enqueue an item without waiting.

        Raises:
            QueueFull: if the item's priority level is at capacity
        """
        priority = Priority.from_str(priority)
        if self._live[priority] >= self._capacity[priority]:
            self._rejected_total += 1
            logger.warning(
                "queue_full",
                priority=priority.name.lower(),
                capacity=self._capacity[priority],
            )
            raise QueueFull(
                f"Queue level '{priority.name.lower()}' is full",
                priority=priority.name.lower(),
                capacity=self._capacity[priority],
            )

        entry = QueueEntry(
            item=item,
            priority=priority,
            sequence=next(self._sequence),
            enqueued_at=self._clock.monotonic(),
        )
        self._levels[priority].append(entry)
        self._live[priority] += 1
        self._enqueued_total += 1
        self._wakeup_next(self._getters)
        return entry

    async def put(
        self,
        item: Any,
        priority: Union[str, int, Priority] = Priority.NORMAL,
        timeout: Optional[float] = None,
    ) -> QueueEntry:
        """
        Enqueue an item, waiting up to ``timeout`` seconds for a free slot.

        Raises:
            QueueFull: if no slot frees up in time
        """
        priority = Priority.from_str(priority)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while self.full(priority):
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return self.put_nowait(item, priority)
            putter = loop.create_future()
            self._putters[priority].append(putter)
            try:
                await asyncio.wait_for(putter, timeout=remaining)
            except asyncio.TimeoutError:
                self._discard(self._putters[priority], putter)
                return self.put_nowait(item, priority)
            except asyncio.CancelledError:
                self._discard(self._putters[priority], putter)
                if not self.full(priority) and not putter.cancelled():
                    self._wakeup_next(self._putters[priority])
                raise
        return self.put_nowait(item, priority)

    @staticmethod
    def _discard(waiters: Deque[asyncio.Future], waiter: asyncio.Future) -> None:
        try:
            waiters.remove(waiter)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def _pop_ready(self) -> Optional[QueueEntry]:
        now = self._clock.monotonic()
        best: Optional[QueueEntry] = None
        best_key = None
        for priority, level in self._levels.items():
            while level and level[0].cancelled:
                level.popleft()
            if not level:
                continue
            head = level[0]
            key = (head.effective_level(now, self._aging_seconds), head.sequence)
            if best_key is None or key < best_key:
                best, best_key = head, key

        if best is None:
            return None

        self._levels[best.priority].popleft()
        best.dequeued_at = now
        self._dequeued_total += 1
        if best_key[0] < best.priority:
            self._promoted_total += 1
        self._release_slot(best.priority)
        return best

    def get_nowait(self) -> Optional[QueueEntry]:
        """Highest-priority live entry, or None when the queue is empty."""
        return self._pop_ready()

    async def get(self) -> QueueEntry:
        """Wait for and return the highest-priority live entry."""
        while True:
            entry = self._pop_ready()
            if entry is not None:
                return entry
            getter = asyncio.get_running_loop().create_future()
            self._getters.append(getter)
            try:
                await getter
            except asyncio.CancelledError:
                self._discard(self._getters, getter)
                if len(self) and not getter.cancelled():
                    self._wakeup_next(self._getters)
                raise

    def cancel(self, entry: QueueEntry) -> bool:
        """Cancel a queued entry; returns False if it was already dequeued or cancelled."""
        if entry.cancelled or entry.dequeued_at is not None:
            return False
        entry.cancelled = True
        self._cancelled_total += 1
        self._release_slot(entry.priority)
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return sum(self._live.values())

    def depths(self) -> Dict[str, int]:
        """Live entries per effective priority level."""
        now = self._clock.monotonic()
        counts = {p.name.lower(): 0 for p in Priority}
        for level in self._levels.values():
            for entry in level:
                if not entry.cancelled:
                    counts[Priority(entry.effective_level(now, self._aging_seconds)).name.lower()] += 1
        return counts

    def oldest_wait_seconds(self) -> float:
        now = self._clock.monotonic()
        waits: List[float] = [
            entry.wait_seconds(now)
            for level in self._levels.values()
            for entry in level
            if not entry.cancelled
        ]
        return max(waits) if waits else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "depth": len(self),
            "depths": self.depths(),
            "capacities": {p.name.lower(): c for p, c in self._capacity.items()},
            "aging_seconds": self._aging_seconds,
            "oldest_wait_seconds": round(self.oldest_wait_seconds(), 3),
            "enqueued_total": self._enqueued_total,
            "dequeued_total": self._dequeued_total,
            "rejected_total": self._rejected_total,
            "cancelled_total": self._cancelled_total,
            "promoted_total": self._promoted_total,
            "waiting_consumers": sum(1 for g in self._getters if not g.done()),
        }
