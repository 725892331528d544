############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# events.py: Typed in-process event bus
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Typed in-process event bus.

Components publish frozen event dataclasses; subscribers register for an
event type explicitly. A failing handler is logged and never affects the
publisher or the other handlers.
"""

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type

from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmbeddingJobCompleted:
    job_id: int
    source_id: str
    content_hash: str
    model_id: str
    deduplicated: bool = False
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class EmbeddingJobFailed:
    job_id: int
    source_id: str
    attempts: int
    error: str
    permanent: bool
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class BudgetWarning:
    scope_key: str
    limit: float
    spent: float
    estimated_cost: float
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CircuitStateChanged:
    provider_id: str
    previous_state: str
    new_state: str
    failure_count: int
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Any], Any]


class EventBus:
    """Synchronous fan-out of events to subscribed handlers (sync or async)."""

    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_handler_error",
                    event=type(event).__name__,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

    def handler_count(self, event_type: Optional[Type] = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values())
