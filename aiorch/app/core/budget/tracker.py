############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# tracker.py: Budget enforcement and usage recording
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Cost tracker - spend per scope key against a windowed budget.

Hard mode rejects a request whose estimate would push spend past the
limit before any provider call, leaving spend untouched. Each call holds
its estimate as a reservation while it is in flight, so concurrent calls
cannot all pass against the same spend. Soft mode lets it through and
publishes a BudgetWarning. Windows roll over lazily on access via
compare-and-swap on window_start, so concurrent instances reset a window
exactly once.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import BudgetExceeded
from aiorch.app.core.events import BudgetWarning, EventBus
from aiorch.app.core.budget.store import Budget, BudgetStore
from aiorch.app.db.models import BudgetMode
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class BudgetCheck:
    """Outcome of a pre-call budget check."""

    scope_key: str
    allowed: bool
    estimated_cost: float
    limit: Optional[float] = None
    spent: float = 0.0
    reserved: float = 0.0
    mode: Optional[BudgetMode] = None
    warning: bool = False

    @property
    def remaining(self) -> Optional[float]:
        if self.limit is None:
            return None
        return max(0.0, self.limit - self.spent - self.reserved)


@dataclass(frozen=True)
class BudgetReservation:
    """Estimate held against a scope while its provider call is in flight."""

    scope_key: str
    amount: float


def _truncate(dt: datetime) -> datetime:
    # Whole seconds: MySQL DATETIME drops fractions and would break the CAS match
    return dt.replace(microsecond=0)


class CostTracker:
    """Checks and records spend per scope key."""

    def __init__(
        self,
        store: BudgetStore,
        clock: Clock = SYSTEM_CLOCK,
        events: Optional[EventBus] = None,
        default_limit: Optional[float] = None,
        default_mode: BudgetMode = BudgetMode.HARD,
        default_window_seconds: int = 86400,
    ):
        self._store = store
        self._clock = clock
        self._events = events
        self._default_limit = default_limit
        self._default_mode = BudgetMode(default_mode)
        self._default_window_seconds = default_window_seconds

    async def configure(
        self,
        scope_key: str,
        limit: float,
        mode: BudgetMode = BudgetMode.HARD,
        window_seconds: Optional[int] = None,
    ) -> Budget:
        """Create or reconfigure a scope's budget. Spend within the window is kept."""
        budget = Budget(
            scope_key=scope_key,
            limit=float(limit),
            mode=BudgetMode(mode),
            window_start=_truncate(self._clock.now()),
            window_seconds=window_seconds or self._default_window_seconds,
        )
        stored = await self._store.put(budget)
        logger.info(
            "budget_configured",
            scope_key=scope_key,
            limit=stored.limit,
            mode=stored.mode.value,
            window_seconds=stored.window_seconds,
        )
        return stored

    async def _rollover(self, budget: Budget) -> Budget:
        now = self._clock.now()
        if now < budget.window_end:
            return budget
        elapsed = (now - budget.window_start).total_seconds()
        periods = int(elapsed // budget.window_seconds)
        new_start = _truncate(budget.window_start + timedelta(seconds=periods * budget.window_seconds))
        if await self._store.roll_window(budget.scope_key, budget.window_start, new_start):
            logger.info(
                "budget_window_rolled",
                scope_key=budget.scope_key,
                previous_spent=round(budget.spent, 6),
                window_start=new_start.isoformat(),
            )
        # Another instance may have rolled first; re-read either way
        return await self._store.get(budget.scope_key) or budget

    async def get_budget(self, scope_key: str) -> Optional[Budget]:
        """Current budget for a scope after any pending rollover."""
        budget = await self._store.get(scope_key)
        if budget is None:
            if self._default_limit is None:
                return None
            budget = await self.configure(
                scope_key,
                self._default_limit,
                mode=self._default_mode,
                window_seconds=self._default_window_seconds,
            )
        return await self._rollover(budget)

    def _exceeded(self, budget: Budget, estimated_cost: float) -> BudgetExceeded:
        logger.warning(
            "budget_exceeded",
            scope_key=budget.scope_key,
            limit=budget.limit,
            spent=round(budget.spent, 6),
            reserved=round(budget.reserved, 6),
            estimated_cost=round(estimated_cost, 6),
        )
        return BudgetExceeded(
            f"Budget for '{budget.scope_key}' exceeded: committed {budget.committed:.4f} + "
            f"estimated {estimated_cost:.4f} > limit {budget.limit:.4f}",
            scope_key=budget.scope_key,
            limit=budget.limit,
            spent=budget.spent,
            estimated_cost=estimated_cost,
        )

    async def _warn(self, budget: Budget, estimated_cost: float) -> None:
        logger.info(
            "budget_soft_limit_exceeded",
            scope_key=budget.scope_key,
            limit=budget.limit,
            spent=round(budget.spent, 6),
            reserved=round(budget.reserved, 6),
            estimated_cost=round(estimated_cost, 6),
        )
        if self._events is not None:
            await self._events.publish(
                BudgetWarning(
                    scope_key=budget.scope_key,
                    limit=budget.limit,
                    spent=budget.spent,
                    estimated_cost=estimated_cost,
                )
            )

    async def check_budget(self, scope_key: str, estimated_cost: float, warn: bool = True) -> BudgetCheck:
        """
        Check whether ``estimated_cost`` fits the scope's budget without holding it.

        Reservations held by in-flight calls count against the limit. With
        ``warn=False`` a soft-mode overrun is reported in the result but no
        BudgetWarning is published.

        Raises:
            BudgetExceeded: in hard mode when spent + reserved + estimate > limit
        """
        budget = await self.get_budget(scope_key)
        if budget is None:
            return BudgetCheck(scope_key=scope_key, allowed=True, estimated_cost=estimated_cost)

        check = BudgetCheck(
            scope_key=scope_key,
            allowed=True,
            estimated_cost=estimated_cost,
            limit=budget.limit,
            spent=budget.spent,
            reserved=budget.reserved,
            mode=budget.mode,
        )
        if budget.committed + estimated_cost <= budget.limit:
            return check

        if budget.mode == BudgetMode.HARD:
            raise self._exceeded(budget, estimated_cost)

        check.warning = True
        if warn:
            await self._warn(budget, estimated_cost)
        return check

    async def reserve(self, scope_key: str, estimated_cost: float) -> Optional[BudgetReservation]:
        """
        Atomically hold ``estimated_cost`` against the scope's budget before a provider call.

        The hold counts against the limit for every concurrent caller until
        it is settled by record_usage() or handed back with release().
        Returns None when the scope has no budget.

        Raises:
            BudgetExceeded: in hard mode when spent + reserved + estimate > limit
        """
        budget = await self.get_budget(scope_key)
        if budget is None:
            return None

        hard = budget.mode == BudgetMode.HARD
        held = await self._store.reserve(scope_key, estimated_cost, enforce=hard)
        if held is None:
            raise self._exceeded(await self._store.get(scope_key) or budget, estimated_cost)
        if not hard and held.committed > held.limit:
            await self._warn(held, estimated_cost)
        return BudgetReservation(scope_key=scope_key, amount=estimated_cost)

    async def release(self, reservation: Optional[BudgetReservation]) -> None:
        """Hand back a reservation whose call failed or was cancelled."""
        if reservation is None:
            return
        await self._store.add_spent(reservation.scope_key, 0.0, clamp=False, release=reservation.amount)

    async def record_usage(
        self,
        scope_key: str,
        cost: float,
        kind: str = "request",
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        reservation: Optional[BudgetReservation] = None,
    ) -> Optional[Budget]:
        """Add actual spend after a successful call and settle its reservation.

        Hard-mode spend clamps at the limit.
        """
        budget = await self.get_budget(scope_key)
        updated = None
        if budget is not None:
            updated = await self._store.add_spent(
                scope_key,
                cost,
                clamp=budget.mode == BudgetMode.HARD,
                release=reservation.amount if reservation is not None else 0.0,
            )
        await self._store.record_ledger(
            scope_key=scope_key,
            kind=kind,
            cost=cost,
            provider_id=provider_id,
            model_id=model_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        return updated

    async def get_stats(self) -> Dict[str, Any]:
        budgets = await self._store.all()
        return {b.scope_key: b.to_dict() for b in budgets}
