############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# store.py: Budget persistence (in-memory and SQL)
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Budget persistence.

Both stores expose the same atomic primitives the CostTracker relies on:
a compare-and-swap window rollover, a conditional reservation that holds
an estimate against the limit, and an additive spend update that settles
a reservation and can clamp at the limit. The SQL store shares budgets
across processes.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from aiorch.app.db import crud
from aiorch.app.db.models import BudgetMode
from aiorch.app.db.session import run_db_operation


@dataclass
class Budget:
    """Spend limit, running total and in-flight reservations for one scope key."""

    scope_key: str
    limit: float
    window_start: datetime
    window_seconds: int = 86400
    spent: float = 0.0
    mode: BudgetMode = BudgetMode.HARD
    reserved: float = 0.0

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    @property
    def committed(self) -> float:
        return self.spent + self.reserved

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit - self.committed)

    def to_dict(self) -> Dict:
        return {
            "scope_key": self.scope_key,
            "limit": self.limit,
            "spent": round(self.spent, 6),
            "reserved": round(self.reserved, 6),
            "remaining": round(self.remaining, 6),
            "mode": self.mode.value,
            "window_start": self.window_start.isoformat(),
            "window_seconds": self.window_seconds,
        }


class BudgetStore(ABC):
    """Persistence contract for budgets."""

    @abstractmethod
    async def get(self, scope_key: str) -> Optional[Budget]:
        ...

    @abstractmethod
    async def put(self, budget: Budget) -> Budget:
        """Create or reconfigure a budget; existing spend and reservations are kept."""

    @abstractmethod
    async def roll_window(self, scope_key: str, expected_start: datetime, new_start: datetime) -> bool:
        """Reset spent and move the window iff it still starts at ``expected_start``."""

    @abstractmethod
    async def reserve(self, scope_key: str, amount: float, enforce: bool) -> Optional[Budget]:
        """Hold ``amount``; with ``enforce``, refuse (None) if spent + reserved + amount > limit."""

    @abstractmethod
    async def add_spent(self, scope_key: str, amount: float, clamp: bool, release: float = 0.0) -> Optional[Budget]:
        ...

    @abstractmethod
    async def all(self) -> List[Budget]:
        ...

    async def record_ledger(
        self,
        scope_key: str,
        kind: str,
        cost: float,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        """Audit hook; only durable stores keep a ledger."""
        return None


class MemoryBudgetStore(BudgetStore):
    """Per-process budget store."""

    def __init__(self):
        self._budgets: Dict[str, Budget] = {}
        self._lock = asyncio.Lock()

    async def get(self, scope_key: str) -> Optional[Budget]:
        async with self._lock:
            budget = self._budgets.get(scope_key)
            return replace(budget) if budget else None

    async def put(self, budget: Budget) -> Budget:
        async with self._lock:
            existing = self._budgets.get(budget.scope_key)
            if existing is not None:
                budget = replace(
                    budget,
                    spent=existing.spent,
                    reserved=existing.reserved,
                    window_start=existing.window_start,
                )
            self._budgets[budget.scope_key] = budget
            return replace(budget)

    async def roll_window(self, scope_key: str, expected_start: datetime, new_start: datetime) -> bool:
        async with self._lock:
            budget = self._budgets.get(scope_key)
            if budget is None or budget.window_start != expected_start:
                return False
            budget.window_start = new_start
            budget.spent = 0.0
            return True

    async def reserve(self, scope_key: str, amount: float, enforce: bool) -> Optional[Budget]:
        async with self._lock:
            budget = self._budgets.get(scope_key)
            if budget is None:
                return None
            if enforce and budget.committed + amount > budget.limit:
                return None
            budget.reserved += amount
            return replace(budget)

    async def add_spent(self, scope_key: str, amount: float, clamp: bool, release: float = 0.0) -> Optional[Budget]:
        async with self._lock:
            budget = self._budgets.get(scope_key)
            if budget is None:
                return None
            budget.spent += amount
            if clamp and budget.spent > budget.limit:
                budget.spent = budget.limit
            budget.reserved = max(0.0, budget.reserved - release)
            return replace(budget)

    async def all(self) -> List[Budget]:
        async with self._lock:
            return [replace(b) for b in self._budgets.values()]


def _from_record(record) -> Budget:
    return Budget(
        scope_key=record.scope_key,
        limit=record.limit,
        spent=record.spent,
        reserved=record.reserved or 0.0,
        mode=record.mode,
        window_start=crud._ensure_aware(record.window_start),
        window_seconds=record.window_seconds,
    )


class SqlBudgetStore(BudgetStore):
    """Budgets in the shared ``budgets`` table with a ``usage_ledger`` audit trail."""

    def __init__(self, session_factory=None, retry_policy=None):
        self._session_factory = session_factory
        self._retry_policy = retry_policy

    async def _run(self, fn, operation: str):
        return await run_db_operation(self._session_factory, fn, operation, self._retry_policy)

    async def get(self, scope_key: str) -> Optional[Budget]:
        async def op(db):
            record = await crud.get_budget(db, scope_key)
            return _from_record(record) if record else None

        return await self._run(op, "budget_get")

    async def put(self, budget: Budget) -> Budget:
        async def op(db):
            record = await crud.upsert_budget(
                db,
                scope_key=budget.scope_key,
                limit=budget.limit,
                mode=budget.mode,
                window_seconds=budget.window_seconds,
                window_start=budget.window_start,
            )
            return _from_record(record)

        return await self._run(op, "budget_put")

    async def roll_window(self, scope_key: str, expected_start: datetime, new_start: datetime) -> bool:
        async def op(db):
            return await crud.roll_budget_window(db, scope_key, expected_start, new_start)

        return await self._run(op, "budget_roll_window")

    async def reserve(self, scope_key: str, amount: float, enforce: bool) -> Optional[Budget]:
        async def op(db):
            record = await crud.reserve_budget(db, scope_key, amount, enforce_limit=enforce)
            return _from_record(record) if record else None

        return await self._run(op, "budget_reserve")

    async def add_spent(self, scope_key: str, amount: float, clamp: bool, release: float = 0.0) -> Optional[Budget]:
        async def op(db):
            record = await crud.add_budget_spend(db, scope_key, amount, clamp_to_limit=clamp, release=release)
            return _from_record(record) if record else None

        return await self._run(op, "budget_add_spent")

    async def all(self) -> List[Budget]:
        async def op(db):
            return [_from_record(r) for r in await crud.get_all_budgets(db)]

        return await self._run(op, "budget_all")

    async def record_ledger(
        self,
        scope_key: str,
        kind: str,
        cost: float,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        async def op(db):
            await crud.create_usage_entry(
                db,
                scope_key=scope_key,
                kind=kind,
                cost=cost,
                provider_id=provider_id,
                model_id=model_id,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )

        await self._run(op, "usage_ledger_insert")
