############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_budget.py: Unit tests for cost estimation and budgets
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for CostEstimator, CostTracker and the budget stores."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from aiorch.app.core.budget import CostEstimator, CostTracker, MemoryBudgetStore, SqlBudgetStore
from aiorch.app.core.errors import BudgetExceeded
from aiorch.app.core.events import BudgetWarning, EventBus
from aiorch.app.db.models import BudgetMode, UsageLedger


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def tracker(clock, events):
    return CostTracker(MemoryBudgetStore(), clock=clock, events=events)


class TestCostEstimator:

    def test_char_estimate_without_tokenizer(self):
        estimator = CostEstimator(default_price_per_1k=1.0, tokenizer_name=None)
        assert estimator.estimate_tokens("a" * 400) == 100
        assert estimator.estimate_tokens("") == 0
        assert estimator.estimate_tokens("hi") == 1

    def test_embedding_cost(self):
        estimator = CostEstimator(default_price_per_1k=2.0, tokenizer_name=None)
        cost = estimator.estimate_request_cost("embedding", {"input": ["a" * 400, "b" * 400]}, None)
        assert cost == pytest.approx(0.4)

    def test_completion_allowance_included(self):
        estimator = CostEstimator(default_price_per_1k=1.0, tokenizer_name=None, default_completion_tokens=100)
        cost = estimator.estimate_request_cost("summarization", {"text": "a" * 400}, None)
        assert cost == pytest.approx(0.2)

        cost = estimator.estimate_request_cost(
            "chat", {"messages": [{"role": "user", "content": "a" * 400}], "max_tokens": 50}, None
        )
        assert cost == pytest.approx(0.15)

    def test_per_model_price(self):
        estimator = CostEstimator(default_price_per_1k=1.0, model_prices={"cheap": 0.1}, tokenizer_name=None)
        assert estimator.cost_for_usage("cheap", 1000) == pytest.approx(0.1)
        assert estimator.cost_for_usage("other", 1000) == pytest.approx(1.0)

    def test_from_settings_reads_provider_prices(self, settings_factory):
        from aiorch.app.settings import ProviderConfig

        settings = settings_factory(
            providers=[ProviderConfig(id="p", kind="static", model_id="m", price_per_1k_tokens=0.25)]
        )
        estimator = CostEstimator.from_settings(settings)
        assert estimator.price_for("m") == 0.25


class TestHardBudget:

    @pytest.mark.asyncio
    async def test_rejects_estimate_over_limit(self, tracker):
        await tracker.configure("team-a", 0.01, mode=BudgetMode.HARD)

        with pytest.raises(BudgetExceeded) as exc_info:
            await tracker.check_budget("team-a", 0.05)
        assert exc_info.value.http_status == 402

        budget = await tracker.get_budget("team-a")
        assert budget.spent == 0.0

    @pytest.mark.asyncio
    async def test_admits_within_limit(self, tracker):
        await tracker.configure("team-a", 1.0)
        check = await tracker.check_budget("team-a", 0.5)
        assert check.allowed
        assert check.remaining == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_spend_accumulates_and_blocks(self, tracker):
        await tracker.configure("team-a", 1.0)
        await tracker.record_usage("team-a", 0.75)

        await tracker.check_budget("team-a", 0.25)
        with pytest.raises(BudgetExceeded):
            await tracker.check_budget("team-a", 0.3)

    @pytest.mark.asyncio
    async def test_actual_spend_is_clamped(self, tracker):
        await tracker.configure("team-a", 1.0)
        budget = await tracker.record_usage("team-a", 5.0)
        assert budget.spent == 1.0

    @pytest.mark.asyncio
    async def test_unknown_scope_is_unlimited(self, tracker):
        check = await tracker.check_budget("nobody", 1000.0)
        assert check.allowed
        assert check.limit is None
        assert await tracker.record_usage("nobody", 1.0) is None

    @pytest.mark.asyncio
    async def test_default_limit_creates_budget(self, clock):
        tracker = CostTracker(MemoryBudgetStore(), clock=clock, default_limit=0.5)
        with pytest.raises(BudgetExceeded):
            await tracker.check_budget("new-scope", 1.0)
        assert "new-scope" in await tracker.get_stats()


class TestSoftBudget:

    @pytest.mark.asyncio
    async def test_soft_mode_warns_and_allows(self, tracker, events):
        warnings = []
        events.subscribe(BudgetWarning, warnings.append)
        await tracker.configure("team-b", 0.01, mode=BudgetMode.SOFT)

        check = await tracker.check_budget("team-b", 0.05)
        assert check.allowed
        assert check.warning
        assert len(warnings) == 1
        assert warnings[0].scope_key == "team-b"

    @pytest.mark.asyncio
    async def test_warning_can_be_suppressed(self, tracker, events):
        warnings = []
        events.subscribe(BudgetWarning, warnings.append)
        await tracker.configure("team-b", 0.01, mode=BudgetMode.SOFT)

        check = await tracker.check_budget("team-b", 0.05, warn=False)
        assert check.warning
        assert warnings == []

    @pytest.mark.asyncio
    async def test_soft_spend_is_not_clamped(self, tracker):
        await tracker.configure("team-b", 1.0, mode=BudgetMode.SOFT)
        budget = await tracker.record_usage("team-b", 3.0)
        assert budget.spent == 3.0


class TestReservations:

    @pytest.mark.asyncio
    async def test_reservation_counts_against_limit(self, tracker):
        await tracker.configure("team-a", 0.4)
        reservation = await tracker.reserve("team-a", 0.257)

        with pytest.raises(BudgetExceeded):
            await tracker.reserve("team-a", 0.257)
        with pytest.raises(BudgetExceeded):
            await tracker.check_budget("team-a", 0.2)

        budget = await tracker.get_budget("team-a")
        assert budget.spent == 0.0
        assert budget.reserved == pytest.approx(0.257)
        assert reservation.amount == pytest.approx(0.257)

    @pytest.mark.asyncio
    async def test_record_usage_settles_reservation(self, tracker):
        await tracker.configure("team-a", 1.0)
        reservation = await tracker.reserve("team-a", 0.5)

        budget = await tracker.record_usage("team-a", 0.3, reservation=reservation)
        assert budget.spent == pytest.approx(0.3)
        assert budget.reserved == 0.0
        await tracker.reserve("team-a", 0.6)

    @pytest.mark.asyncio
    async def test_release_returns_the_hold(self, tracker):
        await tracker.configure("team-a", 0.4)
        reservation = await tracker.reserve("team-a", 0.3)
        await tracker.release(reservation)

        budget = await tracker.get_budget("team-a")
        assert (budget.spent, budget.reserved) == (0.0, 0.0)
        await tracker.reserve("team-a", 0.3)

    @pytest.mark.asyncio
    async def test_soft_mode_reserves_past_limit_and_warns(self, tracker, events):
        warnings = []
        events.subscribe(BudgetWarning, warnings.append)
        await tracker.configure("team-b", 0.1, mode=BudgetMode.SOFT)

        await tracker.reserve("team-b", 0.08)
        assert warnings == []
        await tracker.reserve("team-b", 0.08)
        assert len(warnings) == 1

    @pytest.mark.asyncio
    async def test_unknown_scope_has_no_reservation(self, tracker):
        assert await tracker.reserve("nobody", 5.0) is None
        await tracker.release(None)

    @pytest.mark.asyncio
    async def test_sql_reservation_is_conditional(self, session_factory, clock):
        store = SqlBudgetStore(session_factory=session_factory)
        first = CostTracker(store, clock=clock)
        second = CostTracker(store, clock=clock)
        await first.configure("team-a", 0.4)

        reservation = await first.reserve("team-a", 0.257)
        # Another instance sees the hold through the shared table
        with pytest.raises(BudgetExceeded):
            await second.reserve("team-a", 0.257)

        budget = await second.record_usage("team-a", 0.2, reservation=reservation)
        assert budget.spent == pytest.approx(0.2)
        assert budget.reserved == pytest.approx(0.0)
        await second.reserve("team-a", 0.15)


class TestWindows:

    @pytest.mark.asyncio
    async def test_window_rollover_resets_spend(self, tracker, clock):
        await tracker.configure("team-a", 1.0, window_seconds=3600)
        await tracker.record_usage("team-a", 1.0)
        with pytest.raises(BudgetExceeded):
            await tracker.check_budget("team-a", 0.1)

        clock.advance(3600)
        check = await tracker.check_budget("team-a", 0.1)
        assert check.allowed
        assert check.spent == 0.0

    @pytest.mark.asyncio
    async def test_rollover_skips_idle_windows(self, tracker, clock):
        budget = await tracker.configure("team-a", 1.0, window_seconds=60)
        clock.advance(60 * 5 + 10)
        rolled = await tracker.get_budget("team-a")
        assert (rolled.window_start - budget.window_start).total_seconds() == 300

    @pytest.mark.asyncio
    async def test_reconfigure_keeps_spend(self, tracker):
        await tracker.configure("team-a", 1.0)
        await tracker.record_usage("team-a", 0.4)
        budget = await tracker.configure("team-a", 2.0, mode=BudgetMode.SOFT)
        assert budget.spent == pytest.approx(0.4)
        assert budget.limit == 2.0


class TestSqlBudgetStore:

    @pytest.mark.asyncio
    async def test_shared_spend_and_ledger(self, session_factory, clock):
        store = SqlBudgetStore(session_factory=session_factory)
        first = CostTracker(store, clock=clock)
        second = CostTracker(store, clock=clock)

        await first.configure("team-a", 1.0)
        await first.record_usage("team-a", 0.6, kind="chat", provider_id="p", model_id="m", prompt_tokens=10)

        # Another instance sees the spend through the shared table
        with pytest.raises(BudgetExceeded):
            await second.check_budget("team-a", 0.5)

        async with session_factory() as db:
            rows = (await db.execute(select(UsageLedger))).scalars().all()
        assert len(rows) == 1
        assert rows[0].kind == "chat"
        assert rows[0].cost == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_window_rolls_once(self, session_factory, clock):
        store = SqlBudgetStore(session_factory=session_factory)
        tracker = CostTracker(store, clock=clock)
        original = await tracker.configure("team-a", 1.0, window_seconds=60)
        await tracker.record_usage("team-a", 0.9)

        new_start = original.window_start + timedelta(seconds=60)
        assert await store.roll_window("team-a", original.window_start, new_start)
        # A second instance racing on the same window loses the compare-and-swap
        assert not await store.roll_window("team-a", original.window_start, new_start)

        budget = await store.get("team-a")
        assert budget.spent == 0.0
        assert budget.window_start == new_start

    @pytest.mark.asyncio
    async def test_hard_clamp_in_database(self, session_factory, clock):
        tracker = CostTracker(SqlBudgetStore(session_factory=session_factory), clock=clock)
        await tracker.configure("team-a", 1.0)
        budget = await tracker.record_usage("team-a", 2.5)
        assert budget.spent == pytest.approx(1.0)
