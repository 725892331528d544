############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_circuit_breaker.py: Unit tests for circuit breaker
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for CircuitBreaker."""

from datetime import timedelta

import pytest

from aiorch.app.core.providers.circuit_breaker import CircuitBreaker, CircuitState, ProviderHealth


@pytest.fixture
def breaker(clock):
    """Three failures in 60s open the circuit for 30s."""
    return CircuitBreaker(
        "provider-a",
        failure_threshold=3,
        window_seconds=60,
        cooldown_seconds=30,
        clock=clock,
    )


async def _fail(breaker, times):
    for _ in range(times):
        assert await breaker.allow()
        await breaker.record_result(False)


class TestClosedState:

    @pytest.mark.asyncio
    async def test_default_state_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.allow()

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        await _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert not await breaker.allow()

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(self, breaker, clock):
        await _fail(breaker, 2)
        clock.advance(61)
        await _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().failure_count == 2

    @pytest.mark.asyncio
    async def test_success_does_not_reset_window(self, breaker):
        await _fail(breaker, 2)
        assert await breaker.allow()
        await breaker.record_result(True)
        await _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN


class TestOpenAndHalfOpen:

    @pytest.mark.asyncio
    async def test_half_open_after_cooldown(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(29)
        assert not await breaker.allow()

        clock.advance(1)
        assert await breaker.allow()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(30)
        assert await breaker.allow()
        assert not await breaker.allow()

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(30)
        assert await breaker.allow()
        await breaker.record_result(True)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().failure_count == 0
        assert await breaker.allow()

    @pytest.mark.asyncio
    async def test_trial_failure_reopens_with_fresh_cooldown(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(30)
        assert await breaker.allow()
        await breaker.record_result(False)

        assert breaker.state == CircuitState.OPEN
        clock.advance(29)
        assert not await breaker.allow()
        clock.advance(1)
        assert await breaker.allow()

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_slot(self, breaker, clock):
        await _fail(breaker, 3)
        clock.advance(30)
        assert await breaker.allow()
        await breaker.record_cancelled()

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.allow()

    @pytest.mark.asyncio
    async def test_transition_callback(self, clock):
        seen = []

        async def on_transition(provider_id, old, new, snapshot):
            seen.append((provider_id, old, new))

        breaker = CircuitBreaker(
            "provider-b", failure_threshold=1, cooldown_seconds=10, clock=clock, on_transition=on_transition
        )
        await _fail(breaker, 1)
        clock.advance(10)
        await breaker.allow()
        await breaker.record_result(True)

        assert seen == [
            ("provider-b", CircuitState.CLOSED, CircuitState.OPEN),
            ("provider-b", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("provider-b", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]


class TestSharedState:
    """Snapshots, restore after restart and adoption of remote state."""

    @pytest.mark.asyncio
    async def test_restore_open_circuit(self, breaker, clock):
        await breaker.restore(
            ProviderHealth(
                provider_id="provider-a",
                state=CircuitState.OPEN,
                failure_count=3,
                opened_at=clock.now() - timedelta(seconds=10),
            )
        )
        assert breaker.state == CircuitState.OPEN
        assert not await breaker.allow()

        clock.advance(20)
        assert await breaker.allow()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_restore_half_open_waits_for_trial(self, breaker):
        await breaker.restore(ProviderHealth(provider_id="provider-a", state=CircuitState.HALF_OPEN))
        assert await breaker.allow()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_merge_remote_open(self, breaker, clock):
        remote = ProviderHealth(
            provider_id="provider-a",
            state=CircuitState.OPEN,
            failure_count=3,
            opened_at=clock.now() - timedelta(seconds=5),
        )
        assert await breaker.merge_remote(remote)
        assert breaker.state == CircuitState.OPEN
        assert not await breaker.allow()

    @pytest.mark.asyncio
    async def test_merge_remote_ignores_expired_cooldown(self, breaker, clock):
        remote = ProviderHealth(
            provider_id="provider-a",
            state=CircuitState.OPEN,
            failure_count=3,
            opened_at=clock.now() - timedelta(seconds=45),
        )
        assert not await breaker.merge_remote(remote)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_snapshot_reports_open_failures(self, breaker):
        await _fail(breaker, 3)
        snapshot = breaker.snapshot()
        assert snapshot.is_open
        assert snapshot.failure_count == 3
        assert snapshot.opened_at is not None
