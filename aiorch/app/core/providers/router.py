############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# router.py: Capability-based provider fallback routing
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Provider router - ranked fallback chain per capability.

Providers are tried strictly one at a time in chain order. A provider whose
circuit denies the call is skipped without counting as an attempt. After a
transient failure the router backs off (RetryPolicy) and moves to the next
provider, at most ``max_fallback_hops`` hops after the first attempt.
"""

from typing import Dict, List, Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import (
    AllProvidersUnavailable,
    CircuitOpenError,
    ProviderRequestError,
    TransientProviderError,
)
from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.circuit_breaker import CircuitBreaker
from aiorch.app.core.providers.latency_tracker import LatencyTracker
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult
from aiorch.app.core.retry import RetryPolicy
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


class ProviderRouter:
    """Routes a ProviderRequest through its capability's fallback chain."""

    def __init__(
        self,
        chains: Dict[Capability, List[ProviderAdapter]],
        breakers: Dict[str, CircuitBreaker],
        max_fallback_hops: int = 2,
        latency_tracker: Optional[LatencyTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self._chains = {Capability(k): list(v) for k, v in chains.items()}
        self._breakers = breakers
        self._max_fallback_hops = max(0, max_fallback_hops)
        self._latency_tracker = latency_tracker
        self._retry_policy = retry_policy
        self._clock = clock

    def chain(self, capability: Capability) -> List[ProviderAdapter]:
        return list(self._chains.get(Capability(capability), []))

    def _breaker(self, provider_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            breaker = CircuitBreaker(provider_id, clock=self._clock)
            self._breakers[provider_id] = breaker
        return breaker

    async def execute(
        self,
        request: ProviderRequest,
        timeout: Optional[float] = None,
    ) -> ProviderResult:
        """
        Execute a request with sequential failover.

        Args:
            request: The provider-neutral request
            timeout: Per-call timeout; defaults to each adapter's own timeout

        Returns:
            ProviderResult from the first provider that succeeded

        Raises:
            ProviderRequestError: provider rejected the request (not retried)
            CircuitOpenError: every provider in the chain was skipped
            AllProvidersUnavailable: attempts exhausted without success
        """
        request.capability = Capability(request.capability)
        chain = self._chains.get(request.capability, [])
        if not chain:
            raise AllProvidersUnavailable(
                f"No providers configured for capability '{request.capability.value}'",
                capability=request.capability.value,
            )

        max_attempts = 1 + self._max_fallback_hops
        attempts = 0
        skipped: List[str] = []
        last_error: Optional[TransientProviderError] = None

        for adapter in chain:
            if attempts >= max_attempts:
                break

            breaker = self._breaker(adapter.provider_id)
            if not await breaker.allow():
                skipped.append(adapter.provider_id)
                logger.debug(
                    "provider_skipped_circuit_open",
                    provider_id=adapter.provider_id,
                    capability=request.capability.value,
                )
                continue

            if attempts > 0 and self._retry_policy is not None:
                await self._clock.sleep(self._retry_policy.compute_delay(attempts))
            attempts += 1

            try:
                result = await adapter.call(request, timeout=timeout)
            except TransientProviderError as e:
                await breaker.record_result(False)
                last_error = e
                logger.warning(
                    "provider_call_failed",
                    provider_id=adapter.provider_id,
                    capability=request.capability.value,
                    attempt=attempts,
                    max_attempts=max_attempts,
                    status=e.status_code,
                    error=e.message,
                )
                continue
            except ProviderRequestError as e:
                # The provider answered; only the request was bad
                await breaker.record_result(True)
                logger.warning(
                    "provider_rejected_request",
                    provider_id=adapter.provider_id,
                    status=e.status_code,
                    detail=e.context.get("detail"),
                )
                raise
            except BaseException:
                # Cancellation or an unexpected error: release any half-open slot
                await breaker.record_cancelled()
                raise

            await breaker.record_result(True)
            if self._latency_tracker is not None:
                await self._latency_tracker.record_latency(adapter.provider_id, result.latency_ms)
            if attempts > 1:
                logger.info(
                    "provider_failover_succeeded",
                    provider_id=adapter.provider_id,
                    attempts=attempts,
                )
            return result

        if attempts == 0 and skipped:
            raise CircuitOpenError(
                f"All providers for '{request.capability.value}' have open circuits",
                providers=skipped,
            )
        raise AllProvidersUnavailable(
            f"All {attempts} provider attempts failed for '{request.capability.value}'. "
            f"Last error: {last_error.message if last_error else 'none'}",
            capability=request.capability.value,
            skipped=skipped,
        )
