############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# errors.py: Error taxonomy for orchestration and embedding
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Error taxonomy shared by every orchestration component.

Each error carries a ``retryable`` flag and the HTTP status the API layer
maps it to. Retryable errors are retried by whoever owns the retry budget
(router fallback, pipeline attempts, RetryPolicy); policy errors such as
rate limits and budgets surface immediately.
"""

from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""

    retryable: bool = False
    http_status: int = 500
    error_type: str = "orchestration_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Render as the JSON error body used by the HTTP layer."""
        return {"message": self.message, "type": self.error_type}


class RateLimitExceeded(OrchestrationError):
    """Principal's token bucket does not hold enough tokens."""

    http_status = 429
    error_type = "rate_limit_exceeded"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        principal: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, principal=principal, **context)
        self.retry_after = retry_after
        self.principal = principal

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.retry_after is not None:
            body["retry_after"] = round(self.retry_after, 3)
        return body


class CircuitOpenError(OrchestrationError):
    """Every provider for a capability was skipped because its circuit is open."""

    http_status = 503
    error_type = "circuit_open"


class TransientProviderError(OrchestrationError):
    """Timeout, 5xx, 429 or connection failure from a provider."""

    retryable = True
    http_status = 502
    error_type = "provider_unavailable"

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, provider_id=provider_id, status_code=status_code, **context)
        self.provider_id = provider_id
        self.status_code = status_code


class ProviderRequestError(OrchestrationError):
    """Provider rejected the request itself (4xx). Never retried."""

    http_status = 400
    error_type = "provider_request_error"

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, provider_id=provider_id, status_code=status_code, **context)
        self.provider_id = provider_id
        self.status_code = status_code


class AllProvidersUnavailable(OrchestrationError):
    """The fallback chain was exhausted without a success."""

    retryable = True
    http_status = 503
    error_type = "all_providers_unavailable"


class BudgetExceeded(OrchestrationError):
    """Hard-mode budget would be exceeded by the estimated cost."""

    http_status = 402
    error_type = "budget_exceeded"

    def __init__(
        self,
        message: str,
        scope_key: Optional[str] = None,
        limit: Optional[float] = None,
        spent: Optional[float] = None,
        estimated_cost: Optional[float] = None,
        **context: Any,
    ):
        super().__init__(message, scope_key=scope_key, **context)
        self.scope_key = scope_key
        self.limit = limit
        self.spent = spent
        self.estimated_cost = estimated_cost


class ValidationError(OrchestrationError):
    """Malformed input. Never retried."""

    http_status = 400
    error_type = "invalid_request_error"


class QueueFull(OrchestrationError):
    """The priority level's bounded queue is at capacity."""

    retryable = True
    http_status = 503
    error_type = "queue_full"


class PersistenceError(OrchestrationError):
    """A durable write or read failed."""

    retryable = True
    http_status = 500
    error_type = "persistence_error"


class DeadlineExceeded(OrchestrationError):
    """The caller's deadline passed before a result was available."""

    http_status = 504
    error_type = "deadline_exceeded"


class RequestCancelled(OrchestrationError):
    """A shared computation was cancelled before it produced a result.

    Every waiter on the same single-flight key receives the same instance.
    """

    retryable = True
    http_status = 503
    error_type = "request_cancelled"
