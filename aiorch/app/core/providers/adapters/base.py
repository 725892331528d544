############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# base.py: Provider adapter contract and error mapping
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Provider adapter contract.

Every adapter exposes ``call(request, timeout) -> ProviderResult``. The base
class owns the per-call timeout and maps transport failures onto the error
taxonomy: timeouts, 5xx, 429 and connection errors become
TransientProviderError; any other 4xx becomes ProviderRequestError.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import httpx

from aiorch.app.core.errors import ProviderRequestError, TransientProviderError
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


class ProviderAdapter(ABC):
    """Base class for outbound provider adapters."""

    kind = "base"

    def __init__(
        self,
        provider_id: str,
        model_id: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        capabilities: Optional[Iterable[str]] = None,
        dimension: Optional[int] = None,
        price_per_1k_tokens: Optional[float] = None,
    ):
        self.provider_id = provider_id
        self.model_id = model_id
        self.base_url = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.capabilities = {Capability(c) for c in (capabilities or [Capability.EMBEDDING.value])}
        self.dimension = dimension
        self.price_per_1k_tokens = price_per_1k_tokens
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config) -> "ProviderAdapter":
        return cls(
            provider_id=config.id,
            model_id=config.model_id,
            endpoint=config.endpoint,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            capabilities=config.capabilities,
            dimension=config.dimension,
            price_per_1k_tokens=config.price_per_1k_tokens,
        )

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.post(path, json=body)
        response.raise_for_status()
        return response.json()

    async def call(self, request: ProviderRequest, timeout: Optional[float] = None) -> ProviderResult:
        """Execute one call bounded by ``timeout`` seconds."""
        timeout = timeout if timeout is not None else self.timeout
        start_time = time.monotonic()
        try:
            result = await asyncio.wait_for(self._call(request), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransientProviderError(
                f"Provider {self.provider_id} timed out after {timeout:.1f}s",
                provider_id=self.provider_id,
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code >= 500 or status_code == 429:
                raise TransientProviderError(
                    f"Provider {self.provider_id} returned HTTP {status_code}",
                    provider_id=self.provider_id,
                    status_code=status_code,
                ) from e
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text or str(e)
            raise ProviderRequestError(
                f"Provider {self.provider_id} rejected request: HTTP {status_code}",
                provider_id=self.provider_id,
                status_code=status_code,
                detail=detail,
            ) from e
        except (httpx.ConnectError, httpx.RemoteProtocolError, ConnectionError) as e:
            raise TransientProviderError(
                f"Provider {self.provider_id} connection error: {e}",
                provider_id=self.provider_id,
            ) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            # Response shape did not match the provider's documented format
            raise TransientProviderError(
                f"Provider {self.provider_id} returned a malformed response: {e}",
                provider_id=self.provider_id,
            ) from e

        result.latency_ms = (time.monotonic() - start_time) * 1000
        return result

    @abstractmethod
    async def _call(self, request: ProviderRequest) -> ProviderResult:
        """Provider-specific request translation and HTTP exchange."""
