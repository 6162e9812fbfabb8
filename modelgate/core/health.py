"""Provider reachability and authentication checks."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from modelgate.core.config import ProviderStatus
from modelgate.core.errors import (
    AuthenticationError,
    CredentialNotFoundError,
    GatewayError,
    ProviderNotFoundError,
    QuotaExceededError,
)
from modelgate.core.providers.adapter import AdapterLayer
from modelgate.core.registry import ProviderRegistry
from modelgate.utils.log import get_logger

logger = get_logger()

DEFAULT_HEALTH_TIMEOUT = 10.0


class HealthResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    status: ProviderStatus
    detail: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0.0
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy(self) -> bool:
        return self.status == ProviderStatus.HEALTHY


def classify_failure(exc: BaseException) -> ProviderStatus:
    """Map a ping failure onto a provider status."""
    if isinstance(exc, (AuthenticationError, CredentialNotFoundError)):
        return ProviderStatus.UNAUTHORIZED
    if isinstance(exc, QuotaExceededError):
        # A 429 means the request got through and was authenticated.
        return ProviderStatus.HEALTHY
    return ProviderStatus.UNREACHABLE


class HealthChecker:
    def __init__(
        self, registry: ProviderRegistry, adapter: AdapterLayer, *, timeout: float = DEFAULT_HEALTH_TIMEOUT
    ) -> None:
        self.registry = registry
        self.adapter = adapter
        self.timeout = timeout

    async def verify(self, provider_id: str, *, timeout: Optional[float] = None) -> HealthResult:
        """Ping the provider once and record the outcome on its registry entry."""
        self.registry.get(provider_id)
        deadline = timeout if timeout is not None else self.timeout
        started = time.monotonic()
        detail: Optional[str] = None
        error_code: Optional[str] = None
        try:
            await asyncio.wait_for(self.adapter.ping(provider_id, timeout=deadline), timeout=deadline)
            status = ProviderStatus.HEALTHY
        except asyncio.TimeoutError:
            status = ProviderStatus.UNREACHABLE
            detail = f"No response within {deadline:g}s."
            error_code = "timeout"
        except GatewayError as exc:
            status = classify_failure(exc)
            detail = str(exc)
            error_code = exc.error_code
        duration_ms = round((time.monotonic() - started) * 1000, 1)

        result = HealthResult(
            provider_id=provider_id,
            status=status,
            detail=detail,
            error_code=error_code,
            duration_ms=duration_ms,
        )
        try:
            await self.registry.set_status(provider_id, status, detail)
        except ProviderNotFoundError:
            logger.debug("[health] Provider removed during check", extra={"provider_id": provider_id})
        log = logger.info if status == ProviderStatus.HEALTHY else logger.warning
        log(
            "[health] Provider checked",
            extra={
                "provider_id": provider_id,
                "status": status.value,
                "error_code": error_code,
                "duration_ms": duration_ms,
            },
        )
        return result

    async def verify_all(self, *, timeout: Optional[float] = None) -> Dict[str, HealthResult]:
        provider_ids = [provider.id for provider in self.registry.list()]
        results = await asyncio.gather(
            *(self.verify(provider_id, timeout=timeout) for provider_id in provider_ids),
            return_exceptions=True,
        )
        outcome: Dict[str, HealthResult] = {}
        for provider_id, result in zip(provider_ids, results):
            if isinstance(result, HealthResult):
                outcome[provider_id] = result
            elif isinstance(result, asyncio.CancelledError):
                raise result
            elif isinstance(result, ProviderNotFoundError):
                continue
            elif isinstance(result, BaseException):
                raise result
        return outcome


__all__ = ["DEFAULT_HEALTH_TIMEOUT", "HealthChecker", "HealthResult", "classify_failure"]
