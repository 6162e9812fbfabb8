"""Shared helpers for provider exception mapping."""

from __future__ import annotations

import ssl
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from modelgate.core.errors import (
    AuthenticationError,
    ConnectivityError,
    GatewayError,
    ModelNotFoundError,
    ProviderRequestError,
    QuotaExceededError,
)
from modelgate.utils.log import REDACTED, redact_secrets

_TIMEOUT_HINTS = ("timed out", "timeout")
_MAX_DETAIL_CHARS = 300


def redact(text: str, secret: Optional[str]) -> str:
    """Remove ``secret`` (and any other registered credential) from ``text``."""
    if secret:
        text = text.replace(secret, REDACTED)
    return redact_secrets(text)


def is_timeout_message(message: str) -> bool:
    """Return True when an error message describes timeout-like behavior."""
    lowered = message.lower()
    return any(hint in lowered for hint in _TIMEOUT_HINTS)


def map_transport_error(
    exc: BaseException,
    *,
    provider_id: Optional[str],
    secret: Optional[str] = None,
) -> ConnectivityError:
    """Map timeouts, TLS, DNS and connection failures to ConnectivityError."""
    detail = redact(str(exc) or type(exc).__name__, secret)
    if isinstance(exc, httpx.TimeoutException) or is_timeout_message(detail):
        return ConnectivityError(f"Request timed out: {detail}", provider_id=provider_id)
    if isinstance(exc, ssl.SSLError) or "certificate" in detail.lower() or "ssl" in detail.lower():
        return ConnectivityError(f"TLS failure: {detail}", provider_id=provider_id, retryable=False)
    if isinstance(exc, httpx.ConnectError):
        return ConnectivityError(f"Connection failed: {detail}", provider_id=provider_id)
    return ConnectivityError(f"Transport error ({type(exc).__name__}): {detail}", provider_id=provider_id)


def response_detail(response: httpx.Response, secret: Optional[str] = None) -> str:
    """Best-effort human-readable error detail from an error response."""
    detail = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = str(error.get("message") or error.get("type") or "")
        elif error:
            detail = str(error)
        elif payload.get("message"):
            detail = str(payload["message"])
    if not detail:
        detail = response.text.strip()
    detail = detail[:_MAX_DETAIL_CHARS] or response.reason_phrase or "no detail"
    return redact(detail, secret)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def map_status_error(
    response: httpx.Response,
    *,
    provider_id: Optional[str],
    model_id: Optional[str] = None,
    secret: Optional[str] = None,
) -> GatewayError:
    """Map a non-2xx response to the gateway taxonomy."""
    status = response.status_code
    detail = response_detail(response, secret)
    if status in (401, 403):
        return AuthenticationError(
            f"Authentication failed ({status}): {detail}", provider_id=provider_id, status_code=status
        )
    if status == 429:
        return QuotaExceededError(
            f"Provider rate limit or quota exceeded: {detail}",
            provider_id=provider_id,
            source="remote",
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    if status == 404 and model_id:
        return ModelNotFoundError(
            provider_id or "", model_id, f"Provider does not serve model '{model_id}': {detail}"
        )
    if status >= 500:
        return ConnectivityError(
            f"Provider unavailable ({status}): {detail}", provider_id=provider_id, status_code=status
        )
    return ProviderRequestError(
        f"Request rejected ({status}): {detail}", provider_id=provider_id, status_code=status
    )


async def run_with_exception_mapper(
    request_fn: Callable[[], Awaitable[Any]],
    mapper: Callable[[Exception], Exception],
) -> Any:
    """Execute request and transform provider exceptions via mapper."""
    try:
        return await request_fn()
    except Exception as exc:
        mapped_exc = mapper(exc)
        if mapped_exc is exc:
            raise
        raise mapped_exc from exc
