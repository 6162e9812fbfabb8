"""HTTP adapter between the gateway and remote providers."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from modelgate.core.config import Provider
from modelgate.core.credentials import CredentialStore
from modelgate.core.errors import CatalogTruncatedError, GatewayError, ResponseShapeError
from modelgate.core.providers.auth import apply_auth
from modelgate.core.providers.base import (
    ChatRequest,
    ChatResponse,
    ModelDescriptor,
    UsageEvent,
    WireRequest,
)
from modelgate.core.providers.error_mapping import (
    map_status_error,
    map_transport_error,
    run_with_exception_mapper,
)
from modelgate.core.providers.shapes import build_chat_body, parse_chat_response, parse_model_page
from modelgate.utils.log import get_logger
from modelgate.utils.user_agent import build_user_agent

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from modelgate.core.registry import ProviderRegistry

logger = get_logger()

UsageListener = Callable[[UsageEvent], None]

DEFAULT_MAX_CONCURRENCY = 8


class AdapterLayer:
    """Builds authenticated wire requests, executes them and parses the replies.

    All outbound calls share one ``httpx.AsyncClient`` and one semaphore that
    caps how many provider requests are in flight at once.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        credentials: CredentialStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_timeout: float = 60.0,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.registry = registry
        self.credentials = credentials
        self.request_timeout = request_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(request_timeout),
            follow_redirects=False,
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._usage_listeners: List[UsageListener] = []

    def add_usage_listener(self, listener: UsageListener) -> None:
        self._usage_listeners.append(listener)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def _base_headers(self, provider: Provider) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": build_user_agent()}
        headers.update(provider.extra_headers)
        return headers

    async def _secret_for(self, provider: Provider) -> Optional[str]:
        if provider.requires_credential:
            return await self.credentials.get(provider.id)
        if await self.credentials.has(provider.id):
            return await self.credentials.get(provider.id)
        return None

    async def prepare_chat(self, request: ChatRequest) -> tuple[Provider, WireRequest, Optional[str]]:
        """Return the provider, the authenticated wire request and the secret it carries."""
        provider = self.registry.get(request.provider_id)
        secret = await self._secret_for(provider)
        wire = WireRequest(
            method="POST",
            url=provider.endpoint(provider.chat_path),
            headers=self._base_headers(provider),
            json=build_chat_body(
                provider.response_shape, request.model_id, request.messages, request.max_tokens
            ),
        )
        return provider, apply_auth(provider, wire, secret), secret

    async def prepare_listing(
        self, provider: Provider, cursor: Optional[tuple[str, str]] = None
    ) -> tuple[WireRequest, Optional[str]]:
        secret = await self._secret_for(provider)
        wire = WireRequest(
            method="GET",
            url=provider.endpoint(provider.models_path),
            headers=self._base_headers(provider),
            params=dict([cursor]) if cursor else {},
        )
        return apply_auth(provider, wire, secret), secret

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        provider: Provider,
        wire: WireRequest,
        secret: Optional[str],
        *,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        async def _request() -> httpx.Response:
            async with self._semaphore:
                return await self._client.request(
                    wire.method,
                    wire.url,
                    headers=wire.headers,
                    params=wire.params or None,
                    json=wire.json,
                    timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
                )

        def _mapper(exc: Exception) -> Exception:
            if isinstance(exc, (httpx.TransportError, OSError)):
                return map_transport_error(exc, provider_id=provider.id, secret=secret)
            return exc

        response: httpx.Response = await run_with_exception_mapper(_request, _mapper)
        if response.status_code >= 400:
            error = map_status_error(response, provider_id=provider.id, model_id=model_id, secret=secret)
            logger.warning(
                "[adapter] Provider returned an error status",
                extra={
                    "provider_id": provider.id,
                    "status_code": response.status_code,
                    "error_code": error.error_code,
                },
            )
            raise error
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseShapeError(
                "Provider response is not valid JSON.", provider_id=provider.id
            ) from exc

    async def send(self, request: ChatRequest, *, timeout: Optional[float] = None) -> ChatResponse:
        """Send one completion request. Never retried; a failed send raises."""
        provider, wire, secret = await self.prepare_chat(request)
        started = time.monotonic()
        logger.debug(
            "[adapter] Sending completion request",
            extra={
                "provider_id": provider.id,
                "model_id": request.model_id,
                "messages": len(request.messages),
            },
        )
        payload = await self._execute(provider, wire, secret, model_id=request.model_id, timeout=timeout)
        content, usage = parse_chat_response(provider.response_shape, payload, provider_id=provider.id)
        duration_ms = (time.monotonic() - started) * 1000
        self._emit_usage(
            UsageEvent(
                provider_id=provider.id,
                model_id=request.model_id,
                input_tokens=usage["input_tokens"],
                output_tokens=usage["output_tokens"],
                duration_ms=duration_ms,
            )
        )
        return ChatResponse(
            provider_id=provider.id,
            model_id=request.model_id,
            content=content,
            usage=usage,
            duration_ms=duration_ms,
        )

    async def list_models(
        self, provider_id: str, *, max_pages: int = 50
    ) -> AsyncIterator[List[ModelDescriptor]]:
        """Yield the provider's model listing one page at a time.

        Raises ``CatalogTruncatedError`` after the last allowed page when the
        provider still reports more.
        """
        provider = self.registry.get(provider_id)
        cursor: Optional[tuple[str, str]] = None
        for page_number in range(1, max_pages + 1):
            wire, secret = await self.prepare_listing(provider, cursor)
            payload = await self._execute(provider, wire, secret)
            page = parse_model_page(payload, provider_id=provider.id)
            logger.debug(
                "[adapter] Fetched model page",
                extra={"provider_id": provider.id, "page": page_number, "models": len(page.models)},
            )
            yield page.models
            if page.next_cursor is None:
                return
            cursor = page.next_cursor
        logger.warning(
            "[adapter] Model listing truncated at page limit",
            extra={"provider_id": provider.id, "max_pages": max_pages},
        )
        raise CatalogTruncatedError(provider.id, max_pages)

    async def ping(self, provider_id: str, *, timeout: Optional[float] = None) -> None:
        """Issue one minimal authenticated request (first listing page)."""
        provider = self.registry.get(provider_id)
        wire, secret = await self.prepare_listing(provider)
        await self._execute(provider, wire, secret, timeout=timeout)

    def _emit_usage(self, event: UsageEvent) -> None:
        for listener in self._usage_listeners:
            try:
                listener(event)
            except GatewayError:
                raise
            except (RuntimeError, ValueError, TypeError) as exc:
                logger.warning(
                    "[adapter] Usage listener failed: %s: %s",
                    type(exc).__name__,
                    exc,
                    extra={"provider_id": event.provider_id},
                )


__all__ = ["AdapterLayer", "UsageListener"]
