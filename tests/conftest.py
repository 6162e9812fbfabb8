"""Pytest configuration and fixtures for all tests."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from modelgate.core.config import GatewaySettings
from modelgate.core.credentials import CredentialStore, MemoryBackend
from modelgate.core.gateway import Gateway


@dataclass
class FakeBackend:
    """One fake provider host.

    ``auth`` is the (location, name, value) a request must carry, where
    location is ``header`` or ``query``; anything else gets a 401.
    """

    models: List[Dict[str, Any]] = field(default_factory=lambda: [{"id": "model-large"}, {"id": "model-mini"}])
    auth: Optional[Tuple[str, str, str]] = None
    status_code: int = 200
    delay: float = 0.0
    chat_payload: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    pages: Optional[List[Dict[str, Any]]] = None
    fail_page: Optional[int] = None
    requests: List[httpx.Request] = field(default_factory=list)
    in_flight: int = 0
    peak_in_flight: int = 0

    def authorized(self, request: httpx.Request) -> bool:
        if self.auth is None:
            return True
        location, name, value = self.auth
        if location == "header":
            return request.headers.get(name) == value
        return request.url.params.get(name) == value

    @property
    def chat_requests(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.method == "POST"]


class FakeProviders:
    """Routes requests by host to a ``FakeBackend`` through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.backends: Dict[str, FakeBackend] = {}
        self.transport = httpx.MockTransport(self._handle)

    def add(self, host: str, **kwargs: Any) -> FakeBackend:
        backend = FakeBackend(**kwargs)
        self.backends[host] = backend
        return backend

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        backend = self.backends.get(request.url.host)
        if backend is None:
            raise httpx.ConnectError("Name or service not known", request=request)
        backend.requests.append(request)
        backend.in_flight += 1
        backend.peak_in_flight = max(backend.peak_in_flight, backend.in_flight)
        try:
            if backend.delay:
                await asyncio.sleep(backend.delay)
        finally:
            backend.in_flight -= 1
        if not backend.authorized(request):
            return httpx.Response(401, json={"error": {"message": "invalid api key"}})
        if backend.status_code != 200:
            return httpx.Response(
                backend.status_code,
                json={"error": {"message": f"status {backend.status_code}"}},
                headers={"retry-after": "30"} if backend.status_code == 429 else None,
            )
        if request.method == "GET":
            return self._listing(backend, request)
        body = json.loads(request.content)
        if backend.chat_payload is not None:
            return httpx.Response(200, json=backend.chat_payload(body))
        last = body["messages"][-1]["content"] if "messages" in body else body.get("prompt", "")
        return httpx.Response(
            200,
            json={
                "model": body["model"],
                "choices": [{"message": {"role": "assistant", "content": f"echo: {last}"}}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 7},
            },
        )

    @staticmethod
    def _listing(backend: FakeBackend, request: httpx.Request) -> httpx.Response:
        if backend.pages is None:
            return httpx.Response(200, json={"data": backend.models})
        token = request.url.params.get("page_token")
        index = int(token) if token else 0
        if backend.fail_page is not None and index == backend.fail_page:
            return httpx.Response(503, json={"error": {"message": "page unavailable"}})
        return httpx.Response(200, json=backend.pages[index])


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0).astimezone()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def provider_config(provider_id: str, host: str, **overrides: Any) -> Dict[str, Any]:
    config: Dict[str, Any] = {"id": provider_id, "base_url": f"https://{host}/v1"}
    config.update(overrides)
    return config


@pytest.fixture
def fake_providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_gateway(fake_providers: FakeProviders, clock: FakeClock) -> Callable[..., Gateway]:
    """Build an in-memory gateway wired to the fake provider transport."""

    def _build(config_manager: Any = None, **settings: Any) -> Gateway:
        settings.setdefault("secret_backend", "memory")
        settings.setdefault("catalog_max_retries", 0)
        settings.setdefault("retry_base_delay", 0.01)
        return Gateway.build(
            settings=GatewaySettings(**settings),
            config_manager=config_manager,
            credentials=CredentialStore(MemoryBackend(), env_fallback=False),
            transport=fake_providers.transport,
            clock=clock,
        )

    return _build
