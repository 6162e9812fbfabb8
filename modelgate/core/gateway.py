"""The single entry point editors and the CLI talk to.

``Gateway`` owns one instance of every component and wires the removal
cascade between them. Components are injected, never looked up globally, so
tests can assemble a gateway around an in-memory credential backend and a
mock HTTP transport.
"""

from __future__ import annotations

from pathlib import Path
from types import TracebackType
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

import httpx

from modelgate.core.config import ConfigManager, GatewaySettings, Provider, ProviderConfig
from modelgate.core.conversation import Conversation, ConversationManager, Message
from modelgate.core.credentials import CredentialInfo, CredentialStore, build_backend
from modelgate.core.errors import InvalidConfigError
from modelgate.core.favorites import FavoriteEntry, FavoritesStore
from modelgate.core.health import HealthChecker, HealthResult
from modelgate.core.model_catalog import CatalogResult, Model, ModelCatalogService
from modelgate.core.providers.adapter import AdapterLayer
from modelgate.core.quota import Clock, QuotaCounter, QuotaTracker
from modelgate.core.registry import ProviderRegistry
from modelgate.utils.log import enable_file_logging, get_logger

logger = get_logger()

ProviderInput = Union[ProviderConfig, Mapping[str, Any]]


class Gateway:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        credentials: CredentialStore,
        adapter: AdapterLayer,
        catalog: ModelCatalogService,
        quota: QuotaTracker,
        conversations: ConversationManager,
        favorites: FavoritesStore,
        health: HealthChecker,
        settings: Optional[GatewaySettings] = None,
    ) -> None:
        self.registry = registry
        self.credentials = credentials
        self.adapter = adapter
        self.catalog = catalog
        self.quota = quota
        self.conversations = conversations
        self.favorites = favorites
        self.health = health
        self.settings = settings or GatewaySettings()

        # Removal cascade, in order: stop conversations first so nothing is
        # in flight when the credential disappears.
        registry.on_remove(conversations.close_for_provider)
        registry.on_remove(credentials.delete)
        registry.on_remove(catalog.forget)
        registry.on_remove(favorites.prune_provider)
        registry.on_remove(quota.forget)
        catalog.on_model_removed(favorites.prune_model)
        adapter.add_usage_listener(quota.record_usage)
        for provider in registry.list():
            quota.configure(provider)

    @classmethod
    def build(
        cls,
        *,
        settings: Optional[GatewaySettings] = None,
        config_manager: Optional[ConfigManager] = None,
        credentials: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ) -> "Gateway":
        """Assemble a gateway; without ``config_manager`` nothing touches disk."""
        settings = settings or GatewaySettings()
        registry = ProviderRegistry(config_manager)
        credentials = credentials or CredentialStore(build_backend(settings.secret_backend))
        adapter = AdapterLayer(
            registry,
            credentials,
            transport=transport,
            request_timeout=settings.request_timeout,
            max_concurrency=settings.max_concurrent_requests,
        )
        catalog = ModelCatalogService(
            registry,
            adapter,
            config_manager=config_manager,
            timeout=settings.catalog_timeout,
            max_retries=settings.catalog_max_retries,
            retry_base_delay=settings.retry_base_delay,
            max_pages=settings.max_catalog_pages,
        )
        quota = QuotaTracker(clock=clock, config_manager=config_manager)
        return cls(
            registry=registry,
            credentials=credentials,
            adapter=adapter,
            catalog=catalog,
            quota=quota,
            conversations=ConversationManager(
                adapter, quota, catalog, credentials, registry, config_manager=config_manager
            ),
            favorites=FavoritesStore(catalog, config_manager=config_manager),
            health=HealthChecker(registry, adapter, timeout=settings.health_timeout),
            settings=settings,
        )

    @classmethod
    def open(
        cls,
        state_dir: Optional[Path] = None,
        *,
        settings: Optional[GatewaySettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "Gateway":
        """Open the persisted gateway in ``state_dir`` (default ``~/.modelgate``)."""
        config_manager = ConfigManager(state_dir)
        settings = settings or config_manager.load_settings()
        if settings.log_to_file:
            enable_file_logging(config_manager.state_dir)
        logger.debug(
            "[gateway] Opening gateway",
            extra={"state_dir": str(config_manager.state_dir), "secret_backend": settings.secret_backend},
        )
        return cls.build(settings=settings, config_manager=config_manager, transport=transport)

    async def aclose(self) -> None:
        await self.adapter.aclose()

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.aclose()

    # Providers ---------------------------------------------------------

    async def add_provider(
        self, config: ProviderInput, secret: Optional[str] = None
    ) -> Tuple[Provider, HealthResult]:
        """Register a provider, store its secret and verify it before returning."""
        if secret is not None and not secret:
            raise InvalidConfigError("Credential must not be empty.", field="credential")
        provider_id = await self.registry.add(config)
        if secret is not None:
            await self.credentials.set(provider_id, secret)
        self.quota.configure(self.registry.get(provider_id))
        result = await self.health.verify(provider_id)
        return self.registry.get(provider_id), result

    async def edit_provider(
        self, provider_id: str, changes: ProviderInput, secret: Optional[str] = None
    ) -> Tuple[Provider, HealthResult]:
        if secret is not None and not secret:
            raise InvalidConfigError("Credential must not be empty.", provider_id=provider_id, field="credential")
        provider = await self.registry.update(provider_id, changes)
        if secret is not None:
            await self.credentials.set(provider_id, secret)
        self.quota.configure(provider)
        result = await self.health.verify(provider_id)
        return self.registry.get(provider_id), result

    async def remove_provider(self, provider_id: str) -> Provider:
        return await self.registry.remove(provider_id)

    async def list_providers(self) -> Tuple[Provider, ...]:
        return self.registry.list()

    async def get_provider(self, provider_id: str) -> Provider:
        return self.registry.get(provider_id)

    async def verify_provider(self, provider_id: str, *, timeout: Optional[float] = None) -> HealthResult:
        return await self.health.verify(provider_id, timeout=timeout)

    async def verify_all(self, *, timeout: Optional[float] = None) -> Dict[str, HealthResult]:
        return await self.health.verify_all(timeout=timeout)

    async def rotate_credential(self, provider_id: str, new_secret: str) -> CredentialInfo:
        self.registry.get(provider_id)
        return await self.credentials.rotate(provider_id, new_secret)

    async def describe_credential(self, provider_id: str) -> Optional[CredentialInfo]:
        self.registry.get(provider_id)
        return await self.credentials.describe(provider_id)

    # Models ------------------------------------------------------------

    async def refresh_models(self, provider_id: str, *, timeout: Optional[float] = None) -> CatalogResult:
        return await self.catalog.refresh(provider_id, timeout=timeout)

    async def refresh_all(self, *, timeout: Optional[float] = None) -> Dict[str, CatalogResult]:
        return await self.catalog.refresh_all(timeout=timeout)

    async def list_models(self, provider_id: Optional[str] = None) -> Tuple[Model, ...]:
        if provider_id is not None:
            self.registry.get(provider_id)
        return self.catalog.list_models(provider_id)

    # Favorites ---------------------------------------------------------

    async def add_favorite(self, provider_id: str, model_id: str) -> FavoriteEntry:
        self.registry.get(provider_id)
        return self.favorites.add(provider_id, model_id)

    async def remove_favorite(self, provider_id: str, model_id: str) -> bool:
        return self.favorites.remove(provider_id, model_id)

    async def move_favorite(self, provider_id: str, model_id: str, rank: int) -> FavoriteEntry:
        return self.favorites.move(provider_id, model_id, rank)

    async def list_favorites(self) -> Tuple[FavoriteEntry, ...]:
        return self.favorites.list()

    # Conversations -----------------------------------------------------

    async def start_conversation(
        self, provider_id: Optional[str] = None, model_id: Optional[str] = None
    ) -> Conversation:
        return self.conversations.create(provider_id, model_id)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        return await self.conversations.send_message(
            conversation_id,
            content,
            provider_id=provider_id,
            model_id=model_id,
            timeout=timeout,
        )

    async def close_conversation(self, conversation_id: str, reason: str = "closed by user") -> Conversation:
        return await self.conversations.close(conversation_id, reason)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return self.conversations.get(conversation_id)

    async def list_conversations(self) -> Tuple[Conversation, ...]:
        return self.conversations.list()

    # Quota -------------------------------------------------------------

    async def quota_status(self, provider_id: Optional[str] = None) -> Tuple[QuotaCounter, ...]:
        if provider_id is not None:
            self.registry.get(provider_id)
        return self.quota.snapshot(provider_id)


__all__ = ["Gateway"]
