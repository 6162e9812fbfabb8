"""Provider configuration records."""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from modelgate.core.config import (
    ConfigManager,
    Provider,
    ProviderConfig,
    ProviderStatus,
    parse_provider_config,
    validate_provider_config,
)
from modelgate.core.errors import InvalidConfigError, ProviderNotFoundError
from modelgate.utils.log import get_logger

logger = get_logger()

RemovalListener = Callable[[str], Union[None, Awaitable[None]]]

# Fields a status change may touch; everything else requires update().
_STATUS_FIELDS = ("status", "status_detail", "last_checked_at")


class ProviderRegistry:
    """CRUD over provider records.

    Mutations are serialized per provider id. Reads return frozen ``Provider``
    snapshots from a mapping that is replaced wholesale on every change, so a
    reader never sees a half-applied update.
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None) -> None:
        self._config_manager = config_manager
        self._providers: Mapping[str, Provider] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._removal_listeners: List[RemovalListener] = []
        if config_manager is not None:
            self._providers = config_manager.load_providers()
            logger.debug(
                "[registry] Loaded providers",
                extra={"count": len(self._providers), "path": str(config_manager.providers_path)},
            )

    def on_remove(self, listener: RemovalListener) -> None:
        """Register a cascade step run (in order) when a provider is removed."""
        self._removal_listeners.append(listener)

    # Reads -------------------------------------------------------------

    def get(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    def find(self, provider_id: str) -> Optional[Provider]:
        return self._providers.get(provider_id)

    def list(self) -> Tuple[Provider, ...]:
        snapshot = self._providers
        return tuple(snapshot[key] for key in sorted(snapshot))

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    # Mutations ---------------------------------------------------------

    def _publish(self, providers: Dict[str, Provider]) -> None:
        self._providers = providers
        if self._config_manager is not None:
            self._config_manager.save_providers(dict(providers))

    @staticmethod
    def _coerce(config: Union[ProviderConfig, Mapping[str, Any]]) -> ProviderConfig:
        if isinstance(config, ProviderConfig):
            return config
        return parse_provider_config(dict(config))

    async def add(self, config: Union[ProviderConfig, Mapping[str, Any]]) -> str:
        """Register a provider and return its id."""
        parsed = self._coerce(config)
        validate_provider_config(parsed)
        async with self._locks[parsed.id]:
            if parsed.id in self._providers:
                raise InvalidConfigError(
                    f"Provider '{parsed.id}' already exists.", provider_id=parsed.id, field="id"
                )
            provider = Provider.model_validate(parsed.model_dump())
            self._publish({**self._providers, provider.id: provider})
        logger.info(
            "[registry] Added provider",
            extra={"provider_id": provider.id, "auth_scheme": provider.auth_scheme.value},
        )
        return provider.id

    async def update(
        self, provider_id: str, changes: Union[ProviderConfig, Mapping[str, Any]]
    ) -> Provider:
        """Apply ``changes`` and reset the status to unverified."""
        async with self._locks[provider_id]:
            current = self.get(provider_id)
            if isinstance(changes, ProviderConfig):
                data = changes.model_dump()
            else:
                data = {
                    **current.model_dump(exclude=set(_STATUS_FIELDS)),
                    **{key: value for key, value in changes.items() if key not in _STATUS_FIELDS},
                }
            if data.get("id", provider_id) != provider_id:
                raise InvalidConfigError(
                    "Provider id cannot be changed.", provider_id=provider_id, field="id"
                )
            data["id"] = provider_id
            parsed = parse_provider_config(data)
            validate_provider_config(parsed)
            provider = Provider.model_validate(parsed.model_dump())
            self._publish({**self._providers, provider_id: provider})
        logger.info("[registry] Updated provider", extra={"provider_id": provider_id})
        return provider

    async def set_status(
        self,
        provider_id: str,
        status: ProviderStatus,
        detail: Optional[str] = None,
    ) -> Provider:
        async with self._locks[provider_id]:
            current = self.get(provider_id)
            provider = current.model_copy(
                update={
                    "status": status,
                    "status_detail": detail,
                    "last_checked_at": datetime.now(timezone.utc),
                }
            )
            self._publish({**self._providers, provider_id: provider})
        return provider

    async def remove(self, provider_id: str) -> Provider:
        """Delete the provider and run every registered cascade step."""
        async with self._locks[provider_id]:
            removed = self.get(provider_id)
            remaining = {key: value for key, value in self._providers.items() if key != provider_id}
            self._publish(remaining)
            for listener in self._removal_listeners:
                result = listener(provider_id)
                if inspect.isawaitable(result):
                    await result
        self._locks.pop(provider_id, None)
        logger.info("[registry] Removed provider", extra={"provider_id": provider_id})
        return removed


__all__ = ["ProviderRegistry", "RemovalListener"]
