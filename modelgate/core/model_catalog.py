"""Per-provider model catalogs with refresh, staleness and a disk cache."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from modelgate.core.config import ConfigManager, ModelTier
from modelgate.core.errors import (
    AuthenticationError,
    ConnectivityError,
    CredentialNotFoundError,
    GatewayError,
    ModelNotFoundError,
    PartialCatalogError,
)
from modelgate.core.providers.adapter import AdapterLayer
from modelgate.core.providers.base import ModelDescriptor, retry_delay_seconds
from modelgate.core.registry import ProviderRegistry
from modelgate.utils.log import get_logger

logger = get_logger()

DEFAULT_CATALOG_TIMEOUT = 10.0

ModelRemovalListener = Callable[[str, str], Union[None, Awaitable[None]]]


class ModelAvailability(str, Enum):
    LISTED = "listed"
    STALE = "stale"
    UNAVAILABLE = "unavailable"


class Model(BaseModel):
    """One addressable model of one provider."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str
    provider_id: str
    display_name: str
    context_window_tokens: Optional[int] = None
    tier: ModelTier = ModelTier.PAID
    capability_tags: Tuple[str, ...] = ()
    availability: ModelAvailability = ModelAvailability.LISTED


class CatalogSnapshot(BaseModel):
    """Immutable view of one provider's catalog."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    models: Tuple[Model, ...] = ()
    fetched_at: Optional[datetime] = None
    availability: ModelAvailability = ModelAvailability.UNAVAILABLE

    def find(self, model_id: str) -> Optional[Model]:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


class CatalogCacheDocument(BaseModel):
    """Last-known-good listings persisted in catalog_cache.json."""

    catalogs: Dict[str, CatalogSnapshot] = Field(default_factory=dict)


@dataclass
class CatalogResult:
    """Outcome of one refresh: the models now cached plus an optional partial-failure error."""

    provider_id: str
    models: Tuple[Model, ...]
    error: Optional[PartialCatalogError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _with_availability(models: Iterable[Model], availability: ModelAvailability) -> Tuple[Model, ...]:
    return tuple(
        model if model.availability == availability else model.model_copy(update={"availability": availability})
        for model in models
    )


class ModelCatalogService:
    """Fetches, caches and refreshes model listings for every provider.

    Each provider's catalog is a ``CatalogSnapshot`` stored in a mapping that is
    replaced by assignment, so readers never observe a half-updated list.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter: AdapterLayer,
        *,
        config_manager: Optional[ConfigManager] = None,
        timeout: float = DEFAULT_CATALOG_TIMEOUT,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        max_pages: int = 50,
    ) -> None:
        self.registry = registry
        self.adapter = adapter
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_pages = max_pages
        self._config_manager = config_manager
        self._snapshots: Mapping[str, CatalogSnapshot] = {}
        self._refresh_locks: Dict[str, asyncio.Lock] = {}
        self._model_removal_listeners: List[ModelRemovalListener] = []
        if config_manager is not None:
            self._load_cache()

    # Persistence -------------------------------------------------------

    def _load_cache(self) -> None:
        assert self._config_manager is not None
        document = self._config_manager.load_document(
            self._config_manager.catalog_cache_path, CatalogCacheDocument
        )
        # Cached listings are last-known-good only; they stay stale until a refresh succeeds.
        self._snapshots = {
            provider_id: snapshot.model_copy(
                update={
                    "models": _with_availability(snapshot.models, ModelAvailability.STALE),
                    "availability": ModelAvailability.STALE if snapshot.models else ModelAvailability.UNAVAILABLE,
                }
            )
            for provider_id, snapshot in document.catalogs.items()
            if provider_id in self.registry
        }

    def _save_cache(self) -> None:
        if self._config_manager is None:
            return
        self._config_manager.save_document(
            self._config_manager.catalog_cache_path,
            CatalogCacheDocument(catalogs=dict(self._snapshots)),
        )

    def _publish(self, snapshot: CatalogSnapshot) -> None:
        self._snapshots = {**self._snapshots, snapshot.provider_id: snapshot}
        self._save_cache()

    # Reads -------------------------------------------------------------

    def snapshot(self, provider_id: str) -> CatalogSnapshot:
        return self._snapshots.get(provider_id) or CatalogSnapshot(provider_id=provider_id)

    def list_models(self, provider_id: Optional[str] = None) -> Tuple[Model, ...]:
        snapshots = self._snapshots
        if provider_id is not None:
            snapshot = snapshots.get(provider_id)
            return snapshot.models if snapshot else ()
        return tuple(model for key in sorted(snapshots) for model in snapshots[key].models)

    def find_model(self, provider_id: str, model_id: str) -> Optional[Model]:
        snapshot = self._snapshots.get(provider_id)
        return snapshot.find(model_id) if snapshot else None

    def get_model(self, provider_id: str, model_id: str) -> Model:
        model = self.find_model(provider_id, model_id)
        if model is None:
            raise ModelNotFoundError(provider_id, model_id)
        return model

    # Mutations ---------------------------------------------------------

    def on_model_removed(self, listener: ModelRemovalListener) -> None:
        """Called with ``(provider_id, model_id)`` when a refresh drops a model."""
        self._model_removal_listeners.append(listener)

    async def forget(self, provider_id: str) -> None:
        """Drop a provider's catalog (provider removal cascade)."""
        self._refresh_locks.pop(provider_id, None)
        if provider_id not in self._snapshots:
            return
        self._snapshots = {key: value for key, value in self._snapshots.items() if key != provider_id}
        self._save_cache()
        logger.debug("[model_catalog] Forgot provider catalog", extra={"provider_id": provider_id})

    def _to_model(self, provider_id: str, descriptor: ModelDescriptor, default_tier: ModelTier) -> Model:
        return Model(
            id=descriptor.id,
            provider_id=provider_id,
            display_name=descriptor.display_name,
            context_window_tokens=descriptor.context_window_tokens,
            tier=descriptor.tier or default_tier,
            capability_tags=descriptor.capability_tags,
            availability=ModelAvailability.LISTED,
        )

    async def _fetch_once(self, provider_id: str, pages: List[List[ModelDescriptor]]) -> None:
        async for page in self.adapter.list_models(provider_id, max_pages=self.max_pages):
            pages.append(page)

    async def _fetch_with_retries(
        self, provider_id: str, pages: List[List[ModelDescriptor]]
    ) -> None:
        """Fetch all pages; connectivity failures are retried with bounded backoff.

        Authentication and configuration failures are not retried.
        """
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            pages.clear()
            try:
                await self._fetch_once(provider_id, pages)
                return
            except ConnectivityError as exc:
                if attempt == attempts or not exc.retryable:
                    raise
                delay_seconds = retry_delay_seconds(attempt, base_delay=self.retry_base_delay)
                logger.warning(
                    "[model_catalog] Catalog fetch failed; retrying",
                    extra={
                        "provider_id": provider_id,
                        "attempt": attempt,
                        "max_retries": attempts - 1,
                        "delay_seconds": round(delay_seconds, 3),
                    },
                )
                await asyncio.sleep(delay_seconds)

    async def refresh(self, provider_id: str, *, timeout: Optional[float] = None) -> CatalogResult:
        """Refresh one provider's catalog within a bounded deadline.

        On failure the previous list is kept (marked stale) and returned with a
        PartialCatalogError; it is never replaced by an empty list.
        """
        provider = self.registry.get(provider_id)
        lock = self._refresh_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            deadline = timeout if timeout is not None else self.timeout
            pages: List[List[ModelDescriptor]] = []
            started = time.monotonic()
            failure: Optional[BaseException] = None
            timed_out = False
            try:
                await asyncio.wait_for(self._fetch_with_retries(provider_id, pages), timeout=deadline)
            except asyncio.TimeoutError:
                timed_out = True
            except (GatewayError, OSError) as exc:
                failure = exc

            if provider_id not in self.registry:
                # Removed while the fetch was in flight; do not resurrect its catalog.
                return CatalogResult(provider_id=provider_id, models=())

            previous = self.snapshot(provider_id)
            fetched = [self._to_model(provider_id, d, provider.default_tier) for page in pages for d in page]

            if failure is None and not timed_out:
                models = tuple(sorted({m.id: m for m in fetched}.values(), key=lambda m: m.id))
                self._publish(
                    CatalogSnapshot(
                        provider_id=provider_id,
                        models=models,
                        fetched_at=datetime.now(timezone.utc),
                        availability=ModelAvailability.LISTED,
                    )
                )
                await self._notify_dropped(provider_id, previous.models, models)
                logger.info(
                    "[model_catalog] Refreshed catalog",
                    extra={
                        "provider_id": provider_id,
                        "models": len(models),
                        "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    },
                )
                return CatalogResult(provider_id=provider_id, models=models)

            return self._partial(provider_id, previous, fetched, failure, timed_out, deadline, len(pages))

    def _partial(
        self,
        provider_id: str,
        previous: CatalogSnapshot,
        fetched: List[Model],
        failure: Optional[BaseException],
        timed_out: bool,
        deadline: float,
        pages_fetched: int,
    ) -> CatalogResult:
        merged: Dict[str, Model] = {
            model.id: model for model in _with_availability(previous.models, ModelAvailability.STALE)
        }
        merged.update({model.id: model for model in fetched})
        models = tuple(sorted(merged.values(), key=lambda m: m.id))

        if models:
            self._publish(
                CatalogSnapshot(
                    provider_id=provider_id,
                    models=models,
                    fetched_at=datetime.now(timezone.utc) if fetched else previous.fetched_at,
                    availability=ModelAvailability.STALE,
                )
            )
        else:
            self._publish(CatalogSnapshot(provider_id=provider_id, availability=ModelAvailability.UNAVAILABLE))

        if timed_out:
            reason = f"timed out after {deadline:g}s"
            cause_code = "timeout"
        else:
            reason = str(failure)
            cause_code = failure.error_code if isinstance(failure, GatewayError) else type(failure).__name__
        served = "partial listing" if fetched else ("cached listing" if models else "no cached listing")
        error = PartialCatalogError(
            f"Catalog refresh for '{provider_id}' {reason}; serving {served}.",
            provider_id=provider_id,
            cause_code=cause_code,
            pages_fetched=pages_fetched,
        )
        if isinstance(failure, BaseException):
            error.__cause__ = failure
        log = logger.error if isinstance(failure, (AuthenticationError, CredentialNotFoundError)) else logger.warning
        log(
            "[model_catalog] Catalog refresh incomplete",
            extra={
                "provider_id": provider_id,
                "cause": cause_code,
                "pages_fetched": pages_fetched,
                "models_served": len(models),
            },
        )
        return CatalogResult(provider_id=provider_id, models=models, error=error)

    async def _notify_dropped(
        self, provider_id: str, before: Iterable[Model], after: Iterable[Model]
    ) -> None:
        remaining = {model.id for model in after}
        for model in before:
            if model.id in remaining:
                continue
            for listener in self._model_removal_listeners:
                result = listener(provider_id, model.id)
                if inspect.isawaitable(result):
                    await result

    async def refresh_all(self, *, timeout: Optional[float] = None) -> Dict[str, CatalogResult]:
        """Refresh every registered provider concurrently, each with its own deadline."""
        provider_ids = [provider.id for provider in self.registry.list()]
        tasks = [self.refresh(provider_id, timeout=timeout) for provider_id in provider_ids]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcome: Dict[str, CatalogResult] = {}
        for provider_id, result in zip(provider_ids, results):
            if isinstance(result, CatalogResult):
                outcome[provider_id] = result
                continue
            if isinstance(result, asyncio.CancelledError):
                raise result
            # The provider was removed between listing and refreshing.
            logger.warning(
                "[model_catalog] Refresh failed: %s: %s",
                type(result).__name__,
                result,
                extra={"provider_id": provider_id},
            )
            outcome[provider_id] = CatalogResult(
                provider_id=provider_id,
                models=self.list_models(provider_id),
                error=PartialCatalogError(
                    f"Catalog refresh for '{provider_id}' failed: {result}",
                    provider_id=provider_id,
                    cause_code=getattr(result, "error_code", type(result).__name__),
                ),
            )
        return outcome


__all__ = [
    "CatalogResult",
    "CatalogSnapshot",
    "Model",
    "ModelAvailability",
    "ModelCatalogService",
]
