"""User-ranked shortcuts into the model catalog."""

from __future__ import annotations

from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from modelgate.core.config import ConfigManager
from modelgate.core.errors import InvalidConfigError, ModelNotFoundError
from modelgate.core.model_catalog import ModelCatalogService
from modelgate.utils.log import get_logger

logger = get_logger()


class FavoriteEntry(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider_id: str
    model_id: str
    rank: int


class FavoritesDocument(BaseModel):
    entries: List[FavoriteEntry] = Field(default_factory=list)


def _reranked(entries: List[Tuple[str, str]]) -> Tuple[FavoriteEntry, ...]:
    return tuple(
        FavoriteEntry(provider_id=provider_id, model_id=model_id, rank=index)
        for index, (provider_id, model_id) in enumerate(entries, start=1)
    )


class FavoritesStore:
    """Ranks are dense (1..n); the entry tuple is swapped whole on every change."""

    def __init__(self, catalog: ModelCatalogService, *, config_manager: Optional[ConfigManager] = None) -> None:
        self.catalog = catalog
        self._config_manager = config_manager
        self._entries: Tuple[FavoriteEntry, ...] = ()
        if config_manager is not None:
            document = config_manager.load_document(config_manager.favorites_path, FavoritesDocument)
            ordered = sorted(document.entries, key=lambda entry: entry.rank)
            self._entries = _reranked([(entry.provider_id, entry.model_id) for entry in ordered])

    def _publish(self, pairs: List[Tuple[str, str]]) -> None:
        self._entries = _reranked(pairs)
        if self._config_manager is not None:
            self._config_manager.save_document(
                self._config_manager.favorites_path, FavoritesDocument(entries=list(self._entries))
            )

    def _pairs(self) -> List[Tuple[str, str]]:
        return [(entry.provider_id, entry.model_id) for entry in self._entries]

    def list(self) -> Tuple[FavoriteEntry, ...]:
        return self._entries

    def find(self, provider_id: str, model_id: str) -> Optional[FavoriteEntry]:
        for entry in self._entries:
            if entry.provider_id == provider_id and entry.model_id == model_id:
                return entry
        return None

    def add(self, provider_id: str, model_id: str) -> FavoriteEntry:
        """Favorite a catalog model; re-adding returns the existing entry."""
        if self.catalog.find_model(provider_id, model_id) is None:
            raise ModelNotFoundError(provider_id, model_id)
        existing = self.find(provider_id, model_id)
        if existing is not None:
            return existing
        self._publish([*self._pairs(), (provider_id, model_id)])
        logger.info("[favorites] Added favorite", extra={"provider_id": provider_id, "model_id": model_id})
        return self._entries[-1]

    def remove(self, provider_id: str, model_id: str) -> bool:
        pairs = self._pairs()
        if (provider_id, model_id) not in pairs:
            return False
        pairs.remove((provider_id, model_id))
        self._publish(pairs)
        logger.info("[favorites] Removed favorite", extra={"provider_id": provider_id, "model_id": model_id})
        return True

    def move(self, provider_id: str, model_id: str, rank: int) -> FavoriteEntry:
        pairs = self._pairs()
        if (provider_id, model_id) not in pairs:
            raise ModelNotFoundError(provider_id, model_id, f"'{provider_id}/{model_id}' is not a favorite.")
        if rank < 1:
            raise InvalidConfigError("Rank must be 1 or greater.", provider_id=provider_id, field="rank")
        pairs.remove((provider_id, model_id))
        pairs.insert(min(rank, len(pairs) + 1) - 1, (provider_id, model_id))
        self._publish(pairs)
        entry = self.find(provider_id, model_id)
        assert entry is not None
        return entry

    def prune_provider(self, provider_id: str) -> int:
        pairs = self._pairs()
        kept = [pair for pair in pairs if pair[0] != provider_id]
        if len(kept) != len(pairs):
            self._publish(kept)
            logger.debug(
                "[favorites] Pruned favorites for removed provider",
                extra={"provider_id": provider_id, "removed": len(pairs) - len(kept)},
            )
        return len(pairs) - len(kept)

    def prune_model(self, provider_id: str, model_id: str) -> bool:
        return self.remove(provider_id, model_id)


__all__ = ["FavoriteEntry", "FavoritesDocument", "FavoritesStore"]
