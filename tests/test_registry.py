"""Tests for provider registry CRUD and persistence."""

from __future__ import annotations

import asyncio

import pytest

from modelgate.core.config import ConfigManager, ProviderStatus
from modelgate.core.errors import InvalidConfigError, ProviderNotFoundError
from modelgate.core.registry import ProviderRegistry


@pytest.mark.asyncio
async def test_add_get_list():
    registry = ProviderRegistry()
    assert await registry.add({"id": "b", "base_url": "https://b.example"}) == "b"
    await registry.add({"id": "a", "base_url": "https://a.example", "display_name": "Alpha"})

    assert [provider.id for provider in registry.list()] == ["a", "b"]
    assert registry.get("a").display_name == "Alpha"
    assert registry.get("b").status is ProviderStatus.UNVERIFIED
    assert "a" in registry


@pytest.mark.asyncio
async def test_duplicate_id_is_rejected():
    registry = ProviderRegistry()
    await registry.add({"id": "p", "base_url": "https://p.example"})
    with pytest.raises(InvalidConfigError) as exc_info:
        await registry.add({"id": "p", "base_url": "https://other.example"})
    assert exc_info.value.field == "id"


@pytest.mark.asyncio
async def test_invalid_config_is_not_registered():
    registry = ProviderRegistry()
    with pytest.raises(InvalidConfigError) as exc_info:
        await registry.add({"id": "p", "base_url": "p.example"})
    assert exc_info.value.field == "base_url"
    assert registry.list() == ()


@pytest.mark.asyncio
async def test_update_merges_changes_and_resets_status():
    registry = ProviderRegistry()
    await registry.add({"id": "p", "base_url": "https://p.example", "extra_headers": {"anthropic-version": "2023-06-01"}})
    await registry.set_status("p", ProviderStatus.HEALTHY)

    updated = await registry.update("p", {"base_url": "https://p2.example/v1"})
    assert updated.base_url == "https://p2.example/v1"
    assert updated.extra_headers == {"anthropic-version": "2023-06-01"}
    assert updated.status is ProviderStatus.UNVERIFIED


@pytest.mark.asyncio
async def test_update_cannot_change_id():
    registry = ProviderRegistry()
    await registry.add({"id": "p", "base_url": "https://p.example"})
    with pytest.raises(InvalidConfigError) as exc_info:
        await registry.update("p", {"id": "q"})
    assert exc_info.value.field == "id"


@pytest.mark.asyncio
async def test_snapshots_are_immutable():
    registry = ProviderRegistry()
    await registry.add({"id": "p", "base_url": "https://p.example"})
    snapshot = registry.get("p")
    with pytest.raises(Exception):
        snapshot.base_url = "https://evil.example"  # type: ignore[misc]
    await registry.update("p", {"display_name": "Renamed"})
    assert snapshot.display_name == "p"


@pytest.mark.asyncio
async def test_remove_runs_listeners_in_order():
    registry = ProviderRegistry()
    await registry.add({"id": "p", "base_url": "https://p.example"})
    calls: list[str] = []

    async def _async_listener(provider_id: str) -> None:
        await asyncio.sleep(0)
        calls.append(f"async:{provider_id}")

    registry.on_remove(lambda provider_id: calls.append(f"sync:{provider_id}"))
    registry.on_remove(_async_listener)

    removed = await registry.remove("p")
    assert removed.id == "p"
    assert calls == ["sync:p", "async:p"]
    with pytest.raises(ProviderNotFoundError):
        registry.get("p")


@pytest.mark.asyncio
async def test_unknown_provider_errors_are_validation_errors():
    registry = ProviderRegistry()
    with pytest.raises(ProviderNotFoundError) as exc_info:
        await registry.remove("ghost")
    assert isinstance(exc_info.value, InvalidConfigError)
    assert exc_info.value.exit_code == 1


@pytest.mark.asyncio
async def test_registry_persists_providers(tmp_path):
    manager = ConfigManager(tmp_path)
    registry = ProviderRegistry(manager)
    await registry.add(
        {
            "id": "p",
            "base_url": "https://p.example",
            "tier_limits": [{"tier": "free", "limit": 50, "fallback_model_id": "mini"}],
        }
    )

    reloaded = ProviderRegistry(ConfigManager(tmp_path))
    assert reloaded.get("p").tier_limits[0].fallback_model_id == "mini"
    assert "secret" not in manager.providers_path.read_text(encoding="utf-8")
