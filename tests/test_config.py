"""Tests for provider config validation and the state-directory documents."""

from __future__ import annotations

import json

import pytest

from modelgate.core.config import (
    AuthScheme,
    ConfigManager,
    GatewaySettings,
    ModelTier,
    Provider,
    ProviderConfig,
    ResetPolicy,
    default_state_dir,
    parse_provider_config,
    validate_provider_config,
)
from modelgate.core.errors import InvalidConfigError


def test_auth_header_name_defaults_per_scheme():
    bearer = ProviderConfig(id="a", base_url="https://a.example/v1")
    named = ProviderConfig(id="b", base_url="https://b.example", auth_scheme="named-header")
    query = ProviderConfig(id="c", base_url="https://c.example", auth_scheme="query-param")

    assert bearer.auth_header_name == "Authorization"
    assert named.auth_header_name == "x-api-key"
    assert query.auth_header_name == "key"
    assert bearer.display_name == "a"


def test_auth_scheme_accepts_loose_spelling():
    assert AuthScheme("NAMED_HEADER") is AuthScheme.NAMED_HEADER


@pytest.mark.parametrize(
    "base_url",
    [
        "not a url",
        "ftp://files.example/v1",
        "/relative/path",
        "https://",
        "https://p.example/v1?region=eu",
        "https://p.example/v1#models",
    ],
)
def test_invalid_base_url_names_the_field(base_url):
    config = ProviderConfig(id="p", base_url=base_url)
    with pytest.raises(InvalidConfigError) as exc_info:
        validate_provider_config(config)
    assert exc_info.value.field == "base_url"
    assert exc_info.value.exit_code == 1


def test_empty_auth_header_name_is_rejected():
    config = ProviderConfig(id="p", base_url="https://p.example", auth_scheme="named-header", auth_header_name="")
    with pytest.raises(InvalidConfigError) as exc_info:
        validate_provider_config(config)
    assert exc_info.value.field == "auth_header_name"


def test_extra_headers_may_not_shadow_auth_header():
    config = ProviderConfig(
        id="p",
        base_url="https://p.example",
        auth_scheme="named-header",
        extra_headers={"X-API-KEY": "other"},
    )
    with pytest.raises(InvalidConfigError) as exc_info:
        validate_provider_config(config)
    assert exc_info.value.field == "extra_headers"


@pytest.mark.parametrize("scheme", ["named-header", "query-param"])
def test_authorization_header_is_reserved_for_every_scheme(scheme):
    config = ProviderConfig(
        id="p",
        base_url="https://p.example",
        auth_scheme=scheme,
        extra_headers={"authorization": "Bearer other"},
    )
    with pytest.raises(InvalidConfigError) as exc_info:
        validate_provider_config(config)
    assert exc_info.value.field == "extra_headers"


def test_duplicate_tier_limits_are_rejected():
    config = ProviderConfig(
        id="p",
        base_url="https://p.example",
        tier_limits=[{"tier": "free", "limit": 5}, {"tier": "free", "limit": 9}],
    )
    with pytest.raises(InvalidConfigError) as exc_info:
        validate_provider_config(config)
    assert exc_info.value.field == "tier_limits"


def test_parse_provider_config_wraps_pydantic_errors():
    with pytest.raises(InvalidConfigError) as exc_info:
        parse_provider_config({"id": "p", "base_url": "https://p.example", "auth_scheme": "carrier-pigeon"})
    assert exc_info.value.field == "auth_scheme"


def test_provider_endpoint_joins_paths():
    provider = Provider(id="p", base_url="https://p.example/v1/")
    assert provider.endpoint("/models") == "https://p.example/v1/models"
    assert provider.endpoint(provider.chat_path) == "https://p.example/v1/chat/completions"


def test_providers_roundtrip_through_config_manager(tmp_path):
    manager = ConfigManager(tmp_path)
    provider = Provider(
        id="p",
        base_url="https://p.example",
        tier_limits=[{"tier": "free", "limit": 50, "window_policy": "calendar-day", "fallback_model_id": "mini"}],
    )
    manager.save_providers({"p": provider})

    loaded = manager.load_providers()["p"]
    assert loaded == provider
    assert loaded.tier_limit(ModelTier.FREE).window_policy is ResetPolicy.CALENDAR_DAY
    raw = json.loads(manager.providers_path.read_text(encoding="utf-8"))
    assert raw["providers"]["p"]["tier_limits"][0]["fallback_model_id"] == "mini"


def test_corrupt_document_falls_back_to_defaults(tmp_path):
    manager = ConfigManager(tmp_path)
    manager.providers_path.write_text("{ not json", encoding="utf-8")
    assert manager.load_providers() == {}


def test_settings_env_overrides(tmp_path, monkeypatch):
    manager = ConfigManager(tmp_path)
    manager.save_document(manager.settings_path, GatewaySettings(catalog_timeout=3))
    monkeypatch.setenv("MODELGATE_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("MODELGATE_SECRET_BACKEND", "memory")

    settings = manager.load_settings()
    assert settings.catalog_timeout == 3
    assert settings.request_timeout == 12.5
    assert settings.secret_backend == "memory"


def test_invalid_settings_override_is_a_config_error(tmp_path, monkeypatch):
    monkeypatch.setenv("MODELGATE_MAX_CONCURRENCY", "0")
    with pytest.raises(InvalidConfigError):
        ConfigManager(tmp_path).load_settings()


def test_state_dir_honors_modelgate_home(tmp_path, monkeypatch):
    monkeypatch.setenv("MODELGATE_HOME", str(tmp_path / "state"))
    assert default_state_dir() == tmp_path / "state"
