"""Configuration management for modelgate.

This module holds the provider configuration records, the gateway settings
and the JSON documents kept in the state directory (``~/.modelgate`` unless
``MODELGATE_HOME`` points elsewhere). Secrets never live here.
"""

from __future__ import annotations

import json
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from modelgate.core.errors import InvalidConfigError
from modelgate.utils.log import get_logger

logger = get_logger()

USER_CONFIG_DIR_NAME = ".modelgate"
PROVIDERS_FILE_NAME = "providers.json"
CATALOG_CACHE_FILE_NAME = "catalog_cache.json"
FAVORITES_FILE_NAME = "favorites.json"
CONVERSATIONS_FILE_NAME = "conversations.json"
SETTINGS_FILE_NAME = "settings.json"
QUOTA_FILE_NAME = "quota.json"


class AuthScheme(str, Enum):
    """How the credential travels on the wire."""

    BEARER_HEADER = "bearer-header"
    NAMED_HEADER = "named-header"
    QUERY_PARAM = "query-param"

    @classmethod
    def _missing_(cls, value: object) -> Optional["AuthScheme"]:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class ResponseShape(str, Enum):
    """Known completion payload layouts."""

    CHAT_MESSAGE_ARRAY = "chat-message-array"
    SINGLE_COMPLETION_OBJECT = "single-completion-object"
    CONTENT_BLOCK_LIST = "content-block-list"


class ProviderStatus(str, Enum):
    UNVERIFIED = "unverified"
    HEALTHY = "healthy"
    UNREACHABLE = "unreachable"
    UNAUTHORIZED = "unauthorized"


class ModelTier(str, Enum):
    FREE = "free"
    PAID = "paid"


class ResetPolicy(str, Enum):
    ROLLING_24H = "rolling-24h"
    CALENDAR_DAY = "calendar-day"
    NONE = "none"


_DEFAULT_AUTH_HEADER_NAMES: Dict[AuthScheme, str] = {
    AuthScheme.BEARER_HEADER: "Authorization",
    AuthScheme.NAMED_HEADER: "x-api-key",
    AuthScheme.QUERY_PARAM: "key",
}


class TierLimit(BaseModel):
    """Usage limit for one model tier of a provider."""

    model_config = ConfigDict(frozen=True)

    tier: ModelTier
    limit: int = Field(ge=0)
    window_policy: ResetPolicy = ResetPolicy.ROLLING_24H
    fallback_model_id: Optional[str] = None


class ProviderConfig(BaseModel):
    """User-supplied provider configuration."""

    id: str
    display_name: str = ""
    base_url: str
    auth_scheme: AuthScheme = AuthScheme.BEARER_HEADER
    # None picks the conventional name for the scheme; an explicit empty string is rejected.
    auth_header_name: Optional[str] = None
    response_shape: ResponseShape = ResponseShape.CHAT_MESSAGE_ARRAY
    chat_path: str = "/chat/completions"
    models_path: str = "/models"
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    requires_credential: bool = True
    default_tier: ModelTier = ModelTier.PAID
    # "disabled" ignores fallback_model_id entries, so exhausted tiers are denied outright.
    fallback_mode: Literal["auto", "disabled"] = "auto"
    tier_limits: List[TierLimit] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("auth_header_name") is None:
            try:
                scheme = AuthScheme(data.get("auth_scheme") or AuthScheme.BEARER_HEADER)
            except ValueError:
                return data
            data["auth_header_name"] = _DEFAULT_AUTH_HEADER_NAMES[scheme]
        if not data.get("display_name") and data.get("id"):
            data["display_name"] = data["id"]
        return data


class Provider(ProviderConfig):
    """Registered provider record. Instances are immutable snapshots."""

    model_config = ConfigDict(frozen=True)

    status: ProviderStatus = ProviderStatus.UNVERIFIED
    status_detail: Optional[str] = None
    last_checked_at: Optional[datetime] = None

    @property
    def auth_name(self) -> str:
        return self.auth_header_name or _DEFAULT_AUTH_HEADER_NAMES[self.auth_scheme]

    def tier_limit(self, tier: ModelTier) -> Optional[TierLimit]:
        for entry in self.tier_limits:
            if entry.tier == tier:
                return entry
        return None

    def endpoint(self, path: str) -> str:
        return self.base_url.rstrip("/") + "/" + path.lstrip("/")


def validate_provider_config(config: ProviderConfig) -> None:
    """Raise InvalidConfigError naming the offending field."""
    provider_id = (config.id or "").strip()
    if not provider_id or provider_id != config.id or any(ch.isspace() for ch in provider_id):
        raise InvalidConfigError(
            "Provider id must be non-empty and contain no whitespace.",
            provider_id=config.id or None,
            field="id",
        )
    try:
        url = httpx.URL(config.base_url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise InvalidConfigError(
            f"base_url is not a valid URL: {exc}", provider_id=config.id, field="base_url"
        ) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidConfigError(
            "base_url must be an absolute http(s) URL with a host.",
            provider_id=config.id,
            field="base_url",
        )
    if url.query or url.fragment:
        raise InvalidConfigError(
            "base_url must not carry a query string or fragment.",
            provider_id=config.id,
            field="base_url",
        )
    header_name = (config.auth_header_name or "").strip()
    if not header_name:
        raise InvalidConfigError(
            "auth_header_name must not be empty.", provider_id=config.id, field="auth_header_name"
        )
    if header_name != config.auth_header_name or any(ch in header_name for ch in ":\r\n "):
        raise InvalidConfigError(
            "auth_header_name must be a bare header or parameter name.",
            provider_id=config.id,
            field="auth_header_name",
        )
    # Authorization is reserved under every scheme.
    reserved = {header_name.lower(), "authorization"}
    for name in config.extra_headers:
        if name.lower() in reserved:
            raise InvalidConfigError(
                f"extra_headers must not carry the auth header '{name}'.",
                provider_id=config.id,
                field="extra_headers",
            )
    seen_tiers: set[ModelTier] = set()
    for entry in config.tier_limits:
        if entry.tier in seen_tiers:
            raise InvalidConfigError(
                f"Duplicate tier limit for tier '{entry.tier.value}'.",
                provider_id=config.id,
                field="tier_limits",
            )
        seen_tiers.add(entry.tier)


def parse_provider_config(data: Dict[str, Any]) -> ProviderConfig:
    """Build a ProviderConfig from raw data, converting pydantic errors."""
    try:
        return ProviderConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(part) for part in first.get("loc", ())) or None
        raise InvalidConfigError(
            f"Invalid provider configuration: {first.get('msg', exc)}",
            provider_id=data.get("id") if isinstance(data, dict) else None,
            field=loc,
        ) from exc


class GatewaySettings(BaseModel):
    """Tunables stored in settings.json, overridable through MODELGATE_* variables."""

    request_timeout: float = 60.0
    catalog_timeout: float = 10.0
    health_timeout: float = 10.0
    max_concurrent_requests: int = Field(default=8, ge=1)
    catalog_max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = 0.5
    max_catalog_pages: int = Field(default=50, ge=1)
    secret_backend: Literal["keyring", "memory"] = "keyring"
    log_to_file: bool = False


_ENV_OVERRIDES = {
    "MODELGATE_REQUEST_TIMEOUT": "request_timeout",
    "MODELGATE_CATALOG_TIMEOUT": "catalog_timeout",
    "MODELGATE_HEALTH_TIMEOUT": "health_timeout",
    "MODELGATE_MAX_CONCURRENCY": "max_concurrent_requests",
    "MODELGATE_SECRET_BACKEND": "secret_backend",
}


class ProvidersDocument(BaseModel):
    """Top-level structure of providers.json."""

    providers: Dict[str, Provider] = Field(default_factory=dict)


ModelT = TypeVar("ModelT", bound=BaseModel)


def default_state_dir() -> Path:
    override = os.getenv("MODELGATE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / USER_CONFIG_DIR_NAME


class ConfigManager:
    """Reads and writes the JSON documents that make up the gateway state."""

    def __init__(self, state_dir: Optional[Path] = None) -> None:
        self.state_dir = state_dir or default_state_dir()

    @property
    def providers_path(self) -> Path:
        return self.state_dir / PROVIDERS_FILE_NAME

    @property
    def catalog_cache_path(self) -> Path:
        return self.state_dir / CATALOG_CACHE_FILE_NAME

    @property
    def favorites_path(self) -> Path:
        return self.state_dir / FAVORITES_FILE_NAME

    @property
    def conversations_path(self) -> Path:
        return self.state_dir / CONVERSATIONS_FILE_NAME

    @property
    def quota_path(self) -> Path:
        return self.state_dir / QUOTA_FILE_NAME

    @property
    def settings_path(self) -> Path:
        return self.state_dir / SETTINGS_FILE_NAME

    def load_document(self, path: Path, model: Type[ModelT]) -> ModelT:
        """Load ``path`` into ``model``; unreadable files fall back to defaults."""
        if not path.exists():
            logger.debug("[config] Document not found; using defaults", extra={"path": str(path)})
            return model()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            document = model.model_validate(data)
            logger.debug("[config] Loaded document", extra={"path": str(path)})
            return document
        except (
            json.JSONDecodeError,
            OSError,
            UnicodeDecodeError,
            ValueError,
            TypeError,
        ) as e:
            logger.warning(
                "Error loading %s: %s: %s",
                path.name,
                type(e).__name__,
                e,
                extra={"path": str(path)},
            )
            return model()

    def save_document(self, path: Path, document: BaseModel) -> None:
        """Write ``document`` atomically so readers never see a torn file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document.model_dump(mode="json"), indent=2, sort_keys=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(payload + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
        logger.debug("[config] Saved document", extra={"path": str(path)})

    def load_settings(self) -> GatewaySettings:
        settings = self.load_document(self.settings_path, GatewaySettings)
        overrides: Dict[str, Any] = {}
        for env_var, field_name in _ENV_OVERRIDES.items():
            if env_var in os.environ:
                overrides[field_name] = os.environ[env_var]
        if not overrides:
            return settings
        try:
            return GatewaySettings.model_validate({**settings.model_dump(), **overrides})
        except ValidationError as exc:
            raise InvalidConfigError(
                f"Invalid MODELGATE_* override: {exc.errors()[0].get('msg')}", field="settings"
            ) from exc

    def load_providers(self) -> Dict[str, Provider]:
        return dict(self.load_document(self.providers_path, ProvidersDocument).providers)

    def save_providers(self, providers: Dict[str, Provider]) -> None:
        self.save_document(self.providers_path, ProvidersDocument(providers=providers))


__all__ = [
    "AuthScheme",
    "ConfigManager",
    "GatewaySettings",
    "ModelTier",
    "Provider",
    "ProviderConfig",
    "ProviderStatus",
    "ProvidersDocument",
    "ResetPolicy",
    "ResponseShape",
    "TierLimit",
    "default_state_dir",
    "parse_provider_config",
    "validate_provider_config",
]
