"""Credential storage keyed by provider id.

Secrets are handed out only to the adapter layer at call time. They are held
as ``SecretStr`` so reprs and dumps never show them, registered with the log
redaction filter, and persisted only through the OS keyring.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, SecretStr

from modelgate.core.errors import CredentialNotFoundError, InvalidConfigError
from modelgate.utils.log import get_logger, mask_secret

logger = get_logger()

KEYRING_SERVICE_NAME = "modelgate"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Credential(BaseModel):
    """A provider secret plus bookkeeping timestamps."""

    provider_id: str
    secret: SecretStr
    created_at: datetime
    last_used_at: Optional[datetime] = None


class CredentialInfo(BaseModel):
    """Displayable view of a credential."""

    provider_id: str
    masked: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    source: str = "store"


class CredentialBackend(ABC):
    """Blocking secret storage; the store calls it off the event loop."""

    @abstractmethod
    def load(self, provider_id: str) -> Optional[Credential]:
        """Return the stored credential or None."""

    @abstractmethod
    def save(self, credential: Credential) -> None:
        """Persist ``credential``, replacing any previous secret."""

    @abstractmethod
    def remove(self, provider_id: str) -> bool:
        """Delete the secret; return True when something was removed."""


class MemoryBackend(CredentialBackend):
    """Process-local storage for tests and embedding."""

    def __init__(self) -> None:
        self._items: Dict[str, Credential] = {}

    def load(self, provider_id: str) -> Optional[Credential]:
        return self._items.get(provider_id)

    def save(self, credential: Credential) -> None:
        self._items[credential.provider_id] = credential

    def remove(self, provider_id: str) -> bool:
        return self._items.pop(provider_id, None) is not None


class KeyringBackend(CredentialBackend):
    """Store secrets in the system keyring (Keychain, Credential Manager, Secret Service)."""

    def __init__(self, service_name: str = KEYRING_SERVICE_NAME) -> None:
        import keyring
        import keyring.errors

        self._keyring = keyring
        self._errors = keyring.errors
        self.service_name = service_name

    @staticmethod
    def _meta_key(provider_id: str) -> str:
        return f"{provider_id}__meta"

    def load(self, provider_id: str) -> Optional[Credential]:
        secret = self._keyring.get_password(self.service_name, provider_id)
        if secret is None:
            return None
        created_at = _utcnow()
        meta_raw = self._keyring.get_password(self.service_name, self._meta_key(provider_id))
        if meta_raw:
            try:
                created_at = datetime.fromisoformat(json.loads(meta_raw)["created_at"])
            except (ValueError, KeyError, TypeError):
                logger.debug("[credentials] Ignoring unreadable keyring metadata", extra={"provider_id": provider_id})
        return Credential(provider_id=provider_id, secret=SecretStr(secret), created_at=created_at)

    def save(self, credential: Credential) -> None:
        self._keyring.set_password(
            self.service_name, credential.provider_id, credential.secret.get_secret_value()
        )
        meta = json.dumps({"created_at": credential.created_at.isoformat()})
        self._keyring.set_password(self.service_name, self._meta_key(credential.provider_id), meta)

    def remove(self, provider_id: str) -> bool:
        removed = False
        for key in (provider_id, self._meta_key(provider_id)):
            try:
                self._keyring.delete_password(self.service_name, key)
                removed = removed or key == provider_id
            except self._errors.PasswordDeleteError:
                continue
        return removed


def env_var_for(provider_id: str) -> str:
    """Environment variable consulted when the store has no secret."""
    return "MODELGATE_" + re.sub(r"[^A-Z0-9]", "_", provider_id.upper()) + "_API_KEY"


class CredentialStore:
    """Per-provider secrets with serialized mutations."""

    def __init__(self, backend: Optional[CredentialBackend] = None, *, env_fallback: bool = True) -> None:
        self.backend = backend or MemoryBackend()
        self.env_fallback = env_fallback
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cache: Dict[str, Credential] = {}

    async def _load(self, provider_id: str) -> Optional[Credential]:
        cached = self._cache.get(provider_id)
        if cached is not None:
            return cached
        credential = await asyncio.to_thread(self.backend.load, provider_id)
        if credential is not None:
            logger.register_secret(credential.secret.get_secret_value())
            self._cache[provider_id] = credential
        return credential

    def _from_env(self, provider_id: str) -> Optional[str]:
        if not self.env_fallback:
            return None
        value = os.environ.get(env_var_for(provider_id))
        if value:
            logger.register_secret(value)
        return value or None

    async def set(self, provider_id: str, secret: str) -> CredentialInfo:
        """Store ``secret`` for ``provider_id``, replacing any previous one."""
        if not secret:
            raise InvalidConfigError("Credential must not be empty.", provider_id=provider_id, field="credential")
        async with self._locks[provider_id]:
            previous = await self._load(provider_id)
            credential = Credential(
                provider_id=provider_id,
                secret=SecretStr(secret),
                created_at=_utcnow(),
            )
            logger.register_secret(secret)
            await asyncio.to_thread(self.backend.save, credential)
            self._cache[provider_id] = credential
            if previous is not None and previous.secret.get_secret_value() != secret:
                logger.forget_secret(previous.secret.get_secret_value())
        logger.info("[credentials] Stored credential", extra={"provider_id": provider_id})
        return self._info(credential)

    async def get(self, provider_id: str) -> str:
        """Return the secret for the adapter layer. Never log the result."""
        async with self._locks[provider_id]:
            credential = await self._load(provider_id)
            if credential is None:
                env_secret = self._from_env(provider_id)
                if env_secret is None:
                    raise CredentialNotFoundError(provider_id)
                return env_secret
            credential = credential.model_copy(update={"last_used_at": _utcnow()})
            self._cache[provider_id] = credential
            return credential.secret.get_secret_value()

    async def rotate(self, provider_id: str, new_secret: str) -> CredentialInfo:
        """Atomically replace an existing secret.

        Requests that already obtained the old value finish with it; every
        ``get`` after the swap sees only the new one.
        """
        if not new_secret:
            raise InvalidConfigError("Credential must not be empty.", provider_id=provider_id, field="credential")
        async with self._locks[provider_id]:
            current = await self._load(provider_id)
            if current is None:
                raise CredentialNotFoundError(provider_id)
            rotated = Credential(
                provider_id=provider_id,
                secret=SecretStr(new_secret),
                created_at=_utcnow(),
            )
            logger.register_secret(new_secret)
            await asyncio.to_thread(self.backend.save, rotated)
            self._cache[provider_id] = rotated
        logger.info("[credentials] Rotated credential", extra={"provider_id": provider_id})
        return self._info(rotated)

    async def delete(self, provider_id: str) -> bool:
        async with self._locks[provider_id]:
            self._cache.pop(provider_id, None)
            removed = await asyncio.to_thread(self.backend.remove, provider_id)
        self._locks.pop(provider_id, None)
        if removed:
            logger.info("[credentials] Deleted credential", extra={"provider_id": provider_id})
        return removed

    async def has(self, provider_id: str) -> bool:
        async with self._locks[provider_id]:
            if await self._load(provider_id) is not None:
                return True
        return self._from_env(provider_id) is not None

    async def describe(self, provider_id: str) -> Optional[CredentialInfo]:
        async with self._locks[provider_id]:
            credential = await self._load(provider_id)
        if credential is not None:
            return self._info(credential)
        env_secret = self._from_env(provider_id)
        if env_secret is None:
            return None
        return CredentialInfo(
            provider_id=provider_id,
            masked=mask_secret(env_secret),
            created_at=_utcnow(),
            source=env_var_for(provider_id),
        )

    @staticmethod
    def _info(credential: Credential) -> CredentialInfo:
        return CredentialInfo(
            provider_id=credential.provider_id,
            masked=mask_secret(credential.secret.get_secret_value()),
            created_at=credential.created_at,
            last_used_at=credential.last_used_at,
        )


def build_backend(kind: str) -> CredentialBackend:
    if kind == "keyring":
        return KeyringBackend()
    return MemoryBackend()


__all__ = [
    "Credential",
    "CredentialBackend",
    "CredentialInfo",
    "CredentialStore",
    "KeyringBackend",
    "MemoryBackend",
    "build_backend",
    "env_var_for",
]
