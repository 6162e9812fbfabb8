"""Attach a credential to a wire request according to the provider's auth scheme.

| auth_scheme   | wire effect                                   |
|---------------|-----------------------------------------------|
| bearer-header | ``Authorization: Bearer <secret>``            |
| named-header  | ``<auth_header_name>: <secret>`` (no prefix)  |
| query-param   | ``<auth_header_name>=<secret>`` in the query  |

Exactly one artifact is attached per request.
"""

from __future__ import annotations

from typing import Optional

from modelgate.core.config import AuthScheme, Provider
from modelgate.core.errors import InvalidConfigError
from modelgate.core.providers.base import WireRequest


def _drop_header(headers: dict[str, str], name: str) -> None:
    for existing in [key for key in headers if key.lower() == name.lower()]:
        del headers[existing]


def _apply_bearer_header(provider: Provider, wire: WireRequest, secret: str) -> WireRequest:
    _drop_header(wire.headers, "Authorization")
    wire.headers["Authorization"] = f"Bearer {secret}"
    return wire


def _apply_named_header(provider: Provider, wire: WireRequest, secret: str) -> WireRequest:
    name = provider.auth_name
    _drop_header(wire.headers, name)
    wire.headers[name] = secret
    return wire


def _apply_query_param(provider: Provider, wire: WireRequest, secret: str) -> WireRequest:
    wire.params[provider.auth_name] = secret
    return wire


def apply_auth(provider: Provider, wire: WireRequest, secret: Optional[str]) -> WireRequest:
    """Return a copy of ``wire`` carrying the credential.

    ``secret`` is None only for providers that do not require a credential, in
    which case the request goes out unauthenticated.
    """
    wire = wire.copy()
    if secret is None:
        return wire
    scheme = provider.auth_scheme
    if scheme is AuthScheme.BEARER_HEADER:
        return _apply_bearer_header(provider, wire, secret)
    if scheme is AuthScheme.NAMED_HEADER:
        return _apply_named_header(provider, wire, secret)
    if scheme is AuthScheme.QUERY_PARAM:
        return _apply_query_param(provider, wire, secret)
    raise InvalidConfigError(
        f"Unsupported auth scheme: {scheme!r}", provider_id=provider.id, field="auth_scheme"
    )


__all__ = ["apply_auth"]
