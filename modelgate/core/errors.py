"""Gateway error taxonomy.

Every error carries a stable ``error_code``, the CLI ``exit_code`` it maps to
and enough structured context (``provider_id``, ``field``) to render a precise
message. Credential values never appear in any of these.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Sequence

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_AUTHENTICATION = 2
EXIT_CONNECTIVITY = 3
EXIT_QUOTA = 4

QuotaSource = Literal["local", "remote"]


class GatewayError(Exception):
    """Base class for all errors raised by the gateway."""

    error_code = "gateway_error"
    exit_code = EXIT_VALIDATION

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        field: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.field = field
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error_code": self.error_code, "message": self.message}
        if self.provider_id:
            payload["provider_id"] = self.provider_id
        if self.field:
            payload["field"] = self.field
        return payload


class InvalidConfigError(GatewayError):
    """A provider configuration (or other caller input) failed validation."""

    error_code = "invalid_config"


class ProviderNotFoundError(InvalidConfigError):
    """No provider is registered under the requested id."""

    error_code = "provider_not_found"

    def __init__(self, provider_id: str) -> None:
        super().__init__(
            f"Provider '{provider_id}' is not configured.",
            provider_id=provider_id,
            field="provider_id",
        )


class CredentialNotFoundError(GatewayError):
    error_code = "credential_not_found"
    exit_code = EXIT_AUTHENTICATION

    def __init__(self, provider_id: str) -> None:
        super().__init__(
            f"No credential is stored for provider '{provider_id}'.",
            provider_id=provider_id,
            field="credential",
        )


class AuthenticationError(GatewayError):
    """The provider rejected the credential (HTTP 401/403)."""

    error_code = "authentication_error"
    exit_code = EXIT_AUTHENTICATION

    def __init__(self, message: str, *, provider_id: Optional[str] = None, status_code: int = 401) -> None:
        super().__init__(message, provider_id=provider_id, field="credential")
        self.status_code = status_code


class ConnectivityError(GatewayError):
    """Timeout, TLS, DNS or connection failure, or a 5xx from the provider."""

    error_code = "connectivity_error"
    exit_code = EXIT_CONNECTIVITY

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, provider_id=provider_id, field="base_url", retryable=retryable)
        self.status_code = status_code


class ResponseShapeError(GatewayError):
    """The provider answered with a payload we do not know how to read."""

    error_code = "response_shape_error"
    exit_code = EXIT_CONNECTIVITY

    def __init__(self, message: str, *, provider_id: Optional[str] = None) -> None:
        super().__init__(message, provider_id=provider_id, field="response_shape")


class ProviderRequestError(GatewayError):
    """The provider refused the request for a reason other than auth or quota."""

    error_code = "provider_request_error"

    def __init__(self, message: str, *, provider_id: Optional[str] = None, status_code: int = 400) -> None:
        super().__init__(message, provider_id=provider_id)
        self.status_code = status_code


class PartialCatalogError(GatewayError):
    """A catalog refresh did not complete; cached or partial data was served."""

    error_code = "partial_catalog"
    exit_code = EXIT_CONNECTIVITY

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        cause_code: Optional[str] = None,
        pages_fetched: int = 0,
    ) -> None:
        super().__init__(message, provider_id=provider_id, field="models", retryable=True)
        self.cause_code = cause_code
        self.pages_fetched = pages_fetched


class CatalogTruncatedError(GatewayError):
    """A model listing still had more pages when the page limit was reached."""

    error_code = "catalog_truncated"
    exit_code = EXIT_CONNECTIVITY

    def __init__(self, provider_id: str, max_pages: int) -> None:
        super().__init__(
            f"Model listing stopped at the {max_pages}-page limit with more pages remaining.",
            provider_id=provider_id,
            field="models",
        )
        self.max_pages = max_pages


class QuotaExceededError(GatewayError):
    """Usage limit reached, either tracked locally or reported by the provider (429)."""

    error_code = "quota_exceeded"
    exit_code = EXIT_QUOTA

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        source: QuotaSource = "local",
        tier: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, provider_id=provider_id, field="tier_limits")
        self.source = source
        self.tier = tier
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["source"] = self.source
        if self.tier:
            payload["tier"] = self.tier
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


class ConversationBindingViolationError(GatewayError):
    """A bound conversation was asked to talk to a different provider/model."""

    error_code = "conversation_binding_violation"

    def __init__(
        self,
        conversation_id: str,
        bound: Sequence[Optional[str]],
        requested: Sequence[Optional[str]],
    ) -> None:
        super().__init__(
            f"Conversation '{conversation_id}' is bound to {bound[0]}/{bound[1]}; "
            f"cannot send to {requested[0]}/{requested[1]}.",
            provider_id=requested[0],
            field="model_id" if bound[0] == requested[0] else "provider_id",
        )
        self.conversation_id = conversation_id
        self.bound = tuple(bound)
        self.requested = tuple(requested)


class ConversationClosedError(GatewayError):
    error_code = "conversation_closed"

    def __init__(self, conversation_id: str, reason: Optional[str] = None) -> None:
        suffix = f" ({reason})" if reason else ""
        super().__init__(f"Conversation '{conversation_id}' is closed{suffix}.", field="conversation_id")
        self.conversation_id = conversation_id


class ConversationNotFoundError(GatewayError):
    error_code = "conversation_not_found"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation '{conversation_id}' does not exist.", field="conversation_id")
        self.conversation_id = conversation_id


class ModelNotFoundError(GatewayError):
    error_code = "model_not_found"

    def __init__(self, provider_id: str, model_id: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Model '{model_id}' is not in the catalog of provider '{provider_id}'.",
            provider_id=provider_id,
            field="model_id",
        )
        self.model_id = model_id


__all__ = [
    "EXIT_AUTHENTICATION",
    "EXIT_CONNECTIVITY",
    "EXIT_OK",
    "EXIT_QUOTA",
    "EXIT_VALIDATION",
    "AuthenticationError",
    "CatalogTruncatedError",
    "ConnectivityError",
    "ConversationBindingViolationError",
    "ConversationClosedError",
    "ConversationNotFoundError",
    "CredentialNotFoundError",
    "GatewayError",
    "InvalidConfigError",
    "ModelNotFoundError",
    "PartialCatalogError",
    "ProviderNotFoundError",
    "ProviderRequestError",
    "QuotaExceededError",
    "ResponseShapeError",
]
