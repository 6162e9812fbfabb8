"""Provider wire adapters."""

from modelgate.core.providers.adapter import AdapterLayer, UsageListener
from modelgate.core.providers.auth import apply_auth
from modelgate.core.providers.base import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ModelDescriptor,
    ModelPage,
    UsageEvent,
    WireRequest,
)
from modelgate.core.providers.shapes import build_chat_body, parse_chat_response, parse_model_page

__all__ = [
    "AdapterLayer",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ModelDescriptor",
    "ModelPage",
    "UsageEvent",
    "UsageListener",
    "WireRequest",
    "apply_auth",
    "build_chat_body",
    "parse_chat_response",
    "parse_model_page",
]
