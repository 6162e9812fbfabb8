"""Shared request/response types for the adapter layer."""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from modelgate.core.config import ModelTier


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True)
class ChatRequest:
    """Provider-neutral completion request."""

    provider_id: str
    model_id: str
    messages: Tuple[ChatMessage, ...]
    max_tokens: Optional[int] = None


@dataclass
class ChatResponse:
    """Provider-neutral completion result."""

    provider_id: str
    model_id: str
    content: str
    usage: Dict[str, int]
    duration_ms: float


@dataclass(frozen=True)
class UsageEvent:
    """Emitted after every successful send; consumed by the quota tracker."""

    provider_id: str
    model_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: float = 0.0


@dataclass
class WireRequest:
    """Transport-ready request before it is handed to httpx."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    json: Optional[Dict[str, Any]] = None

    def copy(self) -> "WireRequest":
        return replace(self, headers=dict(self.headers), params=dict(self.params))


@dataclass(frozen=True)
class ModelDescriptor:
    """One model entry as read off a provider's listing."""

    id: str
    display_name: str
    context_window_tokens: Optional[int] = None
    tier: Optional[ModelTier] = None
    capability_tags: Tuple[str, ...] = ()


@dataclass
class ModelPage:
    models: List[ModelDescriptor]
    # (query parameter, value) that requests the next page.
    next_cursor: Optional[Tuple[str, str]] = None


def retry_delay_seconds(attempt: int, base_delay: float = 0.5, max_delay: float = 8.0) -> float:
    """Calculate exponential backoff with jitter."""
    capped_base: float = float(min(base_delay * (2 ** max(0, attempt - 1)), max_delay))
    jitter: float = float(random.random() * 0.25 * capped_base)
    return float(capped_base + jitter)
