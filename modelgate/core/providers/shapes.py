"""Request bodies and response parsing for the known provider payload shapes."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from modelgate.core.config import ModelTier, ResponseShape
from modelgate.core.errors import ProviderRequestError, ResponseShapeError
from modelgate.core.providers.base import ChatMessage, ModelDescriptor, ModelPage

DEFAULT_MAX_TOKENS = 1024

_CONTEXT_WINDOW_KEYS = (
    "context_window",
    "context_length",
    "max_input_tokens",
    "inputTokenLimit",
    "max_context_length",
)
_DISPLAY_NAME_KEYS = ("display_name", "displayName", "name")
# (payload key, query parameter used to request the next page)
_CURSOR_KEYS = (
    ("next_page_token", "page_token"),
    ("nextPageToken", "pageToken"),
    ("next_cursor", "cursor"),
)


def _messages_payload(messages: Iterable[ChatMessage]) -> List[Dict[str, str]]:
    return [{"role": message.role, "content": message.content} for message in messages]


def _render_prompt(messages: Sequence[ChatMessage]) -> str:
    lines = [f"{message.role}: {message.content}" for message in messages]
    lines.append("assistant:")
    return "\n\n".join(lines)


def build_chat_body(
    shape: ResponseShape,
    model_id: str,
    messages: Sequence[ChatMessage],
    max_tokens: Optional[int] = None,
) -> Dict[str, Any]:
    """Return the JSON body a provider of ``shape`` expects."""
    if shape is ResponseShape.CHAT_MESSAGE_ARRAY:
        body: Dict[str, Any] = {"model": model_id, "messages": _messages_payload(messages)}
        if max_tokens:
            body["max_tokens"] = max_tokens
        return body
    if shape is ResponseShape.SINGLE_COMPLETION_OBJECT:
        body = {"model": model_id, "prompt": _render_prompt(messages), "stream": False}
        if max_tokens:
            body["max_tokens"] = max_tokens
        return body
    if shape is ResponseShape.CONTENT_BLOCK_LIST:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        body = {
            "model": model_id,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "messages": _messages_payload(m for m in messages if m.role != "system"),
        }
        if system:
            body["system"] = system
        return body
    raise ResponseShapeError(f"Unsupported response shape: {shape!r}")


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def normalize_usage(payload: Dict[str, Any]) -> Dict[str, int]:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    input_tokens = usage.get("prompt_tokens", usage.get("input_tokens", payload.get("prompt_eval_count")))
    output_tokens = usage.get("completion_tokens", usage.get("output_tokens", payload.get("eval_count")))
    return {"input_tokens": _as_int(input_tokens), "output_tokens": _as_int(output_tokens)}


def _text_from_parts(parts: Any) -> Optional[str]:
    if isinstance(parts, str):
        return parts
    if not isinstance(parts, list):
        return None
    texts = [
        part.get("text")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
    ]
    if not texts:
        return None
    return "".join(texts)


def _parse_chat_message_array(payload: Dict[str, Any]) -> Optional[str]:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    return _text_from_parts(message.get("content"))


def _parse_single_completion_object(payload: Dict[str, Any]) -> Optional[str]:
    for key in ("completion", "response"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


def _parse_content_block_list(payload: Dict[str, Any]) -> Optional[str]:
    return _text_from_parts(payload.get("content")) if isinstance(payload.get("content"), list) else None


def parse_chat_response(
    shape: ResponseShape,
    payload: Any,
    *,
    provider_id: Optional[str] = None,
) -> Tuple[str, Dict[str, int]]:
    """Return ``(content, usage)`` or raise ResponseShapeError. Never guesses."""
    if not isinstance(payload, dict):
        raise ResponseShapeError(
            f"Expected a JSON object for shape '{shape.value}', got {type(payload).__name__}.",
            provider_id=provider_id,
        )
    error = payload.get("error")
    if error:
        detail = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderRequestError(f"Provider returned an error: {detail}", provider_id=provider_id)

    if shape is ResponseShape.CHAT_MESSAGE_ARRAY:
        content = _parse_chat_message_array(payload)
    elif shape is ResponseShape.SINGLE_COMPLETION_OBJECT:
        content = _parse_single_completion_object(payload)
    elif shape is ResponseShape.CONTENT_BLOCK_LIST:
        content = _parse_content_block_list(payload)
    else:
        raise ResponseShapeError(f"Unsupported response shape: {shape!r}", provider_id=provider_id)

    if content is None:
        keys = ", ".join(sorted(str(key) for key in payload)) or "<empty>"
        raise ResponseShapeError(
            f"Response does not match shape '{shape.value}' (keys: {keys}).",
            provider_id=provider_id,
        )
    return content, normalize_usage(payload)


def _model_tier(entry: Dict[str, Any], model_id: str) -> Optional[ModelTier]:
    raw_tier = entry.get("tier")
    if isinstance(raw_tier, str):
        try:
            return ModelTier(raw_tier.lower())
        except ValueError:
            pass
    if model_id.endswith(":free"):
        return ModelTier.FREE
    pricing = entry.get("pricing")
    if isinstance(pricing, dict) and pricing:
        try:
            if all(float(value) == 0 for value in pricing.values() if value is not None):
                return ModelTier.FREE
        except (TypeError, ValueError):
            return None
        return ModelTier.PAID
    return None


def _capability_tags(entry: Dict[str, Any]) -> Tuple[str, ...]:
    tags: set[str] = set()
    capabilities = entry.get("capabilities")
    if isinstance(capabilities, list):
        tags.update(str(item) for item in capabilities if isinstance(item, str))
    elif isinstance(capabilities, dict):
        tags.update(str(key) for key, enabled in capabilities.items() if enabled is True)
    methods = entry.get("supportedGenerationMethods")
    if isinstance(methods, list):
        tags.update(str(item) for item in methods if isinstance(item, str))
    architecture = entry.get("architecture")
    if isinstance(architecture, dict):
        modalities = architecture.get("input_modalities")
        if isinstance(modalities, list):
            tags.update(f"input:{item}" for item in modalities if isinstance(item, str))
    return tuple(sorted(tags))


def parse_model_entry(entry: Any, *, provider_id: Optional[str] = None) -> ModelDescriptor:
    if isinstance(entry, str):
        return ModelDescriptor(id=entry, display_name=entry)
    if not isinstance(entry, dict):
        raise ResponseShapeError(
            f"Model entry must be an object, got {type(entry).__name__}.", provider_id=provider_id
        )
    raw_id = entry.get("id") or entry.get("name") or entry.get("model")
    if not isinstance(raw_id, str) or not raw_id:
        raise ResponseShapeError("Model entry has no id.", provider_id=provider_id)
    model_id = raw_id[len("models/"):] if raw_id.startswith("models/") else raw_id
    display_name = model_id
    for key in _DISPLAY_NAME_KEYS:
        value = entry.get(key)
        if isinstance(value, str) and value and value != raw_id:
            display_name = value
            break
    context_window = None
    for key in _CONTEXT_WINDOW_KEYS:
        parsed = _as_int(entry.get(key))
        if parsed > 0:
            context_window = parsed
            break
    return ModelDescriptor(
        id=model_id,
        display_name=display_name,
        context_window_tokens=context_window,
        tier=_model_tier(entry, model_id),
        capability_tags=_capability_tags(entry),
    )


def parse_model_page(payload: Any, *, provider_id: Optional[str] = None) -> ModelPage:
    """Read one page of a model listing (``data[]``, ``models[]`` or a bare list)."""
    if isinstance(payload, list):
        entries: Any = payload
        payload = {}
    elif isinstance(payload, dict):
        entries = payload.get("data", payload.get("models"))
    else:
        entries = None
    if not isinstance(entries, list):
        raise ResponseShapeError(
            "Model listing must contain a 'data' or 'models' array.", provider_id=provider_id
        )
    models = [parse_model_entry(entry, provider_id=provider_id) for entry in entries]

    next_cursor: Optional[Tuple[str, str]] = None
    if payload.get("has_more") is True and isinstance(payload.get("last_id"), str):
        next_cursor = ("after_id", payload["last_id"])
    else:
        for key, param in _CURSOR_KEYS:
            value = payload.get(key)
            if isinstance(value, str) and value:
                next_cursor = (param, value)
                break
    return ModelPage(models=models, next_cursor=next_cursor)


__all__ = [
    "build_chat_body",
    "normalize_usage",
    "parse_chat_response",
    "parse_model_entry",
    "parse_model_page",
]
