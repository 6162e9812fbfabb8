"""Conversations bound to exactly one provider/model pair.

A conversation starts ``unbound``. The first send that reaches a provider
binds it to the target it was sent to, whether the provider answers or fails,
and from then on every send must name that same target (or none). Each
exchange is committed in one step: the binding, the user message and the reply
(or error) appear together or not at all.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from modelgate.core.config import ConfigManager
from modelgate.core.credentials import CredentialStore
from modelgate.core.errors import (
    ConnectivityError,
    ConversationBindingViolationError,
    ConversationClosedError,
    ConversationNotFoundError,
    CredentialNotFoundError,
    GatewayError,
    InvalidConfigError,
    QuotaExceededError,
)
from modelgate.core.model_catalog import ModelCatalogService
from modelgate.core.providers.adapter import AdapterLayer
from modelgate.core.providers.base import ChatMessage, ChatRequest, ChatResponse
from modelgate.core.quota import Denied, QuotaTracker
from modelgate.core.registry import ProviderRegistry
from modelgate.utils.log import get_logger

logger = get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    role: str
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    substituted_from: Optional[str] = None
    error_code: Optional[str] = None
    usage: Dict[str, int] = Field(default_factory=dict)


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime = Field(default_factory=_utcnow)
    state: ConversationState = ConversationState.UNBOUND
    bound_provider_id: Optional[str] = None
    bound_model_id: Optional[str] = None
    target_provider_id: Optional[str] = None
    target_model_id: Optional[str] = None
    messages: Tuple[Message, ...] = ()
    closed_reason: Optional[str] = None

    @property
    def binding(self) -> Tuple[Optional[str], Optional[str]]:
        return self.bound_provider_id, self.bound_model_id


class ConversationsDocument(BaseModel):
    conversations: Dict[str, Conversation] = Field(default_factory=dict)


class ConversationManager:
    """Runs exchanges and owns every conversation transcript."""

    def __init__(
        self,
        adapter: AdapterLayer,
        quota: QuotaTracker,
        catalog: ModelCatalogService,
        credentials: CredentialStore,
        registry: ProviderRegistry,
        *,
        config_manager: Optional[ConfigManager] = None,
    ) -> None:
        self.adapter = adapter
        self.quota = quota
        self.catalog = catalog
        self.credentials = credentials
        self.registry = registry
        self._config_manager = config_manager
        self._conversations: Mapping[str, Conversation] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: Dict[str, "asyncio.Task[ChatResponse]"] = {}
        self._cancelled_by_close: Set[str] = set()
        if config_manager is not None:
            document = config_manager.load_document(config_manager.conversations_path, ConversationsDocument)
            self._conversations = dict(document.conversations)

    def _publish(self, conversation: Conversation) -> None:
        self._conversations = {**self._conversations, conversation.id: conversation}
        if self._config_manager is not None:
            self._config_manager.save_document(
                self._config_manager.conversations_path,
                ConversationsDocument(conversations=dict(self._conversations)),
            )

    # Reads -------------------------------------------------------------

    def get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def list(self) -> Tuple[Conversation, ...]:
        return tuple(sorted(self._conversations.values(), key=lambda conv: (conv.created_at, conv.id)))

    # Lifecycle ---------------------------------------------------------

    def create(
        self, target_provider_id: Optional[str] = None, target_model_id: Optional[str] = None
    ) -> Conversation:
        if target_model_id and not target_provider_id:
            raise InvalidConfigError("A target model needs a target provider.", field="provider_id")
        if target_provider_id:
            self.registry.get(target_provider_id)
        conversation = Conversation(
            id=uuid.uuid4().hex,
            target_provider_id=target_provider_id,
            target_model_id=target_model_id,
        )
        self._publish(conversation)
        logger.info(
            "[conversation] Started conversation",
            extra={"conversation_id": conversation.id, "provider_id": target_provider_id, "model_id": target_model_id},
        )
        return conversation

    async def close(self, conversation_id: str, reason: str = "closed by user") -> Conversation:
        """Close the conversation and cancel any send still in flight.

        Does not wait on the conversation lock, so it can interrupt a send.
        """
        conversation = self.get(conversation_id)
        if conversation.state == ConversationState.CLOSED:
            return conversation
        closed = conversation.model_copy(update={"state": ConversationState.CLOSED, "closed_reason": reason})
        self._publish(closed)
        self._locks.pop(conversation_id, None)
        task = self._inflight.get(conversation_id)
        if task is not None and not task.done():
            self._cancelled_by_close.add(conversation_id)
            task.cancel()
        logger.info("[conversation] Closed conversation", extra={"conversation_id": conversation_id, "reason": reason})
        return closed

    async def close_for_provider(self, provider_id: str) -> int:
        """Close every open conversation bound to or targeting ``provider_id``."""
        affected = [
            conv.id
            for conv in self._conversations.values()
            if conv.state != ConversationState.CLOSED
            and provider_id in (conv.bound_provider_id, conv.target_provider_id)
        ]
        for conversation_id in affected:
            await self.close(conversation_id, reason=f"provider '{provider_id}' was removed")
        return len(affected)

    # Exchange ----------------------------------------------------------

    def _resolve_target(
        self, conversation: Conversation, provider_id: Optional[str], model_id: Optional[str]
    ) -> Tuple[str, str]:
        if conversation.state == ConversationState.BOUND:
            requested = (provider_id or conversation.bound_provider_id, model_id or conversation.bound_model_id)
            if requested != conversation.binding:
                raise ConversationBindingViolationError(conversation.id, conversation.binding, requested)
            return conversation.bound_provider_id or "", conversation.bound_model_id or ""

        target_provider = provider_id or conversation.target_provider_id
        target_model = model_id or conversation.target_model_id
        if not target_provider:
            raise InvalidConfigError("No provider was given for this conversation.", field="provider_id")
        if not target_model:
            raise InvalidConfigError(
                "No model was given for this conversation.", provider_id=target_provider, field="model_id"
            )
        return target_provider, target_model

    @staticmethod
    def _history(conversation: Conversation, content: str) -> Tuple[ChatMessage, ...]:
        prior = [
            ChatMessage(role=message.role, content=message.content)
            for message in conversation.messages
            if message.role in ("user", "assistant")
        ]
        return tuple([*prior, ChatMessage(role="user", content=content)])

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        """Send ``content`` and return the assistant reply.

        Raises before anything is recorded on binding violations, closed
        conversations, missing credentials and local quota denials.
        """
        async with self._locks[conversation_id]:
            conversation = self.get(conversation_id)
            if conversation.state == ConversationState.CLOSED:
                raise ConversationClosedError(conversation_id, conversation.closed_reason)
            target_provider, target_model = self._resolve_target(conversation, provider_id, model_id)
            if not content.strip():
                raise InvalidConfigError("Message content is empty.", field="content")

            provider = self.registry.get(target_provider)
            if provider.requires_credential and not await self.credentials.has(provider.id):
                raise CredentialNotFoundError(provider.id)

            model = self.catalog.find_model(provider.id, target_model)
            tier = model.tier if model is not None else provider.default_tier
            decision = self.quota.check(provider.id, tier, target_model)
            if isinstance(decision, Denied):
                raise decision.error

            request = ChatRequest(
                provider_id=provider.id,
                model_id=decision.model_id,
                messages=self._history(conversation, content),
            )
            user_message = Message(role="user", content=content)
            task = asyncio.create_task(self.adapter.send(request))
            self._inflight[conversation_id] = task
            try:
                if timeout is not None:
                    response = await asyncio.wait_for(task, timeout=timeout)
                else:
                    response = await task
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "[conversation] Send timed out; nothing recorded",
                    extra={"conversation_id": conversation_id, "provider_id": provider.id, "timeout": timeout},
                )
                raise ConnectivityError(
                    f"No reply from provider '{provider.id}' within {timeout:g}s.", provider_id=provider.id
                ) from exc
            except asyncio.CancelledError:
                if conversation_id in self._cancelled_by_close:
                    self._cancelled_by_close.discard(conversation_id)
                    raise ConversationClosedError(conversation_id, self.get(conversation_id).closed_reason) from None
                raise
            except GatewayError as exc:
                if isinstance(exc, QuotaExceededError) and exc.source == "remote":
                    self.quota.record_remote_limit(exc)
                self._commit_failure(conversation_id, user_message, exc, provider.id, target_model, decision.model_id)
                raise
            finally:
                self._inflight.pop(conversation_id, None)

            current = self.get(conversation_id)
            if current.state == ConversationState.CLOSED:
                raise ConversationClosedError(conversation_id, current.closed_reason)
            reply = Message(
                role="assistant",
                content=response.content,
                provider_id=provider.id,
                model_id=decision.model_id,
                substituted_from=decision.substituted_from,
                usage=dict(response.usage),
            )
            self._publish(
                current.model_copy(
                    update={
                        "state": ConversationState.BOUND,
                        "bound_provider_id": provider.id,
                        "bound_model_id": target_model,
                        "messages": (*current.messages, user_message, reply),
                    }
                )
            )
        logger.debug(
            "[conversation] Exchange committed",
            extra={
                "conversation_id": conversation_id,
                "provider_id": provider.id,
                "model_id": decision.model_id,
                "substituted_from": decision.substituted_from,
            },
        )
        return reply

    def _commit_failure(
        self,
        conversation_id: str,
        user_message: Message,
        error: GatewayError,
        provider_id: str,
        bound_model_id: str,
        model_id: str,
    ) -> None:
        current = self.get(conversation_id)
        if current.state == ConversationState.CLOSED:
            return
        failure = Message(
            role="error",
            content=str(error),
            provider_id=provider_id,
            model_id=model_id,
            error_code=error.error_code,
        )
        self._publish(
            current.model_copy(
                update={
                    "state": ConversationState.BOUND,
                    "bound_provider_id": provider_id,
                    "bound_model_id": bound_model_id,
                    "messages": (*current.messages, user_message, failure),
                }
            )
        )
        logger.warning(
            "[conversation] Send failed",
            extra={"conversation_id": conversation_id, "provider_id": provider_id, "error_code": error.error_code},
        )


__all__ = [
    "Conversation",
    "ConversationManager",
    "ConversationState",
    "ConversationsDocument",
    "Message",
]
