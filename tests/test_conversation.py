"""Tests for conversation binding, exchanges, failures and cancellation."""

from __future__ import annotations

import asyncio
import json

import pytest

from modelgate.core.config import ConfigManager, ModelTier
from modelgate.core.conversation import ConversationState
from modelgate.core.errors import (
    ConnectivityError,
    ConversationBindingViolationError,
    ConversationClosedError,
    CredentialNotFoundError,
    InvalidConfigError,
    QuotaExceededError,
)

from tests.conftest import provider_config


async def _gateway_with_provider(make_gateway, fake_providers, **overrides):
    backend = fake_providers.add("p.example")
    gateway = make_gateway(**overrides.pop("settings", {}))
    await gateway.add_provider(provider_config("p", "p.example", **overrides), "sk-p-secret")
    backend.requests.clear()
    return gateway, backend


@pytest.mark.asyncio
async def test_first_send_binds_and_commits_exchange(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation()
    assert conversation.state is ConversationState.UNBOUND

    reply = await gateway.send_message(conversation.id, "hello", provider_id="p", model_id="model-large")

    assert reply.role == "assistant"
    assert reply.content == "echo: hello"
    assert reply.model_id == "model-large"
    assert reply.usage == {"input_tokens": 5, "output_tokens": 7}
    stored = await gateway.get_conversation(conversation.id)
    assert stored.state is ConversationState.BOUND
    assert stored.binding == ("p", "model-large")
    assert [message.role for message in stored.messages] == ["user", "assistant"]
    assert len(backend.chat_requests) == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_bound_conversation_accepts_same_target_or_none(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation("p", "model-large")
    await gateway.send_message(conversation.id, "one")
    await gateway.send_message(conversation.id, "two", provider_id="p")
    await gateway.send_message(conversation.id, "three", provider_id="p", model_id="model-large")

    body = json.loads(backend.chat_requests[-1].content)
    assert [message["content"] for message in body["messages"]] == [
        "one",
        "echo: one",
        "two",
        "echo: two",
        "three",
    ]
    await gateway.aclose()


@pytest.mark.asyncio
async def test_binding_violation_leaves_transcript_untouched(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation("p", "model-large")
    await gateway.send_message(conversation.id, "hello")
    before = await gateway.get_conversation(conversation.id)
    sent = len(backend.chat_requests)

    with pytest.raises(ConversationBindingViolationError) as exc_info:
        await gateway.send_message(conversation.id, "switch", model_id="model-mini")

    assert exc_info.value.bound == ("p", "model-large")
    assert exc_info.value.requested == ("p", "model-mini")
    assert await gateway.get_conversation(conversation.id) == before
    assert len(backend.chat_requests) == sent
    await gateway.aclose()


@pytest.mark.asyncio
async def test_send_without_any_target_is_a_validation_error(make_gateway, fake_providers):
    gateway, _ = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation()
    with pytest.raises(InvalidConfigError) as exc_info:
        await gateway.send_message(conversation.id, "hello")
    assert exc_info.value.field == "provider_id"
    await gateway.aclose()


@pytest.mark.asyncio
async def test_fallback_substitution_is_recorded_on_message(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(
        make_gateway,
        fake_providers,
        default_tier="free",
        tier_limits=[{"tier": "free", "limit": 2, "fallback_model_id": "model-mini"}],
    )
    conversation = await gateway.start_conversation("p", "model-large")
    await gateway.send_message(conversation.id, "1")
    await gateway.send_message(conversation.id, "2")

    reply = await gateway.send_message(conversation.id, "3")

    assert reply.model_id == "model-mini"
    assert reply.substituted_from == "model-large"
    assert json.loads(backend.chat_requests[-1].content)["model"] == "model-mini"
    stored = await gateway.get_conversation(conversation.id)
    assert stored.binding == ("p", "model-large")
    counters = await gateway.quota_status("p")
    assert (counters[0].count, counters[0].substitutions) == (2, 1)
    await gateway.aclose()


@pytest.mark.asyncio
async def test_local_quota_denial_sends_and_records_nothing(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(
        make_gateway,
        fake_providers,
        default_tier="free",
        tier_limits=[{"tier": "free", "limit": 1}],
    )
    conversation = await gateway.start_conversation("p", "model-large")
    await gateway.send_message(conversation.id, "1")
    before = await gateway.get_conversation(conversation.id)

    with pytest.raises(QuotaExceededError) as exc_info:
        await gateway.send_message(conversation.id, "2")

    assert exc_info.value.source == "local"
    assert await gateway.get_conversation(conversation.id) == before
    assert len(backend.chat_requests) == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_catalog_tier_decides_which_counter_is_used(make_gateway, fake_providers):
    fake_providers.add("p.example", models=[{"id": "free-model:free"}, {"id": "paid-model"}])
    gateway = make_gateway()
    await gateway.add_provider(
        provider_config("p", "p.example", tier_limits=[{"tier": "free", "limit": 1}]), "sk-p-secret"
    )
    await gateway.refresh_models("p")

    paid = await gateway.start_conversation("p", "paid-model")
    for _ in range(3):
        await gateway.send_message(paid.id, "hi")
    free = await gateway.start_conversation("p", "free-model:free")
    await gateway.send_message(free.id, "hi")
    with pytest.raises(QuotaExceededError):
        await gateway.send_message(free.id, "again")

    assert gateway.quota.counter("p", ModelTier.FREE).count == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_missing_credential_consumes_no_quota(make_gateway, fake_providers):
    fake_providers.add("p.example")
    gateway = make_gateway()
    await gateway.add_provider(
        provider_config("p", "p.example", default_tier="free", tier_limits=[{"tier": "free", "limit": 1}])
    )
    conversation = await gateway.start_conversation("p", "model-large")

    with pytest.raises(CredentialNotFoundError):
        await gateway.send_message(conversation.id, "hello")

    assert gateway.quota.counter("p", ModelTier.FREE).count == 0
    assert (await gateway.get_conversation(conversation.id)).messages == ()
    await gateway.aclose()


@pytest.mark.asyncio
async def test_adapter_failure_records_error_message_and_reraises(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation("p", "model-large")
    backend.status_code = 500

    with pytest.raises(ConnectivityError):
        await gateway.send_message(conversation.id, "hello")

    stored = await gateway.get_conversation(conversation.id)
    assert [message.role for message in stored.messages] == ["user", "error"]
    assert stored.messages[1].error_code == "connectivity_error"
    assert stored.state is ConversationState.BOUND
    assert stored.binding == ("p", "model-large")

    backend.status_code = 200
    await gateway.send_message(conversation.id, "retry")
    body = json.loads(backend.chat_requests[-1].content)
    assert [message["role"] for message in body["messages"]] == ["user", "user"]
    await gateway.aclose()


@pytest.mark.asyncio
async def test_remote_429_is_recorded_with_quota_tracker(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation("p", "model-large")
    backend.status_code = 429

    with pytest.raises(QuotaExceededError) as exc_info:
        await gateway.send_message(conversation.id, "hello")

    assert exc_info.value.source == "remote"
    assert gateway.quota.remote_limit("p").retry_after == 30.0
    stored = await gateway.get_conversation(conversation.id)
    assert stored.messages[-1].error_code == "quota_exceeded"
    await gateway.aclose()


@pytest.mark.asyncio
async def test_close_cancels_in_flight_send_without_commit(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation("p", "model-large")
    backend.delay = 5.0

    pending = asyncio.create_task(gateway.send_message(conversation.id, "slow"))
    await asyncio.sleep(0.05)
    await gateway.close_conversation(conversation.id, "user left")

    with pytest.raises(ConversationClosedError):
        await pending
    stored = await gateway.get_conversation(conversation.id)
    assert stored.state is ConversationState.CLOSED
    assert stored.closed_reason == "user left"
    assert stored.messages == ()
    with pytest.raises(ConversationClosedError):
        await gateway.send_message(conversation.id, "again")
    await gateway.aclose()


@pytest.mark.asyncio
async def test_caller_timeout_commits_nothing(make_gateway, fake_providers):
    gateway, backend = await _gateway_with_provider(make_gateway, fake_providers)
    conversation = await gateway.start_conversation("p", "model-large")
    backend.delay = 5.0

    with pytest.raises(ConnectivityError):
        await gateway.send_message(conversation.id, "slow", timeout=0.1)

    stored = await gateway.get_conversation(conversation.id)
    assert stored.messages == ()
    assert stored.state is ConversationState.UNBOUND
    await gateway.aclose()


@pytest.mark.asyncio
async def test_conversations_are_persisted(tmp_path, make_gateway, fake_providers):
    fake_providers.add("p.example")
    gateway = make_gateway(config_manager=ConfigManager(tmp_path))
    await gateway.add_provider(provider_config("p", "p.example"), "sk-p-secret")
    conversation = await gateway.start_conversation("p", "model-large")
    await gateway.send_message(conversation.id, "remember me")
    await gateway.aclose()

    reopened = make_gateway(config_manager=ConfigManager(tmp_path))
    stored = await reopened.get_conversation(conversation.id)
    assert stored.binding == ("p", "model-large")
    assert stored.messages[0].content == "remember me"
    await reopened.aclose()


@pytest.mark.asyncio
async def test_failed_first_send_still_binds(make_gateway, fake_providers):
    failing = fake_providers.add("a.example", status_code=500)
    fake_providers.add("b.example")
    gateway = make_gateway()
    await gateway.add_provider(provider_config("a", "a.example"), "sk-a-secret")
    await gateway.add_provider(provider_config("b", "b.example"), "sk-b-secret")
    conversation = await gateway.start_conversation()

    with pytest.raises(ConnectivityError):
        await gateway.send_message(conversation.id, "hello", provider_id="a", model_id="m1")

    stored = await gateway.get_conversation(conversation.id)
    assert stored.state is ConversationState.BOUND
    assert stored.binding == ("a", "m1")

    with pytest.raises(ConversationBindingViolationError):
        await gateway.send_message(conversation.id, "elsewhere", provider_id="b", model_id="m2")
    assert len((await gateway.get_conversation(conversation.id)).messages) == 2

    failing.status_code = 200
    reply = await gateway.send_message(conversation.id, "again")
    assert reply.provider_id == "a"
    await gateway.aclose()


@pytest.mark.asyncio
async def test_local_quota_holds_across_reopened_gateways(tmp_path, make_gateway, fake_providers):
    fake_providers.add("p.example")
    gateway = make_gateway(config_manager=ConfigManager(tmp_path))
    await gateway.add_provider(
        provider_config("p", "p.example", default_tier="free", tier_limits=[{"tier": "free", "limit": 1}]),
        "sk-p-secret",
    )
    conversation = await gateway.start_conversation("p", "model-large")
    await gateway.send_message(conversation.id, "first")
    await gateway.aclose()

    reopened = make_gateway(config_manager=ConfigManager(tmp_path))
    await reopened.credentials.set("p", "sk-p-secret")
    counters = await reopened.quota_status("p")
    assert [(counter.count, counter.limit) for counter in counters] == [(1, 1)]

    with pytest.raises(QuotaExceededError) as exc_info:
        await reopened.send_message(conversation.id, "second")
    assert exc_info.value.source == "local"
    await reopened.aclose()
