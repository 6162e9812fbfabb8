"""Tests for quota windows, limits and fallback substitution."""

from __future__ import annotations

from datetime import datetime

import pytest

from modelgate.core.config import ConfigManager, ModelTier, Provider
from modelgate.core.errors import QuotaExceededError
from modelgate.core.providers.base import UsageEvent
from modelgate.core.quota import Allowed, Denied, QuotaTracker

from tests.conftest import FakeClock


def _provider(limit: int = 50, fallback: str | None = None, policy: str = "rolling-24h", **overrides) -> Provider:
    return Provider(
        id="p",
        base_url="https://p.example",
        tier_limits=[{"tier": "free", "limit": limit, "window_policy": policy, "fallback_model_id": fallback}],
        **overrides,
    )


def _tracker(provider: Provider, clock: FakeClock | None = None) -> QuotaTracker:
    tracker = QuotaTracker(clock=clock or FakeClock())
    tracker.configure(provider)
    return tracker


def test_denied_after_limit_without_fallback():
    tracker = _tracker(_provider(limit=50))
    decisions = [tracker.check("p", ModelTier.FREE, "model-big") for _ in range(50)]
    assert all(decision == Allowed("model-big") for decision in decisions)

    denied = tracker.check("p", ModelTier.FREE, "model-big")
    assert isinstance(denied, Denied)
    assert isinstance(denied.error, QuotaExceededError)
    assert denied.error.source == "local"
    assert denied.error.exit_code == 4
    assert tracker.counter("p", ModelTier.FREE).count == 50


def test_fallback_substitution_after_limit():
    tracker = _tracker(_provider(limit=50, fallback="model-mini"))
    for _ in range(50):
        tracker.check("p", ModelTier.FREE, "model-big")

    decision = tracker.check("p", ModelTier.FREE, "model-big")
    assert decision == Allowed("model-mini", substituted_from="model-big")
    assert decision.substituted
    counter = tracker.counter("p", ModelTier.FREE)
    assert counter.count == 50
    assert counter.substitutions == 1


def test_counter_never_exceeds_limit_and_decisions_are_deterministic():
    tracker = _tracker(_provider(limit=3, fallback="mini"))
    decisions = [tracker.check("p", ModelTier.FREE, "big") for _ in range(10)]

    assert decisions[:3] == [Allowed("big")] * 3
    assert decisions[3:] == [Allowed("mini", substituted_from="big")] * 7
    assert tracker.counter("p", ModelTier.FREE).count == 3


def test_fallback_mode_disabled_denies():
    tracker = _tracker(_provider(limit=1, fallback="mini", fallback_mode="disabled"))
    tracker.check("p", ModelTier.FREE, "big")
    assert isinstance(tracker.check("p", ModelTier.FREE, "big"), Denied)


def test_unconfigured_tier_is_unlimited():
    tracker = _tracker(_provider(limit=0))
    for _ in range(100):
        assert tracker.check("p", ModelTier.PAID, "paid-model") == Allowed("paid-model")
    assert tracker.counter("p", ModelTier.PAID) is None
    assert isinstance(tracker.check("p", ModelTier.FREE, "free-model"), Denied)


def test_rolling_window_resets_after_24_hours():
    clock = FakeClock()
    tracker = _tracker(_provider(limit=2), clock)
    tracker.check("p", ModelTier.FREE, "m")
    tracker.check("p", ModelTier.FREE, "m")

    clock.advance(hours=23, minutes=59)
    assert isinstance(tracker.check("p", ModelTier.FREE, "m"), Denied)
    clock.advance(minutes=1)
    assert tracker.check("p", ModelTier.FREE, "m") == Allowed("m")
    assert tracker.counter("p", ModelTier.FREE).count == 1


def test_calendar_day_window_resets_at_local_midnight():
    clock = FakeClock(datetime(2024, 5, 1, 23, 30).astimezone())
    tracker = _tracker(_provider(limit=1, policy="calendar-day"), clock)
    tracker.check("p", ModelTier.FREE, "m")
    assert isinstance(tracker.check("p", ModelTier.FREE, "m"), Denied)

    clock.advance(minutes=31)
    assert tracker.check("p", ModelTier.FREE, "m") == Allowed("m")


def test_none_policy_never_resets():
    clock = FakeClock()
    tracker = _tracker(_provider(limit=1, policy="none"), clock)
    tracker.check("p", ModelTier.FREE, "m")
    clock.advance(days=400)
    assert isinstance(tracker.check("p", ModelTier.FREE, "m"), Denied)


def test_reconfigure_keeps_count_and_clamps_to_new_limit():
    tracker = _tracker(_provider(limit=5))
    for _ in range(4):
        tracker.check("p", ModelTier.FREE, "m")

    tracker.configure(_provider(limit=2))
    counter = tracker.counter("p", ModelTier.FREE)
    assert counter.count == 2
    assert counter.limit == 2


def test_usage_and_remote_limits_are_recorded():
    tracker = _tracker(_provider())
    tracker.record_usage(UsageEvent(provider_id="p", model_id="m", input_tokens=10, output_tokens=3, duration_ms=12.0))
    tracker.record_usage(UsageEvent(provider_id="p", model_id="m", input_tokens=1, output_tokens=1))
    usage = tracker.usage("p", "m")
    assert (usage.input_tokens, usage.output_tokens, usage.requests) == (11, 4, 2)

    tracker.record_remote_limit(QuotaExceededError("429", provider_id="p", source="remote", retry_after=30))
    assert tracker.remote_limit("p").retry_after == 30

    tracker.forget("p")
    assert tracker.remote_limit("p") is None
    assert tracker.snapshot("p") == ()


def test_snapshot_lists_configured_counters():
    tracker = _tracker(_provider(limit=7))
    snapshot = tracker.snapshot("p")
    assert [(counter.tier, counter.count, counter.limit) for counter in snapshot] == [(ModelTier.FREE, 0, 7)]


def test_counters_survive_a_new_tracker(tmp_path):
    clock = FakeClock()
    provider = _provider(limit=2)
    first = QuotaTracker(clock=clock, config_manager=ConfigManager(tmp_path))
    first.configure(provider)
    first.check("p", ModelTier.FREE, "big")
    first.check("p", ModelTier.FREE, "big")

    reopened = QuotaTracker(clock=clock, config_manager=ConfigManager(tmp_path))
    reopened.configure(provider)

    assert reopened.counter("p", ModelTier.FREE).count == 2
    assert isinstance(reopened.check("p", ModelTier.FREE, "big"), Denied)


def test_persisted_window_still_resets_on_schedule(tmp_path):
    clock = FakeClock()
    provider = _provider(limit=1)
    first = QuotaTracker(clock=clock, config_manager=ConfigManager(tmp_path))
    first.configure(provider)
    first.check("p", ModelTier.FREE, "big")

    clock.advance(hours=24)
    reopened = QuotaTracker(clock=clock, config_manager=ConfigManager(tmp_path))
    reopened.configure(provider)

    assert reopened.check("p", ModelTier.FREE, "big") == Allowed("big")
    assert reopened.counter("p", ModelTier.FREE).count == 1


def test_forgotten_provider_is_dropped_from_disk(tmp_path):
    provider = _provider(limit=5)
    tracker = QuotaTracker(clock=FakeClock(), config_manager=ConfigManager(tmp_path))
    tracker.configure(provider)
    tracker.check("p", ModelTier.FREE, "big")

    tracker.forget("p")

    reopened = QuotaTracker(clock=FakeClock(), config_manager=ConfigManager(tmp_path))
    reopened.configure(provider)
    assert reopened.counter("p", ModelTier.FREE).count == 0
