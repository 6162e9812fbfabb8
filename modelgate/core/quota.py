"""Usage quotas per (provider, tier) with fallback substitution.

``check`` is the only place a counter is incremented. A counter at its limit
never moves past it: the request is either served by the provider's fallback
model for that tier (``Allowed`` with ``substituted_from`` set) or refused
(``Denied``). Counters reset only according to their window policy, and with
a ``ConfigManager`` they are kept in quota.json so reopening the gateway
does not start a fresh window.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from modelgate.core.config import ConfigManager, ModelTier, Provider, ResetPolicy
from modelgate.core.errors import QuotaExceededError
from modelgate.core.providers.base import UsageEvent
from modelgate.utils.log import get_logger

logger = get_logger()

ROLLING_WINDOW = timedelta(hours=24)

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class QuotaCounter(BaseModel):
    provider_id: str
    tier: ModelTier
    window_start: datetime
    count: int = 0
    limit: int
    reset_policy: ResetPolicy = ResetPolicy.ROLLING_24H
    substitutions: int = 0


class QuotaDocument(BaseModel):
    """Counters persisted in quota.json."""

    counters: List[QuotaCounter] = Field(default_factory=list)


@dataclass(frozen=True)
class Allowed:
    """The request may proceed against ``model_id``."""

    model_id: str
    substituted_from: Optional[str] = None

    @property
    def substituted(self) -> bool:
        return self.substituted_from is not None


@dataclass(frozen=True)
class Denied:
    error: QuotaExceededError


QuotaDecision = Union[Allowed, Denied]


@dataclass
class ModelUsage:
    """Aggregate token and duration stats for a single model."""

    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0
    duration_ms: float = 0.0


@dataclass
class RemoteLimit:
    """Last 429 seen from a provider."""

    seen_at: datetime
    retry_after: Optional[float] = None


@dataclass
class _ProviderQuotaConfig:
    limits: Dict[ModelTier, Tuple[int, ResetPolicy]] = field(default_factory=dict)
    fallbacks: Dict[ModelTier, str] = field(default_factory=dict)


class QuotaTracker:
    def __init__(self, *, clock: Optional[Clock] = None, config_manager: Optional[ConfigManager] = None) -> None:
        self._clock: Clock = clock or _local_now
        self._config_manager = config_manager
        self._configs: Dict[str, _ProviderQuotaConfig] = {}
        self._counters: Dict[Tuple[str, ModelTier], QuotaCounter] = {}
        self._usage: Dict[Tuple[str, str], ModelUsage] = {}
        self._remote_limits: Dict[str, RemoteLimit] = {}
        if config_manager is not None:
            document = config_manager.load_document(config_manager.quota_path, QuotaDocument)
            self._counters = {(counter.provider_id, counter.tier): counter for counter in document.counters}

    def _save(self) -> None:
        if self._config_manager is None:
            return
        counters = [self._counters[key] for key in sorted(self._counters, key=lambda key: (key[0], key[1].value))]
        self._config_manager.save_document(self._config_manager.quota_path, QuotaDocument(counters=counters))

    # Configuration -----------------------------------------------------

    def configure(self, provider: Provider) -> None:
        """Load a provider's tier limits and fallback table.

        Existing counters keep their count and window; only the limit and
        policy follow the new configuration.
        """
        config = _ProviderQuotaConfig()
        for entry in provider.tier_limits:
            config.limits[entry.tier] = (entry.limit, entry.window_policy)
            if entry.fallback_model_id and provider.fallback_mode == "auto":
                config.fallbacks[entry.tier] = entry.fallback_model_id
        self._configs[provider.id] = config
        changed = False
        for (provider_id, tier), counter in list(self._counters.items()):
            if provider_id != provider.id:
                continue
            if tier not in config.limits:
                del self._counters[(provider_id, tier)]
                changed = True
                continue
            limit, policy = config.limits[tier]
            # A lowered limit leaves the window exhausted rather than over the limit.
            updated = {"limit": limit, "count": min(counter.count, limit), "reset_policy": policy}
            if any(getattr(counter, name) != value for name, value in updated.items()):
                for name, value in updated.items():
                    setattr(counter, name, value)
                changed = True
        if changed:
            self._save()

    def forget(self, provider_id: str) -> None:
        self._configs.pop(provider_id, None)
        self._remote_limits.pop(provider_id, None)
        stale = [key for key in self._counters if key[0] == provider_id]
        for key in stale:
            del self._counters[key]
        if stale:
            self._save()
        for key in [key for key in self._usage if key[0] == provider_id]:
            del self._usage[key]

    def fallback_for(self, provider_id: str, tier: ModelTier) -> Optional[str]:
        config = self._configs.get(provider_id)
        return config.fallbacks.get(tier) if config else None

    # Window handling ---------------------------------------------------

    def _window_start_for(self, policy: ResetPolicy, now: datetime) -> datetime:
        if policy == ResetPolicy.CALENDAR_DAY:
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        return now

    def _roll_window(self, counter: QuotaCounter, now: datetime) -> None:
        policy = counter.reset_policy
        if policy == ResetPolicy.NONE:
            return
        if policy == ResetPolicy.ROLLING_24H:
            expired = now >= counter.window_start + ROLLING_WINDOW
        else:
            expired = now.date() != counter.window_start.date()
        if expired:
            logger.debug(
                "[quota] Window reset",
                extra={
                    "provider_id": counter.provider_id,
                    "tier": counter.tier.value,
                    "previous_count": counter.count,
                },
            )
            counter.window_start = self._window_start_for(policy, now)
            counter.count = 0
            counter.substitutions = 0

    def _counter(self, provider_id: str, tier: ModelTier) -> Optional[QuotaCounter]:
        config = self._configs.get(provider_id)
        if config is None or tier not in config.limits:
            return None
        counter = self._counters.get((provider_id, tier))
        if counter is None:
            limit, policy = config.limits[tier]
            counter = QuotaCounter(
                provider_id=provider_id,
                tier=tier,
                window_start=self._window_start_for(policy, self._clock()),
                limit=limit,
                reset_policy=policy,
            )
            self._counters[(provider_id, tier)] = counter
        return counter

    # Decisions ---------------------------------------------------------

    def check(self, provider_id: str, tier: ModelTier, model_id: str) -> QuotaDecision:
        """Count one request against ``(provider_id, tier)``."""
        counter = self._counter(provider_id, tier)
        if counter is None:
            return Allowed(model_id=model_id)
        self._roll_window(counter, self._clock())
        if counter.count < counter.limit:
            counter.count += 1
            self._save()
            return Allowed(model_id=model_id)

        fallback = self.fallback_for(provider_id, tier)
        if fallback is not None:
            counter.substitutions += 1
            self._save()
            logger.info(
                "[quota] Limit reached; substituting fallback model",
                extra={
                    "provider_id": provider_id,
                    "tier": tier.value,
                    "model_id": model_id,
                    "fallback_model_id": fallback,
                    "limit": counter.limit,
                },
            )
            return Allowed(model_id=fallback, substituted_from=model_id)

        logger.warning(
            "[quota] Limit reached; request denied",
            extra={"provider_id": provider_id, "tier": tier.value, "limit": counter.limit},
        )
        return Denied(
            QuotaExceededError(
                f"Quota for provider '{provider_id}' tier '{tier.value}' is exhausted "
                f"({counter.count}/{counter.limit}) and no fallback model is configured.",
                provider_id=provider_id,
                source="local",
                tier=tier.value,
            )
        )

    # Usage accounting --------------------------------------------------

    def record_usage(self, event: UsageEvent) -> None:
        """Usage listener wired to the adapter layer."""
        usage = self._usage.setdefault((event.provider_id, event.model_id), ModelUsage())
        usage.input_tokens += max(0, event.input_tokens)
        usage.output_tokens += max(0, event.output_tokens)
        usage.duration_ms += event.duration_ms if event.duration_ms > 0 else 0.0
        usage.requests += 1

    def record_remote_limit(self, error: QuotaExceededError) -> None:
        if error.provider_id:
            self._remote_limits[error.provider_id] = RemoteLimit(
                seen_at=self._clock(), retry_after=error.retry_after
            )

    def remote_limit(self, provider_id: str) -> Optional[RemoteLimit]:
        return self._remote_limits.get(provider_id)

    def usage(self, provider_id: str, model_id: str) -> ModelUsage:
        return deepcopy(self._usage.get((provider_id, model_id), ModelUsage()))

    def counter(self, provider_id: str, tier: ModelTier) -> Optional[QuotaCounter]:
        """Copy of the counter after applying any due window reset."""
        counter = self._counter(provider_id, tier)
        if counter is None:
            return None
        self._roll_window(counter, self._clock())
        return counter.model_copy()

    def snapshot(self, provider_id: Optional[str] = None) -> Tuple[QuotaCounter, ...]:
        if provider_id is not None:
            for tier in self._configs.get(provider_id, _ProviderQuotaConfig()).limits:
                self._counter(provider_id, tier)
        counters = [
            counter.model_copy()
            for (pid, _), counter in sorted(self._counters.items(), key=lambda item: (item[0][0], item[0][1].value))
            if provider_id is None or pid == provider_id
        ]
        return tuple(counters)


__all__ = [
    "Allowed",
    "Denied",
    "ModelUsage",
    "QuotaCounter",
    "QuotaDecision",
    "QuotaDocument",
    "QuotaTracker",
    "RemoteLimit",
]
