"""
OpenEntity Provider Dispatcher

Routes every reasoning request (generate / chat) across the configured
LLM backends:

1. Candidates are the active configs, highest priority first. Ties go to
   the first is_default config, then to configuration order.
2. Candidates whose circuit breaker is open are skipped.
3. The remaining candidates are tried one after another, each under its
   own timeout. The first success wins.
4. A success resets the provider's error_count and stamps last_used_at.
   A failure records the (redacted) error, stamps last_error_at and
   increments error_count.
5. If nothing succeeds, AllProvidersUnavailableError carries one error
   per attempted provider plus the names that were skipped.

Health fields are owned by the dispatcher. Subscribers registered with
subscribe_health() receive a ProviderHealth snapshot after every change
so a host can persist them.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from openentity.events import EventEmitter
from openentity.exceptions import (
    AllProvidersUnavailableError,
    ConfigurationError,
    NoProviderConfiguredError,
)
from openentity.logging import get_logger
from openentity.providers.base import LLMDriver, ProviderConfig, ProviderHealth, redact
from openentity.providers.circuit_breaker import CircuitBreakerPolicy
from openentity.providers.factory import create_driver

logger = get_logger("openentity.providers.dispatcher")

DEFAULT_TIMEOUT_SECONDS = 120.0
RECENTLY_USED = timedelta(minutes=5)

DriverFactory = Callable[[ProviderConfig], LLMDriver]

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


class ProviderDispatcher:
    """Priority failover across LLM providers with per-provider circuit breakers."""

    def __init__(
        self,
        configs: list[ProviderConfig] | None = None,
        *,
        driver_factory: DriverFactory = create_driver,
        policy: CircuitBreakerPolicy | None = None,
    ):
        """Initialize the dispatcher.

        Args:
            configs: Provider configurations, in configuration order.
            driver_factory: Builds a driver for a config (injectable for tests).
            policy: Circuit breaker rule; defaults to 3 errors within 5 minutes.
        """
        self._driver_factory = driver_factory
        self._policy = policy or CircuitBreakerPolicy()
        self._configs: dict[str, ProviderConfig] = {}
        self._drivers: dict[str, LLMDriver] = {}
        self._lock = asyncio.Lock()
        self._health = EventEmitter()
        self._current: ProviderConfig | None = None
        self._current_model: str | None = None
        self._install(configs or [])

    # ─── Configuration ──────────────────────────────────────

    def _install(self, configs: list[ProviderConfig]) -> None:
        by_name: dict[str, ProviderConfig] = {}
        for config in configs:
            if config.name in by_name:
                raise ConfigurationError(f"Duplicate provider name: {config.name}")
            by_name[config.name] = config.model_copy()
        self._configs = by_name
        self._drivers = {}

    async def configure(self, configs: list[ProviderConfig]) -> None:
        """Replace the provider set without restarting.

        Health fields travel with the new configs as given; cached drivers
        are discarded.
        """
        async with self._lock:
            self._install(configs)
        logger.info("Providers configured", extra={"_extra": {"providers": list(self._configs)}})

    @property
    def policy(self) -> CircuitBreakerPolicy:
        return self._policy

    @property
    def configs(self) -> list[ProviderConfig]:
        """Copies of every configured provider, in configuration order."""
        return [c.model_copy() for c in self._configs.values()]

    def get_config(self, name: str) -> ProviderConfig:
        try:
            return self._configs[name].model_copy()
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {name}") from None

    def candidates(self) -> list[ProviderConfig]:
        """Active configs in dispatch order (breaker state not applied)."""
        active = [c for c in self._configs.values() if c.is_active]
        anchor = next((c.name for c in active if c.is_default), None)
        indexed = list(enumerate(active))
        indexed.sort(key=lambda pair: (-pair[1].priority, pair[1].name != anchor, pair[0]))
        return [c for _, c in indexed]

    # ─── Public operations ──────────────────────────────────

    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> str:
        """Generate a reply for a single prompt via the first healthy provider."""
        return await self._dispatch(
            "generate",
            lambda driver: driver.generate(prompt, options),
            {"prompt_length": len(prompt)},
        )

    async def chat(self, messages: list[dict[str, Any]], options: dict[str, Any] | None = None) -> str:
        """Generate a reply for a chat transcript via the first healthy provider."""
        return await self._dispatch(
            "chat",
            lambda driver: driver.chat(messages, options),
            {"message_count": len(messages)},
        )

    async def generate_with_system(
        self,
        system: str,
        prompt: str,
        options: dict[str, Any] | None = None,
    ) -> str:
        return await self.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            options,
        )

    async def summarize(self, text: str, max_length: int = 200) -> str:
        prompt = (
            f"Summarize the following text in a maximum of {max_length} characters.\n"
            "Keep the most important information.\n\n"
            f"Text:\n{text}\n\nSummary:"
        )
        return await self.generate(prompt)

    async def analyze_sentiment(self, text: str) -> float:
        """Sentiment of a text in [-1.0, 1.0]; 0.0 if the reply has no number."""
        prompt = (
            "Analyze the sentiment of the following text on a scale from -1.0 "
            "(very negative) to 1.0 (very positive).\n"
            "Reply ONLY with a number.\n\n"
            f"Text:\n{text}\n\nSentiment:"
        )
        response = await self.generate(prompt)
        match = _NUMBER.search(response)
        if not match:
            return 0.0
        return max(-1.0, min(1.0, float(match.group())))

    async def is_available(self) -> bool:
        """True if any provider with a closed breaker answers its availability check."""
        for config in self.candidates():
            if self._policy.is_open(config):
                continue
            try:
                driver = self._driver_for(config)
                if await driver.is_available():
                    return True
            except Exception as e:
                logger.debug(
                    "Availability check failed",
                    extra={"provider": config.name, "error": redact(str(e), config.secret)},
                )
        return False

    @property
    def current_model(self) -> str:
        """Model of the provider that served the last successful request."""
        return self._current_model or "unknown"

    @property
    def current_provider(self) -> str | None:
        return self._current.name if self._current else None

    def use_provider(self, name: str) -> LLMDriver:
        """Make a configured provider current and return its driver.

        The driver talks to that backend alone, with no failover and no
        health bookkeeping, which is what a "test this configuration"
        action needs. generate() and chat() keep dispatching in priority
        order; the next success replaces the current provider.
        """
        config = self.get_config(name)
        driver = self._driver_for(self._configs[name])
        self._current = config
        self._current_model = driver.model_name
        logger.info("Provider selected", extra={"provider": name, "model": driver.model_name})
        return driver

    # ─── Health ─────────────────────────────────────────────

    def subscribe_health(self, callback: Callable[[ProviderHealth], Awaitable[None] | None]) -> None:
        """Register a callback receiving a ProviderHealth after each health change."""
        self._health.subscribe(callback)

    def health(self) -> list[ProviderHealth]:
        """Health snapshots for every configured provider, in configuration order."""
        return [self._snapshot(c) for c in self._configs.values()]

    def status(self, config: ProviderConfig) -> str:
        """Display status: disabled, error (breaker open), active (used recently) or ready."""
        if not config.is_active:
            return "disabled"
        if self._policy.is_open(config):
            return "error"
        if config.last_used_at and self._policy.now() - config.last_used_at < RECENTLY_USED:
            return "active"
        return "ready"

    async def reset(self, name: str) -> ProviderHealth:
        """Manually close a provider's breaker by clearing its error state."""
        async with self._lock:
            config = self._update(name, error_count=0, last_error=None, last_error_at=None)
        logger.info("Circuit breaker reset", extra={"provider": name})
        snapshot = self._snapshot(config)
        await self._health.emit(snapshot)
        return snapshot

    def _snapshot(self, config: ProviderConfig) -> ProviderHealth:
        return ProviderHealth(
            name=config.name,
            driver_kind=config.driver_kind,
            model_id=config.model_id,
            priority=config.priority,
            is_active=config.is_active,
            is_default=config.is_default,
            status=self.status(config),
            error_count=config.error_count,
            last_error_at=config.last_error_at,
            last_used_at=config.last_used_at,
            last_error=config.last_error,
        )

    # ─── Dispatch ───────────────────────────────────────────

    async def _dispatch(
        self,
        operation: str,
        call: Callable[[LLMDriver], Awaitable[str]],
        log_context: dict[str, Any],
    ) -> str:
        candidates = self.candidates()
        if not candidates:
            raise NoProviderConfiguredError()

        errors: dict[str, str] = {}
        skipped: list[str] = []

        for config in candidates:
            if self._policy.is_open(config):
                skipped.append(config.name)
                logger.debug(
                    "Skipping provider (circuit breaker open)",
                    extra={"provider": config.name, "error_count": config.error_count},
                )
                continue

            timeout = config.timeout_seconds or DEFAULT_TIMEOUT_SECONDS
            start = time.monotonic()
            try:
                driver = self._driver_for(config)
                logger.debug(
                    f"LLM {operation} request",
                    extra={"provider": config.name, "model": driver.model_name, "_extra": log_context},
                )
                result = await asyncio.wait_for(call(driver), timeout=timeout)
            except asyncio.TimeoutError:
                message = f"Request timed out after {timeout}s"
            except Exception as e:
                message = redact(f"{type(e).__name__}: {e}", config.secret)
            else:
                duration_ms = int((time.monotonic() - start) * 1000)
                await self._mark_used(config.name)
                self._current_model = driver.model_name
                logger.debug(
                    f"LLM {operation} response",
                    extra={
                        "provider": config.name,
                        "model": driver.model_name,
                        "duration_ms": duration_ms,
                        "_extra": {"response_length": len(result)},
                    },
                )
                return result

            errors[config.name] = message
            updated = await self._mark_error(config.name, message)
            logger.warning(
                "LLM provider failed, trying next",
                extra={
                    "provider": config.name,
                    "driver": config.driver_kind.value,
                    "error": message,
                    "error_count": updated.error_count if updated else None,
                },
            )

        logger.error(
            "All LLM providers unavailable",
            extra={"_extra": {"failed": list(errors), "skipped": skipped}},
        )
        raise AllProvidersUnavailableError(errors=errors, skipped=skipped)

    def _driver_for(self, config: ProviderConfig) -> LLMDriver:
        driver = self._drivers.get(config.name)
        if driver is None:
            driver = self._driver_factory(config)
            self._drivers[config.name] = driver
        return driver

    async def _mark_used(self, name: str) -> None:
        async with self._lock:
            if name not in self._configs:
                return  # reconfigured mid-dispatch
            config = self._update(name, error_count=0, last_used_at=self._policy.now())
            self._current = config
        await self._health.emit(self._snapshot(config))

    async def _mark_error(self, name: str, message: str) -> ProviderConfig | None:
        async with self._lock:
            current = self._configs.get(name)
            if current is None:
                return None
            count = current.error_count + 1
            config = self._update(
                name,
                error_count=count,
                last_error=message,
                last_error_at=self._policy.now(),
            )
        await self._health.emit(self._snapshot(config))
        return config

    def _update(self, name: str, **fields: Any) -> ProviderConfig:
        """Replace one config with an updated copy. Caller holds the lock."""
        if name not in self._configs:
            raise ConfigurationError(f"Unknown provider: {name}")
        config = self._configs[name].model_copy(update=fields)
        self._configs[name] = config
        return config
