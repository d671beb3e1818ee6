"""
OpenEntity LLM Provider Layer

Interchangeable model backends behind one LLMDriver interface, and the
ProviderDispatcher that routes every reasoning request across them with
priority failover and a per-provider circuit breaker.

Usage:
    from openentity.providers import ProviderConfig, ProviderDispatcher

    dispatcher = ProviderDispatcher([
        ProviderConfig(name="local", driver_kind="ollama", priority=10),
        ProviderConfig(name="cloud", driver_kind="openrouter", credential="sk-...", priority=5),
    ])
    text = await dispatcher.generate("Hello")
"""

from openentity.providers.base import (
    DriverKind,
    LLMDriver,
    ProviderConfig,
    ProviderHealth,
    redact,
)
from openentity.providers.circuit_breaker import CircuitBreakerPolicy, CircuitState
from openentity.providers.dispatcher import ProviderDispatcher
from openentity.providers.factory import create_driver

__all__ = [
    "CircuitBreakerPolicy",
    "CircuitState",
    "DriverKind",
    "LLMDriver",
    "ProviderConfig",
    "ProviderDispatcher",
    "ProviderHealth",
    "create_driver",
    "redact",
]
