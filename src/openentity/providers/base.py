"""
OpenEntity LLM Driver Base

Abstract interface for LLM drivers plus the ProviderConfig record that
describes one configured backend. Every driver implements the same
four operations, so the dispatcher can swap backends without changing
the agent loop.

Key design decisions:
- Async-first (all drivers are async)
- No retries inside a driver; failover across providers is the
  dispatcher's job and each failed attempt counts once against the
  provider's health
- Credentials are SecretStr and never rendered in errors or logs
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator


class DriverKind(str, Enum):
    """Supported backend families."""

    OLLAMA = "ollama"  # local inference
    OPENAI = "openai"  # hosted API
    OPENROUTER = "openrouter"  # aggregator
    NVIDIA = "nvidia"  # hosted API
    ANTHROPIC = "anthropic"  # hosted API


class ProviderConfig(BaseModel):
    """One configured LLM backend, as persisted by the host application.

    The health fields (error_count, last_error_at, last_used_at, last_error)
    are only ever mutated by the ProviderDispatcher.
    """

    name: str
    driver_kind: DriverKind
    endpoint: str | None = None
    credential: SecretStr | None = None
    model_id: str = ""
    priority: int = 0
    is_active: bool = True
    is_default: bool = False
    timeout_seconds: float | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    error_count: int = Field(default=0, ge=0)
    last_error_at: datetime | None = None
    last_used_at: datetime | None = None
    last_error: str | None = None

    @field_validator("last_error_at", "last_used_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        """Timestamps persisted without an offset are taken as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def secret(self) -> str | None:
        """Plain credential value, for handing to a driver only."""
        return self.credential.get_secret_value() if self.credential else None


class ProviderHealth(BaseModel):
    """Snapshot of a provider's health fields for the persistence layer."""

    name: str
    driver_kind: DriverKind
    model_id: str
    priority: int
    is_active: bool
    is_default: bool
    status: str  # "disabled" | "error" | "active" | "ready"
    error_count: int
    last_error_at: datetime | None = None
    last_used_at: datetime | None = None
    last_error: str | None = None


class LLMDriver(ABC):
    """Abstract base class for LLM drivers.

    generate() defaults to a single-turn chat(); drivers with a dedicated
    completion endpoint may override it.
    """

    def __init__(self, config: ProviderConfig):
        self._config = config

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def name(self) -> str:
        """Configured provider name."""
        return self._config.name

    @property
    def model_name(self) -> str:
        """Model identifier this driver talks to."""
        return self._config.model_id

    @abstractmethod
    async def chat(self, messages: list[dict[str, Any]], options: dict[str, Any] | None = None) -> str:
        """Generate a reply for a chat transcript ({role, content} dicts)."""
        ...

    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> str:
        """Generate a reply for a single prompt."""
        return await self.chat([{"role": "user", "content": prompt}], options)

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap reachability check. Must not raise."""
        ...

    def _merged_options(self, options: dict[str, Any] | None) -> dict[str, Any]:
        return {**self._config.options, **(options or {})}


def redact(text: str, *secrets: str | None) -> str:
    """Remove credential values from a message before it is logged or stored."""
    for secret in secrets:
        if secret and len(secret) >= 4:
            text = text.replace(secret, "***")
    return text
