"""
OpenEntity Runtime Configuration

Pydantic models for the sandbox, the tool registry and the LLM driver
defaults. Values come from constructor arguments or, via
RuntimeSettings.from_env(), from environment variables:

    ENTITY_TOOLS_DIR            storage directory for self-authored tools
    ENTITY_ALLOWED_PATHS        os.pathsep-separated filesystem allowlist
    ENTITY_PROCESS_ENABLED      "1"/"true" to allow process execution
    ENTITY_ALLOWED_COMMANDS     comma-separated command allowlist (empty = any)
    ENTITY_TOOL_TIMEOUT         per-call tool deadline in seconds
    OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_TIMEOUT
    OPENAI_MODEL, OPENROUTER_MODEL, NVIDIA_MODEL, ANTHROPIC_MODEL
"""

from __future__ import annotations

import json
import math
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from openentity.exceptions import ConfigurationError
from openentity.providers.base import DriverKind, ProviderConfig


class SandboxSettings(BaseModel):
    """Capability grants and limits applied to every tool call."""

    allowed_paths: list[str] = Field(default_factory=list)
    process_enabled: bool = False
    # Empty with process_enabled=True means every command is allowed.
    allowed_commands: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    command_timeout_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    http_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    max_output_chars: int = Field(default=25000, ge=1024)


class ToolSettings(BaseModel):
    """Where self-authored tools live and which built-ins are enabled."""

    tools_dir: str = "storage/entity/tools"
    filesystem_enabled: bool = True
    shell_enabled: bool = False
    web_enabled: bool = True


class DriverDefaults(BaseModel):
    """Defaults merged under a ProviderConfig of the same driver kind."""

    endpoint: str | None = None
    model_id: str = ""
    timeout_seconds: float = 120.0
    options: dict[str, Any] = Field(default_factory=dict)


DEFAULT_DRIVERS: dict[DriverKind, DriverDefaults] = {
    DriverKind.OLLAMA: DriverDefaults(
        endpoint="http://localhost:11434/v1",
        model_id="qwen-coder:30b",
        timeout_seconds=600.0,
        options={"temperature": 0.8, "top_p": 0.9},
    ),
    DriverKind.OPENAI: DriverDefaults(
        model_id="gpt-4o",
        timeout_seconds=60.0,
        options={"temperature": 0.8, "max_tokens": 4096},
    ),
    DriverKind.OPENROUTER: DriverDefaults(
        endpoint="https://openrouter.ai/api/v1",
        model_id="openrouter/auto",
        timeout_seconds=120.0,
        options={"temperature": 0.8, "max_tokens": 4096},
    ),
    DriverKind.NVIDIA: DriverDefaults(
        endpoint="https://integrate.api.nvidia.com/v1",
        model_id="moonshotai/kimi-k2.5",
        timeout_seconds=300.0,
        options={"temperature": 1.0, "top_p": 1.0, "max_tokens": 4096},
    ),
    DriverKind.ANTHROPIC: DriverDefaults(
        model_id="claude-sonnet-4-20250514",
        timeout_seconds=120.0,
        options={"max_tokens": 4096},
    ),
}


class RuntimeSettings(BaseModel):
    """Top-level settings for one entity runtime process."""

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    drivers: dict[DriverKind, DriverDefaults] = Field(
        default_factory=lambda: {k: v.model_copy(deep=True) for k, v in DEFAULT_DRIVERS.items()}
    )

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> RuntimeSettings:
        """Build settings from environment variables (os.environ by default)."""
        env = dict(os.environ if env is None else env)

        tools_dir = env.get("ENTITY_TOOLS_DIR", ToolSettings().tools_dir)
        allowed_paths = [p for p in env.get("ENTITY_ALLOWED_PATHS", "").split(os.pathsep) if p]
        if not allowed_paths:
            allowed_paths = [str(Path.cwd())]

        try:
            sandbox = SandboxSettings(
                allowed_paths=allowed_paths,
                process_enabled=_truthy(env.get("ENTITY_PROCESS_ENABLED", "")),
                allowed_commands=[c.strip() for c in env.get("ENTITY_ALLOWED_COMMANDS", "").split(",") if c.strip()],
                timeout_seconds=_float_env(env, "ENTITY_TOOL_TIMEOUT", 30.0),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid sandbox settings from environment: {e}") from e
        tools = ToolSettings(
            tools_dir=tools_dir,
            shell_enabled=sandbox.process_enabled,
        )

        settings = cls(sandbox=sandbox, tools=tools)
        ollama = settings.drivers[DriverKind.OLLAMA]
        ollama.endpoint = env.get("OLLAMA_BASE_URL", ollama.endpoint)
        ollama.model_id = env.get("OLLAMA_MODEL", ollama.model_id)
        ollama.timeout_seconds = _float_env(env, "OLLAMA_TIMEOUT", ollama.timeout_seconds)
        for kind, var in (
            (DriverKind.OPENAI, "OPENAI_MODEL"),
            (DriverKind.OPENROUTER, "OPENROUTER_MODEL"),
            (DriverKind.NVIDIA, "NVIDIA_MODEL"),
            (DriverKind.ANTHROPIC, "ANTHROPIC_MODEL"),
        ):
            if env.get(var):
                settings.drivers[kind].model_id = env[var]
        return settings

    def apply_driver_defaults(self, config: ProviderConfig) -> ProviderConfig:
        """Fill unset endpoint/model/options of a config from its driver defaults.

        Options given on the config override the defaults key by key.
        """
        defaults = self.drivers.get(config.driver_kind)
        if defaults is None:
            return config
        return config.model_copy(update={
            "endpoint": config.endpoint or defaults.endpoint,
            "model_id": config.model_id or defaults.model_id,
            "timeout_seconds": config.timeout_seconds or defaults.timeout_seconds,
            "options": {**defaults.options, **config.options},
        })


def load_provider_configs(path: str | Path) -> list[ProviderConfig]:
    """Read a JSON list of provider records (as persisted by the host app)."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read provider configs from {path}: {e}") from e

    if not isinstance(raw, list):
        raise ConfigurationError(f"Provider config file {path} must contain a JSON list")

    try:
        return [ProviderConfig.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid provider config in {path}: {e}") from e


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _float_env(env: dict[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number of seconds, got {raw!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive number of seconds, got {raw!r}")
    return value
