"""
OpenEntity Driver Factory

Maps a ProviderConfig's driver_kind onto a concrete LLMDriver.
Driver modules are imported on demand so a host that only uses a
local backend never loads the hosted SDKs.
"""

from __future__ import annotations

from openentity.providers.base import DriverKind, LLMDriver, ProviderConfig


def create_driver(config: ProviderConfig) -> LLMDriver:
    """Factory function to create an LLM driver for a provider config.

    Raises:
        ValueError: If the driver kind is not supported.
    """
    kind = DriverKind(config.driver_kind)

    if kind == DriverKind.OLLAMA:
        from openentity.providers.ollama import OllamaDriver
        return OllamaDriver(config)
    elif kind == DriverKind.OPENAI:
        from openentity.providers.openai import OpenAIDriver
        return OpenAIDriver(config)
    elif kind == DriverKind.OPENROUTER:
        from openentity.providers.openrouter import OpenRouterDriver
        return OpenRouterDriver(config)
    elif kind == DriverKind.NVIDIA:
        from openentity.providers.nvidia import NvidiaDriver
        return NvidiaDriver(config)
    elif kind == DriverKind.ANTHROPIC:
        from openentity.providers.claude import ClaudeDriver
        return ClaudeDriver(config)
    raise ValueError(
        f"Unknown LLM driver: {config.driver_kind}. "
        f"Supported: {', '.join(k.value for k in DriverKind)}"
    )
