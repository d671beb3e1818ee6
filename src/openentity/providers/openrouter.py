"""
OpenEntity OpenRouter Driver

Aggregator backend: one API key, many upstream models. OpenRouter asks
clients to identify themselves with HTTP-Referer and X-Title headers,
taken here from the config options app_url / app_name.
"""

from __future__ import annotations

from typing import Any

from openentity.providers.openai import OpenAIDriver


class OpenRouterDriver(OpenAIDriver):
    """OpenRouter driver via the OpenAI-compatible API."""

    DEFAULT_MODEL = "openrouter/auto"
    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

    def _default_headers(self) -> dict[str, str]:
        options: dict[str, Any] = self._config.options
        return {
            "HTTP-Referer": str(options.get("app_url", "http://localhost")),
            "X-Title": str(options.get("app_name", "OpenEntity")),
        }
