"""
OpenEntity OpenAI Driver

Wraps the OpenAI chat-completions API behind the LLMDriver interface.

Also the base for every OpenAI-compatible backend (Ollama, OpenRouter,
NVIDIA NIM): those drivers only change the endpoint, headers and the
request body extras.
"""

from __future__ import annotations

from typing import Any

from openentity.exceptions import ProviderError
from openentity.logging import get_logger
from openentity.providers.base import LLMDriver, ProviderConfig

logger = get_logger("openentity.providers.openai")

# Options that map onto top-level chat.completions.create() arguments.
_REQUEST_OPTIONS = frozenset({
    "temperature",
    "top_p",
    "max_tokens",
    "stop",
    "seed",
    "presence_penalty",
    "frequency_penalty",
})


class OpenAIDriver(LLMDriver):
    """OpenAI and OpenAI-compatible driver.

    Uses the official openai Python SDK. Compatible with any
    OpenAI-compatible API via the config's endpoint.
    """

    DEFAULT_MODEL = "gpt-4o"
    DEFAULT_BASE_URL: str | None = None
    REQUIRES_KEY = True

    def __init__(self, config: ProviderConfig, client: Any | None = None):
        if not config.model_id:
            config = config.model_copy(update={"model_id": self.DEFAULT_MODEL})
        super().__init__(config)
        self._client = client or self._create_client()

    @property
    def client(self) -> Any:
        return self._client

    def _create_client(self) -> Any:
        """Create OpenAI async client. Imports openai lazily."""
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ImportError(
                "OpenAI-compatible drivers require the 'openai' package. Install with: pip install openai"
            ) from e

        kwargs: dict[str, Any] = {
            # The SDK refuses to construct without a key; keyless backends ignore it.
            "api_key": self._config.secret or "not-configured",
            "max_retries": 0,
        }
        base_url = self._config.endpoint or self.DEFAULT_BASE_URL
        if base_url:
            kwargs["base_url"] = base_url
        if self._config.timeout_seconds:
            kwargs["timeout"] = self._config.timeout_seconds
        headers = self._default_headers()
        if headers:
            kwargs["default_headers"] = headers

        return AsyncOpenAI(**kwargs)

    def _default_headers(self) -> dict[str, str]:
        return {}

    def _extra_body(self, options: dict[str, Any]) -> dict[str, Any]:
        """Request body fields the SDK does not model directly."""
        return {}

    async def chat(self, messages: list[dict[str, Any]], options: dict[str, Any] | None = None) -> str:
        """Create a chat completion and return its text."""
        if self.REQUIRES_KEY and not self._config.secret:
            raise ProviderError(self.name, f"{type(self).__name__} API key not configured")

        merged = self._merged_options(options)
        kwargs: dict[str, Any] = {
            "model": self._config.model_id,
            "messages": [self._convert_message(m) for m in messages],
        }
        for key in _REQUEST_OPTIONS:
            if key in merged:
                kwargs[key] = merged[key]
        extra = self._extra_body(merged)
        if extra:
            kwargs["extra_body"] = extra

        response = await self._client.chat.completions.create(**kwargs)
        return self._to_text(self.name, response)

    async def is_available(self) -> bool:
        if self.REQUIRES_KEY and not self._config.secret:
            return False
        try:
            await self._client.models.list()
            return True
        except Exception as e:
            logger.debug("Availability check failed", extra={"provider": self.name, "error": type(e).__name__})
            return False

    @staticmethod
    def _convert_message(msg: dict[str, Any]) -> dict[str, Any]:
        return {"role": msg.get("role", "user"), "content": str(msg.get("content", ""))}

    @staticmethod
    def _to_text(provider_name: str, response: Any) -> str:
        """Extract the first choice's text from an OpenAI response."""
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ProviderError(provider_name, "No response choices returned")
        content = choices[0].message.content or ""
        return content.strip()
