"""
OpenEntity Claude Driver

Wraps the Anthropic SDK (anthropic.AsyncAnthropic) behind the
LLMDriver interface. System messages in the transcript are lifted into
Anthropic's separate `system` parameter.
"""

from __future__ import annotations

from typing import Any

import anthropic

from openentity.exceptions import ProviderError
from openentity.logging import get_logger
from openentity.providers.base import LLMDriver, ProviderConfig

logger = get_logger("openentity.providers.claude")


class ClaudeDriver(LLMDriver):
    """Anthropic Claude driver via the official SDK."""

    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    DEFAULT_MAX_TOKENS = 4096

    def __init__(
        self,
        config: ProviderConfig,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        if not config.model_id:
            config = config.model_copy(update={"model_id": self.DEFAULT_MODEL})
        super().__init__(config)
        kwargs: dict[str, Any] = {"api_key": config.secret or None, "max_retries": 0}
        if config.endpoint:
            kwargs["base_url"] = config.endpoint
        if config.timeout_seconds:
            kwargs["timeout"] = config.timeout_seconds
        self._client = client or anthropic.AsyncAnthropic(**kwargs)

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        return self._client

    async def chat(self, messages: list[dict[str, Any]], options: dict[str, Any] | None = None) -> str:
        merged = self._merged_options(options)
        system_parts = [str(m.get("content", "")) for m in messages if m.get("role") == "system"]
        turns = [
            {"role": m.get("role", "user"), "content": str(m.get("content", ""))}
            for m in messages
            if m.get("role") != "system"
        ]

        kwargs: dict[str, Any] = {
            "model": self._config.model_id,
            "max_tokens": int(merged.get("max_tokens", self.DEFAULT_MAX_TOKENS)),
            "messages": turns,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if "temperature" in merged:
            kwargs["temperature"] = merged["temperature"]
        if "top_p" in merged:
            kwargs["top_p"] = merged["top_p"]

        response = await self._client.messages.create(**kwargs)
        return self._to_text(self.name, response)

    async def is_available(self) -> bool:
        try:
            await self._client.models.list(limit=1)
            return True
        except Exception as e:
            logger.debug("Availability check failed", extra={"provider": self.name, "error": type(e).__name__})
            return False

    @staticmethod
    def _to_text(provider_name: str, response: Any) -> str:
        """Concatenate the text blocks of an Anthropic response."""
        blocks = getattr(response, "content", None) or []
        text = "".join(b.text for b in blocks if getattr(b, "type", "") == "text")
        if not blocks:
            raise ProviderError(provider_name, "Empty response content")
        return text.strip()
