"""
OpenEntity NVIDIA Driver

Cloud inference via NVIDIA NIM (OpenAI-compatible). "Thinking" models
such as moonshotai/kimi-k2.5 need chat_template_kwargs={"thinking": true}
to enable extended reasoning.
"""

from __future__ import annotations

from typing import Any

from openentity.providers.openai import OpenAIDriver

THINKING_MODELS = frozenset({
    "moonshotai/kimi-k2.5",
    "deepseek-ai/deepseek-r1",
})


class NvidiaDriver(OpenAIDriver):
    """NVIDIA NIM driver."""

    DEFAULT_MODEL = "moonshotai/kimi-k2.5"
    DEFAULT_BASE_URL = "https://integrate.api.nvidia.com/v1"

    @property
    def is_thinking_model(self) -> bool:
        return self._config.model_id in THINKING_MODELS

    def _extra_body(self, options: dict[str, Any]) -> dict[str, Any]:
        if self.is_thinking_model:
            return {"chat_template_kwargs": {"thinking": True}}
        return {}
