"""
OpenEntity Ollama Driver

Local inference through Ollama's OpenAI-compatible endpoint.
No API key needed for a local Ollama instance.

Default URL: http://localhost:11434/v1
Override with the config endpoint or the OLLAMA_BASE_URL environment variable.
"""

from __future__ import annotations

import os
from typing import Any

from openentity.providers.base import ProviderConfig
from openentity.providers.openai import _REQUEST_OPTIONS, OpenAIDriver


class OllamaDriver(OpenAIDriver):
    """Local Ollama driver using the OpenAI-compatible API.

    Model must be pulled first: `ollama pull qwen-coder:30b`
    """

    DEFAULT_MODEL = "qwen-coder:30b"
    REQUIRES_KEY = False

    def __init__(self, config: ProviderConfig, client: Any | None = None):
        if not config.endpoint:
            config = config.model_copy(update={
                "endpoint": os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434/v1"),
            })
        super().__init__(config, client=client)

    def _extra_body(self, options: dict[str, Any]) -> dict[str, Any]:
        # Ollama-native knobs (num_ctx, top_k, ...) ride along in "options".
        native = {k: v for k, v in options.items() if k not in _REQUEST_OPTIONS}
        return {"options": native} if native else {}
