"""
OpenEntity Runtime

Wires the two subsystems together from one RuntimeSettings: a sandbox
and registry for tools (with the enabled built-ins), and a dispatcher
over the configured LLM providers with driver defaults applied.
"""

from __future__ import annotations

from openentity.config import RuntimeSettings
from openentity.logging import get_logger
from openentity.providers.base import ProviderConfig
from openentity.providers.dispatcher import ProviderDispatcher
from openentity.tools.builtin import register_builtins
from openentity.tools.capabilities import UrlPolicy
from openentity.tools.models import ToolDescriptor
from openentity.tools.registry import ToolRegistry
from openentity.tools.sandbox import ToolSandbox

logger = get_logger("openentity.runtime")


class EntityRuntime:
    """Tool registry plus provider dispatcher for one entity process."""

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        providers: list[ProviderConfig] | None = None,
        *,
        url_policy: UrlPolicy | None = None,
        dispatcher: ProviderDispatcher | None = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.sandbox = ToolSandbox(self.settings.sandbox, url_policy=url_policy)
        self.registry = ToolRegistry(sandbox=self.sandbox, tools_dir=self.settings.tools.tools_dir)
        self.dispatcher = dispatcher or ProviderDispatcher(
            [self.settings.apply_driver_defaults(c) for c in providers or []]
        )
        self._started = False

    @classmethod
    def from_env(cls, providers: list[ProviderConfig] | None = None) -> EntityRuntime:
        return cls(RuntimeSettings.from_env(), providers)

    async def startup(self) -> list[ToolDescriptor]:
        """Register built-ins and load the tools directory. Idempotent."""
        if self._started:
            return []
        self._started = True
        register_builtins(self.registry, self.settings)
        loaded = await self.registry.load_directory()
        logger.info(
            "Runtime started",
            extra={"_extra": {
                "tools": len(self.registry),
                "failed_tools": len(self.registry.failed_tools()),
                "providers": len(self.dispatcher.candidates()),
            }},
        )
        return loaded

    async def reconfigure_providers(self, providers: list[ProviderConfig]) -> None:
        await self.dispatcher.configure([self.settings.apply_driver_defaults(c) for c in providers])
