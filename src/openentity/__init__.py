"""
OpenEntity — Runtime core for a self-extending autonomous agent

Two subsystems:
- a tool self-extension pipeline (validate → sandbox → register) for
  tools the agent writes itself
- an LLM provider dispatcher with priority failover and per-provider
  circuit breakers

Usage:
    from openentity import EntityRuntime, ProviderConfig

    runtime = EntityRuntime(providers=[
        ProviderConfig(name="local", driver_kind="ollama", priority=10),
    ])
    await runtime.startup()

    reply = await runtime.dispatcher.generate("What should I do next?")
    result = await runtime.registry.call("filesystem", {"operation": "list", "path": "."})
"""

from openentity.config import RuntimeSettings, SandboxSettings, ToolSettings
from openentity.events import EventEmitter, ToolCreated, ToolExecutionFailed, ToolLoadFailed
from openentity.exceptions import (
    AllProvidersUnavailableError,
    EntityError,
    NoProviderConfiguredError,
    SandboxEscapeError,
)
from openentity.providers import ProviderConfig, ProviderDispatcher, create_driver
from openentity.runtime import EntityRuntime
from openentity.tools import (
    ExecutionResult,
    Tool,
    ToolDescriptor,
    ToolRegistry,
    ToolSandbox,
    ToolValidator,
)

__version__ = "0.3.0"

__all__ = [
    # Main API
    "EntityRuntime",
    "__version__",
    # Config
    "RuntimeSettings",
    "SandboxSettings",
    "ToolSettings",
    # Tools
    "ExecutionResult",
    "Tool",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolSandbox",
    "ToolValidator",
    # Providers
    "ProviderConfig",
    "ProviderDispatcher",
    "create_driver",
    # Events
    "EventEmitter",
    "ToolCreated",
    "ToolExecutionFailed",
    "ToolLoadFailed",
    # Errors
    "AllProvidersUnavailableError",
    "EntityError",
    "NoProviderConfiguredError",
    "SandboxEscapeError",
]
