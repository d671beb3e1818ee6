"""
OpenEntity Built-in Tools

Native tools that ship with the runtime. Unlike agent-authored tools
they are registered directly (no validation pass), but they reach the
outside world only through the same capability context.
"""

from __future__ import annotations

from openentity.config import RuntimeSettings
from openentity.tools.builtin.filesystem import FileSystemTool
from openentity.tools.builtin.shell import ShellTool
from openentity.tools.builtin.web import WebTool
from openentity.tools.models import ToolDescriptor
from openentity.tools.registry import ToolRegistry

__all__ = ["FileSystemTool", "ShellTool", "WebTool", "register_builtins"]


def register_builtins(registry: ToolRegistry, settings: RuntimeSettings | None = None) -> list[ToolDescriptor]:
    """Register the built-in tools enabled in settings.

    The shell tool additionally requires process execution to be enabled
    in the sandbox settings.
    """
    settings = settings or RuntimeSettings()
    registered = []
    if settings.tools.filesystem_enabled:
        registered.append(registry.register(FileSystemTool()))
    if settings.tools.shell_enabled and settings.sandbox.process_enabled:
        registered.append(registry.register(ShellTool()))
    if settings.tools.web_enabled:
        registered.append(registry.register(WebTool()))
    return registered
