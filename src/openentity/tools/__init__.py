"""
OpenEntity Tool Self-Extension Pipeline

Validator → Sandbox → Registry. The agent writes a tool as Python
source; the validator statically gates it, the sandbox constructs and
runs it behind restricted builtins and capability helpers, and the
registry owns the resulting descriptors and is the single entry point
for calls.

Usage:
    from openentity.tools import ToolRegistry

    registry = ToolRegistry(tools_dir="storage/entity/tools")
    await registry.load_directory()
    result = await registry.call("word_count", {"text": "hello world"})

A minimal agent-authored tool:

    from openentity.tools import Tool

    class WordCount(Tool):
        def name(self):
            return "word_count"

        def description(self):
            return "Count the words in a text"

        def parameters(self):
            return {
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            }

        def execute(self, params):
            return len(params["text"].split())
"""

from openentity.tools.base import SourceToolAdapter, Tool
from openentity.tools.capabilities import FileAccess, HttpClient, ProcessRunner, ToolContext
from openentity.tools.models import (
    ErrorKind,
    ExecutionError,
    ExecutionRequest,
    ExecutionResult,
    FailureStage,
    LoadState,
    ToolDescriptor,
    ToolSpec,
    ValidationReport,
    ValidationStage,
)
from openentity.tools.registry import ToolRegistry
from openentity.tools.sandbox import CompiledUnit, ToolSandbox
from openentity.tools.validator import ToolValidator

__all__ = [
    "CompiledUnit",
    "ErrorKind",
    "ExecutionError",
    "ExecutionRequest",
    "ExecutionResult",
    "FailureStage",
    "FileAccess",
    "HttpClient",
    "LoadState",
    "ProcessRunner",
    "SourceToolAdapter",
    "Tool",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolSandbox",
    "ToolSpec",
    "ToolValidator",
    "ValidationReport",
    "ValidationStage",
]
