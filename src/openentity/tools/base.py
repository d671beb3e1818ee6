"""
OpenEntity Tool Contract

Every tool, built-in or agent-authored, is one object answering five
questions: name(), description(), parameters() (a JSON Schema object),
execute(params) and, optionally, validate(params).

Agent-authored source normally subclasses Tool. A class that implements
the same methods without subclassing is wrapped in SourceToolAdapter, so
the rest of the runtime only ever sees Tool instances.

execute() may be a plain or an async method. It may return any value,
or the {"success": bool, "result": ..., "error": str | None} dict.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any

from openentity.tools.capabilities import ToolContext

REQUIRED_METHODS = ("name", "description", "parameters", "execute")
OPTIONAL_METHODS = ("validate",)


class Tool(ABC):
    """Base class for tools."""

    context: ToolContext | None = None

    @abstractmethod
    def name(self) -> str:
        """Unique tool name."""
        ...

    @abstractmethod
    def description(self) -> str:
        """What the tool does, for the LLM context."""
        ...

    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema describing execute()'s params."""
        ...

    @abstractmethod
    def execute(self, params: dict[str, Any]) -> Any:
        ...

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        """Tool-specific parameter checks beyond the schema.

        Returns {"valid": bool, "errors": [str, ...]}.
        """
        return {"valid": True, "errors": []}

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.execute)

    def bind(self, context: ToolContext) -> None:
        self.context = context


class SourceToolAdapter(Tool):
    """Wraps an object that implements the tool methods without subclassing Tool."""

    def __init__(self, wrapped: Any):
        self._wrapped = wrapped

    @property
    def wrapped(self) -> Any:
        return self._wrapped

    def name(self) -> str:
        return str(self._wrapped.name())

    def description(self) -> str:
        return str(self._wrapped.description())

    def parameters(self) -> dict[str, Any]:
        return self._wrapped.parameters()

    def execute(self, params: dict[str, Any]) -> Any:
        return self._wrapped.execute(params)

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        inner = getattr(type(self._wrapped), "validate", None)
        if inner is None:
            return super().validate(params)
        return self._wrapped.validate(params)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self._wrapped.execute)

    def bind(self, context: ToolContext) -> None:
        self.context = context
        self._wrapped.context = context
