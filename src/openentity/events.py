"""
OpenEntity Runtime Events

Notifications the tool pipeline raises for the host application: a new
tool came online, a tool failed to load, a tool failed while running.
The agent loop feeds these back into the entity's context so it can
repair its own tools.

Events are pydantic models. `to_payload()` produces the dict a host
broadcasts to a UI; anything that can carry agent-authored text is
HTML-escaped there, and only the basename of a tool file is exposed.

EventEmitter is the plain fan-out used by the registry (events) and the
dispatcher (provider health snapshots).
"""

from __future__ import annotations

import html
import inspect
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from openentity.logging import get_logger

logger = get_logger("openentity.events")

Callback = Callable[[Any], "Awaitable[None] | None"]

_LOAD_FAILED_TEMPLATES = {
    "syntax": "The tool '{file}' has syntax errors: {errors}",
    "interface": "The tool '{file}' does not implement all required methods: {errors}",
    "security": "The tool '{file}' uses forbidden functions: {errors}",
    "runtime": "The tool '{file}' could not be loaded: {errors}",
}
_LOAD_FAILED_FALLBACK = "The tool '{file}' has an unknown error: {errors}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntityEvent(BaseModel):
    """Base class for runtime events."""

    event_type: str
    timestamp: datetime = Field(default_factory=_now)

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.event_type, **self.model_dump(exclude={"event_type"}, mode="json")}


class ToolCreated(EntityEvent):
    """The entity created (or first loaded) a tool."""

    event_type: Literal["tool_created"] = "tool_created"
    tool_name: str
    file_path: str
    description: str = ""
    loaded_successfully: bool = True
    warnings: list[str] = Field(default_factory=list)


class ToolLoadFailed(EntityEvent):
    """A tool file was rejected by validation or construction."""

    event_type: Literal["tool_load_failed"] = "tool_load_failed"
    file_path: str
    stage: str
    errors: list[str] = Field(default_factory=list)

    @property
    def filename(self) -> str:
        return os.path.basename(self.file_path)

    def human_readable_message(self) -> str:
        template = _LOAD_FAILED_TEMPLATES.get(self.stage, _LOAD_FAILED_FALLBACK)
        return template.format(file=self.filename, errors=", ".join(self.errors))

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "file_path": self.filename,
            "stage": self.stage,
            "errors": [html.escape(e, quote=True) for e in self.errors],
            "timestamp": self.timestamp.isoformat(),
            "message": html.escape(self.human_readable_message(), quote=True),
        }


class ToolExecutionFailed(EntityEvent):
    """A loaded tool failed at call time."""

    event_type: Literal["tool_execution_failed"] = "tool_execution_failed"
    tool_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    error: str
    file: str | None = None
    line: int | None = None

    @property
    def location(self) -> str | None:
        if not self.file:
            return None
        return f"{self.file}:{self.line}"

    def human_readable_message(self) -> str:
        where = f" in {self.file} line {self.line}" if self.file else ""
        return f"The tool '{self.tool_name}' failed during execution{where}: {self.error}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "tool_name": self.tool_name,
            "params": self.params,
            "error": self.error,
            "location": self.location,
            "timestamp": self.timestamp.isoformat(),
            "message": self.human_readable_message(),
        }


class EventEmitter:
    """Fan-out to sync or async subscribers.

    A failing subscriber is logged and skipped; it never breaks the emitter
    or the operation that raised the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callback] = []

    def subscribe(self, callback: Callback) -> None:
        """Register a callback. Signature: (item) -> None or async (item) -> None."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callback) -> None:
        """Remove a previously registered callback."""
        self._subscribers = [s for s in self._subscribers if s != callback]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def emit(self, item: Any) -> None:
        """Deliver one item to every subscriber, in subscription order."""
        event_type = getattr(item, "event_type", type(item).__name__)
        for callback in list(self._subscribers):
            try:
                result = callback(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Event subscriber failed",
                    extra={"event_type": event_type, "error": f"{type(e).__name__}: {e}"},
                )
