"""
OpenEntity Tool System Models

Pydantic models shared by the validator, the sandbox and the registry.

A tool moves through one load attempt as
UNLOADED → VALIDATING → SANDBOXED → ACTIVE, or ends REJECTED at the
first failing stage. Descriptors are frozen: every state change
produces a new descriptor, so readers never observe a half-updated one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LoadState(str, Enum):
    """Lifecycle of one tool load attempt."""

    UNLOADED = "UNLOADED"
    VALIDATING = "VALIDATING"
    SANDBOXED = "SANDBOXED"  # passed validation, being constructed
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"


class ValidationStage(str, Enum):
    """Furthest validator stage reached."""

    SYNTAX = "SYNTAX"
    INTERFACE = "INTERFACE"
    SECURITY = "SECURITY"
    PASSED = "PASSED"


class FailureStage(str, Enum):
    """External vocabulary for where a load failed."""

    SYNTAX = "syntax"
    INTERFACE = "interface"
    SECURITY = "security"
    RUNTIME = "runtime"


class ErrorKind(str, Enum):
    """Why a tool call did not produce a value."""

    NOT_FOUND = "NOT_FOUND"
    NOT_LOADED = "NOT_LOADED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TIMEOUT = "TIMEOUT"
    FILESYSTEM_BOUNDARY = "FILESYSTEM_BOUNDARY"
    COMMAND_DENIED = "COMMAND_DENIED"
    NETWORK_DENIED = "NETWORK_DENIED"
    RUNTIME_FAULT = "RUNTIME_FAULT"


class ValidationReport(BaseModel):
    """Outcome of ToolValidator.check().

    A PASSED report means the source parses, implements the tool
    contract and contains no denylisted construct. It says nothing
    about runtime correctness.
    """

    model_config = ConfigDict(frozen=True)

    stage: ValidationStage
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.stage == ValidationStage.PASSED

    @property
    def failure_stage(self) -> FailureStage | None:
        if self.passed:
            return None
        return FailureStage(self.stage.value.lower())


class ToolDescriptor(BaseModel):
    """Identity, metadata and load state of one tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    source_path: str | None = None
    description: str = ""
    parameter_schema: dict[str, Any] = Field(default_factory=dict)
    load_state: LoadState = LoadState.UNLOADED
    rejection_stage: FailureStage | None = None
    rejection_errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    content_hash: str | None = None
    builtin: bool = False
    loaded_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.load_state == LoadState.ACTIVE

    def transition(self, state: LoadState, **changes: Any) -> ToolDescriptor:
        """Return a copy in the given state."""
        return self.model_copy(update={"load_state": state, **changes})


class ToolSpec(BaseModel):
    """What the agent loop is shown about an active tool."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ExecutionRequest(BaseModel):
    """One tool call requested by the agent loop."""

    tool_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    caller: str = "agent_loop"


class ExecutionError(BaseModel):
    """Failure detail attached to an unsuccessful ExecutionResult."""

    kind: ErrorKind
    message: str
    errors: list[str] = Field(default_factory=list)
    file: str | None = None
    line: int | None = None


class ExecutionResult(BaseModel):
    """Outcome of a tool call. Every call returns one."""

    success: bool
    tool_name: str = ""
    value: Any = None
    error: ExecutionError | None = None
    duration_ms: float = 0.0

    @classmethod
    def ok(cls, tool_name: str, value: Any, duration_ms: float = 0.0) -> ExecutionResult:
        return cls(success=True, tool_name=tool_name, value=value, duration_ms=duration_ms)

    @classmethod
    def fail(
        cls,
        tool_name: str,
        kind: ErrorKind,
        message: str,
        *,
        errors: list[str] | None = None,
        file: str | None = None,
        line: int | None = None,
        duration_ms: float = 0.0,
    ) -> ExecutionResult:
        return cls(
            success=False,
            tool_name=tool_name,
            error=ExecutionError(kind=kind, message=message, errors=errors or [], file=file, line=line),
            duration_ms=duration_ms,
        )

    def to_agent_payload(self) -> dict[str, Any]:
        """The {success, result, error} shape the agent loop consumes."""
        if self.success:
            return {"success": True, "result": self.value, "error": None}
        return {"success": False, "result": None, "error": self.error.message if self.error else "unknown error"}
