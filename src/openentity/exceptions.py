"""
OpenEntity Custom Exceptions

Structured exception hierarchy for the entity runtime.
All OpenEntity-specific exceptions inherit from EntityError.

Exceptions are used *inside* the boundaries (capabilities raise them
from within a tool body, drivers raise them from a provider call).
At the Sandbox, Registry and Dispatcher boundaries they are converted
into explicit result values; only SandboxEscapeError and
AllProvidersUnavailableError ever reach the agent loop.

Exception hierarchy:
    EntityError
    +-- ToolError
    |   +-- ToolConstructionError       (load failed while building the tool, stage "runtime")
    |   +-- CapabilityError             (tool asked for something outside its capabilities)
    |   |   +-- FilesystemBoundaryError (path outside the allowlist)
    |   |   +-- CommandNotAllowedError  (process execution denied)
    |   |   +-- NetworkNotAllowedError  (url policy rejected the request)
    |   +-- ToolTimeoutError            (cooperative deadline exceeded)
    |   +-- SandboxEscapeError          (fatal, never converted into a result)
    +-- ProviderError                   (LLM provider failure)
    |   +-- ProviderUnavailableError    (circuit breaker open)
    |   +-- ProviderTimeoutError        (request timeout)
    |   +-- AllProvidersUnavailableError
    |       +-- NoProviderConfiguredError
    +-- ConfigurationError
"""

from __future__ import annotations


class EntityError(Exception):
    """Base exception for all OpenEntity runtime errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(EntityError):
    """Raised for invalid runtime or provider configuration."""

    pass


# ─── Tools ─────────────────────────────────────────────────


class ToolError(EntityError):
    """Base exception for tool loading and execution errors."""

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            message,
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name


class ToolConstructionError(ToolError):
    """Raised when a validated tool cannot be turned into a callable unit.

    Maps to the "runtime" load stage. Carries the originating file/line
    when it could be resolved from the traceback.
    """

    def __init__(
        self,
        tool_name: str,
        message: str,
        file: str | None = None,
        line: int | None = None,
    ):
        super().__init__(tool_name, message, details={"file": file, "line": line})
        self.file = file
        self.line = line


class CapabilityError(ToolError):
    """Raised by a capability helper when a request is outside its grant."""

    pass


class FilesystemBoundaryError(CapabilityError):
    """Raised when a tool touches a path outside the allowed prefixes."""

    def __init__(self, path: str, allowed: list[str] | None = None):
        super().__init__(
            "",
            f"Path '{path}' is outside the allowed directories",
            details={"path": path, "allowed": list(allowed or [])},
        )
        self.path = path


class CommandNotAllowedError(CapabilityError):
    """Raised when a tool runs a command the process policy does not permit."""

    def __init__(self, command: str, reason: str):
        super().__init__("", f"Command '{command}' is not allowed: {reason}", details={"command": command})
        self.command = command


class NetworkNotAllowedError(CapabilityError):
    """Raised when the url policy hook rejects an outbound request."""

    def __init__(self, url: str, reason: str):
        super().__init__("", f"Request to '{url}' was blocked: {reason}", details={"url": url})
        self.url = url


class ToolTimeoutError(ToolError):
    """Raised inside a tool body once its deadline has passed."""

    def __init__(self, timeout_seconds: float):
        super().__init__("", f"Tool exceeded its {timeout_seconds}s deadline")
        self.timeout_seconds = timeout_seconds


class SandboxEscapeError(ToolError):
    """A tool broke out of its execution boundary.

    This is the one fatal condition: the sandbox re-raises it instead of
    converting it into a failed ExecutionResult.
    """

    pass


# ─── Providers ─────────────────────────────────────────────


class ProviderError(EntityError):
    """Base exception for LLM provider errors."""

    def __init__(self, provider_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Provider '{provider_name}' error: {message}",
            details={"provider_name": provider_name, **(details or {})},
        )
        self.provider_name = provider_name


class ProviderUnavailableError(ProviderError):
    """Raised when a provider is unavailable (circuit breaker open)."""

    pass


class ProviderTimeoutError(ProviderError):
    """Raised when a provider request times out."""

    pass


class AllProvidersUnavailableError(ProviderError):
    """Every eligible provider was skipped or failed during one dispatch.

    `errors` maps each attempted provider to its (redacted) last error, in
    attempt order. `skipped` lists providers excluded by the breaker.
    """

    def __init__(
        self,
        errors: dict[str, str] | None = None,
        skipped: list[str] | None = None,
        message: str | None = None,
    ):
        self.errors = dict(errors or {})
        self.skipped = list(skipped or [])
        summary = message or (
            f"all providers unavailable ({len(self.errors)} failed, {len(self.skipped)} skipped)"
        )
        super().__init__(
            "dispatcher",
            summary,
            details={"errors": self.errors, "skipped": self.skipped},
        )

    @property
    def attempts(self) -> list[tuple[str, str]]:
        """(provider, error) pairs in the order they were attempted."""
        return list(self.errors.items())


class NoProviderConfiguredError(AllProvidersUnavailableError):
    """Raised when the dispatcher has no active provider configuration at all."""

    def __init__(self) -> None:
        super().__init__(
            message="No LLM configurations available. Configure at least one active provider",
        )
