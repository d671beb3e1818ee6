"""
OpenEntity Tool Registry

Owns the descriptor table and is the single entry point the agent loop
uses for tools: load/reload self-authored tool files, register
built-ins, list what is callable, and call tools through the sandbox.

Load pipeline for one file:
    UNLOADED → VALIDATING → (validator, cached by content hash)
             → SANDBOXED  → (sandbox.build, under the call deadline)
             → ACTIVE | REJECTED

Concurrency: the active table maps name → (descriptor, unit) and is
replaced as a whole under an asyncio.Lock, so lock-free readers always
see a consistent pair. Loads of the same file are serialized by a
per-file lock.

Reload retention: a reload that fails leaves the previously active
version in place and callable; the rejection is recorded in
failed_tools() until a later load of that file succeeds.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, NamedTuple

from openentity.events import (
    Callback,
    EventEmitter,
    ToolCreated,
    ToolExecutionFailed,
    ToolLoadFailed,
)
from openentity.exceptions import ToolConstructionError, ToolError
from openentity.logging import get_logger
from openentity.tools.base import Tool
from openentity.tools.models import (
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    FailureStage,
    LoadState,
    ToolDescriptor,
    ToolSpec,
    ValidationReport,
)
from openentity.tools.sandbox import CompiledUnit, ToolSandbox
from openentity.tools.validator import ToolValidator, content_hash

logger = get_logger("openentity.tools.registry")

# Failures where the tool body actually ran.
_EXECUTION_FAILURES = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.FILESYSTEM_BOUNDARY,
    ErrorKind.COMMAND_DENIED,
    ErrorKind.NETWORK_DENIED,
    ErrorKind.RUNTIME_FAULT,
})


class _Entry(NamedTuple):
    descriptor: ToolDescriptor
    unit: CompiledUnit


def sanitize_tool_filename(name: str) -> str:
    """Lowercase, with anything outside [a-z0-9_] replaced by '_'."""
    return re.sub(r"[^a-z0-9_]", "_", name.lower()) or "tool"


class ToolRegistry:
    """Descriptor table and single entry point for tools."""

    def __init__(
        self,
        sandbox: ToolSandbox | None = None,
        validator: ToolValidator | None = None,
        tools_dir: str | Path | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.sandbox = sandbox or ToolSandbox()
        self.validator = validator or ToolValidator()
        self.tools_dir = Path(tools_dir) if tools_dir else None
        self._events = emitter or EventEmitter()

        self._entries: dict[str, _Entry] = {}
        self._failed: dict[str, ToolDescriptor] = {}
        self._reports: dict[str, ValidationReport] = {}

        self._table_lock = asyncio.Lock()
        self._file_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    # ─── Events ─────────────────────────────────────────────

    def subscribe(self, callback: Callback) -> None:
        """Register a listener for ToolCreated / ToolLoadFailed / ToolExecutionFailed."""
        self._events.subscribe(callback)

    @property
    def events(self) -> EventEmitter:
        return self._events

    # ─── Built-ins ──────────────────────────────────────────

    def register(self, tool: Tool) -> ToolDescriptor:
        """Register a native tool. Replaces any tool of the same name."""
        unit = self.sandbox.wrap_native(tool, source_path=f"<builtin:{type(tool).__name__}>")
        descriptor = ToolDescriptor(
            name=unit.name,
            description=unit.description,
            parameter_schema=unit.parameter_schema,
            load_state=LoadState.ACTIVE,
            builtin=True,
            loaded_at=datetime.now(timezone.utc),
        )
        self._entries = {**self._entries, descriptor.name: _Entry(descriptor, unit)}
        logger.info("Tool registered", extra={"tool_name": descriptor.name, "_extra": {"type": "builtin"}})
        return descriptor

    # ─── Loading ────────────────────────────────────────────

    async def load(self, source_path: str | Path, source: str | None = None) -> ToolDescriptor:
        """Validate, compile and activate one tool file.

        Reads the file when source is None. Always returns a descriptor,
        ACTIVE or REJECTED.
        """
        descriptor, first_load = await self._load(str(source_path), source)
        if first_load:
            await self._events.emit(ToolCreated(
                tool_name=descriptor.name,
                file_path=descriptor.source_path or "",
                description=descriptor.description,
                warnings=list(descriptor.warnings),
            ))
        return descriptor

    @asynccontextmanager
    async def _file_lock(self, path: str) -> AsyncIterator[None]:
        """Serialize loads of one file. The lock is dropped once nobody holds or awaits it."""
        lock, users = self._file_locks.get(path, (asyncio.Lock(), 0))
        self._file_locks[path] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._file_locks[path]
            if users <= 1:
                del self._file_locks[path]
            else:
                self._file_locks[path] = (lock, users - 1)

    async def _load(self, path: str, source: str | None) -> tuple[ToolDescriptor, bool]:
        async with self._file_lock(path):
            return await self._load_unlocked(path, source)

    async def _load_unlocked(self, path: str, source: str | None) -> tuple[ToolDescriptor, bool]:
        descriptor = ToolDescriptor(name=Path(path).stem, source_path=path)

        if source is None:
            try:
                source = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                return await self._reject(descriptor, FailureStage.RUNTIME, [f"Cannot read tool file: {e}"]), False

        digest = content_hash(source)
        descriptor = descriptor.transition(LoadState.VALIDATING, content_hash=digest)
        report = self._report_for(source, digest)
        if not report.passed:
            return await self._reject(
                descriptor, report.failure_stage, list(report.errors), report.warnings
            ), False

        descriptor = descriptor.transition(LoadState.SANDBOXED, warnings=report.warnings)
        try:
            unit = await self.sandbox.build(source, path, report)
            name = unit.name
            description = unit.description
            schema = unit.parameter_schema
        except ToolConstructionError as e:
            message = str(e)
            if e.line:
                message = f"{message} (line {e.line})"
            return await self._reject(descriptor, FailureStage.RUNTIME, [message]), False
        except Exception as e:
            return await self._reject(descriptor, FailureStage.RUNTIME, [f"{type(e).__name__}: {e}"]), False

        existing = self._entries.get(name)
        if existing is not None and existing.descriptor.builtin:
            return await self._reject(
                descriptor, FailureStage.RUNTIME, [f"Tool name '{name}' is reserved by a built-in tool"]
            ), False

        active = descriptor.model_copy(update={
            "name": name,
            "description": description,
            "parameter_schema": schema,
            "load_state": LoadState.ACTIVE,
            "loaded_at": datetime.now(timezone.utc),
        })
        first_load = existing is None or existing.descriptor.source_path != path

        async with self._table_lock:
            entries = {
                k: v for k, v in self._entries.items()
                if v.descriptor.source_path != path or k == name
            }
            entries[name] = _Entry(active, unit)
            self._entries = entries
            self._failed = {
                k: v for k, v in self._failed.items()
                if v.source_path != path and k != name
            }

        logger.info(
            "Tool loaded",
            extra={"tool_name": name, "file_path": path, "stage": "passed"},
        )
        return active, first_load

    async def _reject(
        self,
        descriptor: ToolDescriptor,
        stage: FailureStage | None,
        errors: list[str],
        warnings: tuple[str, ...] = (),
    ) -> ToolDescriptor:
        stage = stage or FailureStage.RUNTIME
        # A failed reload is recorded under the name of the version still active.
        key = next(
            (k for k, v in self._entries.items() if v.descriptor.source_path == descriptor.source_path),
            descriptor.name,
        )
        rejected = descriptor.transition(
            LoadState.REJECTED,
            name=key,
            rejection_stage=stage,
            rejection_errors=tuple(errors),
            warnings=warnings,
        )
        async with self._table_lock:
            self._failed = {**self._failed, key: rejected}

        logger.warning(
            "Tool load failed",
            extra={
                "tool_name": key,
                "file_path": descriptor.source_path,
                "stage": stage.value,
                "error": "; ".join(errors),
            },
        )
        await self._events.emit(ToolLoadFailed(
            file_path=descriptor.source_path or key,
            stage=stage.value,
            errors=errors,
        ))
        return rejected

    def _report_for(self, source: str, digest: str) -> ValidationReport:
        report = self._reports.get(digest)
        if report is None:
            report = self.validator.check(source)
            self._reports[digest] = report
        return report

    async def reload(self, name: str) -> ToolDescriptor:
        """Re-run load() on a tool's current source file.

        The current version stays callable until the new one is ACTIVE or
        REJECTED; on rejection it stays active.
        """
        entry = self._entries.get(name)
        if entry is not None:
            if entry.descriptor.builtin:
                raise ToolError(name, f"Built-in tool '{name}' cannot be reloaded")
            path = entry.descriptor.source_path
        elif name in self._failed:
            path = self._failed[name].source_path
        else:
            raise ToolError(name, f"Tool '{name}' not found")
        return await self.load(path)

    async def retry_failed(self, name: str) -> ToolDescriptor:
        """Load a failed tool again from its file."""
        failed = self._failed.get(name)
        if failed is None:
            raise ToolError(name, f"Tool '{name}' not found in failed tools list")
        return await self.load(failed.source_path)

    async def create_tool(self, name: str, source: str) -> ToolDescriptor:
        """Write agent-authored source to the tools directory and load it.

        Source is validated before anything is written; invalid source is
        returned as a REJECTED descriptor and never touches the disk.
        """
        if self.tools_dir is None:
            raise ToolError(name, "No tools directory configured")

        path = self.tools_dir / f"{sanitize_tool_filename(name)}.py"
        report = self._report_for(source, content_hash(source))
        if not report.passed:
            logger.warning(
                "Tool creation rejected",
                extra={"tool_name": name, "stage": report.failure_stage.value if report.failure_stage else None},
            )
            return ToolDescriptor(
                name=name,
                source_path=str(path),
                load_state=LoadState.REJECTED,
                rejection_stage=report.failure_stage,
                rejection_errors=report.errors,
                warnings=report.warnings,
                content_hash=content_hash(source),
            )

        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_text, source, encoding="utf-8")

        descriptor, _ = await self._load(str(path), source)
        if descriptor.is_active:
            await self._events.emit(ToolCreated(
                tool_name=descriptor.name,
                file_path=str(path),
                description=descriptor.description,
                warnings=list(descriptor.warnings),
            ))
        else:
            await self._events.emit(ToolCreated(
                tool_name=name,
                file_path=str(path),
                description="Unknown - failed to load",
                loaded_successfully=False,
            ))
        return descriptor

    async def load_directory(self, directory: str | Path | None = None) -> list[ToolDescriptor]:
        """Load every *.py file in a directory (the tools directory by default)."""
        root = Path(directory) if directory else self.tools_dir
        if root is None or not root.is_dir():
            return []
        results = []
        for path in sorted(root.glob("*.py")):
            if path.name.startswith("_"):
                continue
            results.append(await self.load(path))
        logger.info(
            "Tool directory loaded",
            extra={"file_path": str(root), "_extra": {
                "active": sum(1 for d in results if d.is_active),
                "rejected": sum(1 for d in results if not d.is_active),
            }},
        )
        return results

    # ─── Queries ────────────────────────────────────────────

    def list(self) -> list[ToolSpec]:
        """Name, description and parameter schema of every active tool."""
        return [
            ToolSpec(
                name=e.descriptor.name,
                description=e.descriptor.description,
                parameters=e.descriptor.parameter_schema,
            )
            for e in self._entries.values()
            if e.descriptor.is_active
        ]

    def failed_tools(self) -> list[ToolDescriptor]:
        return list(self._failed.values())

    def get(self, name: str) -> Tool | None:
        entry = self._entries.get(name)
        return entry.unit.tool if entry else None

    def descriptor(self, name: str) -> ToolDescriptor | None:
        """Active descriptor for a name, else its rejected descriptor, else None."""
        entry = self._entries.get(name)
        if entry is not None:
            return entry.descriptor
        return self._failed.get(name)

    def has(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def to_prompt_context(self) -> str:
        """Summary of available tools (and tools needing repair) for the LLM context."""
        lines = ["Available Tools:", ""]
        for entry in self._entries.values():
            lines.append(f"- **{entry.descriptor.name}**: {entry.descriptor.description}")

        if self._failed:
            lines += ["", "", "Failed Tools (need repair):"]
            for name, descriptor in self._failed.items():
                error = descriptor.rejection_errors[0] if descriptor.rejection_errors else "Unknown error"
                stage = descriptor.rejection_stage.value if descriptor.rejection_stage else "unknown"
                lines.append(f"- {name} [{stage}]: {error}")

        return "\n".join(lines) + "\n"

    # ─── Execution ──────────────────────────────────────────

    async def call(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Execute a tool by name. Always returns a result (see SandboxEscapeError)."""
        params = params or {}
        entry = self._entries.get(name)
        if entry is None:
            if name in self._failed:
                return ExecutionResult.fail(
                    name, ErrorKind.NOT_LOADED, f"Tool '{name}' failed to load and needs repair"
                )
            return ExecutionResult.fail(name, ErrorKind.NOT_FOUND, f"Tool '{name}' not found")

        descriptor, unit = entry
        if not descriptor.is_active:
            return ExecutionResult.fail(name, ErrorKind.NOT_LOADED, f"Tool '{name}' is not loaded")

        result = await self.sandbox.execute(descriptor, unit, params, timeout=timeout)

        if not result.success and result.error and result.error.kind in _EXECUTION_FAILURES:
            await self._events.emit(ToolExecutionFailed(
                tool_name=name,
                params=params,
                error=result.error.message,
                file=result.error.file,
                line=result.error.line,
            ))
        return result

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        return await self.call(request.tool_name, request.params)
