"""
OpenEntity Tool Sandbox

Runtime execution boundary for tools.

compile():
- only accepts a PASSED ValidationReport
- executes the tool module with a restricted builtins table and an import
  hook that only admits pure modules (json, math, re, datetime, ...);
  imported modules are handed over as attribute views without nested
  modules, so `typing.sys` and the like are not reachable
- instantiates the tool class (wrapping non-Tool classes in
  SourceToolAdapter) and binds a capability context of its own
- any fault raises ToolConstructionError
- build() runs compile() on a worker thread under the call deadline

execute():
- refuses non-ACTIVE descriptors (NOT_LOADED) without running anything
- checks params against the tool's JSON Schema (required, type, enum)
- runs the tool's own validate() and then execute() under one hard
  deadline; sync bodies run on a worker thread, async bodies are awaited
- converts every exception into a failed ExecutionResult, except
  SandboxEscapeError, which propagates

Note: this is an in-process boundary. It stops agent-authored code from
reaching the interpreter through the usual doors, but it is not OS-level
isolation. A thread abandoned after a timeout keeps running until its
next capability call checks the deadline.
"""

from __future__ import annotations

import asyncio
import builtins
import importlib
import inspect
import time
import traceback
import types
from pathlib import Path
from typing import Any

from openentity.config import SandboxSettings
from openentity.exceptions import (
    CommandNotAllowedError,
    FilesystemBoundaryError,
    NetworkNotAllowedError,
    SandboxEscapeError,
    ToolConstructionError,
    ToolTimeoutError,
)
from openentity.logging import get_logger
from openentity.tools.base import SourceToolAdapter, Tool
from openentity.tools.capabilities import ToolContext, UrlPolicy, deadline_scope
from openentity.tools.models import (
    ErrorKind,
    ExecutionResult,
    LoadState,
    ToolDescriptor,
    ValidationReport,
)
from openentity.tools.validator import content_hash

logger = get_logger("openentity.tools.sandbox")

ALLOWED_IMPORTS = frozenset({
    "__future__",
    "base64",
    "collections",
    "collections.abc",
    "datetime",
    "decimal",
    "fractions",
    "functools",
    "hashlib",
    "html",
    "itertools",
    "json",
    "math",
    "random",
    "re",
    "statistics",
    "string",
    "textwrap",
    "time",
    "typing",
    "urllib.parse",
    "uuid",
})

# The tool API is importable under these names.
TOOL_API_MODULES = frozenset({"openentity", "openentity.tools", "openentity.tools.base"})

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable", "chr",
    "classmethod", "complex", "dict", "divmod", "enumerate", "filter", "float", "format",
    "frozenset", "hasattr", "hash", "hex", "id", "int", "isinstance", "issubclass", "iter",
    "len", "list", "map", "max", "min", "next", "object", "oct", "ord", "pow", "print",
    "property", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "staticmethod", "str", "sum", "super", "tuple", "zip",
    # exceptions
    "ArithmeticError", "AssertionError", "AttributeError", "ConnectionError", "Exception",
    "FileNotFoundError", "ImportError", "IndexError", "KeyError", "LookupError",
    "NotADirectoryError", "NotImplementedError", "OSError", "OverflowError", "RuntimeError",
    "StopIteration", "TimeoutError", "TypeError", "UnicodeDecodeError", "UnicodeEncodeError",
    "ValueError", "ZeroDivisionError",
    # constants
    "True", "False", "None", "NotImplemented", "Ellipsis",
)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


class CompiledUnit:
    """A constructed tool that has passed validation and construction.

    Only ToolSandbox can create one. Name, description and schema are read
    once, at construction, so later lookups never run tool code.
    """

    __slots__ = (
        "tool",
        "source_path",
        "content_hash",
        "context",
        "name",
        "description",
        "parameter_schema",
        "_builtins",
        "_builtins_snapshot",
    )

    _seal = object()

    def __init__(
        self,
        seal: object,
        tool: Tool,
        source_path: str,
        content_hash: str,
        context: ToolContext,
        sandbox_builtins: dict[str, Any] | None = None,
    ):
        if seal is not CompiledUnit._seal:
            raise TypeError("CompiledUnit can only be created by ToolSandbox")
        self.tool = tool
        self.source_path = source_path
        self.content_hash = content_hash
        self.context = context
        self.name = tool.name()
        self.description = str(tool.description())
        self.parameter_schema = tool.parameters()
        self._builtins = sandbox_builtins
        self._builtins_snapshot = dict(sandbox_builtins) if sandbox_builtins is not None else None

    def builtins_intact(self) -> bool:
        if self._builtins is None:
            return True
        return self._builtins == self._builtins_snapshot


def _module_view(module: types.ModuleType, extra: dict[str, Any] | None = None) -> types.SimpleNamespace:
    """Public, non-module attributes of a module."""
    public = {
        key: value
        for key, value in vars(module).items()
        if not key.startswith("_") and not isinstance(value, types.ModuleType)
    }
    public.update(extra or {})
    return types.SimpleNamespace(**public)


def _tool_api_view() -> types.SimpleNamespace:
    return types.SimpleNamespace(Tool=Tool)


def _restricted_import(
    name: str,
    globals: dict[str, Any] | None = None,
    locals: dict[str, Any] | None = None,
    fromlist: tuple[str, ...] | None = (),
    level: int = 0,
) -> Any:
    """Import hook installed as the tool's __import__."""
    if level != 0:
        raise ImportError("Relative imports are not available to tools")

    if name in TOOL_API_MODULES:
        api = _tool_api_view()
        if fromlist:
            return api
        # `import openentity.tools` binds `openentity`
        return types.SimpleNamespace(tools=types.SimpleNamespace(base=api, **vars(api)))

    if name not in ALLOWED_IMPORTS:
        raise ImportError(f"Import of '{name}' is not allowed in tools")

    if name == "__future__":
        return importlib.import_module(name)

    view = _module_view(importlib.import_module(name))
    if fromlist:
        return view

    # `import a.b` binds `a`, with only `b` reachable below it.
    parts = name.split(".")
    for i in range(len(parts) - 1, 0, -1):
        parent = importlib.import_module(".".join(parts[:i]))
        view = _module_view(parent, {parts[i]: view})
    return view


def make_builtins() -> dict[str, Any]:
    """Fresh restricted builtins table for one tool module."""
    table = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    table["__build_class__"] = builtins.__build_class__
    table["__import__"] = _restricted_import
    return table


def check_params(schema: dict[str, Any], params: dict[str, Any]) -> list[str]:
    """Shape-check params against a JSON Schema object: required, type, enum."""
    errors: list[str] = []
    if not isinstance(params, dict):
        return ["Parameters must be an object"]

    properties = schema.get("properties", {}) if isinstance(schema, dict) else {}
    for name in schema.get("required", []) if isinstance(schema, dict) else []:
        if name not in params:
            errors.append(f"Missing required parameter: {name}")

    for name, value in params.items():
        prop = properties.get(name)
        if not isinstance(prop, dict):
            if schema.get("additionalProperties") is False:
                errors.append(f"Unknown parameter: {name}")
            continue

        expected = prop.get("type")
        expected_types = expected if isinstance(expected, list) else [expected] if expected else []
        if expected_types:
            matched = False
            for json_type in expected_types:
                py_types = _JSON_TYPES.get(json_type)
                if py_types is None:
                    matched = True
                    break
                # bool is an int in Python but not in JSON
                if isinstance(value, bool) and json_type in ("integer", "number"):
                    continue
                if isinstance(value, py_types):
                    matched = True
                    break
            if not matched:
                errors.append(
                    f"Parameter '{name}' expected {' or '.join(expected_types)}, got {type(value).__name__}"
                )
                continue

        if "enum" in prop and value not in prop["enum"]:
            allowed = ", ".join(repr(v) for v in prop["enum"])
            errors.append(f"Parameter '{name}' must be one of: {allowed}")

    return errors


def _tool_verdict(verdict: Any) -> list[str]:
    """Normalize a tool's validate() return into a list of errors."""
    if verdict is None or verdict is True:
        return []
    if verdict is False:
        return ["Parameters rejected by tool"]
    if isinstance(verdict, dict):
        if verdict.get("valid", True):
            return []
        return [str(e) for e in verdict.get("errors", [])] or ["Parameters rejected by tool"]
    if isinstance(verdict, (list, tuple)):
        return [str(e) for e in verdict]
    return []


def _origin(exc: BaseException, source_path: str | None) -> tuple[str | None, int | None]:
    """File and line where an exception came from, preferring the tool's own file."""
    frames = traceback.extract_tb(exc.__traceback__)
    if not frames:
        return None, None
    for frame in reversed(frames):
        if source_path and frame.filename == source_path:
            return frame.filename, frame.lineno
    last = frames[-1]
    return last.filename, last.lineno


class ToolSandbox:
    """Compiles validated tool source and executes tools behind a boundary.

    Every unit gets its own ToolContext built from the same read-only
    policy, so nothing one tool does to its context is seen by another.
    """

    def __init__(self, settings: SandboxSettings | None = None, url_policy: UrlPolicy | None = None):
        self.settings = settings or SandboxSettings()
        self.url_policy = url_policy

    def new_context(self) -> ToolContext:
        return ToolContext.from_settings(self.settings, url_policy=self.url_policy)

    # ─── Construction ───────────────────────────────────────

    def compile(self, source: str, source_path: str, report: ValidationReport) -> CompiledUnit:
        """Build a CompiledUnit from validated source.

        Runs the module body and the tool's constructor on the calling
        thread, with no deadline. The registry goes through build().

        Raises:
            ToolConstructionError: report not PASSED, or the module or tool
                instance could not be created.
        """
        stem = Path(source_path).stem
        if not report.passed:
            raise ToolConstructionError(stem, f"Source has not passed validation (stage {report.stage.value})")

        sandbox_builtins = make_builtins()
        namespace: dict[str, Any] = {
            "__builtins__": sandbox_builtins,
            "__name__": f"openentity_tool_{stem}",
            "Tool": Tool,
        }
        try:
            code = builtins.compile(source, source_path, "exec")
            exec(code, namespace)  # noqa: S102 - restricted namespace
            tool = self._instantiate(namespace)
            context = self.new_context()
            tool.bind(context)
            unit = CompiledUnit(
                CompiledUnit._seal, tool, source_path, content_hash(source), context, sandbox_builtins
            )
            if not isinstance(unit.name, str) or not unit.name.strip():
                raise ValueError("name() must return a non-empty string")
            if not isinstance(unit.parameter_schema, dict):
                raise ValueError("parameters() must return a dict")
        except ToolConstructionError:
            raise
        except Exception as e:
            file, line = _origin(e, source_path)
            raise ToolConstructionError(stem, f"{type(e).__name__}: {e}", file=file, line=line) from e
        return unit

    async def build(
        self,
        source: str,
        source_path: str,
        report: ValidationReport,
        *,
        timeout: float | None = None,
    ) -> CompiledUnit:
        """compile() on a worker thread, under the per-call deadline.

        Module-level code and the tool's __init__ are agent-authored, so
        they get the same deadline as execute().

        Raises:
            ToolConstructionError: as compile(), or construction overran
                its deadline.
        """
        limit = timeout or self.settings.timeout_seconds
        try:
            with deadline_scope(limit):
                return await asyncio.wait_for(
                    asyncio.to_thread(self.compile, source, source_path, report), timeout=limit
                )
        except (asyncio.TimeoutError, ToolTimeoutError) as e:
            stem = Path(source_path).stem
            logger.warning("Tool construction timed out", extra={"tool_name": stem, "file_path": source_path})
            raise ToolConstructionError(stem, f"Tool construction exceeded its {limit}s deadline") from e

    def wrap_native(self, tool: Tool, source_path: str = "<builtin>") -> CompiledUnit:
        """Seal a natively constructed (built-in) tool."""
        context = self.new_context()
        tool.bind(context)
        return CompiledUnit(CompiledUnit._seal, tool, source_path, content_hash(source_path), context)

    @staticmethod
    def _instantiate(namespace: dict[str, Any]) -> Tool:
        classes = [
            v for k, v in namespace.items()
            if isinstance(v, type) and not k.startswith("_") and v.__module__ == namespace["__name__"]
        ]
        for cls in classes:
            if issubclass(cls, Tool):
                return cls()

        def score(cls: type) -> int:
            return sum(1 for m in ("name", "description", "parameters", "execute", "validate") if m in vars(cls))

        ranked = sorted(classes, key=score, reverse=True)
        if not ranked or score(ranked[0]) < 4:
            raise ValueError("No tool class found in module")
        return SourceToolAdapter(ranked[0]())

    # ─── Execution ──────────────────────────────────────────

    async def execute(
        self,
        descriptor: ToolDescriptor,
        unit: CompiledUnit,
        params: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run a tool call. Always returns a result unless the sandbox was escaped.

        The deadline covers the tool's validate() and execute() together.
        """
        name = descriptor.name
        start = time.monotonic()

        def elapsed() -> float:
            return round((time.monotonic() - start) * 1000, 2)

        if descriptor.load_state != LoadState.ACTIVE:
            return ExecutionResult.fail(
                name, ErrorKind.NOT_LOADED, f"Tool '{name}' is not loaded ({descriptor.load_state.value})"
            )

        errors = check_params(descriptor.parameter_schema, params)
        if errors:
            return ExecutionResult.fail(
                name, ErrorKind.VALIDATION_FAILED, "Invalid parameters", errors=errors, duration_ms=elapsed()
            )

        limit = timeout or self.settings.timeout_seconds
        try:
            with deadline_scope(limit):
                try:
                    verdict = await asyncio.wait_for(self._validate(unit, params), timeout=limit)
                except (asyncio.TimeoutError, ToolTimeoutError, SandboxEscapeError):
                    raise
                except Exception as e:
                    file, line = _origin(e, unit.source_path)
                    return ExecutionResult.fail(
                        name, ErrorKind.RUNTIME_FAULT, f"validate() raised {type(e).__name__}: {e}",
                        file=file, line=line, duration_ms=elapsed(),
                    )
                errors = _tool_verdict(verdict)
                if errors:
                    return ExecutionResult.fail(
                        name, ErrorKind.VALIDATION_FAILED, "Invalid parameters", errors=errors, duration_ms=elapsed()
                    )

                remaining = max(limit - (time.monotonic() - start), 0.0)
                value = await asyncio.wait_for(self._invoke(unit, params), timeout=remaining)
        except SandboxEscapeError:
            logger.critical("Sandbox escape", extra={"tool_name": name})
            raise
        except (asyncio.TimeoutError, ToolTimeoutError):
            logger.warning("Tool timed out", extra={"tool_name": name, "duration_ms": elapsed()})
            return ExecutionResult.fail(
                name, ErrorKind.TIMEOUT, f"Tool '{name}' exceeded its {limit}s deadline", duration_ms=elapsed()
            )
        except Exception as e:
            return self._fault(name, unit, e, elapsed())
        finally:
            if not unit.builtins_intact():
                raise SandboxEscapeError(name, "Tool modified its restricted builtins")

        return self._normalize(name, value, elapsed())

    async def _validate(self, unit: CompiledUnit, params: dict[str, Any]) -> Any:
        verdict = await asyncio.to_thread(unit.tool.validate, params)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return verdict

    async def _invoke(self, unit: CompiledUnit, params: dict[str, Any]) -> Any:
        if unit.tool.is_async:
            return await unit.tool.execute(params)
        result = await asyncio.to_thread(unit.tool.execute, params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _fault(self, name: str, unit: CompiledUnit, exc: Exception, duration_ms: float) -> ExecutionResult:
        if isinstance(exc, FilesystemBoundaryError):
            kind = ErrorKind.FILESYSTEM_BOUNDARY
        elif isinstance(exc, CommandNotAllowedError):
            kind = ErrorKind.COMMAND_DENIED
        elif isinstance(exc, NetworkNotAllowedError):
            kind = ErrorKind.NETWORK_DENIED
        else:
            kind = ErrorKind.RUNTIME_FAULT
        file, line = _origin(exc, unit.source_path)
        logger.warning(
            "Tool execution failed",
            extra={"tool_name": name, "error": f"{type(exc).__name__}: {exc}", "duration_ms": duration_ms},
        )
        return ExecutionResult.fail(
            name, kind, str(exc) or type(exc).__name__, file=file, line=line, duration_ms=duration_ms
        )

    def _normalize(self, name: str, value: Any, duration_ms: float) -> ExecutionResult:
        """Accept a plain value or a {success, result, error} dict; truncate long output."""
        if isinstance(value, dict) and "success" in value and set(value) <= {"success", "result", "error"}:
            if not value.get("success"):
                return ExecutionResult.fail(
                    name, ErrorKind.RUNTIME_FAULT, str(value.get("error") or "Tool reported failure"),
                    duration_ms=duration_ms,
                )
            value = value.get("result")

        limit = self.settings.max_output_chars
        if value is not None and not isinstance(value, (bool, int, float)):
            rendered = value if isinstance(value, str) else None
            if rendered is None:
                rendered = str(value)
            if len(rendered) > limit:
                value = rendered[:limit] + f"\n[TRUNCATED at {limit} chars]"

        return ExecutionResult.ok(name, value, duration_ms=duration_ms)
