"""Tests for the OpenEntity tool sandbox.

Covers compilation (restricted builtins, import views, construction
failures), parameter checking, execution outcomes for every error kind,
output normalization and escape detection. Adversarial cases compile
hostile source with a forged PASSED report to show the runtime boundary
holds even if the validator is bypassed.
"""

import asyncio

import pytest

from openentity.config import SandboxSettings
from openentity.exceptions import SandboxEscapeError, ToolConstructionError
from openentity.tools.base import SourceToolAdapter, Tool
from openentity.tools.models import ErrorKind, LoadState, ToolDescriptor, ValidationReport, ValidationStage
from openentity.tools.sandbox import CompiledUnit, ToolSandbox, check_params, make_builtins
from openentity.tools.validator import ToolValidator

FORGED_PASS = ValidationReport(stage=ValidationStage.PASSED)

ECHO_TOOL = '''
from openentity.tools import Tool


class Echo(Tool):
    def name(self):
        return "echo"

    def description(self):
        return "Echo the message back"

    def parameters(self):
        return {
            "type": "object",
            "properties": {
                "message": {"type": "string"},
                "times": {"type": "integer"},
                "mode": {"type": "string", "enum": ["plain", "upper"]},
            },
            "required": ["message"],
        }

    def execute(self, params):
        text = params["message"] * params.get("times", 1)
        if params.get("mode") == "upper":
            return text.upper()
        return text
'''

FAULTY_TOOL = """class Faulty:
    def name(self):
        return "faulty"

    def description(self):
        return "Always fails"

    def parameters(self):
        return {}

    def execute(self, params):
        return 1 / 0
"""


def _tool_source(body: str, header: str = "", name: str = "sample", schema: str = "{}") -> str:
    """Tool source whose execute() runs the given body."""
    indented = "\n".join("        " + line for line in body.strip().splitlines())
    return f'''{header}
from openentity.tools import Tool


class Sample(Tool):
    def name(self):
        return "{name}"

    def description(self):
        return "sample"

    def parameters(self):
        return {schema}

    def execute(self, params):
{indented}
'''


def _compile(sandbox: ToolSandbox, source: str, path: str = "/tools/sample.py", report=None) -> CompiledUnit:
    return sandbox.compile(source, path, report or ToolValidator().check(source))


def _active(unit: CompiledUnit) -> ToolDescriptor:
    return ToolDescriptor(
        name=unit.name,
        description=unit.description,
        parameter_schema=unit.parameter_schema,
        load_state=LoadState.ACTIVE,
    )


async def _run(sandbox: ToolSandbox, unit: CompiledUnit, params=None, **kwargs):
    return await sandbox.execute(_active(unit), unit, params or {}, **kwargs)


class CountingTool(Tool):
    def __init__(self):
        self.calls = 0

    def name(self):
        return "counting"

    def description(self):
        return "Counts its calls"

    def parameters(self):
        return {"type": "object", "properties": {}}

    def execute(self, params):
        self.calls += 1
        return self.calls


# ─── Compilation ───────────────────────────────────────────


class TestCompile:
    def test_compiles_tool_subclass(self, sandbox):
        unit = _compile(sandbox, ECHO_TOOL)
        assert unit.name == "echo"
        assert isinstance(unit.tool, Tool)
        assert unit.tool.context is unit.context
        assert unit.description == "Echo the message back"
        assert unit.parameter_schema["required"] == ["message"]
        assert unit.source_path == "/tools/sample.py"
        assert len(unit.content_hash) == 64

    def test_duck_typed_class_is_adapted(self, sandbox):
        unit = _compile(sandbox, FAULTY_TOOL)
        assert isinstance(unit.tool, SourceToolAdapter)
        assert unit.tool.wrapped.context is unit.context

    def test_each_unit_gets_its_own_context(self, sandbox):
        first = _compile(sandbox, ECHO_TOOL)
        second = _compile(sandbox, ECHO_TOOL)
        assert first.context is not second.context
        assert first.context.files is not second.context.files
        assert first.context.files.allowed_roots == second.context.files.allowed_roots

    def test_rejects_unpassed_report(self, sandbox):
        report = ValidationReport(stage=ValidationStage.SECURITY, errors=("Line 1: nope",))
        with pytest.raises(ToolConstructionError, match="has not passed validation"):
            sandbox.compile(ECHO_TOOL, "/tools/echo.py", report)

    def test_constructor_failure_carries_location(self, sandbox):
        source = """class Broken:
    def __init__(self):
        raise ValueError("bad config")

    def name(self):
        return "broken"

    def description(self):
        return ""

    def parameters(self):
        return {}

    def execute(self, params):
        return None
"""
        with pytest.raises(ToolConstructionError) as exc_info:
            _compile(sandbox, source, path="/tools/broken.py")
        assert "ValueError: bad config" in str(exc_info.value)
        assert exc_info.value.file == "/tools/broken.py"
        assert exc_info.value.line == 3
        assert exc_info.value.tool_name == "broken"

    def test_empty_name_rejected(self, sandbox):
        with pytest.raises(ToolConstructionError, match="non-empty string"):
            _compile(sandbox, _tool_source("return 1", name=""))

    def test_parameters_must_be_a_dict(self, sandbox):
        with pytest.raises(ToolConstructionError, match="must return a dict"):
            _compile(sandbox, _tool_source("return 1", schema="[]"))

    def test_module_without_tool_class(self, sandbox):
        with pytest.raises(ToolConstructionError, match="No tool class found"):
            sandbox.compile("x = 1\n", "/tools/empty.py", FORGED_PASS)

    def test_compiled_unit_is_sealed(self, sandbox):
        with pytest.raises(TypeError, match="only be created by ToolSandbox"):
            CompiledUnit(object(), CountingTool(), "/tools/x.py", "abc", sandbox.new_context())

    @pytest.mark.parametrize(
        "import_line",
        [
            "import openentity.tools\nTool = openentity.tools.Tool",
            "from openentity.tools.base import Tool",
            "from openentity import Tool",
        ],
    )
    def test_tool_api_import_forms(self, sandbox, import_line):
        source = _tool_source("return 1").replace("from openentity.tools import Tool", import_line)
        assert _compile(sandbox, source).name == "sample"

    @pytest.mark.asyncio
    async def test_build_compiles_on_a_worker_thread(self, sandbox):
        unit = await sandbox.build(ECHO_TOOL, "/tools/echo.py", ToolValidator().check(ECHO_TOOL))
        assert unit.name == "echo"
        assert unit.builtins_intact()

    @pytest.mark.asyncio
    async def test_build_deadline_covers_module_code(self, sandbox):
        source = _tool_source("return 1", header="import time\ntime.sleep(1.0)")
        with pytest.raises(ToolConstructionError, match="exceeded its 0.1s deadline"):
            await asyncio.wait_for(
                sandbox.build(source, "/tools/sample.py", ToolValidator().check(source), timeout=0.1),
                timeout=0.8,
            )

    @pytest.mark.asyncio
    async def test_build_deadline_covers_constructor(self, sandbox):
        source = _tool_source("return 1", header="import time").replace(
            "class Sample(Tool):\n",
            "class Sample(Tool):\n    def __init__(self):\n        time.sleep(1.0)\n\n",
        )
        with pytest.raises(ToolConstructionError, match="exceeded its 0.1s deadline"):
            await sandbox.build(source, "/tools/sample.py", ToolValidator().check(source), timeout=0.1)


# ─── Parameters ────────────────────────────────────────────


class TestCheckParams:
    SCHEMA = {
        "type": "object",
        "properties": {
            "text": {"type": "string"},
            "count": {"type": "integer"},
            "ratio": {"type": "number"},
            "flag": {"type": "boolean"},
            "mode": {"type": "string", "enum": ["a", "b"]},
            "either": {"type": ["string", "null"]},
        },
        "required": ["text"],
    }

    def test_valid(self):
        assert check_params(self.SCHEMA, {"text": "x", "count": 2, "ratio": 0.5, "flag": True, "either": None}) == []

    def test_missing_required(self):
        assert check_params(self.SCHEMA, {}) == ["Missing required parameter: text"]

    def test_wrong_type(self):
        assert check_params(self.SCHEMA, {"text": 5}) == ["Parameter 'text' expected string, got int"]

    def test_bool_is_not_an_integer(self):
        assert check_params(self.SCHEMA, {"text": "x", "count": True}) == [
            "Parameter 'count' expected integer, got bool"
        ]

    def test_int_is_a_number(self):
        assert check_params(self.SCHEMA, {"text": "x", "ratio": 3}) == []

    def test_enum(self):
        assert check_params(self.SCHEMA, {"text": "x", "mode": "c"}) == ["Parameter 'mode' must be one of: 'a', 'b'"]

    def test_union_type(self):
        assert check_params(self.SCHEMA, {"text": "x", "either": 1}) == [
            "Parameter 'either' expected string or null, got int"
        ]

    def test_unknown_parameters_allowed_by_default(self):
        assert check_params(self.SCHEMA, {"text": "x", "extra": 1}) == []

    def test_additional_properties_false(self):
        schema = {**self.SCHEMA, "additionalProperties": False}
        assert check_params(schema, {"text": "x", "extra": 1}) == ["Unknown parameter: extra"]

    def test_params_must_be_an_object(self):
        assert check_params(self.SCHEMA, ["text"]) == ["Parameters must be an object"]


# ─── Execution ─────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_success(self, sandbox):
        unit = _compile(sandbox, ECHO_TOOL)
        result = await _run(sandbox, unit, {"message": "hi", "times": 2, "mode": "upper"})
        assert result.success
        assert result.value == "HIHI"
        assert result.error is None
        assert result.duration_ms >= 0
        assert result.to_agent_payload() == {"success": True, "result": "HIHI", "error": None}

    @pytest.mark.asyncio
    async def test_schema_violation(self, sandbox):
        unit = _compile(sandbox, ECHO_TOOL)
        result = await _run(sandbox, unit, {"times": "two"})
        assert not result.success
        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert result.error.errors == [
            "Missing required parameter: message",
            "Parameter 'times' expected integer, got str",
        ]

    @pytest.mark.asyncio
    async def test_tool_validate_rejects(self, sandbox):
        source = _tool_source("return 1") + '''
    def validate(self, params):
        return {"valid": False, "errors": ["too long"]}
'''
        unit = _compile(sandbox, source)
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert result.error.errors == ["too long"]

    @pytest.mark.asyncio
    async def test_tool_validate_raising(self, sandbox):
        source = _tool_source("return 1") + '''
    def validate(self, params):
        raise KeyError("missing")
'''
        unit = _compile(sandbox, source)
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert result.error.message.startswith("validate() raised KeyError")

    @pytest.mark.asyncio
    async def test_not_active_never_runs(self, sandbox):
        tool = CountingTool()
        unit = sandbox.wrap_native(tool)
        descriptor = _active(unit).transition(LoadState.REJECTED)

        result = await sandbox.execute(descriptor, unit, {})

        assert result.error.kind == ErrorKind.NOT_LOADED
        assert tool.calls == 0

    @pytest.mark.asyncio
    async def test_runtime_fault_location(self, sandbox):
        unit = _compile(sandbox, FAULTY_TOOL, path="/tools/faulty.py")
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert result.error.message == "division by zero"
        assert result.error.file == "/tools/faulty.py"
        assert result.error.line == 12

    @pytest.mark.asyncio
    async def test_timeout(self, sandbox):
        unit = _compile(sandbox, _tool_source("time.sleep(0.5)\nreturn 'woke'", header="import time"))
        result = await _run(sandbox, unit, timeout=0.05)
        assert result.error.kind == ErrorKind.TIMEOUT
        assert "0.05s" in result.error.message

    @pytest.mark.asyncio
    async def test_async_execute(self, sandbox):
        source = _tool_source("return {'success': True, 'result': 'done', 'error': None}").replace(
            "def execute", "async def execute"
        )
        unit = _compile(sandbox, source)
        assert unit.tool.is_async
        result = await _run(sandbox, unit)
        assert result.value == "done"

    @pytest.mark.asyncio
    async def test_reported_failure_dict(self, sandbox):
        unit = _compile(sandbox, _tool_source("return {'success': False, 'result': None, 'error': 'nope'}"))
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert result.error.message == "nope"
        assert result.to_agent_payload() == {"success": False, "result": None, "error": "nope"}

    @pytest.mark.asyncio
    async def test_plain_dict_is_a_value(self, sandbox):
        unit = _compile(sandbox, _tool_source("return {'success': 1, 'rows': []}"))
        result = await _run(sandbox, unit)
        assert result.value == {"success": 1, "rows": []}

    @pytest.mark.asyncio
    async def test_long_output_truncated(self, workspace):
        sandbox = ToolSandbox(SandboxSettings(allowed_paths=[str(workspace)], max_output_chars=1024))
        unit = _compile(sandbox, ECHO_TOOL)
        result = await _run(sandbox, unit, {"message": "ab", "times": 2000})
        assert result.value.startswith("abab")
        assert result.value.endswith("\n[TRUNCATED at 1024 chars]")
        assert len(result.value) == 1024 + len("\n[TRUNCATED at 1024 chars]")

    @pytest.mark.asyncio
    async def test_allowed_imports_are_usable(self, sandbox):
        body = (
            "stamp = datetime(2026, 1, 2).year\n"
            "ok = isinstance(params, collections.abc.Mapping)\n"
            "return json.dumps({'year': stamp, 'ok': ok, 'root': math.sqrt(16)})"
        )
        header = "import json\nimport math\nimport collections.abc\nfrom datetime import datetime"
        unit = _compile(sandbox, _tool_source(body, header=header))
        result = await _run(sandbox, unit)
        assert result.value == '{"year": 2026, "ok": true, "root": 4.0}'

    @pytest.mark.asyncio
    async def test_async_validate(self, sandbox):
        source = _tool_source("return 1") + '''
    async def validate(self, params):
        return ["not today"]
'''
        result = await _run(sandbox, _compile(sandbox, source))
        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert result.error.errors == ["not today"]

    @pytest.mark.asyncio
    async def test_slow_validate_times_out(self, sandbox):
        source = _tool_source("return 1", header="import time") + '''
    def validate(self, params):
        time.sleep(1.0)
        return True
'''
        unit = _compile(sandbox, source)
        result = await asyncio.wait_for(_run(sandbox, unit, timeout=0.1), timeout=0.8)
        assert result.error.kind == ErrorKind.TIMEOUT
        assert "0.1s" in result.error.message

    @pytest.mark.asyncio
    async def test_validate_and_execute_share_the_deadline(self, sandbox):
        source = _tool_source("time.sleep(0.3)\nreturn 'late'", header="import time") + '''
    def validate(self, params):
        time.sleep(0.3)
        return True
'''
        result = await _run(sandbox, _compile(sandbox, source), timeout=0.45)
        assert result.error.kind == ErrorKind.TIMEOUT


# ─── Capabilities ──────────────────────────────────────────


class TestCapabilityFailures:
    PATH_SCHEMA = '{"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}'

    @pytest.mark.asyncio
    async def test_file_inside_workspace(self, sandbox, workspace):
        (workspace / "notes.txt").write_text("remember")
        unit = _compile(sandbox, _tool_source("return self.context.files.read(params['path'])", schema=self.PATH_SCHEMA))
        result = await _run(sandbox, unit, {"path": "notes.txt"})
        assert result.value == "remember"

    @pytest.mark.asyncio
    async def test_filesystem_boundary(self, sandbox):
        unit = _compile(sandbox, _tool_source("return self.context.files.read(params['path'])", schema=self.PATH_SCHEMA))
        result = await _run(sandbox, unit, {"path": "/etc/passwd"})
        assert result.error.kind == ErrorKind.FILESYSTEM_BOUNDARY

    @pytest.mark.asyncio
    async def test_traversal_is_a_boundary_violation(self, sandbox):
        unit = _compile(sandbox, _tool_source("return self.context.files.read(params['path'])", schema=self.PATH_SCHEMA))
        result = await _run(sandbox, unit, {"path": "../../../../etc/passwd"})
        assert result.error.kind == ErrorKind.FILESYSTEM_BOUNDARY

    @pytest.mark.asyncio
    async def test_command_denied_when_disabled(self, sandbox):
        unit = _compile(sandbox, _tool_source("return self.context.process.run('ls').stdout"))
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.COMMAND_DENIED
        assert "process execution is disabled" in result.error.message

    @pytest.mark.asyncio
    async def test_network_denied_by_policy(self, sandbox_settings):
        sandbox = ToolSandbox(sandbox_settings, url_policy=lambda url: False)
        unit = _compile(sandbox, _tool_source("return self.context.http.get('https://example.com').text"))
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.NETWORK_DENIED

    @pytest.mark.asyncio
    async def test_checked_path_is_a_plain_string(self, sandbox, workspace):
        body = "target = self.context.files.check(params['path'])\nreturn target.write_text('owned')"
        unit = _compile(sandbox, _tool_source(body, schema=self.PATH_SCHEMA))
        result = await _run(sandbox, unit, {"path": "notes.txt"})
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert "'str' object has no attribute 'write_text'" in result.error.message
        assert not (workspace / "notes.txt").exists()

    @pytest.mark.asyncio
    async def test_check_outside_workspace(self, sandbox):
        unit = _compile(sandbox, _tool_source("return self.context.files.check(params['path'])", schema=self.PATH_SCHEMA))
        result = await _run(sandbox, unit, {"path": "/etc"})
        assert result.error.kind == ErrorKind.FILESYSTEM_BOUNDARY


# ─── Adversarial ───────────────────────────────────────────


@pytest.mark.adversarial
class TestBoundary:
    def test_builtins_table_is_restricted(self):
        table = make_builtins()
        for name in ("open", "eval", "exec", "compile", "getattr", "globals", "vars", "input", "breakpoint"):
            assert name not in table
        assert "len" in table
        assert "__build_class__" in table

    def test_module_level_import_blocked(self, sandbox):
        source = "import os\n" + _tool_source("return 1")
        with pytest.raises(ToolConstructionError, match="Import of 'os' is not allowed"):
            sandbox.compile(source, "/tools/sample.py", FORGED_PASS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,expected",
        [
            ("import socket\nreturn 1", "Import of 'socket' is not allowed"),
            ("return open('/etc/passwd').read()", "'open' is not defined"),
            ("return eval('1 + 1')", "'eval' is not defined"),
            ("return getattr(self, 'context')", "'getattr' is not defined"),
            ("return __import__('subprocess')", "Import of 'subprocess' is not allowed"),
        ],
    )
    async def test_runtime_escapes_fail(self, sandbox, body, expected):
        unit = sandbox.compile(_tool_source(body), "/tools/sample.py", FORGED_PASS)
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert expected in result.error.message

    @pytest.mark.asyncio
    async def test_nested_modules_not_reachable(self, sandbox):
        unit = sandbox.compile(_tool_source("return typing.sys", header="import typing"), "/tools/sample.py", FORGED_PASS)
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert "sys" in result.error.message

    @pytest.mark.asyncio
    async def test_modifying_builtins_is_an_escape(self, sandbox):
        body = "table = __builtins__\ntable['len'] = None\nreturn 1"
        unit = sandbox.compile(_tool_source(body), "/tools/sample.py", FORGED_PASS)
        with pytest.raises(SandboxEscapeError):
            await _run(sandbox, unit)

    @pytest.mark.asyncio
    async def test_escape_error_propagates(self, sandbox):
        class Escaping(CountingTool):
            def execute(self, params):
                raise SandboxEscapeError("counting", "broke out")

        unit = sandbox.wrap_native(Escaping())
        with pytest.raises(SandboxEscapeError, match="broke out"):
            await _run(sandbox, unit)

    def test_each_tool_gets_its_own_builtins(self, sandbox):
        first = _compile(sandbox, ECHO_TOOL)
        second = _compile(sandbox, ECHO_TOOL)
        assert first._builtins is not second._builtins
        assert first.builtins_intact() and second.builtins_intact()

    def test_tool_context_is_not_importable(self, sandbox):
        source = _tool_source("return 1").replace(
            "from openentity.tools import Tool", "from openentity.tools import Tool, ToolContext"
        )
        with pytest.raises(ToolConstructionError, match="ToolContext"):
            sandbox.compile(source, "/tools/sample.py", FORGED_PASS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "self.context.process.enabled = True\nreturn self.context.process.run('id').stdout",
            "self.context.process.allowed_commands = ('id',)\nreturn 1",
            "self.context.files = None\nreturn 1",
            "self.context.http.timeout_seconds = 0\nreturn 1",
        ],
    )
    async def test_context_policy_is_read_only(self, sandbox, body):
        unit = sandbox.compile(_tool_source(body), "/tools/sample.py", FORGED_PASS)
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert unit.context.process.enabled is False
        assert unit.context.process.allowed_commands == ()

    @pytest.mark.asyncio
    async def test_one_tool_cannot_widen_another(self, sandbox):
        hostile = sandbox.compile(
            _tool_source("self.context.process.enabled = True\nreturn 1"), "/tools/hostile.py", FORGED_PASS
        )
        await _run(sandbox, hostile)
        victim = _compile(sandbox, _tool_source("return self.context.process.run('id').stdout"))
        result = await _run(sandbox, victim)
        assert result.error.kind == ErrorKind.COMMAND_DENIED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,expected",
        [
            ("return self.context.files._resolve('/etc/passwd').read_text()", "no attribute '_resolve'"),
            ("return self.context.files._roots[0].write_text('x')", "no attribute 'write_text'"),
        ],
    )
    async def test_no_path_objects_reachable(self, sandbox, body, expected):
        unit = sandbox.compile(_tool_source(body), "/tools/sample.py", FORGED_PASS)
        result = await _run(sandbox, unit)
        assert result.error.kind == ErrorKind.RUNTIME_FAULT
        assert expected in result.error.message
