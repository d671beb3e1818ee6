"""
OpenEntity Tool Validator

Static gate every tool source passes before it may be loaded. Three
stages, in order, stopping at the first that fails:

1. SYNTAX     ast.parse() succeeds.
2. INTERFACE  a tool class defines name, description, parameters and
              execute (validate is optional). The candidate is the class
              deriving from Tool; failing that, the class defining the most
              required methods. One error per missing method.
3. SECURITY   an AST walk finds no denylisted construct: imports of
              process, raw filesystem, socket, reflection or environment
              modules; references to eval/exec/compile/__import__/open/
              getattr and friends; dunder escape attributes; environ/getenv;
              private attributes of anything but self; assignment to or
              through self.context.
              Every finding is reported, in source order.

Risky-but-permitted capability uses (file writes and deletes, commands,
HTTP) are reported as warnings.

This is a best-effort filter: it rejects the obvious, it cannot prove
safety. The sandbox's restricted builtins and import hook are the
boundary that holds at runtime.
"""

from __future__ import annotations

import ast
import hashlib

from openentity.tools.base import OPTIONAL_METHODS, REQUIRED_METHODS
from openentity.tools.models import ValidationReport, ValidationStage

# Top-level module names a tool may not import.
DENIED_MODULES = frozenset({
    # process spawning
    "os", "subprocess", "multiprocessing", "pty", "signal", "posix", "nt", "_posixsubprocess",
    # raw filesystem
    "shutil", "pathlib", "tempfile", "glob", "fileinput", "io", "mmap", "fcntl",
    # sockets and raw network
    "socket", "ssl", "select", "selectors", "asyncio", "http", "urllib3", "requests",
    "httpx", "aiohttp", "ftplib", "smtplib", "telnetlib", "xmlrpc",
    # reflection and dynamic loading
    "sys", "builtins", "importlib", "imp", "inspect", "ctypes", "cffi", "gc", "types",
    "code", "codeop", "marshal", "pickle", "shelve", "dill", "runpy", "pkgutil", "zipimport",
    "threading", "_thread", "operator",
    # environment access
    "dotenv", "pwd", "grp", "resource", "platform",
})

# urllib itself is denied except for the pure parsing helpers.
ALLOWED_SUBMODULES = frozenset({"urllib.parse"})

DENIED_NAMES = {
    "eval": "eval() is forbidden",
    "exec": "exec() is forbidden",
    "compile": "compile() is forbidden",
    "__import__": "__import__() is forbidden",
    "open": "open() is forbidden - use self.context.files instead",
    "getattr": "getattr() is forbidden - potential security bypass",
    "setattr": "setattr() is forbidden - potential security bypass",
    "delattr": "delattr() is forbidden - potential security bypass",
    "globals": "globals() is forbidden",
    "locals": "locals() is forbidden",
    "vars": "vars() is forbidden",
    "breakpoint": "breakpoint() is forbidden",
    "input": "input() is forbidden",
    "memoryview": "memoryview() is forbidden",
}

DENIED_ATTRIBUTES = frozenset({
    "environ", "getenv", "putenv", "unsetenv", "environb",
    "system", "popen", "spawn", "fork", "execv", "execve",
})

# Allowed dunders: the ordinary object protocol.
ALLOWED_DUNDERS = frozenset({
    "__init__", "__name__", "__doc__", "__class__", "__repr__", "__str__", "__eq__",
    "__hash__", "__len__", "__iter__", "__next__", "__contains__", "__getitem__",
    "__setitem__", "__enter__", "__exit__", "__lt__", "__le__", "__gt__", "__ge__",
    "__bool__", "__call__", "__post_init__", "__future__", "__main__",
})

# Attributes that lead from an allowed object back to the interpreter.
ESCAPE_DUNDERS = frozenset({
    "__globals__", "__subclasses__", "__builtins__", "__code__", "__closure__",
    "__bases__", "__mro__", "__base__", "__dict__", "__getattribute__", "__import__",
    "__loader__", "__spec__", "__self__", "__func__", "__reduce__", "__reduce_ex__",
})

# Module objects reachable as attributes of allowed modules (typing.sys, ...).
SENSITIVE_ATTRIBUTES = frozenset({"sys", "os", "subprocess", "builtins", "importlib", "socket", "ctypes", "modules"})

_CAPABILITY_WARNINGS = {
    ("files", "write"): "File writing detected - ensure proper path validation",
    ("files", "delete"): "File deletion detected - ensure proper path validation",
    ("process", "run"): "Command execution detected",
    ("http", "request"): "External HTTP request detected",
    ("http", "get"): "External HTTP request detected",
    ("http", "post"): "External HTTP request detected",
}


def content_hash(source: str) -> str:
    """sha256 of a tool source, used to cache validation reports."""
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def _is_denied_module(module: str) -> bool:
    if module in ALLOWED_SUBMODULES:
        return False
    head = module.split(".")[0]
    return head in DENIED_MODULES or head == "urllib"


def _is_private(attr: str) -> bool:
    return attr.startswith("_") and not (attr.startswith("__") and attr.endswith("__"))


def _is_own(expr: ast.expr) -> bool:
    """True for a bare `self` or `cls`."""
    return isinstance(expr, ast.Name) and expr.id in ("self", "cls")


def _attribute_chain(expr: ast.expr) -> list[str]:
    """Attribute names along `a.b[0].c`, innermost last."""
    names: list[str] = []
    while isinstance(expr, (ast.Attribute, ast.Subscript)):
        if isinstance(expr, ast.Attribute):
            names.append(expr.attr)
        expr = expr.value
    return names


def _is_tool_base(expr: ast.expr) -> bool:
    if isinstance(expr, ast.Name):
        return expr.id == "Tool"
    if isinstance(expr, ast.Attribute):
        return expr.attr == "Tool"
    return False


class _SecurityScanner(ast.NodeVisitor):
    """Collects every denylisted construct, and capability warnings."""

    def __init__(self) -> None:
        self.findings: list[tuple[int, int, str]] = []
        self.warnings: list[str] = []

    def _flag(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", 0)
        self.findings.append((line, getattr(node, "col_offset", 0), f"Line {line}: {message}"))

    def _warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if _is_denied_module(alias.name):
                self._flag(node, f"Import of '{alias.name}' is forbidden")
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self._flag(node, "Relative imports are forbidden")
        elif node.module and _is_denied_module(node.module):
            self._flag(node, f"Import from '{node.module}' is forbidden")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in DENIED_NAMES:
            self._flag(node, DENIED_NAMES[node.id])
        elif node.id.startswith("__") and node.id.endswith("__") and node.id not in ALLOWED_DUNDERS:
            self._flag(node, f"Access to '{node.id}' is forbidden")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        attr = node.attr
        if attr.startswith("__") and attr.endswith("__") and attr not in ALLOWED_DUNDERS:
            self._flag(node, f"Access to attribute '{attr}' is forbidden")
        elif attr == "__class__" and not _is_own(node.value):
            self._flag(node, "Access to '__class__' is only allowed on self")
        elif _is_private(attr) and not _is_own(node.value):
            self._flag(node, f"Access to private attribute '{attr}' is forbidden")
        elif attr in DENIED_ATTRIBUTES:
            self._flag(node, f"Access to '{attr}' is forbidden")
        elif attr in SENSITIVE_ATTRIBUTES:
            self._flag(node, f"Access to module attribute '{attr}' is forbidden")
        self.generic_visit(node)

    def visit_Assign(self, node: ast.Assign) -> None:
        for target in node.targets:
            self._check_target(target)
        self.generic_visit(node)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        self._check_target(node.target)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self._check_target(node.target)
        self.generic_visit(node)

    def visit_Delete(self, node: ast.Delete) -> None:
        for target in node.targets:
            self._check_target(target)
        self.generic_visit(node)

    def _check_target(self, target: ast.expr) -> None:
        if isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                self._check_target(element)
        elif isinstance(target, ast.Starred):
            self._check_target(target.value)
        elif "context" in _attribute_chain(target):
            self._flag(target, "Assignment to the capability context is forbidden")

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Attribute):
            message = _CAPABILITY_WARNINGS.get((func.value.attr, func.attr))
            if message:
                self._warn(message)
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        # String keys and format fields ("{0.__globals__}") reach the same escape hatches.
        if isinstance(node.value, str) and "__" in node.value:
            for dunder in sorted(ESCAPE_DUNDERS):
                if dunder in node.value:
                    self._flag(node, f"Reference to '{dunder}' is forbidden")
                    break


class ToolValidator:
    """Pure, deterministic validator for tool source code."""

    def check(self, source: str) -> ValidationReport:
        """Run all stages and return the first failing (or the passing) report."""
        try:
            tree = ast.parse(source)
        except SyntaxError as e:
            return ValidationReport(
                stage=ValidationStage.SYNTAX,
                errors=(f"Line {e.lineno or 0}: {e.msg}",),
            )
        except ValueError as e:  # null bytes
            return ValidationReport(stage=ValidationStage.SYNTAX, errors=(f"Line 0: {e}",))

        interface_errors = self.check_interface(tree)
        if interface_errors:
            return ValidationReport(stage=ValidationStage.INTERFACE, errors=tuple(interface_errors))

        scanner = _SecurityScanner()
        scanner.visit(tree)
        if scanner.findings:
            ordered = sorted(scanner.findings, key=lambda f: (f[0], f[1]))
            return ValidationReport(
                stage=ValidationStage.SECURITY,
                errors=tuple(message for _, _, message in ordered),
                warnings=tuple(scanner.warnings),
            )

        return ValidationReport(stage=ValidationStage.PASSED, warnings=tuple(scanner.warnings))

    def check_interface(self, tree: ast.Module) -> list[str]:
        """Errors for the tool class's missing methods (empty if complete)."""
        classes = [n for n in tree.body if isinstance(n, ast.ClassDef)]
        if not classes:
            return [f"Missing required method: {m}()" for m in REQUIRED_METHODS]

        candidate = find_tool_class(classes)
        defined = {
            n.name
            for n in candidate.body
            if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef))
        }
        return [f"Missing required method: {m}()" for m in REQUIRED_METHODS if m not in defined]

    @staticmethod
    def content_hash(source: str) -> str:
        return content_hash(source)


def find_tool_class(classes: list[ast.ClassDef]) -> ast.ClassDef:
    """Pick the tool class: a Tool subclass, else the one with most required methods."""
    for cls in classes:
        if any(_is_tool_base(b) for b in cls.bases):
            return cls

    def score(cls: ast.ClassDef) -> int:
        names = {n.name for n in cls.body if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef))}
        return sum(1 for m in REQUIRED_METHODS + OPTIONAL_METHODS if m in names)

    # max() keeps the first of equal scores.
    return max(classes, key=score)
