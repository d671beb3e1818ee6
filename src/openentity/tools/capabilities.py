"""
OpenEntity Tool Capabilities

The only doors a tool has to the outside world. Agent-authored code runs
with restricted builtins and no access to os/subprocess/socket; anything
it needs beyond pure computation goes through the ToolContext attached
to it as `self.context`:

- FileAccess:    read/write/list/exists/delete, confined to allowlisted
                 path prefixes (checked after resolving symlinks, before I/O)
- ProcessRunner: disabled unless the operator enables it; first-word
                 command allowlist; every invocation logged with secrets
                 redacted; clean environment; per-run timeout
- HttpClient:    outbound HTTP with a timeout and an optional url_policy
                 hook the host can use for domain allowlisting
- check_deadline(): cooperative deadline for the current tool call

The per-call deadline lives in a ContextVar, so it follows the call into
the worker thread that runs a sync tool body.
"""

from __future__ import annotations

import contextlib
import json as jsonlib
import re
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable, Iterator
from contextvars import ContextVar
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from openentity.config import SandboxSettings
from openentity.exceptions import (
    CommandNotAllowedError,
    FilesystemBoundaryError,
    NetworkNotAllowedError,
    ToolTimeoutError,
)
from openentity.logging import get_logger

logger = get_logger("openentity.tools.capabilities")

MAX_READ_BYTES = 1_048_576
USER_AGENT = "OpenEntity/0.3 (autonomous agent)"

_SECRET_ASSIGNMENT = re.compile(
    r"(\b(?:password|passwd|secret|token|key|api_key|apikey)\s*[=:]\s*)\S+",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(\bBearer\s+)\S+", re.IGNORECASE)


# ─── Deadline ──────────────────────────────────────────────


@dataclass(frozen=True)
class Deadline:
    expires_at: float  # time.monotonic()
    timeout_seconds: float

    def remaining(self) -> float:
        return self.expires_at - time.monotonic()


_current_deadline: ContextVar[Deadline | None] = ContextVar("openentity_tool_deadline", default=None)


@contextlib.contextmanager
def deadline_scope(timeout_seconds: float) -> Iterator[Deadline]:
    """Install a deadline for the tool call running in this context."""
    deadline = Deadline(time.monotonic() + timeout_seconds, timeout_seconds)
    token = _current_deadline.set(deadline)
    try:
        yield deadline
    finally:
        _current_deadline.reset(token)


def check_deadline() -> None:
    """Raise ToolTimeoutError if the current tool call is past its deadline."""
    deadline = _current_deadline.get()
    if deadline is not None and deadline.remaining() <= 0:
        raise ToolTimeoutError(deadline.timeout_seconds)


def _bounded_timeout(limit: float) -> float:
    """The smaller of a capability's own timeout and the call's remaining time."""
    deadline = _current_deadline.get()
    if deadline is None:
        return limit
    return max(0.001, min(limit, deadline.remaining()))


def redact_command(command: str) -> str:
    """Mask credential-looking assignments (token=..., Bearer ...) in a command line."""
    return _BEARER.sub(r"\1[REDACTED]", _SECRET_ASSIGNMENT.sub(r"\1[REDACTED]", command))


# ─── Filesystem ────────────────────────────────────────────


def _confine(roots: tuple[str, ...], path: str | Path) -> Path:
    """Resolve a path and check it against the allowlist.

    Relative paths are taken relative to the first allowed root.
    """
    check_deadline()
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        if not roots:
            raise FilesystemBoundaryError(str(path), [])
        candidate = Path(roots[0]) / candidate
    resolved = candidate.resolve()
    if not any(resolved == Path(root) or resolved.is_relative_to(root) for root in roots):
        raise FilesystemBoundaryError(str(path), list(roots))
    return resolved


class FileAccess:
    """Filesystem access confined to a set of allowed directory prefixes.

    Public methods take and return strings and plain data only. Resolved
    Path objects stay inside the methods; the instance itself holds only
    the root strings.
    """

    __slots__ = ("_roots",)

    def __init__(self, allowed_paths: list[str] | tuple[str, ...]):
        self._roots = tuple(str(Path(p).expanduser().resolve()) for p in allowed_paths)

    @property
    def allowed_roots(self) -> list[str]:
        return list(self._roots)

    def check(self, path: str) -> str:
        """Resolved absolute path as a string, or FilesystemBoundaryError."""
        return str(_confine(self._roots, path))

    def read(self, path: str | Path, max_bytes: int = MAX_READ_BYTES) -> str:
        target = _confine(self._roots, path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        size = target.stat().st_size
        if size > max_bytes:
            raise ValueError(f"File too large ({size} bytes). Max {max_bytes} bytes.")
        return target.read_text(encoding="utf-8", errors="replace")

    def write(self, path: str | Path, content: str, append: bool = False) -> int:
        """Write text, creating parent directories. Returns characters written."""
        target = _confine(self._roots, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a" if append else "w", encoding="utf-8") as fh:
            return fh.write(content)

    def list(self, path: str | Path = ".") -> list[dict[str, Any]]:
        target = _confine(self._roots, path)
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        entries = []
        for child in sorted(target.iterdir()):
            entries.append({
                "name": child.name,
                "type": "directory" if child.is_dir() else "file",
                "size": child.stat().st_size if child.is_file() else None,
            })
        return entries

    def exists(self, path: str | Path) -> bool:
        return _confine(self._roots, path).exists()

    def delete(self, path: str | Path) -> bool:
        """Delete a file or an empty directory. Returns False if nothing was there."""
        target = _confine(self._roots, path)
        if str(target) in self._roots:
            raise FilesystemBoundaryError(str(path), self.allowed_roots)
        if not target.exists():
            return False
        if target.is_dir():
            target.rmdir()
        else:
            target.unlink()
        return True


# ─── Processes ─────────────────────────────────────────────


@dataclass(frozen=True)
class ProcessResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass(frozen=True)
class ProcessPolicy:
    """Operator-granted process execution limits. Immutable once built."""

    enabled: bool = False
    allowed_commands: tuple[str, ...] = ()
    timeout_seconds: float = 60.0
    max_output_chars: int = 25000
    working_dir: str | None = None


class ProcessRunner:
    """Runs external commands on behalf of a tool.

    Disabled unless enabled by the operator. With an empty allowlist an
    enabled runner accepts any command; otherwise the command's first word
    must be on the list. The policy is read-only for tool code.
    """

    __slots__ = ("_policy",)

    def __init__(
        self,
        enabled: bool = False,
        allowed_commands: list[str] | tuple[str, ...] | None = None,
        timeout_seconds: float = 60.0,
        max_output_chars: int = 25000,
        working_dir: str | None = None,
    ):
        self._policy = ProcessPolicy(
            enabled=enabled,
            allowed_commands=tuple(allowed_commands or ()),
            timeout_seconds=timeout_seconds,
            max_output_chars=max_output_chars,
            working_dir=working_dir,
        )

    @property
    def enabled(self) -> bool:
        return self._policy.enabled

    @property
    def allowed_commands(self) -> tuple[str, ...]:
        return self._policy.allowed_commands

    @property
    def timeout_seconds(self) -> float:
        return self._policy.timeout_seconds

    def check(self, command: str | list[str]) -> list[str]:
        """Split a command and check it against the policy. Returns argv."""
        display = command if isinstance(command, str) else shlex.join(command)
        if not self.enabled:
            raise CommandNotAllowedError(redact_command(display), "process execution is disabled")
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise CommandNotAllowedError("", "empty command")
        program = Path(argv[0]).name
        if self.allowed_commands and program not in self.allowed_commands:
            raise CommandNotAllowedError(
                redact_command(display),
                f"'{program}' is not in the allowed commands list",
            )
        return argv

    def run(
        self,
        command: str | list[str],
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        check_deadline()
        argv = self.check(command)
        limit = _bounded_timeout(timeout or self._policy.timeout_seconds)
        shown = redact_command(shlex.join(argv))
        workdir = cwd or self._policy.working_dir or tempfile.gettempdir()

        logger.info("Command executing", extra={"command": shown, "_extra": {"cwd": workdir, "timeout": limit}})

        env = {
            "PATH": "/usr/local/bin:/usr/bin:/bin",
            "HOME": tempfile.gettempdir(),
            "LANG": "en_US.UTF-8",
        }
        try:
            completed = subprocess.run(
                argv,
                cwd=workdir,
                env=env,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Command timed out", extra={"command": shown})
            return ProcessResult(
                command=shown,
                exit_code=-1,
                stdout=self._truncate(_as_text(e.stdout)),
                stderr=f"Command timed out after {limit:.1f}s",
                timed_out=True,
            )

        logger.info(
            "Command completed",
            extra={"command": shown, "_extra": {"exit_code": completed.returncode}},
        )
        return ProcessResult(
            command=shown,
            exit_code=completed.returncode,
            stdout=self._truncate(completed.stdout),
            stderr=self._truncate(completed.stderr),
        )

    def _truncate(self, text: str) -> str:
        limit = self._policy.max_output_chars
        if len(text) > limit:
            return text[:limit] + f"\n[TRUNCATED at {limit} chars]"
        return text


def _as_text(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ─── HTTP ──────────────────────────────────────────────────


@dataclass(frozen=True)
class HttpResponse:
    url: str
    status: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def json(self) -> Any:
        return jsonlib.loads(self.text)


UrlPolicy = Callable[[str], bool]


class HttpClient:
    """Outbound HTTP for tools.

    Uses urllib. Performs no domain allowlisting itself; a host that wants
    one passes a url_policy returning False for URLs to block.
    """

    __slots__ = ("_timeout_seconds", "_url_policy", "_max_response_chars")

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        url_policy: UrlPolicy | None = None,
        max_response_chars: int = 25000,
    ):
        self._timeout_seconds = timeout_seconds
        self._url_policy = url_policy
        self._max_response_chars = max_response_chars

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def check(self, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise NetworkNotAllowedError(url, "only absolute http(s) URLs are allowed")
        if self._url_policy is not None and not self._url_policy(url):
            raise NetworkNotAllowedError(url, "rejected by url policy")

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | bytes | None = None,
        json: Any = None,
    ) -> HttpResponse:
        """Perform a request. HTTP error statuses are returned, not raised."""
        check_deadline()
        self.check(url)

        req_headers = {"User-Agent": USER_AGENT, **(headers or {})}
        data: bytes | None = None
        if json is not None:
            data = jsonlib.dumps(json).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")
        elif body is not None:
            data = body.encode("utf-8") if isinstance(body, str) else body

        req = Request(url, data=data, headers=req_headers, method=method.upper())
        try:
            with urlopen(req, timeout=_bounded_timeout(self._timeout_seconds)) as resp:  # noqa: S310
                text = resp.read().decode("utf-8", errors="replace")
                return HttpResponse(
                    url=url,
                    status=resp.status,
                    text=self._truncate(text),
                    headers=dict(resp.headers.items()),
                )
        except HTTPError as e:
            text = e.read().decode("utf-8", errors="replace")
            return HttpResponse(url=url, status=e.code, text=self._truncate(text), headers=dict(e.headers.items()))
        except URLError as e:
            raise ConnectionError(f"Connection error: {e.reason}") from e

    def get(self, url: str, headers: dict[str, str] | None = None) -> HttpResponse:
        return self.request("GET", url, headers=headers)

    def post(self, url: str, json: Any = None, headers: dict[str, str] | None = None) -> HttpResponse:
        return self.request("POST", url, headers=headers, json=json)

    def _truncate(self, text: str) -> str:
        if len(text) > self._max_response_chars:
            return text[: self._max_response_chars] + "\n[TRUNCATED]"
        return text


# ─── Context ───────────────────────────────────────────────


class ToolContext:
    """Capability bundle handed to a tool instance.

    Each compiled tool gets its own context. Capabilities are read-only
    properties; tools cannot swap or reconfigure them.
    """

    __slots__ = ("_files", "_process", "_http")

    def __init__(self, files: FileAccess, process: ProcessRunner, http: HttpClient):
        self._files = files
        self._process = process
        self._http = http

    @property
    def files(self) -> FileAccess:
        return self._files

    @property
    def process(self) -> ProcessRunner:
        return self._process

    @property
    def http(self) -> HttpClient:
        return self._http

    @classmethod
    def from_settings(cls, settings: SandboxSettings, url_policy: UrlPolicy | None = None) -> ToolContext:
        return cls(
            files=FileAccess(settings.allowed_paths),
            process=ProcessRunner(
                enabled=settings.process_enabled,
                allowed_commands=settings.allowed_commands,
                timeout_seconds=settings.command_timeout_seconds,
                max_output_chars=settings.max_output_chars,
                working_dir=settings.allowed_paths[0] if settings.allowed_paths else None,
            ),
            http=HttpClient(
                timeout_seconds=settings.http_timeout_seconds,
                url_policy=url_policy,
                max_response_chars=settings.max_output_chars,
            ),
        )

    @staticmethod
    def check_deadline() -> None:
        check_deadline()

    @staticmethod
    def remaining_seconds() -> float | None:
        deadline = _current_deadline.get()
        return deadline.remaining() if deadline else None
