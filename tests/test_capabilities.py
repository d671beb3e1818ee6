"""Tests for the tool capability helpers: files, processes, HTTP, deadlines."""

import asyncio
import io
import sys
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import pytest

from openentity.config import SandboxSettings
from openentity.exceptions import (
    CommandNotAllowedError,
    FilesystemBoundaryError,
    NetworkNotAllowedError,
    ToolTimeoutError,
)
from openentity.tools import capabilities
from openentity.tools.capabilities import (
    FileAccess,
    HttpClient,
    ProcessRunner,
    ToolContext,
    check_deadline,
    deadline_scope,
    redact_command,
)

# ─── Filesystem ────────────────────────────────────────────


class TestFileAccess:
    def test_relative_paths_resolve_against_first_root(self, workspace):
        files = FileAccess([str(workspace)])
        checked = files.check("a/b.txt")
        assert checked == str(workspace.resolve() / "a" / "b.txt")
        assert isinstance(checked, str)

    def test_write_read_append(self, workspace):
        files = FileAccess([str(workspace)])
        assert files.write("notes/today.txt", "hello") == 5
        files.write("notes/today.txt", " world", append=True)
        assert files.read("notes/today.txt") == "hello world"
        assert (workspace / "notes" / "today.txt").exists()

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.txt", "~/.ssh/id_rsa"])
    def test_outside_paths_rejected(self, workspace, path):
        files = FileAccess([str(workspace)])
        with pytest.raises(FilesystemBoundaryError):
            files.read(path)

    def test_prefix_sibling_is_not_inside(self, tmp_path):
        (tmp_path / "data").mkdir()
        (tmp_path / "data-secret").mkdir()
        files = FileAccess([str(tmp_path / "data")])
        with pytest.raises(FilesystemBoundaryError):
            files.check(str(tmp_path / "data-secret" / "x"))

    def test_symlink_escape_rejected(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("s3cret")
        (workspace / "link").symlink_to(outside)

        files = FileAccess([str(workspace)])
        with pytest.raises(FilesystemBoundaryError):
            files.read("link/secret.txt")

    def test_boundary_checked_before_io(self, workspace):
        files = FileAccess([str(workspace)])
        with pytest.raises(FilesystemBoundaryError):
            files.write("/tmp/../etc/openentity-test", "x")

    def test_no_roots_means_no_access(self, workspace):
        files = FileAccess([])
        with pytest.raises(FilesystemBoundaryError):
            files.read("x.txt")

    def test_read_missing_and_oversized(self, workspace):
        files = FileAccess([str(workspace)])
        with pytest.raises(FileNotFoundError):
            files.read("missing.txt")
        (workspace / "big.txt").write_text("x" * 100)
        with pytest.raises(ValueError, match="too large"):
            files.read("big.txt", max_bytes=10)

    def test_list_and_exists(self, workspace):
        files = FileAccess([str(workspace)])
        files.write("b.txt", "12")
        (workspace / "a_dir").mkdir()
        assert files.list(".") == [
            {"name": "a_dir", "type": "directory", "size": None},
            {"name": "b.txt", "type": "file", "size": 2},
        ]
        assert files.exists("b.txt")
        assert not files.exists("c.txt")
        with pytest.raises(NotADirectoryError):
            files.list("b.txt")

    def test_delete(self, workspace):
        files = FileAccess([str(workspace)])
        files.write("gone.txt", "x")
        assert files.delete("gone.txt") is True
        assert files.delete("gone.txt") is False

    def test_cannot_delete_root(self, workspace):
        files = FileAccess([str(workspace)])
        with pytest.raises(FilesystemBoundaryError):
            files.delete(str(workspace))


# ─── Processes ─────────────────────────────────────────────


class TestProcessRunner:
    def test_disabled_by_default(self):
        with pytest.raises(CommandNotAllowedError, match="process execution is disabled"):
            ProcessRunner().check("ls -la")

    def test_allowlist_uses_program_basename(self):
        runner = ProcessRunner(enabled=True, allowed_commands=["echo"])
        assert runner.check("/bin/echo hi") == ["/bin/echo", "hi"]
        with pytest.raises(CommandNotAllowedError, match="'rm' is not in the allowed commands list"):
            runner.check("rm -rf /")

    def test_empty_allowlist_allows_everything(self):
        assert ProcessRunner(enabled=True).check(["ls", "-la"]) == ["ls", "-la"]

    def test_empty_command(self):
        with pytest.raises(CommandNotAllowedError, match="empty command"):
            ProcessRunner(enabled=True).check("   ")

    def test_run(self, workspace):
        runner = ProcessRunner(enabled=True, working_dir=str(workspace))
        result = runner.run([sys.executable, "-c", "print('hello')"])
        assert result.ok
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"

    def test_nonzero_exit(self, workspace):
        runner = ProcessRunner(enabled=True, working_dir=str(workspace))
        result = runner.run([sys.executable, "-c", "import sys; sys.exit(3)"])
        assert not result.ok
        assert result.exit_code == 3

    def test_timeout(self, workspace):
        runner = ProcessRunner(enabled=True, timeout_seconds=0.2, working_dir=str(workspace))
        result = runner.run([sys.executable, "-c", "import time; time.sleep(5)"])
        assert result.timed_out
        assert not result.ok

    def test_output_truncated(self, workspace):
        runner = ProcessRunner(enabled=True, max_output_chars=10, working_dir=str(workspace))
        result = runner.run([sys.executable, "-c", "print('x' * 100)"])
        assert result.stdout == "x" * 10 + "\n[TRUNCATED at 10 chars]"

    def test_clean_environment(self, workspace, monkeypatch):
        monkeypatch.setenv("OPENENTITY_TEST_SECRET", "leak")
        runner = ProcessRunner(enabled=True, working_dir=str(workspace))
        result = runner.run([sys.executable, "-c", "import os; print(os.environ.get('OPENENTITY_TEST_SECRET'))"])
        assert result.stdout.strip() == "None"

    def test_logged_command_is_redacted(self, workspace):
        runner = ProcessRunner(enabled=True, working_dir=str(workspace))
        with patch.object(capabilities.logger, "info") as info:
            runner.run([sys.executable, "-c", "pass", "token=abc123"])
        logged = [c.kwargs["extra"]["command"] for c in info.call_args_list]
        assert logged
        assert all("abc123" not in c for c in logged)
        assert all("token=[REDACTED]" in c for c in logged)


class TestRedactCommand:
    @pytest.mark.parametrize(
        "command,expected",
        [
            ("curl -H 'Authorization: Bearer abc.def'", "curl -H 'Authorization: Bearer [REDACTED]"),
            ("deploy --password=hunter2", "deploy --password=[REDACTED]"),
            ("export API_KEY=sk-123", "export API_KEY=[REDACTED]"),
            ("mysql secret: s3", "mysql secret: [REDACTED]"),
            ("ls -la", "ls -la"),
        ],
    )
    def test_redaction(self, command, expected):
        assert redact_command(command) == expected


# ─── HTTP ──────────────────────────────────────────────────


def _response(body: bytes, status: int = 200, headers: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.read.return_value = body
    resp.status = status
    resp.headers.items.return_value = list((headers or {}).items())
    resp.__enter__.return_value = resp
    return resp


class TestHttpClient:
    @pytest.mark.parametrize("url", ["ftp://example.com/x", "file:///etc/passwd", "example.com", "http://"])
    def test_only_http_urls(self, url):
        with pytest.raises(NetworkNotAllowedError):
            HttpClient().check(url)

    def test_url_policy(self):
        client = HttpClient(url_policy=lambda url: "trusted.example" in url)
        client.check("https://trusted.example/api")
        with pytest.raises(NetworkNotAllowedError, match="rejected by url policy"):
            client.check("https://evil.example/api")

    def test_get(self):
        resp = _response(b'{"ok": true}', headers={"Content-Type": "application/json"})
        with patch.object(capabilities, "urlopen", return_value=resp) as urlopen:
            response = HttpClient().get("https://api.example/items")

        assert response.ok
        assert response.json() == {"ok": True}
        request = urlopen.call_args.args[0]
        assert request.get_method() == "GET"
        assert request.get_header("User-agent") == capabilities.USER_AGENT

    def test_post_json(self):
        with patch.object(capabilities, "urlopen", return_value=_response(b"created", status=201)) as urlopen:
            response = HttpClient().post("https://api.example/items", json={"name": "x"})

        request = urlopen.call_args.args[0]
        assert request.get_method() == "POST"
        assert request.data == b'{"name": "x"}'
        assert request.get_header("Content-type") == "application/json"
        assert response.status == 201

    def test_error_status_is_returned(self):
        error = HTTPError("https://api.example/x", 404, "Not Found", {}, io.BytesIO(b"missing"))
        with patch.object(capabilities, "urlopen", side_effect=error):
            response = HttpClient().get("https://api.example/x")
        assert response.status == 404
        assert not response.ok
        assert response.text == "missing"

    def test_connection_error(self):
        with patch.object(capabilities, "urlopen", side_effect=URLError("refused")):
            with pytest.raises(ConnectionError, match="refused"):
                HttpClient().get("https://api.example/x")

    def test_response_truncated(self):
        with patch.object(capabilities, "urlopen", return_value=_response(b"y" * 50)):
            response = HttpClient(max_response_chars=10).get("https://api.example/x")
        assert response.text == "y" * 10 + "\n[TRUNCATED]"


# ─── Deadline ──────────────────────────────────────────────


class TestDeadline:
    def test_no_deadline_outside_a_call(self):
        check_deadline()
        assert ToolContext.remaining_seconds() is None

    def test_expired_deadline_raises(self):
        with deadline_scope(0.0):
            with pytest.raises(ToolTimeoutError):
                check_deadline()

    def test_deadline_is_scoped(self):
        with deadline_scope(10.0):
            remaining = ToolContext.remaining_seconds()
            assert 0 < remaining <= 10.0
        assert ToolContext.remaining_seconds() is None

    @pytest.mark.asyncio
    async def test_deadline_follows_call_into_worker_thread(self):
        with deadline_scope(0.0):
            with pytest.raises(ToolTimeoutError):
                await asyncio.to_thread(check_deadline)

    def test_capabilities_stop_after_deadline(self, workspace):
        files = FileAccess([str(workspace)])
        with deadline_scope(0.0):
            with pytest.raises(ToolTimeoutError):
                files.read("anything.txt")


# ─── Context ───────────────────────────────────────────────


class TestToolContext:
    def test_from_settings(self, workspace):
        settings = SandboxSettings(
            allowed_paths=[str(workspace)],
            process_enabled=True,
            allowed_commands=["git"],
            command_timeout_seconds=12.0,
        )
        context = ToolContext.from_settings(settings)
        assert context.files.allowed_roots == [str(workspace.resolve())]
        assert context.process.enabled
        assert context.process.allowed_commands == ("git",)
        assert context.process.timeout_seconds == 12.0
        assert context.http.timeout_seconds == 30.0

    @pytest.mark.parametrize(
        "owner,attribute,value",
        [
            ("process", "enabled", True),
            ("process", "allowed_commands", ()),
            ("http", "timeout_seconds", 999.0),
            ("context", "files", None),
        ],
    )
    def test_policy_is_read_only(self, workspace, owner, attribute, value):
        context = ToolContext.from_settings(SandboxSettings(allowed_paths=[str(workspace)]))
        target = context if owner == "context" else getattr(context, owner)
        with pytest.raises(AttributeError):
            setattr(target, attribute, value)
        assert context.process.enabled is False

    def test_no_new_attributes(self, workspace):
        context = ToolContext.from_settings(SandboxSettings(allowed_paths=[str(workspace)]))
        with pytest.raises(AttributeError):
            context.files.extra_root = "/"
