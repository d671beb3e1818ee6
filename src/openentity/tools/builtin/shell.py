"""Shell tool: run a command through ToolContext.process.

Only registered when process execution is enabled. The command policy
(allowlist, timeout, redacted logging) is enforced by ProcessRunner.
"""

from __future__ import annotations

from typing import Any

from openentity.tools.base import Tool


class ShellTool(Tool):
    def name(self) -> str:
        return "shell"

    def description(self) -> str:
        runner = self.context.process if self.context else None
        allowed = ", ".join(runner.allowed_commands) if runner and runner.allowed_commands else "any"
        return (
            "Execute shell commands. "
            f"Allowed commands: {allowed}. "
            "USE WHEN: You need system-level access, run scripts, or check system state."
        )

    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command to execute",
                },
                "working_directory": {
                    "type": "string",
                    "description": "Optional: Working directory for the command",
                },
                "timeout": {
                    "type": "integer",
                    "description": "Optional: Timeout in seconds",
                },
            },
            "required": ["command"],
        }

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        if not str(params.get("command", "")).strip():
            return {"valid": False, "errors": ["command is required"]}
        return {"valid": True, "errors": []}

    def execute(self, params: dict[str, Any]) -> dict[str, Any]:
        cwd = params.get("working_directory")
        if cwd:
            cwd = self.context.files.check(cwd)

        result = self.context.process.run(params["command"], cwd=cwd, timeout=params.get("timeout"))
        payload = {
            "exit_code": result.exit_code,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
        if result.timed_out:
            return {"success": False, "result": payload, "error": result.stderr}
        return {
            "success": result.ok,
            "result": payload,
            "error": None if result.ok else f"Command exited with code {result.exit_code}",
        }
