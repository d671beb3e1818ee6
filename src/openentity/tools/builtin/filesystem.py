"""Filesystem tool: read/write/append/delete/list/exists inside the allowed paths.

All I/O goes through ToolContext.files, so a path outside the allowlist
surfaces as a FILESYSTEM_BOUNDARY failure rather than a tool error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from openentity.tools.base import Tool

OPERATIONS = ["read", "write", "append", "delete", "list", "exists"]


class FileSystemTool(Tool):
    def name(self) -> str:
        return "filesystem"

    def description(self) -> str:
        roots = self.context.files.allowed_roots if self.context else []
        access = ", ".join(Path(r).name or r for r in roots) or "none"
        return (
            f"Read and write files. Access to: {access}. "
            "Operations: read, write, append, delete, list, exists."
        )

    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": OPERATIONS,
                    "description": "The operation to execute",
                },
                "path": {
                    "type": "string",
                    "description": "Path inside one of the allowed directories",
                },
                "content": {
                    "type": "string",
                    "description": "Content for write/append operations",
                },
            },
            "required": ["operation", "path"],
        }

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        errors = []
        if not params.get("path"):
            errors.append("path is required")
        if params.get("operation") in ("write", "append") and "content" not in params:
            errors.append("content is required for write/append operations")
        return {"valid": not errors, "errors": errors}

    def execute(self, params: dict[str, Any]) -> dict[str, Any]:
        files = self.context.files
        operation = params["operation"]
        path = params["path"]

        try:
            if operation == "read":
                return {"success": True, "result": files.read(path), "error": None}
            if operation in ("write", "append"):
                written = files.write(path, params["content"], append=operation == "append")
                return {"success": True, "result": f"Written {written} characters to {path}", "error": None}
            if operation == "delete":
                if not files.delete(path):
                    return {"success": False, "result": None, "error": f"File not found: {path}"}
                return {"success": True, "result": f"Deleted {path}", "error": None}
            if operation == "list":
                return {"success": True, "result": files.list(path), "error": None}
            return {"success": True, "result": files.exists(path), "error": None}
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError, ValueError) as e:
            return {"success": False, "result": None, "error": str(e)}
