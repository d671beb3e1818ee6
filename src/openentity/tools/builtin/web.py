"""Web tool: HTTP requests through ToolContext.http."""

from __future__ import annotations

import json
from typing import Any

from openentity.tools.base import Tool

METHODS = ["GET", "POST", "PUT", "DELETE"]


class WebTool(Tool):
    def name(self) -> str:
        return "web"

    def description(self) -> str:
        return (
            "Execute HTTP requests (GET, POST, PUT, DELETE). "
            "Can load web pages, call APIs, and send data."
        )

    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "method": {
                    "type": "string",
                    "enum": METHODS,
                    "description": "HTTP method",
                },
                "url": {
                    "type": "string",
                    "description": "The URL for the request",
                },
                "headers": {
                    "type": "object",
                    "description": "Optional: HTTP headers",
                },
                "body": {
                    "type": "object",
                    "description": "Optional: JSON request body for POST/PUT",
                },
            },
            "required": ["method", "url"],
        }

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        url = str(params.get("url", ""))
        if not url.startswith(("http://", "https://")):
            return {"valid": False, "errors": ["url must start with http:// or https://"]}
        return {"valid": True, "errors": []}

    def execute(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.context.http.request(
                params["method"],
                params["url"],
                headers=params.get("headers"),
                json=params.get("body"),
            )
        except ConnectionError as e:
            return {"success": False, "result": None, "error": str(e)}

        body: Any = response.text
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                body = json.loads(response.text)
            except ValueError:
                pass  # truncated or malformed; keep the text

        result = {"status": response.status, "body": body}
        if not response.ok:
            return {"success": False, "result": result, "error": f"HTTP {response.status}"}
        return {"success": True, "result": result, "error": None}
