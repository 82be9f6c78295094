from __future__ import annotations

import os
from typing import Any, Dict

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.server import TransportSecuritySettings

from libs.core.errors import PmError
from libs.core.structured_client import StructuredLLMClient
from libs.tools.code_review import review_code


def create_mcp_asgi_app(client: StructuredLLMClient):
    default_hosts = [
        "reviewer",
        "reviewer:8000",
        "localhost",
        "localhost:8000",
        "localhost:*",
        "127.0.0.1",
        "127.0.0.1:8000",
        "127.0.0.1:*",
    ]
    raw_allowed_hosts = os.getenv("MCP_ALLOWED_HOSTS", "")
    allowed_hosts = [h.strip() for h in raw_allowed_hosts.split(",") if h.strip()] or default_hosts
    mcp = FastMCP(
        "pm-reviewer",
        transport_security=TransportSecuritySettings(allowed_hosts=allowed_hosts),
    )

    @mcp.tool()
    def code_review(fileName: str, data: str) -> Dict[str, Any]:  # noqa: N803
        try:
            result = review_code(client, fileName, data)
        except PmError as exc:
            raise RuntimeError(exc.detail) from exc
        return result.model_dump(mode="json")

    mcp_app = mcp.streamable_http_app()
    session_manager = mcp_app.routes[0].app.session_manager
    return mcp_app, session_manager
