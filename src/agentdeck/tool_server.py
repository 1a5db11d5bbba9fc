"""MCP stdio server exposing UpdateFeatureStatus to agent CLIs.

Agents get exactly one tool. The server is bound to the project named by
AGENTDECK_PROJECT_PATH and routes every call through ToolGateway.

Run with: python -m agentdeck.tool_server
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .gateway import TOOL_NAME, ToolGateway

logger = logging.getLogger(__name__)

TOOL_SERVER_NAME = "agentdeck-tools"


def tool_server_launch_spec(project_path: str | Path) -> dict:
    """Command, args and env an agent CLI uses to spawn this server."""
    return {
        "command": sys.executable,
        "args": ["-m", "agentdeck.tool_server"],
        "env": {"AGENTDECK_PROJECT_PATH": str(project_path)},
    }


def create_server(project_path: str | Path, gateway: Optional[ToolGateway] = None) -> FastMCP:
    server = FastMCP(TOOL_SERVER_NAME)
    gateway = gateway or ToolGateway()

    @server.tool(name=TOOL_NAME)
    def update_feature_status(featureId: str, status: str, summary: Optional[str] = None) -> str:
        """Update the status of one feature in the project's feature list.

        status must be one of: backlog, in_progress, verified. Use summary to
        describe what was done. This is the only way to change the feature
        list; never edit the feature list file directly.
        """
        arguments = {"featureId": featureId, "status": status}
        if summary is not None:
            arguments["summary"] = summary
        result = gateway.call_tool(TOOL_NAME, arguments, project_path)
        return json.dumps(result)

    return server


def main() -> None:
    project_path = os.environ.get("AGENTDECK_PROJECT_PATH") or os.getcwd()
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger.info("Serving %s for %s", TOOL_NAME, project_path)
    create_server(project_path).run(transport="stdio")


if __name__ == "__main__":
    main()
