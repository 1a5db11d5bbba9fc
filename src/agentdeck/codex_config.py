"""Register the feature tool server in the Codex CLI's config.toml.

Codex reads MCP servers from `.codex/config.toml` in the project (when it
exists) or from the user-level `~/.codex/config.toml`. Unrelated keys are
preserved on rewrite.
"""

import logging
import tomllib
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .config import get_codex_home
from .fileio import atomic_write_text
from .gateway import TOOL_NAME
from .tool_server import TOOL_SERVER_NAME, tool_server_launch_spec

logger = logging.getLogger(__name__)


def get_config_path(project_path: str | Path) -> Path:
    """Project-level config if present, otherwise the user-level one."""
    project_config = Path(project_path) / ".codex" / "config.toml"
    if project_config.exists():
        return project_config
    return get_codex_home() / "config.toml"


def read_config(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}


def write_config(config_path: Path, config: dict[str, Any]) -> None:
    atomic_write_text(config_path, tomli_w.dumps(config))


def configure_tool_server(project_path: str | Path) -> Path:
    """Add or refresh the agentdeck-tools entry. Returns the config path written."""
    config_path = get_config_path(project_path)
    config = read_config(config_path)

    spec = tool_server_launch_spec(project_path)
    servers = config.setdefault("mcp_servers", {})
    servers[TOOL_SERVER_NAME] = {
        "command": spec["command"],
        "args": spec["args"],
        "startup_timeout_sec": 10,
        "tool_timeout_sec": 60,
        "enabled_tools": [TOOL_NAME],
        "env": spec["env"],
    }
    config["experimental_use_rmcp_client"] = True

    write_config(config_path, config)
    logger.info("Configured %s MCP server in %s", TOOL_SERVER_NAME, config_path)
    return config_path


def remove_tool_server(project_path: str | Path) -> Optional[Path]:
    """Drop the agentdeck-tools entry. Returns the path rewritten, or None if absent."""
    config_path = get_config_path(project_path)
    config = read_config(config_path)

    servers = config.get("mcp_servers", {})
    if TOOL_SERVER_NAME not in servers:
        return None

    del servers[TOOL_SERVER_NAME]
    if not servers:
        del config["mcp_servers"]

    write_config(config_path, config)
    logger.info("Removed %s MCP server from %s", TOOL_SERVER_NAME, config_path)
    return config_path
