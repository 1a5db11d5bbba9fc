"""OpenAI Codex CLI agent backend.

Drives `codex exec --json`. Output is JSON lines of thread/turn/item events:

- "thread.started": carries thread_id, used with `exec resume`.
- "item.started" / "item.completed": agent messages, reasoning, shell
  commands, file changes and MCP tool calls.
- "turn.completed" ends the turn; "turn.failed" and "error" fail it.
"""

import json
import logging
from pathlib import Path

from ..codex_config import configure_tool_server
from ..config import get_codex_home
from ..core import AgentEvent, ModelDefinition, ProviderCapabilities
from ..provider import AgentProvider, ProviderRun, parse_json_line
from ..tool_server import TOOL_SERVER_NAME

logger = logging.getLogger(__name__)


class CodexProvider(AgentProvider):
    """Provider for the OpenAI Codex CLI."""

    name = "codex"
    display_name = "OpenAI Codex CLI"
    executable = "codex"
    npm_package = "@openai/codex"
    brew_formula = "codex"
    api_key_env = ("OPENAI_API_KEY",)
    status_command = ("login", "status")
    key_fields = ("api_key", "openai_api_key", "apiKey", "OPENAI_API_KEY")
    capabilities = ProviderCapabilities(supports_vision=True, supports_tools=True, streaming=True)
    models = (
        ModelDefinition("gpt-5.2", "GPT-5.2 (Codex)", "codex", 256000, 32768, True, True),
        ModelDefinition("gpt-5.1-codex-max", "GPT-5.1 Codex Max", "codex", 256000, 32768, True, True),
        ModelDefinition("gpt-5.1-codex", "GPT-5.1 Codex", "codex", 256000, 32768, True, True),
        ModelDefinition("gpt-5.1-codex-mini", "GPT-5.1 Codex Mini", "codex", 256000, 32768, True, True),
        ModelDefinition("gpt-5.1", "GPT-5.1", "codex", 256000, 32768, True, True),
    )

    def get_auth_path(self) -> Path:
        return get_codex_home() / "auth.json"

    def configure_tools(self, run: ProviderRun) -> None:
        run.extra["codex_config"] = str(configure_tool_server(run.project_path))

    def build_command(
        self, run: ProviderRun, prompt: str, model: str, image_paths: list[str]
    ) -> list[str]:
        command = [
            run.executable, "exec",
            "--json",
            "--skip-git-repo-check",
            "--sandbox", "workspace-write",
            "--model", model,
        ]
        if run.working_directory:
            command += ["--cd", run.working_directory]
        if run.enable_tools:
            # config.toml is shared by every run; bind the tool server to this run's project.
            key = f"mcp_servers.{TOOL_SERVER_NAME}.env.AGENTDECK_PROJECT_PATH"
            command += ["-c", f"{key}={json.dumps(run.project_path)}"]
        if image_paths:
            command.append("--image=" + ",".join(image_paths))
        if run.resume_id:
            command += ["resume", run.resume_id]
        command.append(prompt)
        return command

    def parse_line(self, line: str) -> list[AgentEvent]:
        entry = parse_json_line(line)
        if entry is None:
            return []

        entry_type = entry.get("type", "")

        if entry_type == "thread.started":
            thread_id = entry.get("thread_id")
            return [AgentEvent("session", metadata={"session_id": thread_id})] if thread_id else []

        if entry_type == "item.started":
            return self._parse_started_item(entry.get("item") or {})

        if entry_type == "item.completed":
            return self._parse_completed_item(entry.get("item") or {})

        if entry_type == "turn.completed":
            return [AgentEvent("complete", metadata={"usage": entry.get("usage", {})})]

        if entry_type == "turn.failed":
            error = entry.get("error") or {}
            return [AgentEvent("error", error.get("message") or "Codex turn failed")]

        if entry_type == "error":
            return [AgentEvent("error", entry.get("message") or "Codex reported an error")]

        return []

    # ── Private helpers ──────────────────────────────────────────────

    def _parse_started_item(self, item: dict) -> list[AgentEvent]:
        item_type = item.get("type", "")
        if item_type == "command_execution":
            command = item.get("command", "")
            return [AgentEvent("tool_call", f"shell: {command}", metadata={
                "tool_name": "shell", "tool_use_id": item.get("id", ""), "command": command,
            })]
        if item_type == "mcp_tool_call":
            tool = item.get("tool", "unknown")
            return [AgentEvent("tool_call", f"{item.get('server', 'mcp')}: {tool}", metadata={
                "tool_name": tool, "tool_use_id": item.get("id", ""),
            })]
        return []

    def _parse_completed_item(self, item: dict) -> list[AgentEvent]:
        item_type = item.get("type", "")
        item_id = item.get("id", "")

        if item_type == "agent_message":
            text = item.get("text", "")
            return [AgentEvent("text", text)] if text.strip() else []

        if item_type == "reasoning":
            text = item.get("text", "")
            return [AgentEvent("thinking", text)] if text.strip() else []

        if item_type == "command_execution":
            exit_code = item.get("exit_code")
            return [AgentEvent(
                "tool_result",
                item.get("aggregated_output") or "(empty result)",
                metadata={"tool_use_id": item_id, "exit_code": exit_code, "is_error": bool(exit_code)},
            )]

        if item_type == "file_change":
            changes = item.get("changes") or []
            paths = [c.get("path", "") for c in changes if isinstance(c, dict)]
            return [AgentEvent("tool_call", "edit: " + ", ".join(paths), metadata={
                "tool_name": "file_change", "tool_use_id": item_id, "paths": paths,
            })]

        if item_type == "mcp_tool_call":
            failed = item.get("status") == "failed"
            return [AgentEvent(
                "tool_result",
                f"{item.get('tool', 'unknown')}: {item.get('status', 'completed')}",
                metadata={"tool_use_id": item_id, "is_error": failed},
            )]

        if item_type == "error":
            logger.debug("Codex item error: %s", item.get("message"))

        return []
