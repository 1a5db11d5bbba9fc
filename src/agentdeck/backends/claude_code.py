"""Claude Code agent backend.

Drives the `claude` CLI in print mode with `--output-format stream-json`.
Each stdout line is one JSON object:

- "system" (subtype "init"): carries the CLI's session_id, used to resume.
- "assistant": content array of text, thinking and tool_use blocks.
  A single line can produce multiple events (text + tool calls).
- "user": tool_result blocks echoed back after tool execution.
- "result": end of the turn; `is_error` marks a failed turn.
"""

import json
import logging
from pathlib import Path

from ..config import get_claude_home, get_project_state_dir
from ..core import AgentEvent, ModelDefinition, ProviderCapabilities
from ..provider import AgentProvider, ProviderRun, parse_json_line
from ..tool_server import TOOL_NAME, TOOL_SERVER_NAME, tool_server_launch_spec

logger = logging.getLogger(__name__)

EDITING_TOOLS = ("Read", "Glob", "Grep", "Edit", "Write", "Bash")


class ClaudeCodeProvider(AgentProvider):
    """Provider for the Claude Code CLI."""

    name = "claude_code"
    display_name = "Claude Code"
    executable = "claude"
    npm_package = "@anthropic-ai/claude-code"
    api_key_env = ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN")
    token_containers = ("claudeAiOauth",)
    token_fields = ("accessToken", "refreshToken")
    key_fields = ("primaryApiKey", "apiKey")
    capabilities = ProviderCapabilities(supports_vision=True, supports_tools=True, streaming=True)
    models = (
        ModelDefinition("claude-sonnet-4-20250514", "Claude Sonnet 4", "claude_code", 200000, 16384, True, True),
        ModelDefinition("claude-opus-4-5-20251101", "Claude Opus 4.5", "claude_code", 200000, 16384, True, True),
        ModelDefinition("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "claude_code", 200000, 8192, True, True),
        ModelDefinition("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", "claude_code", 200000, 8192, True, True),
    )

    def get_auth_path(self) -> Path:
        return get_claude_home() / ".credentials.json"

    def common_paths(self) -> list[Path]:
        return [get_claude_home() / "local" / "claude", *super().common_paths()]

    def configure_tools(self, run: ProviderRun) -> None:
        """Write an MCP config file and pass it to the CLI with --mcp-config."""
        config_path = get_project_state_dir(run.project_path) / "mcp.json"
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config = {"mcpServers": {TOOL_SERVER_NAME: tool_server_launch_spec(run.project_path)}}
        config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
        run.extra["mcp_config"] = str(config_path)

    def build_command(
        self, run: ProviderRun, prompt: str, model: str, image_paths: list[str]
    ) -> list[str]:
        if image_paths:
            # Print mode has no attachment flag; the agent reads images with its Read tool.
            listing = "\n".join(f"- {p}" for p in image_paths)
            prompt = f"{prompt}\n\nAttached images:\n{listing}"

        command = [
            run.executable, "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--model", model,
        ]
        if run.resume_id:
            command += ["--resume", run.resume_id]

        # Print mode cannot prompt, so anything not pre-approved is denied.
        allowed = list(EDITING_TOOLS)
        if run.extra.get("mcp_config"):
            command += ["--mcp-config", run.extra["mcp_config"]]
            allowed.append(f"mcp__{TOOL_SERVER_NAME}__{TOOL_NAME}")
        state_dir = get_project_state_dir(run.project_path).resolve()
        command += [
            "--permission-mode", "acceptEdits",
            "--allowedTools", ",".join(allowed),
            "--disallowedTools", f"Edit(/{state_dir}/**),Write(/{state_dir}/**)",
        ]
        return command

    def parse_line(self, line: str) -> list[AgentEvent]:
        entry = parse_json_line(line)
        if entry is None:
            return []

        entry_type = entry.get("type", "")

        if entry_type == "system":
            if entry.get("subtype") == "init" and entry.get("session_id"):
                return [AgentEvent("session", metadata={"session_id": entry["session_id"]})]
            return []

        if entry_type == "assistant":
            return self._parse_assistant_entry(entry)

        if entry_type == "user":
            return self._parse_tool_results(entry)

        if entry_type == "result":
            if entry.get("is_error") or str(entry.get("subtype", "")).startswith("error"):
                message = entry.get("result") or entry.get("subtype") or "Claude Code reported an error"
                return [AgentEvent("error", str(message))]
            return [AgentEvent("complete", metadata={
                "session_id": entry.get("session_id", ""),
                "duration_ms": entry.get("duration_ms"),
            })]

        return []

    # ── Private helpers ──────────────────────────────────────────────

    def _parse_assistant_entry(self, entry: dict) -> list[AgentEvent]:
        """Parse an assistant entry.

        Text blocks are merged into one event emitted before the tool calls,
        thinking blocks become their own events.
        """
        content_blocks = entry.get("message", {}).get("content", [])

        if isinstance(content_blocks, str):
            return [AgentEvent("text", content_blocks)] if content_blocks.strip() else []

        events = []
        text_parts = []

        for block in content_blocks:
            if not isinstance(block, dict):
                continue

            block_type = block.get("type", "")

            if block_type == "text":
                text = block.get("text", "")
                if text.strip():
                    text_parts.append(text)

            elif block_type == "tool_use":
                tool_name = block.get("name", "unknown")
                tool_input = block.get("input", {}) or {}
                events.append(AgentEvent(
                    "tool_call",
                    _summarize_tool_call(tool_name, tool_input),
                    metadata={
                        "tool_name": tool_name,
                        "tool_use_id": block.get("id", ""),
                        "input": tool_input,
                    },
                ))

            elif block_type == "thinking":
                text = block.get("thinking", "")
                if text.strip():
                    events.append(AgentEvent("thinking", text))

        if text_parts:
            events.insert(0, AgentEvent("text", "\n".join(text_parts)))

        return events

    def _parse_tool_results(self, entry: dict) -> list[AgentEvent]:
        content = entry.get("message", {}).get("content", [])
        if not isinstance(content, list):
            return []

        events = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_content = block.get("content", "")
            if isinstance(tool_content, list):
                parts = []
                for sub in tool_content:
                    if isinstance(sub, dict):
                        if sub.get("type") == "image":
                            parts.append("[Image]")
                        elif sub.get("text"):
                            parts.append(sub["text"])
                    elif isinstance(sub, str):
                        parts.append(sub)
                tool_content = "\n".join(parts)

            events.append(AgentEvent(
                "tool_result",
                str(tool_content) if tool_content else "(empty result)",
                metadata={
                    "tool_use_id": block.get("tool_use_id", ""),
                    "is_error": bool(block.get("is_error", False)),
                },
            ))
        return events


def _summarize_tool_call(tool_name: str, tool_input: dict) -> str:
    """Build a readable one-line summary of a tool invocation."""
    file_path = tool_input.get("file_path", tool_input.get("path", ""))
    command = tool_input.get("command", "")
    summary_parts = [tool_name]
    if file_path:
        summary_parts.append(file_path)
    elif command:
        summary_parts.append(command[:100] + ("..." if len(command) > 100 else ""))
    return ": ".join(summary_parts)
