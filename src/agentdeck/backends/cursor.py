"""Cursor agent CLI backend.

Drives `cursor-agent -p --output-format stream-json`. The stream mirrors
Claude Code's shape ("system" init, "assistant" content blocks, "result"),
with tool activity reported as separate "tool_call" lines whose subtype is
"started" or "completed".
"""

import logging
from pathlib import Path

from ..config import get_cursor_home
from ..core import AgentEvent, ModelDefinition, ProviderCapabilities
from ..provider import AgentProvider, ProviderRun, parse_json_line

logger = logging.getLogger(__name__)


class CursorProvider(AgentProvider):
    """Provider for the Cursor agent CLI."""

    name = "cursor"
    display_name = "Cursor Agent"
    executable = "cursor-agent"
    api_key_env = ("CURSOR_API_KEY",)
    status_command = ("status",)
    status_markers = ("Logged in", "Authenticated")
    token_containers = ("authInfo",)
    token_fields = ("accessToken", "refreshToken")
    key_fields = ("apiKey",)
    capabilities = ProviderCapabilities(supports_vision=False, supports_tools=True, streaming=True)
    models = (
        ModelDefinition("auto", "Cursor Auto", "cursor", 200000, 16384, False, True),
        ModelDefinition("sonnet-4", "Claude Sonnet 4 (Cursor)", "cursor", 200000, 16384, False, True),
        ModelDefinition("gpt-5", "GPT-5 (Cursor)", "cursor", 272000, 32768, False, True),
    )

    def get_auth_path(self) -> Path:
        return get_cursor_home() / "cli-config.json"

    def install_commands(self) -> dict[str, str]:
        script = "curl https://cursor.com/install -fsS | bash"
        return {"macos": script, "linux": script}

    def build_command(
        self, run: ProviderRun, prompt: str, model: str, image_paths: list[str]
    ) -> list[str]:
        if image_paths:
            logger.warning("Cursor agent does not accept images; ignoring %d attachment(s)", len(image_paths))
        command = [
            run.executable, "-p",
            "--output-format", "stream-json",
            "--model", model,
        ]
        if run.resume_id:
            command += ["--resume", run.resume_id]
        command.append(prompt)
        return command

    def parse_line(self, line: str) -> list[AgentEvent]:
        entry = parse_json_line(line)
        if entry is None:
            return []

        entry_type = entry.get("type", "")

        if entry_type == "system":
            session_id = entry.get("session_id")
            return [AgentEvent("session", metadata={"session_id": session_id})] if session_id else []

        if entry_type == "assistant":
            content = entry.get("message", {}).get("content", [])
            if isinstance(content, str):
                text = content
            else:
                text = "".join(
                    block.get("text", "") for block in content
                    if isinstance(block, dict) and block.get("type") == "text"
                )
            return [AgentEvent("text", text)] if text.strip() else []

        if entry_type == "tool_call":
            return self._parse_tool_call(entry)

        if entry_type == "result":
            if entry.get("is_error") or entry.get("subtype") not in (None, "success"):
                return [AgentEvent("error", str(entry.get("result") or "Cursor agent reported an error"))]
            return [AgentEvent("complete", metadata={"session_id": entry.get("session_id", "")})]

        return []

    def _parse_tool_call(self, entry: dict) -> list[AgentEvent]:
        call = entry.get("tool_call") or {}
        # Shape: {"readToolCall": {"args": {...}, "result": {...}}}
        kind, body = next(iter(call.items()), ("unknown", {}))
        if not isinstance(body, dict):
            body = {}
        tool_name = kind.removesuffix("ToolCall") or "unknown"
        call_id = entry.get("call_id", "")

        if entry.get("subtype") == "started":
            args = body.get("args") or {}
            target = args.get("path") or args.get("command") or ""
            summary = f"{tool_name}: {target}" if target else tool_name
            return [AgentEvent("tool_call", summary, metadata={"tool_name": tool_name, "tool_use_id": call_id})]

        if entry.get("subtype") == "completed":
            result = body.get("result") or {}
            failed = "error" in result or "failure" in result
            return [AgentEvent(
                "tool_result",
                f"{tool_name}: {'failed' if failed else 'done'}",
                metadata={"tool_use_id": call_id, "is_error": failed},
            )]

        return []
