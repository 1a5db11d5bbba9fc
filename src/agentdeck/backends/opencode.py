"""OpenCode agent backend.

Drives `opencode run --format json`. Every stdout line is an event wrapping
one message part:

- "step_start" / "step_finish": lifecycle markers; both carry sessionID.
- "text": an assistant text part.
- "tool_use": a tool part, {"tool": "grep", "state": {"status", "input", "output"}}.
- "error": the run failed.

The process exiting cleanly is what ends the turn.
"""

import logging
from pathlib import Path

from ..config import get_opencode_home
from ..core import AgentEvent, ModelDefinition, ProviderCapabilities
from ..provider import AgentProvider, ProviderRun, parse_json_line

logger = logging.getLogger(__name__)


class OpenCodeProvider(AgentProvider):
    """Provider for the OpenCode CLI."""

    name = "opencode"
    display_name = "OpenCode"
    executable = "opencode"
    npm_package = "opencode-ai"
    brew_formula = "opencode"
    api_key_env = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "OPENCODE_API_KEY")
    # auth.json maps provider ids to {"type": "api", "key": ...} or oauth tokens.
    token_containers = ("anthropic", "openai", "opencode")
    token_fields = ("access", "refresh", "key")
    capabilities = ProviderCapabilities(supports_vision=False, supports_tools=True, streaming=True)
    models = (
        ModelDefinition("anthropic/claude-sonnet-4-20250514", "Claude Sonnet 4 (OpenCode)", "opencode", 200000, 16384, False, True),
        ModelDefinition("openai/gpt-5", "GPT-5 (OpenCode)", "opencode", 272000, 32768, False, True),
        ModelDefinition("opencode/big-pickle", "Big Pickle (OpenCode Zen)", "opencode", 200000, 16384, False, True),
    )

    def get_auth_path(self) -> Path:
        return get_opencode_home() / "auth.json"

    def common_paths(self) -> list[Path]:
        return [Path.home() / ".opencode" / "bin" / self.executable, *super().common_paths()]

    def build_command(
        self, run: ProviderRun, prompt: str, model: str, image_paths: list[str]
    ) -> list[str]:
        command = [run.executable, "run", "--format", "json", "--model", model]
        if run.resume_id:
            command += ["--session", run.resume_id]
        for image in image_paths:
            command += ["--file", image]
        command.append(prompt)
        return command

    def parse_line(self, line: str) -> list[AgentEvent]:
        entry = parse_json_line(line)
        if entry is None:
            return []

        entry_type = entry.get("type", "")
        part = entry.get("part") or {}
        events = []

        if entry_type == "step_start" and entry.get("sessionID"):
            events.append(AgentEvent("session", metadata={"session_id": entry["sessionID"]}))

        elif entry_type == "text":
            text = part.get("text", "")
            if text.strip():
                events.append(AgentEvent("text", text))

        elif entry_type == "reasoning":
            text = part.get("text", "")
            if text.strip():
                events.append(AgentEvent("thinking", text))

        elif entry_type == "tool_use":
            events.extend(self._parse_tool_part(part))

        elif entry_type == "error":
            error = entry.get("error") or {}
            message = error.get("data", {}).get("message") if isinstance(error.get("data"), dict) else None
            events.append(AgentEvent("error", message or error.get("name") or "OpenCode reported an error"))

        return events

    def _parse_tool_part(self, part: dict) -> list[AgentEvent]:
        """Split a tool part into the call and, once finished, its result."""
        tool_name = part.get("tool", "unknown")
        state = part.get("state", {}) or {}
        tool_input = state.get("input", {}) or {}
        status = state.get("status", "")
        call_id = part.get("callID", part.get("id", ""))

        summary = f"[Tool: {tool_name}]"
        input_summary = ", ".join(
            f"{k}={v}" for k, v in tool_input.items()
            if isinstance(v, (str, int, bool)) and str(v)
        )
        if input_summary:
            summary = f"[Tool: {tool_name} ({input_summary})]"

        events = [AgentEvent("tool_call", summary, metadata={"tool_name": tool_name, "tool_use_id": call_id})]
        if status in ("completed", "error"):
            output = state.get("output") or state.get("error") or "(empty result)"
            events.append(AgentEvent(
                "tool_result",
                str(output),
                metadata={"tool_use_id": call_id, "is_error": status == "error"},
            ))
        return events
