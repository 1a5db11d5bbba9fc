"""Tests for the Cursor agent backend."""

import json

from agentdeck.backends.cursor import CursorProvider
from agentdeck.provider import ProviderRun


class TestCursorProvider:
    """Tests for CursorProvider."""

    def test_system_line_carries_session(self):
        events = CursorProvider().parse_line(json.dumps({
            "type": "system", "subtype": "init", "session_id": "cur-1", "model": "auto",
        }))
        assert events[0].type == "session"
        assert events[0].metadata["session_id"] == "cur-1"

    def test_assistant_text_blocks_are_joined(self):
        events = CursorProvider().parse_line(json.dumps({
            "type": "assistant",
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Fixed the login "},
                {"type": "text", "text": "authentication bug."},
            ]},
        }))
        assert [(e.type, e.content) for e in events] == [("text", "Fixed the login authentication bug.")]

    def test_tool_call_started_and_completed(self):
        provider = CursorProvider()
        started = provider.parse_line(json.dumps({
            "type": "tool_call", "subtype": "started", "call_id": "c1",
            "tool_call": {"readToolCall": {"args": {"path": "src/auth.ts"}}},
        }))
        assert started[0].type == "tool_call"
        assert started[0].content == "read: src/auth.ts"

        completed = provider.parse_line(json.dumps({
            "type": "tool_call", "subtype": "completed", "call_id": "c1",
            "tool_call": {"readToolCall": {"args": {"path": "src/auth.ts"}, "result": {"success": {"content": "..."}}}},
        }))
        assert completed[0].type == "tool_result"
        assert completed[0].metadata == {"tool_use_id": "c1", "is_error": False}

    def test_failed_tool_call(self):
        events = CursorProvider().parse_line(json.dumps({
            "type": "tool_call", "subtype": "completed", "call_id": "c2",
            "tool_call": {"shellToolCall": {"args": {"command": "make"}, "result": {"failure": {"exitCode": 2}}}},
        }))
        assert events[0].content == "shell: failed"
        assert events[0].metadata["is_error"] is True

    def test_result(self):
        provider = CursorProvider()
        assert provider.parse_line(json.dumps({"type": "result", "subtype": "success"}))[0].type == "complete"
        assert provider.parse_line(json.dumps({"type": "result", "is_error": True, "result": "denied"}))[0].content == "denied"

    def test_images_are_dropped(self, tmp_path):
        run = ProviderRun("s", str(tmp_path), str(tmp_path), "cursor-agent", resume_id="cur-1")
        command = CursorProvider().build_command(run, "Look", "auto", ["/tmp/a.png"])
        assert "/tmp/a.png" not in " ".join(command)
        assert command[command.index("--resume") + 1] == "cur-1"
        assert command[-1] == "Look"

    def test_models_do_not_accept_images(self):
        assert not any(m.supports_vision for m in CursorProvider().list_models())

    def test_install_commands_use_script(self):
        commands = CursorProvider().install_commands()
        assert "cursor.com/install" in commands["linux"]
