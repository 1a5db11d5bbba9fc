"""Tests for shared provider detection, auth checks and the registry."""

import asyncio
import json
import signal
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from agentdeck.backends import PROVIDER_CLASSES, ProviderRegistry
from agentdeck.backends.codex import CodexProvider
from agentdeck.core import InstallationStatus
from agentdeck.errors import ProviderRunError, ProviderUnavailable
from agentdeck.provider import ProviderRun, _run_probe

from conftest import FakeProvider


@pytest.fixture
def no_probes(monkeypatch):
    """Nothing on PATH, no npm/brew, no common install locations."""
    monkeypatch.setattr("agentdeck.provider.shutil.which", lambda name: None)
    monkeypatch.setattr("agentdeck.provider._run_probe", lambda *a, **kw: None)
    monkeypatch.setattr(CodexProvider, "common_paths", lambda self: [])


class TestDetection:
    def test_found_on_path(self, monkeypatch):
        monkeypatch.setattr("agentdeck.provider.shutil.which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr("agentdeck.provider._run_probe", lambda args, **kw: "codex-cli 0.46.0")

        status = CodexProvider().detect_installation()
        assert status.installed
        assert status.path == "/usr/bin/codex"
        assert status.method == "cli"
        assert status.version == "codex-cli 0.46.0"

    def test_found_via_npm(self, monkeypatch):
        outputs = {
            ("npm", "list"): "/usr/lib\n└── @openai/codex@0.46.0",
            ("npm", "prefix"): "/opt/npm",
        }
        monkeypatch.setattr("agentdeck.provider.shutil.which", lambda name: None)
        monkeypatch.setattr("agentdeck.provider._run_probe", lambda args, **kw: outputs.get(tuple(args[:2])))
        monkeypatch.setattr("agentdeck.provider.sys.platform", "linux")

        status = CodexProvider().detect_installation()
        assert status.method == "npm"
        assert status.path == str(Path("/opt/npm") / "bin" / "codex")

    def test_found_in_common_path(self, no_probes, monkeypatch, tmp_path):
        binary = tmp_path / "codex"
        binary.write_text("#!/bin/sh\n")
        monkeypatch.setattr(CodexProvider, "common_paths", lambda self: [tmp_path / "missing", binary])

        status = CodexProvider().detect_installation()
        assert status.installed
        assert status.method == "path"
        assert status.path == str(binary)

    def test_api_key_only(self, no_probes, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        status = CodexProvider().detect_installation()
        assert status.installed
        assert status.method == "api-key-only"
        assert status.has_api_key
        assert status.path is None

    def test_not_installed(self, no_probes, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        status = CodexProvider().detect_installation()
        assert not status.installed
        assert "install_commands" in CodexProvider().installation_info()

    def test_probe_crash_is_absorbed(self, monkeypatch):
        def explode(name):
            raise RuntimeError("probe exploded")

        monkeypatch.setattr("agentdeck.provider.shutil.which", explode)
        status = CodexProvider().detect_installation()
        assert not status.installed
        assert "probe exploded" in status.error

    def test_probe_timeout_is_negative(self, monkeypatch):
        def slow(*args, **kwargs):
            raise subprocess.TimeoutExpired(cmd="codex", timeout=5)

        monkeypatch.setattr("agentdeck.provider.subprocess.run", slow)
        assert _run_probe(["codex", "login", "status"], timeout=5) is None

    def test_start_run_needs_executable(self):
        provider = FakeProvider()
        with pytest.raises(ProviderUnavailable):
            provider.start_run("s", "/tmp", "/tmp", executable="")


class TestAuth:
    def test_cli_status_wins(self, monkeypatch):
        monkeypatch.setattr("agentdeck.provider.shutil.which", lambda name: "/usr/bin/codex")
        monkeypatch.setattr("agentdeck.provider._run_probe", lambda args, **kw: "Logged in using ChatGPT")
        status = CodexProvider().check_auth()
        assert status.authenticated
        assert status.method == "cli_verified"

    def test_env_key_fallback(self, no_probes, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        status = CodexProvider().check_auth()
        assert status.authenticated
        assert status.method == "env"
        assert status.has_env_key

    def test_nothing_configured(self, no_probes, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        status = CodexProvider().check_auth()
        assert not status.authenticated
        assert status.method == "none"

    def test_unreadable_auth_file(self, no_probes, monkeypatch, tmp_path):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        home = tmp_path / "codex-home"
        home.mkdir()
        (home / "auth.json").write_text("{not json")
        status = CodexProvider().check_auth()
        assert not status.authenticated
        assert status.has_auth_file

    def test_empty_tokens_do_not_count(self, no_probes, monkeypatch, tmp_path):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        home = tmp_path / "codex-home"
        home.mkdir()
        (home / "auth.json").write_text(json.dumps({"tokens": {"access_token": ""}, "api_key": None}))
        assert not CodexProvider().check_auth().authenticated


class TestRegistry:
    def test_all_backends_registered(self):
        registry = ProviderRegistry()
        assert registry.provider_ids == ["claude_code", "codex", "cursor", "opencode"]
        assert len(PROVIDER_CLASSES) == 4

    def test_model_catalog(self):
        registry = ProviderRegistry()
        ids = [m.id for m in registry.list_models()]
        assert len(ids) == len(set(ids))
        assert registry.find_model("gpt-5.2").provider == "codex"
        assert registry.provider_for_model("claude-sonnet-4-20250514").name == "claude_code"
        assert registry.find_model("nope") is None
        assert registry.list_models("missing") == []

    def test_installed_detection_is_cached(self):
        provider = FakeProvider()
        registry = ProviderRegistry([provider])
        found = InstallationStatus(installed=True, path=sys.executable, method="cli")
        with patch.object(provider, "detect_installation", return_value=found) as probe:
            registry.detect("fake")
            registry.detect("fake")
            assert probe.call_count == 1
            registry.refresh()
            registry.detect("fake")
            assert probe.call_count == 2

    def test_missing_install_is_probed_again(self):
        provider = FakeProvider()
        registry = ProviderRegistry([provider])
        with patch.object(provider, "detect_installation", return_value=InstallationStatus(installed=False)):
            assert not registry.detect("fake").installed
        found = InstallationStatus(installed=True, path=sys.executable, method="cli")
        with patch.object(provider, "detect_installation", return_value=found):
            assert registry.detect("fake").installed

    def test_login_after_failed_auth_check_is_seen(self, monkeypatch):
        monkeypatch.setattr("agentdeck.provider.shutil.which", lambda name: None)
        monkeypatch.delenv("FAKE_AGENT_API_KEY", raising=False)
        registry = ProviderRegistry([FakeProvider()])
        assert not registry.check_auth("fake").authenticated

        monkeypatch.setenv("FAKE_AGENT_API_KEY", "k")
        status = registry.check_auth("fake")
        assert status.authenticated
        assert status.method == "env"

        # Once authenticated, the result is reused until refresh().
        monkeypatch.delenv("FAKE_AGENT_API_KEY")
        assert registry.check_auth("fake").authenticated
        registry.refresh()
        assert not registry.check_auth("fake").authenticated

    def test_unknown_provider(self):
        registry = ProviderRegistry([FakeProvider()])
        assert not registry.detect("nope").installed
        assert not registry.check_auth("nope").authenticated

    def test_status_shape(self, monkeypatch):
        monkeypatch.setattr("agentdeck.provider.shutil.which", lambda name: None)
        monkeypatch.setattr("agentdeck.provider._run_probe", lambda *a, **kw: None)
        monkeypatch.setenv("FAKE_AGENT_API_KEY", "k")
        status = ProviderRegistry([FakeProvider()]).status()["fake"]
        assert status["installed"] is True
        assert status["authenticated"] is True
        assert status["auth_method"] == "env"
        assert status["capabilities"]["supports_vision"] is True
        assert status["installation"]["status"] == "api_key_only"
        assert "not installed" in status["installation"]["recommendation"]


class TestSendTurn:
    """The shared subprocess lifecycle, run against the stand-in CLI."""

    @pytest.mark.asyncio
    async def test_events_in_output_order(self, tmp_path):
        provider = FakeProvider()
        run = provider.start_run("s", str(tmp_path), str(tmp_path), executable=sys.executable)
        events = [e async for e in provider.send_turn(run, "one two three", "fake-model")]

        assert [e.type for e in events] == ["session", "text", "text", "text"]
        assert [e.content for e in events[1:]] == ["one", "two", "three"]
        assert run.resume_id == "fake-conversation-1"
        assert run.process is None

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self, tmp_path):
        provider = FakeProvider()
        run = provider.start_run("s", str(tmp_path), str(tmp_path), executable=sys.executable)
        seen = []
        with pytest.raises(ProviderRunError) as exc:
            async for event in provider.send_turn(run, "crash", "fake-model"):
                seen.append(event.content)
        assert "partial" in seen
        assert exc.value.exit_code == 3

    @pytest.mark.asyncio
    async def test_launch_failure(self, tmp_path):
        provider = FakeProvider()
        provider.build_command = lambda run, prompt, model, images: [str(tmp_path / "no-such-cli")]
        run = ProviderRun("s", str(tmp_path), str(tmp_path), "no-such-cli")
        with pytest.raises(ProviderRunError, match="Failed to launch"):
            async for _ in provider.send_turn(run, "hi", "fake-model"):
                pass

    @pytest.mark.asyncio
    async def test_cancel_idle_run_is_noop(self, tmp_path):
        run = ProviderRun("s", str(tmp_path), str(tmp_path), sys.executable)
        await FakeProvider().cancel_run(run, grace_period=0.1)
        assert run.cancelled

    @pytest.mark.asyncio
    async def test_cancel_kills_process_that_ignores_terminate(self, tmp_path):
        provider = FakeProvider()
        run = provider.start_run("s", str(tmp_path), str(tmp_path), executable=sys.executable)
        seen = []

        async def consume():
            async for event in provider.send_turn(run, "stubborn task", "fake-model"):
                seen.append(event.content)

        consumer = asyncio.create_task(consume())
        while "working" not in seen:
            await asyncio.sleep(0.02)
        process = run.process

        loop = asyncio.get_running_loop()
        started = loop.time()
        await provider.cancel_run(run, grace_period=0.3)
        elapsed = loop.time() - started

        assert 0.25 <= elapsed < 5
        assert process.returncode == -signal.SIGKILL
        await asyncio.wait_for(consumer, 5)
