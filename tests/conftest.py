"""Shared test fixtures for agentdeck."""

import json
import sys
from pathlib import Path

import pytest

from agentdeck.backends import ProviderRegistry
from agentdeck.core import AgentEvent, AuthStatus, InstallationStatus, ModelDefinition, ProviderCapabilities
from agentdeck.events import EventBus
from agentdeck.orchestrator import ConversationOrchestrator
from agentdeck.provider import AgentProvider, ProviderRun
from agentdeck.sessions import SessionStore

# Stand-in agent CLI. Behaviour is picked by the prompt:
#   "crash ..."  prints partial output, then exits 3
#   "fail ..."   reports an error event, then hangs until terminated
#   "slow ..."   prints one line, then hangs until terminated
#   "stubborn ..." ignores SIGTERM, prints one line, then hangs until killed
#   otherwise    prints each word of the prompt as a text event
FAKE_AGENT = r"""
import json, signal, sys, time
prompt = sys.argv[1]
if prompt.startswith("stubborn"):
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
def emit(kind, content=""):
    print(json.dumps({"type": kind, "content": content}), flush=True)
emit("session", "fake-conversation-1")
if prompt.startswith("crash"):
    emit("text", "partial")
    sys.stderr.write("boom\n")
    sys.exit(3)
if prompt.startswith("fail"):
    emit("error", "quota exceeded")
    time.sleep(30)
if prompt.startswith(("slow", "stubborn")):
    emit("text", "working")
    time.sleep(30)
for word in prompt.split():
    emit("text", word)
"""


class FakeProvider(AgentProvider):
    """Runs FAKE_AGENT with the current interpreter instead of a real CLI."""

    name = "fake"
    display_name = "Fake Agent"
    executable = "fake-agent"
    api_key_env = ("FAKE_AGENT_API_KEY",)
    capabilities = ProviderCapabilities(supports_vision=True)
    models = (
        ModelDefinition("fake-model", "Fake Model", "fake", 1000, 100),
        ModelDefinition("fake-vision", "Fake Vision", "fake", 1000, 100, supports_vision=True),
        ModelDefinition("fake-no-tools", "Fake Without Tools", "fake", 1000, 100, supports_tools=False),
    )

    def __init__(self, auth_path: Path | None = None):
        self.auth_path = auth_path or Path("/nonexistent/fake-auth.json")
        self.commands: list[list[str]] = []

    def get_auth_path(self) -> Path:
        return self.auth_path

    def build_command(self, run: ProviderRun, prompt: str, model: str, image_paths: list[str]) -> list[str]:
        command = [sys.executable, "-c", FAKE_AGENT, prompt]
        self.commands.append(command)
        return command

    def parse_line(self, line: str) -> list[AgentEvent]:
        data = json.loads(line)
        if data["type"] == "session":
            return [AgentEvent(type="session", metadata={"session_id": data["content"]})]
        return [AgentEvent(type=data["type"], content=data["content"])]


class OtherFakeProvider(FakeProvider):
    name = "other"
    display_name = "Other Fake Agent"
    models = (ModelDefinition("other-model", "Other Model", "other", 1000, 100),)


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Point every agentdeck path at the test's temporary directory."""
    monkeypatch.setenv("AGENTDECK_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("AGENTDECK_CLAUDE_HOME", str(tmp_path / "claude-home"))
    monkeypatch.setenv("AGENTDECK_CODEX_HOME", str(tmp_path / "codex-home"))
    monkeypatch.setenv("AGENTDECK_CURSOR_HOME", str(tmp_path / "cursor-home"))
    monkeypatch.setenv("AGENTDECK_OPENCODE_HOME", str(tmp_path / "opencode-home"))
    monkeypatch.delenv("AGENTDECK_FEATURE_AUTO_RESTORE", raising=False)
    monkeypatch.delenv("AGENTDECK_PROJECT_DIR_NAME", raising=False)


@pytest.fixture
def project_dir(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def write_features(project_dir):
    """Write a feature list (records or raw text) into the project."""

    def _write(records, name="feature_list.json"):
        state_dir = project_dir / ".agentdeck"
        state_dir.mkdir(exist_ok=True)
        text = records if isinstance(records, str) else json.dumps(records, indent=2)
        path = state_dir / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(tmp_path / "data" / "sessions-metadata.json", tmp_path / "data" / "agent-sessions")


class StubRegistry(ProviderRegistry):
    """Registry over fake providers that reports them installed and logged in."""

    def __init__(self, providers, installed=True, authenticated=True):
        super().__init__(providers)
        self.installed = installed
        self.authenticated = authenticated

    def detect(self, provider_id):
        if not self.installed:
            return InstallationStatus(installed=False)
        return InstallationStatus(installed=True, path=sys.executable, method="cli")

    def check_auth(self, provider_id):
        if not self.authenticated:
            return AuthStatus(authenticated=False)
        return AuthStatus(authenticated=True, method="env", has_env_key=True)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    return StubRegistry([fake_provider, OtherFakeProvider()])


@pytest.fixture
def orchestrator(session_store, registry):
    return ConversationOrchestrator(
        session_store,
        registry=registry,
        bus=EventBus(max_buffered=2),
        enable_tool_server=False,
        stop_grace_period=1.0,
    )


@pytest.fixture
def session(session_store, project_dir):
    return session_store.create("Feature work", project_path=str(project_dir), model="fake-model")
