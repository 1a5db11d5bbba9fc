"""Abstract base class for coding-agent providers."""

import asyncio
import contextlib
import json
import logging
import os
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config import get_probe_timeout
from .core import AgentEvent, AuthStatus, InstallationStatus, ModelDefinition, ProviderCapabilities
from .errors import ProviderRunError, ProviderUnavailable

logger = logging.getLogger(__name__)

# Provider CLIs can emit very large single JSON lines (file contents in tool results).
STREAM_LIMIT = 10 * 1024 * 1024


@dataclass
class ProviderRun:
    """Provider-side state for one conversation run."""

    session_id: str
    working_directory: str
    project_path: str
    executable: str
    enable_tools: bool = False
    resume_id: Optional[str] = None  # provider's own conversation id, captured from the stream
    process: Optional[asyncio.subprocess.Process] = None
    cancelled: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class AgentProvider(ABC):
    """Base class for coding-agent CLI backends.

    Each backend (Claude Code, Codex, Cursor, OpenCode) describes itself with
    class attributes; detection, auth checks and the subprocess lifecycle are
    shared. Backends only translate a turn into a command line and the CLI's
    JSON output lines into AgentEvents.
    """

    name: str  # "claude_code", "codex", "cursor", "opencode"
    display_name: str
    executable: str
    npm_package: Optional[str] = None
    brew_formula: Optional[str] = None
    api_key_env: tuple[str, ...] = ()
    status_command: tuple[str, ...] = ()
    status_markers: tuple[str, ...] = ("Logged in", "Authenticated")
    token_containers: tuple[str, ...] = ("token", "tokens")
    token_fields: tuple[str, ...] = ("access_token", "refresh_token", "id_token", "Id_token")
    key_fields: tuple[str, ...] = ("api_key", "apiKey")
    capabilities: ProviderCapabilities = ProviderCapabilities()
    models: tuple[ModelDefinition, ...] = ()

    @abstractmethod
    def get_auth_path(self) -> Path:
        """Return the credential file this CLI writes after login."""
        ...

    @abstractmethod
    def build_command(
        self, run: ProviderRun, prompt: str, model: str, image_paths: list[str]
    ) -> list[str]:
        """Return the argv for one conversational turn."""
        ...

    @abstractmethod
    def parse_line(self, line: str) -> list[AgentEvent]:
        """Convert one line of CLI output into zero or more events."""
        ...

    def common_paths(self) -> list[Path]:
        """Well-known install locations checked when nothing is on PATH."""
        home = Path.home()
        return [
            home / ".local" / "bin" / self.executable,
            home / ".npm-global" / "bin" / self.executable,
            Path("/usr/local/bin") / self.executable,
            Path("/opt/homebrew/bin") / self.executable,
        ]

    def install_commands(self) -> dict[str, str]:
        if not self.npm_package:
            return {}
        npm = f"npm install -g {self.npm_package}@latest"
        commands = {"npm": npm, "linux": npm, "windows": npm}
        commands["macos"] = f"brew install {self.brew_formula}" if self.brew_formula else npm
        return commands

    def list_models(self) -> list[ModelDefinition]:
        return list(self.models)

    def build_env(self, run: ProviderRun) -> dict[str, str]:
        env = dict(os.environ)
        env["AGENTDECK_PROJECT_PATH"] = run.project_path
        return env

    # ── Detection ────────────────────────────────────────────────────

    def detect_installation(self) -> InstallationStatus:
        """Probe for the CLI; the first probe that finds it wins."""
        try:
            for probe in (self._probe_path, self._probe_npm, self._probe_platform, self._probe_common_paths):
                found = probe()
                if found:
                    path, method = found
                    return InstallationStatus(
                        installed=True,
                        path=path,
                        version=self.get_version(path),
                        method=method,
                    )

            if self._env_key_present():
                return InstallationStatus(installed=True, method="api-key-only", has_api_key=True)

            return InstallationStatus(installed=False)
        except Exception as e:  # probes are advisory; absence is a normal state
            logger.debug("Installation detection failed for %s: %s", self.name, e)
            return InstallationStatus(installed=False, error=str(e))

    def get_version(self, executable_path: str) -> Optional[str]:
        output = _run_probe([executable_path, "--version"])
        if not output:
            return None
        return output.splitlines()[0].strip() or None

    def installation_info(self, status: Optional[InstallationStatus] = None) -> dict:
        """Installation status plus a recommendation for the user."""
        if status is None:
            status = self.detect_installation()
        if status.installed and status.path:
            via = "" if status.method == "cli" else f" via {status.method}"
            return {
                "status": "installed",
                "method": status.method,
                "version": status.version,
                "path": status.path,
                "recommendation": f"Using {self.display_name}{via}",
            }
        if status.has_api_key:
            return {
                "status": "api_key_only",
                "method": "api-key-only",
                "recommendation": (
                    f"API key detected but {self.display_name} is not installed. "
                    "Install the CLI for full agentic capabilities."
                ),
                "install_commands": self.install_commands(),
            }
        return {
            "status": "not_installed",
            "recommendation": f"Install {self.display_name} to use its models for agentic tasks",
            "install_commands": self.install_commands(),
        }

    def _probe_path(self) -> Optional[tuple[str, str]]:
        found = shutil.which(self.executable)
        return (found, "cli") if found else None

    def _probe_npm(self) -> Optional[tuple[str, str]]:
        if not self.npm_package:
            return None
        listing = _run_probe(["npm", "list", "-g", self.npm_package, "--depth=0"])
        if not listing or self.npm_package not in listing:
            return None
        prefix = _run_probe(["npm", "prefix", "-g"])
        if not prefix:
            return None
        prefix_path = Path(prefix.strip())
        if sys.platform == "win32":
            return str(prefix_path / f"{self.executable}.cmd"), "npm"
        return str(prefix_path / "bin" / self.executable), "npm"

    def _probe_platform(self) -> Optional[tuple[str, str]]:
        if sys.platform == "darwin" and self.brew_formula:
            formulas = _run_probe(["brew", "list", "--formula"])
            if not formulas or self.brew_formula not in formulas.split():
                return None
            prefix = _run_probe(["brew", "--prefix", self.brew_formula])
            if not prefix:
                return None
            return str(Path(prefix.strip()) / "bin" / self.executable), "brew"

        if sys.platform == "win32":
            output = _run_probe(["where", self.executable])
            if output:
                return output.splitlines()[0].strip(), "cli"

        return None

    def _probe_common_paths(self) -> Optional[tuple[str, str]]:
        for candidate in self.common_paths():
            if candidate.exists():
                return str(candidate), "path"
        return None

    def _env_key_present(self) -> bool:
        return any(os.environ.get(var) for var in self.api_key_env)

    # ── Authentication ───────────────────────────────────────────────

    def check_auth(self) -> AuthStatus:
        """Check credentials: live CLI status, then the auth file, then env vars."""
        auth_path = self.get_auth_path()
        has_env_key = self._env_key_present()
        try:
            has_auth_file = auth_path.exists()

            if self._verify_with_cli():
                return AuthStatus(
                    authenticated=True,
                    method="cli_verified",
                    has_auth_file=has_auth_file,
                    has_env_key=has_env_key,
                    auth_path=str(auth_path),
                )

            if has_auth_file:
                method = self._inspect_auth_file(auth_path)
                if method:
                    return AuthStatus(
                        authenticated=True,
                        method=method,
                        has_auth_file=True,
                        has_env_key=has_env_key,
                        auth_path=str(auth_path),
                    )

            if has_env_key:
                return AuthStatus(
                    authenticated=True,
                    method="env",
                    has_auth_file=has_auth_file,
                    has_env_key=True,
                    auth_path=str(auth_path),
                )

            return AuthStatus(
                authenticated=False,
                has_auth_file=has_auth_file,
                auth_path=str(auth_path),
            )
        except Exception as e:
            logger.debug("Auth check failed for %s: %s", self.name, e)
            return AuthStatus(authenticated=False, has_env_key=has_env_key, error=str(e))

    def _verify_with_cli(self) -> bool:
        """Run the CLI's own status command. A timeout means "unknown"."""
        if not self.status_command:
            return False
        executable = shutil.which(self.executable)
        if not executable:
            return False
        output = _run_probe([executable, *self.status_command], timeout=get_probe_timeout(), merge_stderr=True)
        if not output:
            return False
        return any(marker in output for marker in self.status_markers)

    def _inspect_auth_file(self, auth_path: Path) -> Optional[str]:
        try:
            data = json.loads(auth_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.debug("Unreadable auth file %s: %s", auth_path, e)
            return None
        if not isinstance(data, dict):
            return None

        for container in self.token_containers:
            nested = data.get(container)
            if isinstance(nested, dict) and any(nested.get(f) for f in self.token_fields):
                return "cli_tokens"
        if any(data.get(f) for f in self.token_fields):
            return "cli_tokens"
        if any(data.get(f) for f in self.key_fields):
            return "auth_file"
        return None

    # ── Run lifecycle ────────────────────────────────────────────────

    def start_run(
        self,
        session_id: str,
        working_directory: str,
        project_path: str,
        enable_tools: bool = False,
        executable: Optional[str] = None,
    ) -> ProviderRun:
        """Prepare a run. Raises ProviderUnavailable when there is no CLI to launch."""
        if executable is None:
            executable = self.detect_installation().path
        if not executable:
            raise ProviderUnavailable(
                f"{self.display_name} CLI is not installed; an API key alone cannot drive a run"
            )
        run = ProviderRun(
            session_id=session_id,
            working_directory=working_directory,
            project_path=project_path,
            executable=executable,
            enable_tools=enable_tools,
        )
        if enable_tools:
            self.configure_tools(run)
        return run

    def configure_tools(self, run: ProviderRun) -> None:
        """Register the feature-status tool server with the CLI, if it supports that."""
        return None

    async def send_turn(
        self,
        run: ProviderRun,
        prompt: str,
        model: str,
        image_paths: Optional[list[str]] = None,
    ) -> AsyncIterator[AgentEvent]:
        """Launch the CLI for one turn and yield its events in output order."""
        command = self.build_command(run, prompt, model, image_paths or [])
        logger.info("Launching %s for session %s", self.name, run.session_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=run.working_directory or None,
                env=self.build_env(run),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProviderRunError(f"Failed to launch {self.display_name}: {e}") from e

        run.process = process
        stderr_lines: list[str] = []
        stderr_task = asyncio.create_task(_drain_stderr(process, stderr_lines))
        try:
            assert process.stdout is not None
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                for event in self.parse_line(line):
                    if event.type == "session" and event.metadata.get("session_id"):
                        run.resume_id = event.metadata["session_id"]
                    yield event
            exit_code = await process.wait()
            await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stderr_task
            run.process = None

        if run.cancelled:
            return
        if exit_code != 0:
            detail = stderr_lines[-1] if stderr_lines else "no output on stderr"
            raise ProviderRunError(
                f"{self.display_name} exited with code {exit_code}: {detail}",
                exit_code=exit_code,
            )

    async def cancel_run(self, run: ProviderRun, grace_period: float) -> None:
        """Terminate the run's process, escalating to kill after the grace period."""
        run.cancelled = True
        process = run.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "%s did not exit within %.1fs for session %s, killing",
                self.name, grace_period, run.session_id,
            )
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()


def _run_probe(args: list[str], timeout: float = 10.0, merge_stderr: bool = False) -> Optional[str]:
    """Run a probe command; any failure is a negative signal, never an error."""
    stderr = subprocess.STDOUT if merge_stderr else subprocess.DEVNULL
    try:
        result = subprocess.run(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=stderr,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        logger.debug("Probe %s failed: %s", args[0], e)
        return None
    if result.returncode != 0:
        return None
    return (result.stdout or "").strip() or None


async def _drain_stderr(process: asyncio.subprocess.Process, sink: list[str]) -> None:
    """Read stderr so the pipe never fills; keep the lines for error messages."""
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            sink.append(text)
            logger.debug("provider stderr: %s", text)


def parse_json_line(line: str) -> Optional[dict]:
    """Decode one JSON object line, returning None for anything else."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON output line: %.200s", line)
        return None
    return data if isinstance(data, dict) else None
