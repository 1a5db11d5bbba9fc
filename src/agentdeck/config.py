"""Platform-aware path resolution and environment-driven settings."""

import os
import sys
from pathlib import Path

DEFAULT_MODEL = "claude-sonnet-4-20250514"
_FALSE_VALUES = {"0", "false", "no", "off"}


def get_data_dir() -> Path:
    """Return the directory holding session metadata and histories."""
    env = os.environ.get("AGENTDECK_DATA_DIR")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "agentdeck"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "agentdeck"
    else:  # Linux
        return Path.home() / ".local" / "share" / "agentdeck"


def get_sessions_metadata_path() -> Path:
    return get_data_dir() / "sessions-metadata.json"


def get_sessions_dir() -> Path:
    return get_data_dir() / "agent-sessions"


def get_project_state_dir(project_path: str | Path) -> Path:
    """Return the per-project directory holding the feature list and tool config."""
    name = os.environ.get("AGENTDECK_PROJECT_DIR_NAME") or ".agentdeck"
    return Path(project_path) / name


def get_feature_list_path(project_path: str | Path) -> Path:
    return get_project_state_dir(project_path) / "feature_list.json"


def get_feature_backup_path(project_path: str | Path) -> Path:
    return get_project_state_dir(project_path) / "feature_list.backup.json"


def get_feature_lock_path(project_path: str | Path) -> Path:
    return get_project_state_dir(project_path) / "feature_list.lock"


def feature_auto_restore_enabled() -> bool:
    """Whether an empty feature list is restored from its backup before updating."""
    value = os.environ.get("AGENTDECK_FEATURE_AUTO_RESTORE", "1")
    return value.strip().lower() not in _FALSE_VALUES


def get_stop_grace_period() -> float:
    """Seconds to wait after terminating a provider process before killing it."""
    return _float_env("AGENTDECK_STOP_GRACE_SECONDS", 5.0)


def get_probe_timeout() -> float:
    """Seconds a live auth/status probe may take before it is treated as unknown."""
    return _float_env("AGENTDECK_PROBE_TIMEOUT", 5.0)


def get_default_model() -> str:
    return os.environ.get("AGENTDECK_DEFAULT_MODEL") or DEFAULT_MODEL


def get_claude_home() -> Path:
    """Return Claude Code's config directory."""
    env = os.environ.get("AGENTDECK_CLAUDE_HOME")
    if env:
        return Path(env)
    return Path.home() / ".claude"


def get_codex_home() -> Path:
    """Return the Codex CLI's config directory."""
    env = os.environ.get("AGENTDECK_CODEX_HOME")
    if env:
        return Path(env)
    return Path.home() / ".codex"


def get_cursor_home() -> Path:
    """Return the Cursor agent CLI's config directory."""
    env = os.environ.get("AGENTDECK_CURSOR_HOME")
    if env:
        return Path(env)
    if sys.platform == "win32":
        return Path(os.environ.get("USERPROFILE", "")) / ".cursor"
    return Path.home() / ".cursor"


def get_opencode_home() -> Path:
    """Return OpenCode's data directory."""
    env = os.environ.get("AGENTDECK_OPENCODE_HOME")
    if env:
        return Path(env)

    if sys.platform == "win32":
        return Path(os.environ.get("USERPROFILE", "")) / ".local" / "share" / "opencode"
    else:  # macOS and Linux
        return Path.home() / ".local" / "share" / "opencode"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
