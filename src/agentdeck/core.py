"""Core data models for agentdeck."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

FEATURE_STATUSES = ("backlog", "in_progress", "verified")
MESSAGE_ROLES = ("user", "agent", "tool")


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a provider CLI can do."""

    supports_vision: bool = False
    supports_tools: bool = True
    streaming: bool = True


@dataclass(frozen=True)
class ModelDefinition:
    """One entry in a provider's static model catalog."""

    id: str
    name: str
    provider: str
    context_window: int
    max_output_tokens: int
    supports_vision: bool = False
    supports_tools: bool = True


@dataclass
class InstallationStatus:
    """Result of probing for a provider CLI."""

    installed: bool
    path: Optional[str] = None
    version: Optional[str] = None
    method: Optional[str] = None  # "cli" | "npm" | "brew" | "path"
    error: Optional[str] = None
    has_api_key: bool = False


@dataclass
class AuthStatus:
    """Result of checking a provider's credentials."""

    authenticated: bool
    method: str = "none"  # "cli_verified" | "cli_tokens" | "auth_file" | "env" | "none"
    has_auth_file: bool = False
    has_env_key: bool = False
    auth_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Session:
    """A named conversational context bound to a project and a model."""

    id: str
    name: str
    project_path: str
    working_directory: str
    model: str
    created_at: datetime
    updated_at: datetime
    archived: bool = False
    tags: set[str] = field(default_factory=set)


@dataclass
class SessionListItem:
    """A session plus values derived from its message history."""

    session: Session
    message_count: int
    preview: str


@dataclass
class Message:
    """A single entry in a session's history."""

    role: str  # "user" | "agent" | "tool"
    content: str
    timestamp: Optional[datetime] = None
    message_type: str = "text"  # "text" | "tool_call" | "tool_result" | "thinking" | "error"
    metadata: dict = field(default_factory=dict)


@dataclass
class AgentEvent:
    """A single parsed item from a provider's output stream."""

    type: str  # "session" | "text" | "thinking" | "tool_call" | "tool_result" | "error" | "complete"
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class Feature:
    """One record of a project's feature list."""

    feature_id: str
    status: str
    summary: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)  # unknown keys, kept verbatim

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data["featureId"] = self.feature_id
        data["status"] = self.status
        data["summary"] = self.summary
        return data
