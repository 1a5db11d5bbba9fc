"""Persistent session store.

Session metadata lives in one JSON object keyed by session id
(`sessions-metadata.json`); each session's history is an append-only JSONL
file under `agent-sessions/`. Messages are never rewritten, only appended
or cleared as a whole.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import get_default_model, get_sessions_dir, get_sessions_metadata_path
from .core import MESSAGE_ROLES, Message, Session, SessionListItem
from .errors import CorruptState, NotFound, ValidationError
from .fileio import atomic_write_text

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


class SessionStore:
    """CRUD and archive lifecycle for sessions plus their message history."""

    def __init__(self, metadata_path: Optional[Path] = None, sessions_dir: Optional[Path] = None):
        self.metadata_path = metadata_path or get_sessions_metadata_path()
        self.sessions_dir = sessions_dir or get_sessions_dir()
        self._lock = threading.RLock()

    # ── Sessions ─────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        project_path: Optional[str] = None,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Session:
        if not name or not name.strip():
            raise ValidationError("name is required")

        now = _now()
        project_path = project_path or working_directory or ""
        session = Session(
            id=f"session_{uuid.uuid4().hex}",
            name=name.strip(),
            project_path=project_path,
            working_directory=working_directory or project_path,
            model=model or get_default_model(),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            metadata = self._read_metadata()
            metadata[session.id] = _session_to_dict(session)
            self._write_metadata(metadata)
        logger.info("Created session %s (%s)", session.id, session.name)
        return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            record = self._read_metadata().get(session_id)
        if record is None:
            raise NotFound(f"Session {session_id} not found")
        return _session_from_dict(record)

    def list_sessions(self, include_archived: bool = False) -> list[SessionListItem]:
        """Sessions by most recent update, with message count and last-message preview."""
        with self._lock:
            records = list(self._read_metadata().values())

        items = []
        for record in records:
            session = _session_from_dict(record)
            if session.archived and not include_archived:
                continue
            messages = self.get_messages(session.id)
            preview = messages[-1].content[:PREVIEW_LENGTH] if messages else ""
            items.append(SessionListItem(session=session, message_count=len(messages), preview=preview))

        items.sort(key=lambda item: item.session.updated_at, reverse=True)
        return items

    def update(
        self,
        session_id: str,
        name: Optional[str] = None,
        tags: Optional[list[str] | set[str]] = None,
        model: Optional[str] = None,
    ) -> Session:
        if name is not None and not name.strip():
            raise ValidationError("name cannot be empty")

        with self._lock:
            metadata = self._read_metadata()
            record = metadata.get(session_id)
            if record is None:
                raise NotFound(f"Session {session_id} not found")
            if name is not None:
                record["name"] = name.strip()
            if tags is not None:
                record["tags"] = sorted(set(tags))
            if model is not None:
                record["model"] = model
            record["updatedAt"] = _now().isoformat()
            self._write_metadata(metadata)
        return _session_from_dict(record)

    def archive(self, session_id: str) -> Session:
        return self._set_archived(session_id, True)

    def unarchive(self, session_id: str) -> Session:
        return self._set_archived(session_id, False)

    def delete(self, session_id: str) -> None:
        with self._lock:
            metadata = self._read_metadata()
            if session_id not in metadata:
                raise NotFound(f"Session {session_id} not found")
            del metadata[session_id]
            self._write_metadata(metadata)
            self._history_path(session_id).unlink(missing_ok=True)
        logger.info("Deleted session %s", session_id)

    # ── History ──────────────────────────────────────────────────────

    def append_message(self, session_id: str, message: Message) -> Message:
        """Append one message to the session's history and bump updatedAt."""
        if message.role not in MESSAGE_ROLES:
            raise ValidationError(f"Invalid message role {message.role!r}")
        if message.timestamp is None:
            message.timestamp = _now()

        with self._lock:
            metadata = self._read_metadata()
            record = metadata.get(session_id)
            if record is None:
                raise NotFound(f"Session {session_id} not found")

            path = self._history_path(session_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(_message_to_dict(message), ensure_ascii=False) + "\n")

            record["updatedAt"] = message.timestamp.isoformat()
            self._write_metadata(metadata)
        return message

    def get_messages(self, session_id: str) -> list[Message]:
        """Return the session's history in arrival order. Unknown lines are skipped."""
        path = self._history_path(session_id)
        if not path.exists():
            return []

        messages = []
        try:
            with path.open(encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.debug("Bad JSON at %s:%d: %s", path, line_num, e)
                        continue
                    if isinstance(entry, dict):
                        messages.append(_message_from_dict(entry))
        except OSError as e:
            logger.warning("Failed to read history %s: %s", path, e)

        return messages

    def clear_messages(self, session_id: str) -> None:
        with self._lock:
            if session_id not in self._read_metadata():
                raise NotFound(f"Session {session_id} not found")
            self._history_path(session_id).unlink(missing_ok=True)

    # ── Private helpers ──────────────────────────────────────────────

    def _set_archived(self, session_id: str, archived: bool) -> Session:
        with self._lock:
            metadata = self._read_metadata()
            record = metadata.get(session_id)
            if record is None:
                raise NotFound(f"Session {session_id} not found")
            record["archived"] = archived
            record["updatedAt"] = _now().isoformat()
            self._write_metadata(metadata)
        return _session_from_dict(record)

    def _history_path(self, session_id: str) -> Path:
        if "/" in session_id or "\\" in session_id or session_id in ("", ".", ".."):
            raise NotFound(f"Session {session_id} not found")
        return self.sessions_dir / f"{session_id}.jsonl"

    def _read_metadata(self) -> dict[str, dict]:
        try:
            data = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            # Refuse to continue: rewriting would drop every session record.
            raise CorruptState(f"Session metadata {self.metadata_path} is unreadable: {e}") from e
        return data if isinstance(data, dict) else {}

    def _write_metadata(self, metadata: dict[str, dict]) -> None:
        atomic_write_text(self.metadata_path, json.dumps(metadata, indent=2, ensure_ascii=False))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _session_to_dict(session: Session) -> dict:
    return {
        "id": session.id,
        "name": session.name,
        "projectPath": session.project_path,
        "workingDirectory": session.working_directory,
        "model": session.model,
        "createdAt": session.created_at.isoformat(),
        "updatedAt": session.updated_at.isoformat(),
        "archived": session.archived,
        "tags": sorted(session.tags),
    }


def _session_from_dict(data: dict) -> Session:
    created = _parse_iso(data.get("createdAt")) or _now()
    return Session(
        id=data["id"],
        name=data.get("name", "Untitled"),
        project_path=data.get("projectPath", ""),
        working_directory=data.get("workingDirectory") or data.get("projectPath", ""),
        model=data.get("model") or get_default_model(),
        created_at=created,
        updated_at=_parse_iso(data.get("updatedAt")) or created,
        archived=bool(data.get("archived", False)),
        tags=set(data.get("tags") or []),
    )


def _message_to_dict(msg: Message) -> dict:
    return {
        "role": msg.role,
        "content": msg.content,
        "timestamp": msg.timestamp.isoformat() if msg.timestamp else None,
        "message_type": msg.message_type,
        "metadata": msg.metadata,
    }


def _message_from_dict(data: dict) -> Message:
    return Message(
        role=data.get("role", "agent"),
        content=data.get("content", ""),
        timestamp=_parse_iso(data.get("timestamp")),
        message_type=data.get("message_type", "text"),
        metadata=data.get("metadata") or {},
    )


def _parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string."""
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
