"""Export session histories to Markdown and JSON formats."""

import json

from .core import Message, Session


def session_to_markdown(session: Session, messages: list[Message]) -> str:
    """Export a session and its messages as clean Markdown."""
    lines = [f"# {session.name}", ""]

    if session.project_path:
        lines.append(f"**Project:** {session.project_path}")
    lines.append(f"**Model:** {session.model}")
    lines.append(f"**Created:** {session.created_at.isoformat()}")
    lines.append(f"**Updated:** {session.updated_at.isoformat()}")
    if session.tags:
        lines.append(f"**Tags:** {', '.join(sorted(session.tags))}")
    lines.append(f"**Messages:** {len(messages)}")
    lines.extend(["", "---", ""])

    for msg in messages:
        label = msg.role.capitalize()
        if msg.message_type not in ("text", ""):
            label += f" ({msg.message_type.replace('_', ' ')})"
        ts = ""
        if msg.timestamp:
            ts = f" - {msg.timestamp.strftime('%Y-%m-%d %H:%M')}"
        lines.append(f"## {label}{ts}")
        lines.append("")
        lines.append(msg.content)
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def session_to_json(session: Session, messages: list[Message]) -> str:
    """Export a session and its messages as structured JSON."""
    data = {
        "session": {
            "id": session.id,
            "name": session.name,
            "projectPath": session.project_path,
            "workingDirectory": session.working_directory,
            "model": session.model,
            "tags": sorted(session.tags),
            "archived": session.archived,
            "createdAt": session.created_at.isoformat(),
            "updatedAt": session.updated_at.isoformat(),
            "messageCount": len(messages),
        },
        "messages": [
            {
                "role": msg.role,
                "content": msg.content,
                "timestamp": msg.timestamp.isoformat() if msg.timestamp else None,
                "message_type": msg.message_type,
                "metadata": msg.metadata,
            }
            for msg in messages
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)
