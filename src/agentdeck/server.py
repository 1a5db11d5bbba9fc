"""FastAPI web server for agentdeck.

Thin request/response plumbing over the session store, the conversation
orchestrator, the provider registry and the feature tool gateway.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .errors import AgentDeckError, ValidationError
from .export import session_to_json, session_to_markdown
from .gateway import ToolGateway
from .orchestrator import ConversationOrchestrator
from .sessions import SessionStore

logger = logging.getLogger(__name__)

# Service cache (populated on first request)
_orchestrator: ConversationOrchestrator | None = None
_gateway: ToolGateway | None = None


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    if _orchestrator is not None:
        await _orchestrator.shutdown()


app = FastAPI(title="agentdeck", version="0.1.0", lifespan=_lifespan)


def _get_orchestrator() -> ConversationOrchestrator:
    """Lazily initialize and cache the orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator(SessionStore())
        logger.info("Providers: %s", _orchestrator.registry.provider_ids)
    return _orchestrator


def _get_gateway() -> ToolGateway:
    global _gateway
    if _gateway is None:
        _gateway = ToolGateway()
    return _gateway


@app.exception_handler(AgentDeckError)
async def _agentdeck_error_handler(request: Request, exc: AgentDeckError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc), "code": exc.code},
    )


def _session_to_dict(session) -> dict:
    """Convert a Session dataclass to a JSON-serializable dict."""
    return {
        "id": session.id,
        "name": session.name,
        "projectPath": session.project_path,
        "workingDirectory": session.working_directory,
        "model": session.model,
        "createdAt": session.created_at.isoformat(),
        "updatedAt": session.updated_at.isoformat(),
        "isArchived": session.archived,
        "tags": sorted(session.tags),
    }


def _message_to_dict(msg) -> dict:
    """Convert a Message dataclass to a JSON-serializable dict."""
    return {
        "role": msg.role,
        "content": msg.content,
        "timestamp": msg.timestamp.isoformat() if msg.timestamp else None,
        "message_type": msg.message_type,
        "metadata": msg.metadata,
    }


# ── Request bodies ───────────────────────────────────────────────


class CreateSessionBody(BaseModel):
    name: str = ""
    projectPath: str | None = None
    workingDirectory: str | None = None
    model: str | None = None


class UpdateSessionBody(BaseModel):
    name: str | None = None
    tags: list[str] | None = None
    model: str | None = None


class SessionBody(BaseModel):
    sessionId: str


class StartBody(SessionBody):
    workingDirectory: str | None = None


class SendBody(SessionBody):
    message: str
    imagePaths: list[str] | None = None
    model: str | None = None


class ClearBody(SessionBody):
    clearHistory: bool = False


class ModelBody(SessionBody):
    model: str


class ToolCallBody(BaseModel):
    projectPath: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


# ── Sessions ─────────────────────────────────────────────────────


@app.get("/api/sessions")
async def list_sessions(includeArchived: bool = Query(False, description="Include archived sessions")):
    """Return sessions, most recently updated first."""
    items = _get_orchestrator().sessions.list_sessions(include_archived=includeArchived)
    sessions = []
    for item in items:
        data = _session_to_dict(item.session)
        data["messageCount"] = item.message_count
        data["preview"] = item.preview
        sessions.append(data)
    return {"success": True, "sessions": sessions}


@app.post("/api/sessions")
async def create_session(body: CreateSessionBody):
    session = _get_orchestrator().sessions.create(
        body.name, body.projectPath, body.workingDirectory, body.model
    )
    return {"success": True, "session": _session_to_dict(session)}


@app.put("/api/sessions/{session_id}")
async def update_session(session_id: str, body: UpdateSessionBody):
    orchestrator = _get_orchestrator()
    if body.name is not None and not body.name.strip():
        raise ValidationError("name cannot be empty")
    if body.model is not None:
        await orchestrator.set_model(session_id, body.model)
    session = orchestrator.sessions.update(session_id, name=body.name, tags=body.tags)
    return {"success": True, "session": _session_to_dict(session)}


@app.post("/api/sessions/{session_id}/archive")
async def archive_session(session_id: str):
    session = _get_orchestrator().sessions.archive(session_id)
    return {"success": True, "session": _session_to_dict(session)}


@app.post("/api/sessions/{session_id}/unarchive")
async def unarchive_session(session_id: str):
    session = _get_orchestrator().sessions.unarchive(session_id)
    return {"success": True, "session": _session_to_dict(session)}


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    orchestrator = _get_orchestrator()
    orchestrator.sessions.get(session_id)
    await orchestrator.clear(session_id)
    orchestrator.sessions.delete(session_id)
    return {"success": True}


@app.get("/api/sessions/{session_id}/export")
async def export_session(
    session_id: str,
    format: str = Query("md", description="Export format: md or json"),
):
    """Export a session as Markdown or JSON."""
    orchestrator = _get_orchestrator()
    session = orchestrator.sessions.get(session_id)
    messages = orchestrator.history(session_id)

    safe_title = "".join(c if c.isalnum() or c in "-_ " else "" for c in session.name)[:50]

    if format == "json":
        content = session_to_json(session, messages)
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.json"'},
        )
    else:
        content = session_to_markdown(session, messages)
        return Response(
            content=content,
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.md"'},
        )


# ── Conversation control ─────────────────────────────────────────


@app.post("/api/agent/start")
async def start_conversation(body: StartBody):
    handle = await _get_orchestrator().start(body.sessionId, body.workingDirectory)
    return {"success": True, "run": handle.to_dict()}


@app.post("/api/agent/send")
async def send_message(body: SendBody):
    """Launch a turn; output streams over the session's event socket."""
    await _get_orchestrator().send(body.sessionId, body.message, body.imagePaths, body.model)
    return {"success": True, "message": "Message sent"}


@app.post("/api/agent/history")
async def get_history(body: SessionBody):
    orchestrator = _get_orchestrator()
    messages = orchestrator.history(body.sessionId)
    return {
        "success": True,
        "messages": [_message_to_dict(m) for m in messages],
        "status": orchestrator.status(body.sessionId).value,
    }


@app.post("/api/agent/stop")
async def stop_conversation(body: SessionBody):
    stopped = await _get_orchestrator().stop(body.sessionId)
    return {"success": True, "stopped": stopped}


@app.post("/api/agent/clear")
async def clear_conversation(body: ClearBody):
    await _get_orchestrator().clear(body.sessionId, clear_history=body.clearHistory)
    return {"success": True}


@app.post("/api/agent/model")
async def set_session_model(body: ModelBody):
    session = await _get_orchestrator().set_model(body.sessionId, body.model)
    return {"success": True, "session": _session_to_dict(session)}


@app.get("/api/agent/status/{session_id}")
async def get_status(session_id: str):
    orchestrator = _get_orchestrator()
    orchestrator.sessions.get(session_id)
    return {"success": True, "status": orchestrator.status(session_id).value}


@app.websocket("/api/agent/events/{session_id}")
async def stream_events(websocket: WebSocket, session_id: str):
    """Forward a session's events, in order, until the client disconnects."""
    subscription = _get_orchestrator().bus.subscribe(session_id)
    await websocket.accept()
    try:
        while True:
            event = await subscription.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.debug("Event socket for %s closed", session_id)
    finally:
        subscription.close()


# ── Providers and models ─────────────────────────────────────────


@app.get("/api/models/available")
async def get_available_models():
    models = _get_orchestrator().registry.list_models()
    return {
        "success": True,
        "models": [
            {
                "id": m.id,
                "name": m.name,
                "provider": m.provider,
                "contextWindow": m.context_window,
                "maxOutputTokens": m.max_output_tokens,
                "supportsVision": m.supports_vision,
                "supportsTools": m.supports_tools,
            }
            for m in models
        ],
    }


@app.get("/api/models/providers")
async def get_provider_status(refresh: bool = Query(False, description="Re-probe every provider")):
    registry = _get_orchestrator().registry
    if refresh:
        registry.refresh()
    providers = await asyncio.to_thread(registry.status)
    return {"success": True, "providers": providers}


# ── Features ─────────────────────────────────────────────────────


@app.get("/api/features")
async def list_features(projectPath: str = Query(..., description="Project checkout path")):
    features = await asyncio.to_thread(_get_gateway().list_features, projectPath)
    return {"success": True, "features": [f.to_dict() for f in features]}


@app.post("/api/tools/call")
async def call_tool(body: ToolCallBody):
    """The only write path into a project's feature list."""
    if not body.projectPath.strip():
        raise HTTPException(status_code=400, detail="projectPath is required")
    return await asyncio.to_thread(_get_gateway().call_tool, body.name, body.arguments, body.projectPath)
