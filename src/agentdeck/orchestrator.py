"""Conversation orchestration: at most one active agent run per session.

State per session is idle -> running -> stopping -> idle. A run is opened by
`start` (or implicitly by the first `send`) and stays running between turns
until it is stopped, cleared, or its provider fails. Only one turn may be in
flight per run; a second `send` is rejected with Busy rather than queued.
"""

import asyncio
import contextlib
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .backends import ProviderRegistry
from .config import get_stop_grace_period
from .core import AgentEvent, Message, ModelDefinition, RunStatus, Session
from .errors import (
    AgentDeckError,
    AlreadyRunning,
    Busy,
    ProviderRunError,
    ProviderUnavailable,
    Unauthenticated,
    UnsupportedModel,
    ValidationError,
)
from .events import EventBus, RunHandle
from .provider import AgentProvider, ProviderRun
from .sessions import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class ConversationRun:
    """Ephemeral execution context for one session."""

    session_id: str
    run_id: str
    status: RunStatus
    started_at: datetime
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    provider: Optional[AgentProvider] = None
    provider_run: Optional[ProviderRun] = None
    model: str = ""
    handle: Optional[RunHandle] = None
    turn_task: Optional[asyncio.Task] = None

    @property
    def turn_active(self) -> bool:
        return self.turn_task is not None and not self.turn_task.done()


class ConversationOrchestrator:
    """Drives agent providers on behalf of sessions.

    Every call takes the session id explicitly; there is no "current session".
    """

    def __init__(
        self,
        sessions: SessionStore,
        registry: Optional[ProviderRegistry] = None,
        bus: Optional[EventBus] = None,
        require_tools: bool = True,
        enable_tool_server: bool = True,
        stop_grace_period: Optional[float] = None,
    ):
        self.sessions = sessions
        self.registry = registry or ProviderRegistry()
        self.bus = bus or EventBus()
        self.require_tools = require_tools
        self.enable_tool_server = enable_tool_server
        self.stop_grace_period = get_stop_grace_period() if stop_grace_period is None else stop_grace_period
        self._runs: dict[str, ConversationRun] = {}
        # Provider-side conversation pointer per session: (provider name, resume id).
        self._resume_ids: dict[str, tuple[str, str]] = {}
        self._last_turn: dict[str, asyncio.Task] = {}

    def status(self, session_id: str) -> RunStatus:
        run = self._runs.get(session_id)
        return run.status if run else RunStatus.IDLE

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, session_id: str, working_directory: Optional[str] = None) -> RunHandle:
        """Open a run for the session. Fails with AlreadyRunning unless idle."""
        session = self.sessions.get(session_id)

        existing = self._runs.get(session_id)
        if existing is not None and existing.status != RunStatus.IDLE:
            raise AlreadyRunning(f"Session {session_id} already has a {existing.status.value} run")

        # Reserve the slot before the first await so a concurrent start sees it.
        run = ConversationRun(
            session_id=session_id,
            run_id=uuid.uuid4().hex,
            status=RunStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )
        self._runs[session_id] = run

        try:
            await self._preflight(run, session, working_directory)
            await self.bus.publish(session_id, run.run_id, "started", run.handle.to_dict())
        except BaseException:
            if self._runs.get(session_id) is run:
                del self._runs[session_id]
            run.status = RunStatus.IDLE
            raise
        finally:
            run.ready.set()

        logger.info("Run %s started for session %s (%s/%s)", run.run_id, session_id, run.provider.name, run.model)
        return run.handle

    async def send(
        self,
        session_id: str,
        message: str,
        image_paths: Optional[list[str]] = None,
        model: Optional[str] = None,
    ) -> Message:
        """Append a user message and hand it to the provider.

        Starts a run first when the session is idle. Returns once the turn is
        launched; output arrives as events on the session's channel.
        """
        if not message or not message.strip():
            raise ValidationError("message is required")

        session = self.sessions.get(session_id)
        if model and model != session.model:
            session = await self.set_model(session_id, model)

        if image_paths:
            definition = self.registry.find_model(session.model)
            if definition is not None and not definition.supports_vision:
                raise UnsupportedModel(f"Model {session.model} does not accept images")

        run = self._runs.get(session_id)
        if run is None or run.status == RunStatus.IDLE:
            try:
                await self.start(session_id)
            except AlreadyRunning as e:
                raise Busy(str(e)) from e
            run = self._runs[session_id]
        else:
            await run.ready.wait()
            if self._runs.get(session_id) is not run or run.provider_run is None:
                raise Busy(f"Session {session_id} run is not available")

        if run.status == RunStatus.STOPPING:
            raise Busy(f"Session {session_id} is stopping")
        if run.turn_active:
            raise Busy(f"Session {session_id} is already processing a message")

        metadata = {"imagePaths": list(image_paths)} if image_paths else {}
        user_message = self.sessions.append_message(
            session_id, Message(role="user", content=message, metadata=metadata)
        )
        # No await between the busy check and here: the task slot is claimed atomically.
        run.turn_task = asyncio.create_task(self._run_turn(run, user_message, image_paths or []))
        self._last_turn[session_id] = run.turn_task
        return user_message

    async def stop(self, session_id: str) -> bool:
        """Cancel the session's run. Returns False (success, no-op) when already idle."""
        run = self._runs.get(session_id)
        if run is None or run.status == RunStatus.IDLE:
            return False
        if run.status == RunStatus.STOPPING:
            await run.stopped.wait()
            return True

        run.status = RunStatus.STOPPING
        logger.info("Stopping run %s for session %s", run.run_id, session_id)
        try:
            await run.ready.wait()
            if run.provider is not None and run.provider_run is not None:
                await run.provider.cancel_run(run.provider_run, self.stop_grace_period)
            task = run.turn_task
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            self._finish_run(run)
            run.stopped.set()

        await self.bus.publish(session_id, run.run_id, "stopped", {})
        return True

    async def clear(self, session_id: str, clear_history: bool = False) -> None:
        """Drop run state and the provider conversation pointer.

        Persisted history is kept unless clear_history is set.
        """
        self.sessions.get(session_id)
        await self.stop(session_id)
        self._runs.pop(session_id, None)
        self._resume_ids.pop(session_id, None)
        self._last_turn.pop(session_id, None)
        if clear_history:
            self.sessions.clear_messages(session_id)
        logger.info("Cleared session %s (history %s)", session_id, "deleted" if clear_history else "kept")

    async def set_model(self, session_id: str, model: str) -> Session:
        """Validate the model against the catalog and store it on the session."""
        self.sessions.get(session_id)
        definition = self._validate_model(model)

        run = self._runs.get(session_id)
        if run is not None and run.status != RunStatus.IDLE:
            if run.turn_active:
                raise Busy(f"Session {session_id} is processing a message")
            await run.ready.wait()
            if run.provider is not None and run.provider.name != definition.provider:
                await self.stop(session_id)
            else:
                run.model = model

        return self.sessions.update(session_id, model=model)

    def history(self, session_id: str) -> list[Message]:
        self.sessions.get(session_id)
        return self.sessions.get_messages(session_id)

    async def wait_for_turn(self, session_id: str) -> None:
        """Wait for the session's latest turn; re-raise its ProviderRunError, if any."""
        task = self._last_turn.get(session_id)
        if task is None:
            return
        try:
            error = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return
            raise
        if error is not None:
            raise error

    async def shutdown(self) -> None:
        for session_id in list(self._runs):
            await self.stop(session_id)

    # ── Private helpers ──────────────────────────────────────────────

    def _validate_model(self, model_id: str) -> ModelDefinition:
        definition = self.registry.find_model(model_id)
        if definition is None:
            raise UnsupportedModel(f"Unknown model {model_id!r}")
        provider = self.registry.get(definition.provider)
        if self.require_tools and not (definition.supports_tools and provider and provider.capabilities.supports_tools):
            raise UnsupportedModel(f"Model {model_id!r} does not support tool use")
        return definition

    async def _preflight(self, run: ConversationRun, session: Session, working_directory: Optional[str]) -> None:
        definition = self._validate_model(session.model)
        provider = self.registry.get(definition.provider)

        installation = await asyncio.to_thread(self.registry.detect, provider.name)
        if not installation.installed:
            raise ProviderUnavailable(f"{provider.display_name} is not installed")

        auth = await asyncio.to_thread(self.registry.check_auth, provider.name)
        if not auth.authenticated:
            raise Unauthenticated(f"{provider.display_name} is not authenticated")

        workdir = working_directory or session.working_directory or session.project_path or os.getcwd()
        provider_run = await asyncio.to_thread(
            provider.start_run,
            session.id,
            workdir,
            session.project_path or workdir,
            self.enable_tool_server,
            installation.path,
        )
        pointer = self._resume_ids.get(session.id)
        if pointer and pointer[0] == provider.name:
            provider_run.resume_id = pointer[1]

        run.provider = provider
        run.provider_run = provider_run
        run.model = definition.id
        run.handle = RunHandle(
            session_id=session.id,
            run_id=run.run_id,
            provider=provider.name,
            model=definition.id,
            started_at=run.started_at,
            bus=self.bus,
        )

    async def _run_turn(
        self, run: ConversationRun, user_message: Message, image_paths: list[str]
    ) -> Optional[ProviderRunError]:
        session_id = run.session_id
        await self.bus.publish(session_id, run.run_id, "user_message", {
            "content": user_message.content,
            "imagePaths": image_paths,
        })
        try:
            stream = run.provider.send_turn(run.provider_run, user_message.content, run.model, image_paths)
            async with contextlib.aclosing(stream):
                async for event in stream:
                    if event.type == "error":
                        await run.provider.cancel_run(run.provider_run, self.stop_grace_period)
                        raise ProviderRunError(event.content or "Provider reported an error")
                    await self._deliver(run, event)
        except asyncio.CancelledError:
            raise
        except ProviderRunError as e:
            await self._fail_run(run, e)
            return e
        except Exception as e:
            logger.exception("Unexpected failure in session %s turn", session_id)
            error = ProviderRunError(f"Unexpected error: {e}")
            await self._fail_run(run, error)
            return error

        self._remember_resume_id(run)
        if run.status == RunStatus.RUNNING:
            await self.bus.publish(session_id, run.run_id, "complete", {})
        return None

    async def _deliver(self, run: ConversationRun, event: AgentEvent) -> None:
        if event.type == "session":
            self._remember_resume_id(run)
            return
        if event.type == "complete":
            # Emitted once the stream ends, so trailing output stays before it.
            return

        message = _event_to_message(event)
        if message is not None:
            self.sessions.append_message(run.session_id, message)
        await self.bus.publish(run.session_id, run.run_id, event.type, {
            "content": event.content,
            "metadata": event.metadata,
        })

    async def _fail_run(self, run: ConversationRun, error: ProviderRunError) -> None:
        logger.error("Run %s for session %s failed: %s", run.run_id, run.session_id, error)
        try:
            self.sessions.append_message(
                run.session_id,
                Message(role="agent", content=str(error), message_type="error"),
            )
        except AgentDeckError as e:
            logger.warning("Could not record failure for session %s: %s", run.session_id, e)
        self._finish_run(run)
        await self.bus.publish(run.session_id, run.run_id, "error", {
            "message": str(error),
            "exitCode": error.exit_code,
        })

    def _finish_run(self, run: ConversationRun) -> None:
        self._remember_resume_id(run)
        run.status = RunStatus.IDLE
        if self._runs.get(run.session_id) is run:
            del self._runs[run.session_id]

    def _remember_resume_id(self, run: ConversationRun) -> None:
        if run.provider is not None and run.provider_run is not None and run.provider_run.resume_id:
            self._resume_ids[run.session_id] = (run.provider.name, run.provider_run.resume_id)


def _event_to_message(event: AgentEvent) -> Optional[Message]:
    if event.type in ("text", "thinking"):
        return Message(role="agent", content=event.content, message_type=event.type)
    if event.type in ("tool_call", "tool_result"):
        return Message(role="tool", content=event.content, message_type=event.type, metadata=event.metadata)
    return None
