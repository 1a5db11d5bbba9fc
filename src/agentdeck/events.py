"""Per-session event channels.

Every subscriber gets its own bounded queue. Publishing awaits `put` on each
queue in turn, so a slow subscriber applies back-pressure to the run that
produces the events; nothing is ever dropped or reordered.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("complete", "error", "stopped")


@dataclass
class StreamEvent:
    session_id: str
    run_id: str
    seq: int
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "runId": self.run_id,
            "seq": self.seq,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """One observer's ordered view of a session's events."""

    def __init__(self, bus: "EventBus", session_id: str, maxsize: int):
        self.bus = bus
        self.session_id = session_id
        self.closed = False
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=maxsize)

    async def put(self, event: StreamEvent) -> None:
        if not self.closed:
            await self._queue.put(event)

    async def get(self) -> StreamEvent:
        return await self._queue.get()

    async def until_terminal(self) -> AsyncIterator[StreamEvent]:
        """Yield events up to and including the next terminal one."""
        while True:
            event = await self.get()
            yield event
            if event.terminal:
                return

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.bus.unsubscribe(self)
        # Free a publisher that may be blocked on our full queue.
        while not self._queue.empty():
            self._queue.get_nowait()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """Fan-out of session events to their subscribers."""

    def __init__(self, max_buffered: int = 256):
        self.max_buffered = max_buffered
        self._subscribers: dict[str, list[Subscription]] = {}
        self._seq: dict[str, int] = {}
        self._publish_locks: dict[str, asyncio.Lock] = {}

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(self, session_id, self.max_buffered)
        self._subscribers.setdefault(session_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.session_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    async def publish(self, session_id: str, run_id: str, event_type: str, data: dict | None = None) -> StreamEvent:
        """Deliver an event to every current subscriber, waiting on full queues.

        Publishes for one session are serialized so concurrent publishers
        cannot interleave their deliveries.
        """
        lock = self._publish_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            seq = self._seq.get(session_id, 0) + 1
            self._seq[session_id] = seq
            event = StreamEvent(session_id=session_id, run_id=run_id, seq=seq, type=event_type, data=data or {})
            for subscription in list(self._subscribers.get(session_id, [])):
                await subscription.put(event)
        return event


@dataclass
class RunHandle:
    """Returned by ConversationOrchestrator.start; streams that run's events."""

    session_id: str
    run_id: str
    provider: str
    model: str
    started_at: datetime
    bus: EventBus

    def subscribe(self) -> Subscription:
        return self.bus.subscribe(self.session_id)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "runId": self.run_id,
            "provider": self.provider,
            "model": self.model,
            "startedAt": self.started_at.isoformat(),
        }
