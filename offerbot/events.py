"""In-process async event bus for offerbot.

Events are dispatched to registered handlers asynchronously.
Handlers run concurrently but errors are isolated -- one broken
handler never crashes the bus or blocks other handlers.

Every event is also written to application_logs for the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from offerbot.storage.database import Database
from offerbot.storage.models import ApplicationLog

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

CONVERSATION_CREATED = "sdk_conversation_created"
CONVERSATION_DELETED = "sdk_conversation_deleted"
MESSAGE_SENT = "sdk_message_sent"
BUTTON_SELECTED = "sdk_button_selected"
ARTIFACT_UPDATED = "sdk_artifact_updated"
LOOP_PAUSED = "sdk_loop_paused"
LOOP_FAILED = "sdk_loop_failed"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    conversation_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    user_email: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def level(self) -> str:
        return "error" if self.type.endswith("_failed") else "info"


class EventBus:
    """In-process async event bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False
        self._db_persister: EventHandler | None = None

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    def set_db_persister(self, persister: EventHandler) -> None:
        """Set the handler that writes every event to the audit table."""
        self._db_persister = persister

    async def emit(self, event: Event) -> None:
        """Emit an event. Non-blocking -- queued for async processing.

        If queue is full, logs warning and drops event (never blocks caller).
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus. Cancels the loop first, then drains remaining events."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                    await self._dispatch(event)
                except asyncio.QueueEmpty:
                    break
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        """Main processing loop -- runs as background task."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        """Dispatch event to all registered handlers + DB persister."""
        if self._db_persister:
            try:
                await self._db_persister(event)
            except Exception:
                logger.warning("DB persist failed for event %s", event.type)

        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return

        tasks = [self._safe_handle(h, event) for h in handlers]
        await asyncio.gather(*tasks)

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()


def application_log_persister(database: Database) -> EventHandler:
    """Build a persister that writes events as application_logs rows."""

    async def persist(event: Event) -> None:
        details = dict(event.data)
        if event.conversation_id:
            details.setdefault("conversation_id", event.conversation_id)
        async with database.session() as session:
            session.add(
                ApplicationLog(
                    level=event.level,
                    category="chat",
                    action=event.type,
                    message=str(event.data.get("message", "")),
                    session_id=event.conversation_id,
                    user_id=event.user_id,
                    user_email=event.user_email,
                    details=details,
                    timestamp=event.timestamp,
                )
            )
            await session.commit()

    return persist
