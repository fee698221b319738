"""Event broadcaster — fan-out of incident, agent-run and log-line events.

Every subscriber gets its own bounded asyncio.Queue. Publishing never
blocks and never waits for a slow observer: if a subscriber's queue is full
the event is dropped for that subscriber only. Delivery is best-effort and
at-most-once per subscription; there is no replay. A subscriber that
reconnects reloads state from the API, which reads the store.

Usage:
    broadcaster = EventBroadcaster()

    async with broadcaster.subscribe(project_id="proj-1") as events:
        async for event in events:
            ...

    broadcaster.publish(IncidentUpdatedEvent(...))
"""

import asyncio
import logging

from schemas.agent_run import AgentRun
from schemas.events import AgentRunEvent, Event, IncidentUpdatedEvent, LogLineEvent
from schemas.incident import Incident

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class Subscription:
    """One observer's view of the event stream.

    Async-iterable; iteration ends after close(). Also usable as an async
    context manager so the subscription is removed from the broadcaster on
    exit.

    Attributes:
        project_id: If set, only events for this project (or events with no
            project) are delivered.
        dropped: Number of events discarded because the queue was full.
    """

    def __init__(self, broadcaster: "EventBroadcaster", project_id: str | None, maxsize: int) -> None:
        self.project_id = project_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def accepts(self, event: Event) -> bool:
        if self.project_id is None or event.project_id is None:
            return True
        return event.project_id == self.project_id

    def offer(self, event: Event) -> None:
        if self._closed or not self.accepts(event):
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> Event | None:
        """Wait for the next event. Returns None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        event = await self._queue.get()
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcaster.unsubscribe(self)
        # Wake a pending get(); the sentinel bypasses the size bound.
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class EventBroadcaster:
    """Publishes the three event kinds to every connected subscriber.

    Attributes:
        queue_size: Per-subscriber buffer. Events beyond it are dropped for
            that subscriber.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []

    def subscribe(self, project_id: str | None = None) -> Subscription:
        subscription = Subscription(self, project_id, self.queue_size)
        self._subscribers.append(subscription)
        logger.debug("Subscriber added (project=%s). Total: %d.", project_id, len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.debug("Subscriber removed. Total: %d.", len(self._subscribers))

    def __len__(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber that accepts it. Never blocks."""
        for subscription in list(self._subscribers):
            subscription.offer(event)

    # ── Convenience publishers ────────────────────────────────────────────────

    def incident_updated(self, incident: Incident, status_message: str | None = None) -> None:
        self.publish(IncidentUpdatedEvent(
            project_id=incident.project_id,
            incident=incident,
            status_message=status_message if status_message is not None else incident.status_message,
        ))

    def agent_run(self, run: AgentRun, project_id: str | None = None) -> None:
        self.publish(AgentRunEvent(project_id=project_id, incident_id=run.incident_id, run=run))

    def log_line(
        self,
        line: str,
        project_id: str | None = None,
        incident_id: str | None = None,
        level: str = "INFO",
        source: str = "System",
    ) -> None:
        self.publish(LogLineEvent(
            project_id=project_id,
            incident_id=incident_id,
            line=line,
            level=level,
            source=source,
        ))
